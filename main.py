#!/usr/bin/env python3
"""
Extraction Guard — Entry Point
==============================

Demonstrates consensus and text-layer verification on a sample patente:
two extractor outputs that disagree on one non-critical field, checked
against the document's OCR lines. No network or database is used.

Usage:
    python main.py
"""

from __future__ import annotations

import logging
import sys

from dotenv import load_dotenv

from extraction_guard.config import Settings
from extraction_guard.consensus import reconcile, to_display_fields
from extraction_guard.models import (
    BoundingBox,
    ConfidenceTier,
    ConsensusResult,
    TextLine,
    VerificationResult,
    VerificationStatus,
)
from extraction_guard.pipeline import VERIFIED_NUMERIC_FIELDS
from extraction_guard.schemas import schema_for
from extraction_guard.verifier import TextLayerVerifier, apply_verification, build_checks

load_dotenv()


# ─── Sample Extractor Outputs ───────────────────────────────────────

PRIMARY_OUTPUT = {
    "tipo_patente": "Empresa",
    "numero_patente": "76869",
    "titular": "José Ramírez Muñoz",
    "nombre_entidad": "FERRETERÍA EL SOL",
    "numero_registro": "512345",
    "folio": "345",
    "libro": "12",
    "numero_expediente": "2019-4411",
    "categoria": "Única",
    "direccion_comercial": "5a. Avenida 10-20 Zona 1, Guatemala",
    "objeto": "Venta de materiales de construcción",
    "clase_establecimiento": "Ferretería",
    "fecha_inscripcion_dia": "7",
    "fecha_inscripcion_mes": "3",
    "fecha_inscripcion_ano": "2019",
    "fecha_emision_dia": "15",
    "fecha_emision_mes": "03",
    "fecha_emision_ano": "2019",
    "hecho_por": "[VACÍO]",
    "nombre_propietario": "José Ramírez Muñoz",
    "nacionalidad": "Guatemalteca",
    "documento_identificacion": "2345 67890 0101",
    "direccion_propietario": "12 Calle 3-45 Zona 10, Guatemala",
}

SECONDARY_OUTPUT = {
    **PRIMARY_OUTPUT,
    "titular": "JOSÉ RAMÍREZ MUÑOZ",
    "objeto": "Venta de materiales de construccion y ferretería en general",
    "fecha_inscripcion_dia": "07",
    "fecha_inscripcion_mes": "03",
}

OCR_LINES = [
    TextLine(text="REGISTRO MERCANTIL GENERAL DE LA REPÚBLICA", bbox=BoundingBox(left=0.2, top=0.03)),
    TextLine(text="PATENTE DE COMERCIO No. 76869", bbox=BoundingBox(left=0.6, top=0.08)),
    TextLine(text="Registro: 512345  Folio: 345  Libro: 12", bbox=BoundingBox(left=0.1, top=0.15)),
    TextLine(text="Nombre de la Empresa: FERRETERÍA EL SOL", bbox=BoundingBox(left=0.1, top=0.22)),
    TextLine(text="Propietario: José Ramírez Muñoz", bbox=BoundingBox(left=0.1, top=0.30)),
]


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72

_TIER_COLORS = {
    ConfidenceTier.FULL: _GREEN,
    ConfidenceTier.PARTIAL: _YELLOW,
    ConfidenceTier.REVIEW_REQUIRED: _RED,
}

_STATUS_COLORS = {
    VerificationStatus.VERIFIED: _GREEN,
    VerificationStatus.FUZZY_MATCH: _YELLOW,
    VerificationStatus.SUSPICIOUS: _RED,
    VerificationStatus.NOT_FOUND: _RED,
}


# ─── Pretty Printer ─────────────────────────────────────────────────


def _print_fields(result: ConsensusResult) -> None:
    for row in to_display_fields(result):
        flag = f" {_YELLOW}[revisar]{_RESET}" if row["needs_review"] else ""
        print(f"  {row['label']:<30} {row['value']}{flag}")


def _print_discrepancies(result: ConsensusResult) -> None:
    if not result.discrepancies:
        return
    print(f"\n  {_YELLOW}{_BOLD}DISCREPANCIES ({len(result.discrepancies)}){_RESET}")
    for name in result.discrepancies:
        field = result.field(name)
        print(f"    {_YELLOW}[{name}]{_RESET} similarity {field.confidence:.1%}")
        for extractor, value in field.candidates.items():
            print(f"      {_DIM}{extractor}: {value}{_RESET}")


def _print_verification(results: list[VerificationResult]) -> None:
    if not results:
        return
    print(f"\n  {_CYAN}TEXT LAYER ({len(results)}){_RESET}")
    for r in results:
        color = _STATUS_COLORS[r.status]
        where = f" {_DIM}({r.zone.value}, p{r.page}){_RESET}" if r.page else ""
        print(f"    {color}{r.status.value:<12}{_RESET} {r.field} = {r.value} ({r.confidence:.2f}){where}")


def print_report(result: ConsensusResult, verification: list[VerificationResult]) -> int:
    """Pretty-print the consensus report.

    Returns:
        0 if the tier is full, 1 otherwise.
    """
    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  EXTRACTION CONSENSUS REPORT{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Document type: {result.document_type} ({result.schema_kind} schema)")
    print(f"  Extractors:    {', '.join(result.extractors)}")
    print(f"  Match ratio:   {result.match_ratio:.1%}")
    print(f"{'─' * _WIDTH}")

    _print_fields(result)
    _print_discrepancies(result)
    _print_verification(verification)

    color = _TIER_COLORS[result.tier]
    print(f"\n{'=' * _WIDTH}")
    print(f"  {color}{_BOLD}TIER: {result.tier.value.upper()}{_RESET}")
    print(f"{'=' * _WIDTH}\n")

    return 0 if result.tier == ConfidenceTier.FULL else 1


# ─── Main ────────────────────────────────────────────────────────────


def main():
    """Reconcile, verify and print the sample document."""
    logging.basicConfig(level=logging.WARNING, format="  %(levelname)s %(name)s: %(message)s")
    settings = Settings.from_env()

    outputs = {"extractor_a": PRIMARY_OUTPUT, "extractor_b": SECONDARY_OUTPUT}
    result = reconcile(outputs, schema_for("patente_empresa"))

    numeric = set(VERIFIED_NUMERIC_FIELDS) | set(settings.critical_numeric_fields)
    checks = build_checks(result, numeric, fields=numeric)
    verification = TextLayerVerifier(OCR_LINES).verify_fields(checks)
    result = apply_verification(result, verification, settings.critical_numeric_fields)

    sys.exit(print_report(result, verification))


if __name__ == "__main__":
    main()
