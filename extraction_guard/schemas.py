"""
Field schemas — which fields a document type carries and which are critical.

A known document type has a fixed field list (FixedSchema). Anything else is
an open schema: the field set is whatever the extractors returned. Both
variants are consumed by the same consensus algorithm; only the field list
and the tier thresholds differ.
"""

from __future__ import annotations

from typing import Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field

from .normalize import is_empty

# ─── Field Vocabulary ───────────────────────────────────────────────

CRITICAL_FIELDS: tuple[str, ...] = (
    "numero_registro",
    "numero_patente",
    "nombre_entidad",
    "fecha_inscripcion",
    "fecha_emision",
)

# Fields extracted as separate day/month/year parts.
DATE_FIELDS: tuple[str, ...] = ("fecha_inscripcion", "fecha_emision")

_COMMON_FIELDS: tuple[str, ...] = (
    "tipo_patente",
    "numero_patente",
    "titular",
    "nombre_entidad",
    "numero_registro",
    "folio",
    "libro",
    "numero_expediente",
    "categoria",
    "direccion_comercial",
    "objeto",
    "clase_establecimiento",
    "fecha_inscripcion",
    "fecha_emision",
    "hecho_por",
)

PATENTE_EMPRESA_FIELDS: tuple[str, ...] = _COMMON_FIELDS + (
    "nombre_propietario",
    "nacionalidad",
    "documento_identificacion",
    "direccion_propietario",
)

PATENTE_SOCIEDAD_FIELDS: tuple[str, ...] = _COMMON_FIELDS + (
    "representante",
    "nacionalidad",
    "documento_identificacion",
    "direccion_entidad",
)

FIELD_DISPLAY_NAMES: dict[str, str] = {
    "tipo_patente": "Tipo de Patente",
    "numero_patente": "Número de Patente",
    "titular": "Titular",
    "nombre_entidad": "Nombre de la Entidad",
    "numero_registro": "Número de Registro",
    "folio": "Folio",
    "libro": "Libro",
    "numero_expediente": "Número de Expediente",
    "categoria": "Categoría",
    "direccion_comercial": "Dirección Comercial",
    "direccion_propietario": "Dirección del Propietario",
    "direccion_entidad": "Dirección de la Entidad",
    "objeto": "Objeto",
    "clase_establecimiento": "Clase de Establecimiento",
    "fecha_inscripcion": "Fecha de Inscripción",
    "fecha_emision": "Fecha de Emisión",
    "nombre_propietario": "Nombre del Propietario",
    "nacionalidad": "Nacionalidad",
    "documento_identificacion": "Documento de Identificación",
    "representante": "Representante",
    "hecho_por": "Hecho por",
}


# ─── Schema Variants ────────────────────────────────────────────────


class FixedSchema(BaseModel):
    """Known document type with a fixed, ordered field list."""

    kind: Literal["fixed"] = "fixed"
    document_type: str
    fields: tuple[str, ...]
    critical_fields: tuple[str, ...] = CRITICAL_FIELDS
    date_fields: tuple[str, ...] = DATE_FIELDS


class OpenSchema(BaseModel):
    """Unknown document type — fields are the union of extractor keys."""

    kind: Literal["open"] = "open"
    document_type: str = "otros"
    date_fields: tuple[str, ...] = Field(default_factory=tuple)


FieldSchema = Union[FixedSchema, OpenSchema]

KNOWN_SCHEMAS: dict[str, FixedSchema] = {
    "patente_empresa": FixedSchema(document_type="patente_empresa", fields=PATENTE_EMPRESA_FIELDS),
    "patente_sociedad": FixedSchema(document_type="patente_sociedad", fields=PATENTE_SOCIEDAD_FIELDS),
}


def schema_for(document_type: str) -> FieldSchema:
    """Resolve a document type to its schema; unknown types are open."""
    schema = KNOWN_SCHEMAS.get(document_type)
    if schema is not None:
        return schema
    return OpenSchema(document_type=document_type)


def is_open_type(document_type: str) -> bool:
    return document_type not in KNOWN_SCHEMAS


# ─── Raw Output Preparation ─────────────────────────────────────────


def format_date_numeric(day: str, month: str, year: str) -> str:
    """Fold date parts into DD/MM/YYYY (one-digit day and month zero-padded)."""
    day = day.strip().zfill(2)
    month = month.strip()
    if len(month) == 1:
        month = month.zfill(2)
    return f"{day}/{month}/{year.strip()}"


def fold_date_parts(
    raw: Mapping[str, Optional[str]], date_fields: tuple[str, ...]
) -> dict[str, Optional[str]]:
    """Fold `<date>_dia/_mes/_ano` parts into `<date>` when the whole is absent.

    The part keys are consumed; other keys pass through untouched.
    """
    folded: dict[str, Optional[str]] = dict(raw)
    for name in date_fields:
        parts = [f"{name}_dia", f"{name}_mes", f"{name}_ano"]
        if not any(p in folded for p in parts):
            continue
        values = [folded.pop(p, None) for p in parts]
        if not is_empty(folded.get(name)):
            continue
        if any(is_empty(v) for v in values):
            folded.setdefault(name, None)
            continue
        day, month, year = (str(v) for v in values)
        folded[name] = format_date_numeric(day, month, year)
    return folded


def display_name(field_name: str) -> str:
    """Spanish label for known keys; Title Case for open-schema keys."""
    known = FIELD_DISPLAY_NAMES.get(field_name)
    if known:
        return known
    return " ".join(word.capitalize() for word in field_name.split("_"))


def detect_date_fields(keys: list[str]) -> tuple[str, ...]:
    """Date bases present as complete `_dia/_mes/_ano` triples in open output."""
    present = set(keys)
    bases: list[str] = []
    for key in keys:
        if key.endswith("_dia"):
            base = key[: -len("_dia")]
            if f"{base}_mes" in present and f"{base}_ano" in present and base not in bases:
                bases.append(base)
    return tuple(bases)
