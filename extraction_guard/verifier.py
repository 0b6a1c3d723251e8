"""
Deterministic verifier — the third voter with veto power.

It does not vote on what a value IS; it checks whether the value the
extractors agreed on is actually present in the independent OCR text layer.
It never invents or corrects a value, only classifies trust.

Two disjoint strategies, never interchanged:

  NUMERIC  digits only → exact substring → OCR confusion table (O→0, I/L→1,
           Z→2, S→5, B→8) on tokens that already hold a digit → near-miss
           scoring. A near miss is SUSPICIOUS: one wrong digit in a registry
           number is a likely real error, never a fuzzy pass.

  TEXT     case/whitespace folded → exact substring → best edit similarity
           (1.0 VERIFIED, > 0.85 FUZZY_MATCH, else NOT_FOUND).

A field that declares an expected zone and is found elsewhere is downgraded
(VERIFIED → FUZZY_MATCH ×0.7, SUSPICIOUS → NOT_FOUND).
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Iterable, Optional, Sequence

from .models import (
    ConfidenceTier,
    ConsensusResult,
    FieldCheck,
    FieldKind,
    TextLine,
    VerificationResult,
    VerificationStatus,
    Zone,
)
from .normalize import apply_ocr_confusions, digit_similarity, digits_only, similarity

logger = logging.getLogger(__name__)

# ─── Constants ───────────────────────────────────────────────────────

FUZZY_THRESHOLD = 0.85
OCR_SUBSTITUTION_CONFIDENCE = 0.95
ZONE_PENALTY = 0.7

# Statuses on a critical numeric field that force review_required.
VETO_STATUSES: frozenset[VerificationStatus] = frozenset({
    VerificationStatus.SUSPICIOUS,
    VerificationStatus.NOT_FOUND,
})

_WHITESPACE = re.compile(r"\s+")


def _fold_text(text: str) -> str:
    return _WHITESPACE.sub(" ", unicodedata.normalize("NFC", text).strip()).upper()


# ─── Zones ───────────────────────────────────────────────────────────


def classify_zone(line: Optional[TextLine]) -> Zone:
    """Top half splits left/right at the vertical midline; bottom half is BOTTOM."""
    if line is None or line.bbox is None:
        return Zone.UNKNOWN
    if line.bbox.top < 0.5:
        return Zone.TOP_RIGHT if line.bbox.left > 0.5 else Zone.TOP_LEFT
    return Zone.BOTTOM


# ─── Verifier ───────────────────────────────────────────────────────


class TextLayerVerifier:
    """Classifies proposed field values against one document's OCR lines.

    Usage:
        verifier = TextLayerVerifier(lines)
        result = verifier.verify_field(FieldCheck(field="numero_patente",
                                                  value="76869",
                                                  kind=FieldKind.NUMERIC))
    """

    def __init__(self, lines: Sequence[TextLine]):
        self.lines = [line for line in lines if line.text and line.text.strip()]

    def all_text(self) -> list[str]:
        return [line.text for line in self.lines]

    def verify_field(self, check: FieldCheck) -> VerificationResult:
        if check.kind == FieldKind.NUMERIC:
            result = self._verify_numeric(check)
        else:
            result = self._verify_text(check)
        if check.expected_zone is not None:
            result = _apply_zone(result, check.expected_zone)
        return result

    def verify_fields(self, checks: Iterable[FieldCheck]) -> list[VerificationResult]:
        return [self.verify_field(check) for check in checks]

    # ── NUMERIC ──────────────────────────────────────────────────────

    def _verify_numeric(self, check: FieldCheck) -> VerificationResult:
        target = digits_only(check.value)
        if not target:
            return _nothing_to_verify(check)

        for line in self.lines:
            if target in digits_only(line.text):
                return _located(check, VerificationStatus.VERIFIED, 1.0, line)

        for line in self.lines:
            if target in digits_only(apply_ocr_confusions(line.text)):
                return _located(
                    check, VerificationStatus.VERIFIED, OCR_SUBSTITUTION_CONFIDENCE, line
                )

        best_score, best_line = 0.0, None
        for line in self.lines:
            score = digit_similarity(target, digits_only(apply_ocr_confusions(line.text)))
            if score > best_score:
                best_score, best_line = score, line

        if FUZZY_THRESHOLD < best_score < 1.0:
            logger.info(
                "Numeric near-miss on '%s': %r vs %r (%.3f)",
                check.field, target, best_line.text if best_line else None, best_score,
            )
            return _located(check, VerificationStatus.SUSPICIOUS, best_score, best_line)
        return _not_found(check)

    # ── TEXT ─────────────────────────────────────────────────────────

    def _verify_text(self, check: FieldCheck) -> VerificationResult:
        target = _fold_text(check.value or "")
        if not target:
            return _nothing_to_verify(check)

        best_score, best_line = 0.0, None
        for line in self.lines:
            candidate = _fold_text(line.text)
            if target in candidate:
                return _located(check, VerificationStatus.VERIFIED, 1.0, line)
            score = similarity(target, candidate)
            if score > best_score:
                best_score, best_line = score, line

        if best_score == 1.0:
            return _located(check, VerificationStatus.VERIFIED, 1.0, best_line)
        if best_score > FUZZY_THRESHOLD:
            return _located(check, VerificationStatus.FUZZY_MATCH, best_score, best_line)
        return _not_found(check)


# ─── Result Builders ─────────────────────────────────────────────────


def _located(
    check: FieldCheck,
    status: VerificationStatus,
    confidence: float,
    line: Optional[TextLine],
) -> VerificationResult:
    return VerificationResult(
        field=check.field,
        value=check.value,
        status=status,
        confidence=round(confidence, 6),
        found_text=line.text if line else None,
        page=line.page if line else None,
        zone=classify_zone(line),
    )


def _not_found(check: FieldCheck) -> VerificationResult:
    return VerificationResult(
        field=check.field, value=check.value, status=VerificationStatus.NOT_FOUND, confidence=0.0
    )


def _nothing_to_verify(check: FieldCheck) -> VerificationResult:
    """Empty values carry no claim to contradict."""
    return VerificationResult(
        field=check.field, value=check.value, status=VerificationStatus.VERIFIED, confidence=1.0
    )


def _apply_zone(result: VerificationResult, expected: Zone) -> VerificationResult:
    if result.zone in (Zone.UNKNOWN, expected):
        return result
    if result.status == VerificationStatus.VERIFIED:
        return result.model_copy(update={
            "status": VerificationStatus.FUZZY_MATCH,
            "confidence": round(result.confidence * ZONE_PENALTY, 6),
        })
    if result.status == VerificationStatus.SUSPICIOUS:
        return result.model_copy(update={
            "status": VerificationStatus.NOT_FOUND,
            "confidence": 0.0,
        })
    return result


# ─── Consensus Integration ──────────────────────────────────────────


def build_checks(
    consensus: ConsensusResult,
    numeric_fields: Iterable[str],
    expected_zones: Optional[dict[str, Zone]] = None,
    fields: Optional[Iterable[str]] = None,
) -> list[FieldCheck]:
    """Checks for the consensus fields to verify (default: all with a value)."""
    numeric = set(numeric_fields)
    zones = expected_zones or {}
    wanted = set(fields) if fields is not None else None
    checks = []
    for f in consensus.fields:
        if wanted is not None and f.field_name not in wanted:
            continue
        if not f.final_value:
            continue
        checks.append(FieldCheck(
            field=f.field_name,
            value=f.final_value,
            kind=FieldKind.NUMERIC if f.field_name in numeric else FieldKind.TEXT,
            expected_zone=zones.get(f.field_name),
        ))
    return checks


def apply_verification(
    consensus: ConsensusResult,
    results: Sequence[VerificationResult],
    critical_numeric_fields: Iterable[str],
) -> ConsensusResult:
    """Fold verification into the consensus result (returns a new result).

    Any field the verifier could not confirm (SUSPICIOUS / NOT_FOUND) is
    flagged needs_review. On a critical numeric field that status vetoes
    the consensus tier: review_required, and the field joins discrepancies.
    """
    critical = set(critical_numeric_fields)
    unconfirmed = {r.field for r in results if r.status in VETO_STATUSES}
    vetoed = [name for name in unconfirmed if name in critical]

    fields = [
        f.model_copy(update={"needs_review": True}) if f.field_name in unconfirmed else f
        for f in consensus.fields
    ]
    update: dict = {"fields": fields}
    if vetoed:
        discrepancies = list(consensus.discrepancies)
        for f in consensus.fields:
            if f.field_name in vetoed and f.field_name not in discrepancies:
                discrepancies.append(f.field_name)
        update["tier"] = ConfidenceTier.REVIEW_REQUIRED
        update["discrepancies"] = discrepancies
        logger.warning(
            "Verifier veto on %s: critical numeric field(s) %s unconfirmed by text layer",
            consensus.document_type, sorted(vetoed),
        )
    return consensus.model_copy(update=update)
