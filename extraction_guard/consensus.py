"""
Consensus engine — reconcile N independent extractor outputs into one result.

Flow per field:
  normalize every candidate → pairwise similarity → match / no match
  → final value from the primary (first) extractor → tier over all fields

Rules:
  - Exact match after normalization, or similarity > 0.95, is a match.
  - Match and confidence depend only on the SET of candidates (the minimum
    pairwise similarity), never on extractor order.
  - The final value does depend on order: the first extractor with a
    non-empty value wins. Swapping extractors can change final_value only.
  - A disagreement keeps every raw candidate and flags the field for review.
  - Tier is computed, never assigned: fixed schemas need 100% (full) or
    ≥90% (partial) of fields AND every critical field; open schemas relax
    to ≥95% / ≥80% with no critical set.

Pure functions only — no I/O, no clock, no randomness.
"""

from __future__ import annotations

from itertools import combinations
from typing import Mapping, Optional, Sequence

from .models import ConfidenceTier, ConsensusField, ConsensusResult
from .normalize import is_empty, normalize, similarity
from .schemas import (
    FieldSchema,
    FixedSchema,
    detect_date_fields,
    display_name,
    fold_date_parts,
)

# ─── Thresholds ─────────────────────────────────────────────────────

MATCH_SIMILARITY_THRESHOLD = 0.95

FIXED_FULL_RATIO = 1.0
FIXED_PARTIAL_RATIO = 0.90
OPEN_FULL_RATIO = 0.95
OPEN_PARTIAL_RATIO = 0.80

RawFieldSet = Mapping[str, Optional[str]]


# ─── Field Comparator ───────────────────────────────────────────────


def compare_values(values: Sequence[Optional[str]]) -> tuple[bool, float]:
    """Compare candidate values; returns (match, confidence).

    Confidence is the minimum pairwise similarity of the normalized values,
    so it is symmetric in its inputs.
    """
    keys = [normalize(v) for v in values]
    confidence = 1.0
    for a, b in combinations(keys, 2):
        confidence = min(confidence, similarity(a, b))
    return confidence > MATCH_SIMILARITY_THRESHOLD, confidence


def compare_field(
    field_name: str,
    candidates: Mapping[str, Optional[str]],
    critical: bool = False,
) -> ConsensusField:
    """Reconcile one field across extractors (insertion order = priority).

    This is the single field comparator of the system: the golden-set gate
    and the backtest score against truth with this same function.
    """
    match, confidence = compare_values(list(candidates.values()))
    final_value = _primary_value(candidates)
    return ConsensusField(
        field_name=field_name,
        candidates=dict(candidates),
        final_value=final_value,
        match=match,
        confidence=round(confidence, 6),
        critical=critical,
        needs_review=not match,
    )


def _primary_value(candidates: Mapping[str, Optional[str]]) -> Optional[str]:
    """First non-empty raw value in extractor order."""
    for value in candidates.values():
        if not is_empty(value):
            return str(value).strip()
    return None


# ─── Reconciliation ─────────────────────────────────────────────────


def reconcile(
    outputs: Mapping[str, RawFieldSet],
    schema: FieldSchema,
) -> ConsensusResult:
    """Build a ConsensusResult from ≥2 extractor outputs.

    Args:
        outputs: extractor name → raw field set. Mapping order is the
            tie-break order; the first entry is the primary extractor.
        schema: fixed or open field schema for the document type.

    Raises:
        ValueError: fewer than two extractor outputs.
    """
    if len(outputs) < 2:
        raise ValueError("Consensus requires at least two extractor outputs")

    extractors = list(outputs)
    prepared = _prepare_outputs(outputs, schema)

    if isinstance(schema, FixedSchema):
        field_names = list(schema.fields)
        critical = set(schema.critical_fields)
    else:
        field_names = _open_field_names(prepared)
        critical = set()

    fields: list[ConsensusField] = []
    for name in field_names:
        candidates = {ext: prepared[ext].get(name) for ext in extractors}
        if not isinstance(schema, FixedSchema) and all(is_empty(v) for v in candidates.values()):
            continue
        fields.append(compare_field(name, candidates, critical=name in critical))

    return ConsensusResult(
        document_type=schema.document_type,
        schema_kind=schema.kind,
        extractors=extractors,
        fields=fields,
        tier=determine_tier(fields, schema),
        discrepancies=[f.field_name for f in fields if not f.match],
    )


def _prepare_outputs(
    outputs: Mapping[str, RawFieldSet], schema: FieldSchema
) -> dict[str, dict[str, Optional[str]]]:
    if isinstance(schema, FixedSchema):
        date_fields = schema.date_fields
    else:
        keys: list[str] = []
        for raw in outputs.values():
            keys.extend(k for k in raw if k not in keys)
        date_fields = schema.date_fields or detect_date_fields(keys)
    return {
        name: fold_date_parts({k: _as_text(v) for k, v in raw.items()}, date_fields)
        for name, raw in outputs.items()
    }


def prepare_fields(raw: RawFieldSet, schema: FieldSchema) -> dict[str, Optional[str]]:
    """Stringify one raw field set and fold its date parts, as reconcile() does."""
    if isinstance(schema, FixedSchema):
        date_fields = schema.date_fields
    else:
        date_fields = schema.date_fields or detect_date_fields(list(raw))
    return fold_date_parts({k: _as_text(v) for k, v in raw.items()}, date_fields)


def _as_text(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value if v is not None)
    return str(value)


def _open_field_names(prepared: Mapping[str, Mapping[str, Optional[str]]]) -> list[str]:
    """Union of keys, first-seen order across extractors in priority order."""
    names: list[str] = []
    for raw in prepared.values():
        for key in raw:
            if key not in names:
                names.append(key)
    return names


# ─── Tier ───────────────────────────────────────────────────────────


def determine_tier(fields: Sequence[ConsensusField], schema: FieldSchema) -> ConfidenceTier:
    """Tier from match ratio and critical-field agreement."""
    if not fields:
        return ConfidenceTier.REVIEW_REQUIRED

    ratio = sum(1 for f in fields if f.match) / len(fields)

    if isinstance(schema, FixedSchema):
        by_name = {f.field_name: f for f in fields}
        critical_ok = all(
            name in by_name and by_name[name].match for name in schema.critical_fields
        )
        if ratio >= FIXED_FULL_RATIO and critical_ok:
            return ConfidenceTier.FULL
        if ratio >= FIXED_PARTIAL_RATIO and critical_ok:
            return ConfidenceTier.PARTIAL
        return ConfidenceTier.REVIEW_REQUIRED

    if ratio >= OPEN_FULL_RATIO:
        return ConfidenceTier.FULL
    if ratio >= OPEN_PARTIAL_RATIO:
        return ConfidenceTier.PARTIAL
    return ConfidenceTier.REVIEW_REQUIRED


# ─── Presentation ───────────────────────────────────────────────────


def to_display_fields(result: ConsensusResult) -> list[dict[str, object]]:
    """Rows of (label, value, needs_review) for non-empty final values.

    Fixed schemas keep schema order; open schemas are sorted by key.
    """
    fields = list(result.fields)
    if result.schema_kind == "open":
        fields.sort(key=lambda f: f.field_name)
    return [
        {
            "field": f.field_name,
            "label": display_name(f.field_name),
            "value": f.final_value,
            "needs_review": f.needs_review,
        }
        for f in fields
        if f.final_value
    ]
