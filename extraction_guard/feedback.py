"""
Feedback aggregator — per-(document_type, model) counters that decide when
enough human-labelled error evidence exists to evolve a prompt pair.

Trigger rule:
  - any incorrect feedback with a reason sets should_evolve immediately;
  - otherwise should_evolve flips once feedback_count reaches the volume
    threshold since the last evolution.
should_evolve stays set until an evolution settles the entry; only the
feedback that evolution consumed is subtracted.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .database import session_scope
from .exceptions import FeedbackValidationError
from .models import (
    ErrorCategory,
    EvolutionQueueSnapshot,
    FeedbackExample,
    FeedbackReceipt,
    FeedbackSubmission,
)
from .records import EvolutionQueueRecord, FeedbackRecord, utcnow
from .schemas import is_open_type

logger = logging.getLogger(__name__)

# Checked in order; the first category with a matching keyword wins.
CATEGORY_KEYWORDS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.ACCENT_ERROR, ("accent", "acento", "á", "é", "í", "ó", "ú", "ñ")),
    (ErrorCategory.NUMERIC_ERROR, ("digit", "número", "number", "dígito")),
    (ErrorCategory.OCR_ERROR, ("ocr", "read", "legible", "ilegible")),
    (ErrorCategory.FORMATTING_ERROR, ("format", "formato", "structure")),
    (ErrorCategory.MISSING_FIELD, ("missing", "faltante", "vacío")),
    (ErrorCategory.EXTRA_CONTENT, ("extra", "additional", "adicional")),
)


def categorize_error(reason: str) -> ErrorCategory:
    """Keyword-classify a free-text error reason."""
    text = reason.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return ErrorCategory.OTHER_ERROR


class FeedbackAggregator:
    """Persists field feedback and maintains the evolution queue."""

    def __init__(self, session_factory: sessionmaker, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or Settings()

    def record_feedback(self, submission: FeedbackSubmission) -> FeedbackReceipt:
        """Store one judgement and update the queue entry for its pair.

        Raises:
            FeedbackValidationError: incorrect feedback without a reason, or
                a reason longer than the configured limit.
        """
        reason = (submission.reason or "").strip() or None
        self._validate(submission, reason)

        category = None
        if not submission.is_correct and reason:
            category = categorize_error(reason)

        with session_scope(self.session_factory) as db:
            record = FeedbackRecord(
                extraction_id=submission.extraction_id,
                document_id=submission.document_id,
                document_type=submission.document_type,
                content_ref=submission.content_ref,
                field_name=submission.field_name,
                model=submission.model,
                is_correct=submission.is_correct,
                reason=reason,
                extracted_value=submission.extracted_value,
                corrected_value=submission.corrected_value,
                reviewed_by=submission.reviewed_by,
            )
            db.add(record)
            db.flush()

            queue = None
            if not is_open_type(submission.document_type):
                entry = self._bump_queue(db, submission, category)
                queue = _snapshot(entry)
            feedback_id = record.id

        if queue is not None and queue.should_evolve:
            logger.info(
                "Evolution pending for %s/%s (count=%d, categories=%s)",
                queue.document_type, queue.model, queue.feedback_count, queue.error_categories,
            )
        return FeedbackReceipt(feedback_id=feedback_id, error_category=category, queue=queue)

    def _validate(self, submission: FeedbackSubmission, reason: Optional[str]) -> None:
        if submission.is_correct:
            return
        if not reason:
            raise FeedbackValidationError(
                "A reason is required when marking a field incorrect",
                {"field_name": submission.field_name},
            )
        limit = self.settings.feedback_reason_max_length
        if len(reason) > limit:
            raise FeedbackValidationError(
                f"Reason must be at most {limit} characters",
                {"field_name": submission.field_name, "length": len(reason), "max_length": limit},
            )

    def _bump_queue(
        self,
        db: Session,
        submission: FeedbackSubmission,
        category: Optional[ErrorCategory],
    ) -> EvolutionQueueRecord:
        entry = _locked_entry(db, submission.document_type, submission.model)
        if entry is None:
            entry = _insert_entry(db, submission.document_type, submission.model)

        db.query(EvolutionQueueRecord).filter(EvolutionQueueRecord.id == entry.id).update(
            {EvolutionQueueRecord.feedback_count: EvolutionQueueRecord.feedback_count + 1},
            synchronize_session=False,
        )
        db.refresh(entry)

        if category is not None:
            histogram = dict(entry.error_categories or {})
            histogram[category.value] = histogram.get(category.value, 0) + 1
            entry.error_categories = histogram

        if category is not None or entry.feedback_count >= self.settings.evolution_volume_threshold:
            entry.should_evolve = True
        entry.updated_at = utcnow()
        db.flush()
        return entry

    # ─── Queue ───────────────────────────────────────────────────────

    def get_queue(self, document_type: str, model: str) -> EvolutionQueueSnapshot:
        """The queue entry, or an empty snapshot when none exists yet."""
        with session_scope(self.session_factory) as db:
            entry = _entry(db, document_type, model)
            if entry is None:
                return EvolutionQueueSnapshot(document_type=document_type, model=model)
            return _snapshot(entry)

    def pending_evolutions(self) -> list[EvolutionQueueSnapshot]:
        with session_scope(self.session_factory) as db:
            entries = (
                db.query(EvolutionQueueRecord)
                .filter(EvolutionQueueRecord.should_evolve.is_(True))
                .order_by(EvolutionQueueRecord.updated_at)
                .all()
            )
            return [_snapshot(e) for e in entries]

    def mark_evolved(
        self,
        document_type: str,
        model: str,
        consumed: Optional[EvolutionQueueSnapshot] = None,
    ) -> EvolutionQueueSnapshot:
        """Reset counters after a successful evolution."""
        with session_scope(self.session_factory) as db:
            return self.settle_evolution(db, document_type, model, consumed)

    def settle_evolution(
        self,
        db: Session,
        document_type: str,
        model: str,
        consumed: Optional[EvolutionQueueSnapshot] = None,
    ) -> EvolutionQueueSnapshot:
        """Subtract the evolved-from snapshot from the queue, in the caller's transaction.

        Feedback recorded after `consumed` was taken stays counted, and
        re-arms should_evolve under the usual trigger rule. Without a
        snapshot every counter is cleared.
        """
        entry = _locked_entry(db, document_type, model)
        if entry is None:
            entry = _insert_entry(db, document_type, model)

        if consumed is None:
            count, histogram = 0, {}
        else:
            count = max((entry.feedback_count or 0) - consumed.feedback_count, 0)
            histogram = {}
            for name, seen in (entry.error_categories or {}).items():
                left = seen - consumed.error_categories.get(name, 0)
                if left > 0:
                    histogram[name] = left

        entry.feedback_count = count
        entry.error_categories = histogram
        entry.should_evolve = bool(histogram) or count >= self.settings.evolution_volume_threshold
        entry.last_evolved_at = utcnow()
        entry.updated_at = utcnow()
        db.flush()
        if entry.should_evolve:
            logger.info(
                "Feedback arrived during evolution of %s/%s; still pending (count=%d)",
                document_type, model, count,
            )
        return _snapshot(entry)

    # ─── Examples ────────────────────────────────────────────────────

    def recent_incorrect_examples(
        self, document_type: str, model: str, limit: Optional[int] = None
    ) -> list[FeedbackExample]:
        """Most recent incorrect-with-reason feedback, newest first."""
        limit = limit if limit is not None else self.settings.evolution_example_limit
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(FeedbackRecord)
                .filter(
                    FeedbackRecord.document_type == document_type,
                    FeedbackRecord.model == model,
                    FeedbackRecord.is_correct.is_(False),
                    FeedbackRecord.reason.isnot(None),
                )
                .order_by(FeedbackRecord.reviewed_at.desc())
                .limit(limit)
                .all()
            )
            return [
                FeedbackExample(field_name=r.field_name, value=r.extracted_value or "", reason=r.reason)
                for r in rows
            ]

    def labelled_feedback(self, document_type: str, model: str) -> list[FeedbackRecord]:
        """Feedback usable as ground truth (has a document reference), newest first."""
        with session_scope(self.session_factory) as db:
            return (
                db.query(FeedbackRecord)
                .filter(
                    FeedbackRecord.document_type == document_type,
                    FeedbackRecord.model == model,
                    FeedbackRecord.content_ref.isnot(None),
                )
                .order_by(FeedbackRecord.reviewed_at.desc())
                .all()
            )


# ─── Helpers ────────────────────────────────────────────────────────


def _entry(db: Session, document_type: str, model: str) -> Optional[EvolutionQueueRecord]:
    return (
        db.query(EvolutionQueueRecord)
        .filter(
            EvolutionQueueRecord.document_type == document_type,
            EvolutionQueueRecord.model == model,
        )
        .first()
    )


def _locked_entry(db: Session, document_type: str, model: str) -> Optional[EvolutionQueueRecord]:
    return (
        db.query(EvolutionQueueRecord)
        .filter(
            EvolutionQueueRecord.document_type == document_type,
            EvolutionQueueRecord.model == model,
        )
        .with_for_update()
        .first()
    )


def _insert_entry(db: Session, document_type: str, model: str) -> EvolutionQueueRecord:
    entry = EvolutionQueueRecord(
        document_type=document_type,
        model=model,
        feedback_count=0,
        error_categories={},
        should_evolve=False,
    )
    db.add(entry)
    db.flush()
    return entry


def _snapshot(entry: EvolutionQueueRecord) -> EvolutionQueueSnapshot:
    return EvolutionQueueSnapshot(
        document_type=entry.document_type,
        model=entry.model,
        feedback_count=entry.feedback_count or 0,
        error_categories=dict(entry.error_categories or {}),
        should_evolve=bool(entry.should_evolve),
        last_evolved_at=entry.last_evolved_at,
    )
