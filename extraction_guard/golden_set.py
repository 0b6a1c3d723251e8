"""
Golden-set regression gate — dual-gated promotion of candidate prompts.

Gate (a), golden set: every frozen benchmark document of the type is
re-extracted with the candidate pair and scored against its truth with the
consensus field comparator. The candidate must score at least what the
active pair scores on the same documents (ties pass). No benchmark documents
is an automatic pass (bootstrap).

Gate (b), backtest: documents with human-labelled feedback are re-extracted
with both pairs; the candidate must beat the active pair by at least
BACKTEST_MIN_IMPROVEMENT.

Failing (a) rejects the candidate. Failing (b) alone, or having no labelled
data, holds it as a candidate. Only passing both activates it. A golden-set
failure that is an exception, not a regression, falls back to the backtest
alone (configurable). A crash anywhere leaves the candidate unpromoted with
the error stored on the record.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional

from sqlalchemy.orm import sessionmaker

from .collaborators import FieldExtractor
from .config import Settings
from .consensus import compare_field, prepare_fields
from .database import session_scope
from .exceptions import (
    GoldenSetTruthExistsError,
    GoldenSetTruthNotFoundError,
    UnknownExtractorError,
)
from .feedback import FeedbackAggregator
from .locks import PairLocks
from .models import (
    BacktestResult,
    GateDecision,
    GateOutcome,
    GoldenComparison,
    GoldenDocumentScore,
    GoldenSetTestResult,
    GoldenSetTruthView,
    PromptPair,
    PromptStatus,
)
from .prompt_store import PromptVersionStore
from .records import GoldenSetTruthRecord
from .schemas import FieldSchema, schema_for

logger = logging.getLogger(__name__)


# ─── Scoring ────────────────────────────────────────────────────────


def score_against_truth(
    document_id: str,
    truth: Mapping[str, Optional[str]],
    extracted: Mapping[str, Optional[str]],
    schema: FieldSchema,
) -> GoldenDocumentScore:
    """Score one extraction against a truth, field by field.

    A field is correct when the consensus comparator calls the truth value
    and the extracted value a match.
    """
    prepared = prepare_fields(extracted, schema)
    field_results: dict[str, bool] = {}
    errors: list[str] = []
    for name, expected in truth.items():
        got = prepared.get(name)
        result = compare_field(name, {"truth": expected, "candidate": got})
        field_results[name] = result.match
        if not result.match:
            errors.append(f'{name}: expected "{expected or "N/A"}", got "{got or "N/A"}"')

    total = len(field_results)
    correct = sum(1 for ok in field_results.values() if ok)
    return GoldenDocumentScore(
        document_id=document_id,
        match_rate=correct / total if total else 1.0,
        total_fields=total,
        correct_fields=correct,
        field_results=field_results,
        errors=errors,
    )


def _failed_score(document_id: str, truth: Mapping[str, Optional[str]], error: Exception) -> GoldenDocumentScore:
    return GoldenDocumentScore(
        document_id=document_id,
        match_rate=0.0,
        total_fields=len(truth),
        correct_fields=0,
        field_results={name: False for name in truth},
        errors=[f"Extraction error: {error}"],
    )


def count_regressions(current: GoldenSetTestResult, candidate: GoldenSetTestResult) -> int:
    """Fields correct under the current pair but wrong under the candidate."""
    by_document = {d.document_id: d for d in candidate.documents}
    regressions = 0
    for before in current.documents:
        after = by_document.get(before.document_id)
        if after is None:
            continue
        for name, ok in before.field_results.items():
            if ok and not after.field_results.get(name, False):
                regressions += 1
    return regressions


# ─── Gate ───────────────────────────────────────────────────────────


class GoldenSetGate:
    """Benchmark set, backtest and the promotion decision for candidate pairs.

    Usage:
        gate = GoldenSetGate(session_factory, store, feedback, extractors, locks)
        decision = await gate.evaluate_and_promote("patente_empresa", "gpt-4o",
                                                   system_id, user_id)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        store: PromptVersionStore,
        feedback: FeedbackAggregator,
        extractors: Iterable[FieldExtractor],
        locks: PairLocks,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.feedback = feedback
        self.extractors = {e.name: e for e in extractors}
        self.locks = locks
        self.settings = settings or Settings()

    # ─── Benchmark Set ───────────────────────────────────────────────

    def promote_to_golden_set(
        self,
        document_id: str,
        document_type: str,
        content_ref: str,
        verified_result: Mapping[str, Optional[str]],
        verified_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> GoldenSetTruthView:
        """Freeze a human-verified result as a benchmark truth (write-once).

        Raises:
            GoldenSetTruthExistsError: the document already has a truth.
        """
        with session_scope(self.session_factory) as db:
            exists = (
                db.query(GoldenSetTruthRecord.id)
                .filter(GoldenSetTruthRecord.document_id == document_id)
                .first()
            )
            if exists is not None:
                raise GoldenSetTruthExistsError(document_id)
            record = GoldenSetTruthRecord(
                document_id=document_id,
                document_type=document_type,
                content_ref=content_ref,
                verified_result=dict(verified_result),
                verified_by=verified_by,
                notes=notes,
            )
            db.add(record)
            db.flush()
            view = GoldenSetTruthView.model_validate(record, from_attributes=True)

        logger.info("Added %s (%s) to the golden set", document_id, document_type)
        return view

    def get_truth(self, document_id: str) -> GoldenSetTruthView:
        with session_scope(self.session_factory) as db:
            record = (
                db.query(GoldenSetTruthRecord)
                .filter(GoldenSetTruthRecord.document_id == document_id)
                .first()
            )
            if record is None:
                raise GoldenSetTruthNotFoundError(document_id)
            return GoldenSetTruthView.model_validate(record, from_attributes=True)

    def truths_for(self, document_type: str) -> list[GoldenSetTruthView]:
        with session_scope(self.session_factory) as db:
            records = (
                db.query(GoldenSetTruthRecord)
                .filter(GoldenSetTruthRecord.document_type == document_type)
                .order_by(GoldenSetTruthRecord.verified_at, GoldenSetTruthRecord.document_id)
                .limit(self.settings.golden_set_document_limit)
                .all()
            )
            return [GoldenSetTruthView.model_validate(r, from_attributes=True) for r in records]

    # ─── Gate (a): Golden Set ────────────────────────────────────────

    async def test_golden_set(
        self, document_type: str, model: str, system_version_id: str, user_version_id: str
    ) -> GoldenSetTestResult:
        """Re-extract every benchmark document with the given pair and score it."""
        prompts = self.store.pair(system_version_id, user_version_id)
        return await self._run_golden(document_type, model, prompts)

    async def _run_golden(self, document_type: str, model: str, prompts: PromptPair) -> GoldenSetTestResult:
        truths = self.truths_for(document_type)
        if not truths:
            logger.warning("No golden-set documents for %s; bootstrap pass", document_type)
            return GoldenSetTestResult(accuracy=1.0, bootstrap=True)

        extractor = self._extractor(model)
        schema = schema_for(document_type)
        scores: list[GoldenDocumentScore] = []
        for truth in truths:
            try:
                raw = await extractor.extract(truth.content_ref, prompts)
            except Exception as e:
                logger.warning("Golden-set extraction failed for %s: %s", truth.document_id, e)
                scores.append(_failed_score(truth.document_id, truth.verified_result, e))
                continue
            scores.append(score_against_truth(truth.document_id, truth.verified_result, raw, schema))

        return GoldenSetTestResult(
            accuracy=sum(s.match_rate for s in scores) / len(scores),
            total_fields=sum(s.total_fields for s in scores),
            correct_fields=sum(s.correct_fields for s in scores),
            documents=scores,
        )

    async def compare_prompt_versions(
        self, document_type: str, model: str, system_version_id: str, user_version_id: str
    ) -> GoldenComparison:
        """Candidate vs active pair on the same benchmark documents.

        passed = candidate accuracy ≥ current accuracy. With no active pair
        the current accuracy is 0.0.
        """
        candidate_prompts = self.store.pair(system_version_id, user_version_id)
        return await self._compare(document_type, model, candidate_prompts)

    async def _compare(self, document_type: str, model: str, candidate_prompts: PromptPair) -> GoldenComparison:
        candidate = await self._run_golden(document_type, model, candidate_prompts)
        if candidate.bootstrap:
            return GoldenComparison(
                candidate_accuracy=1.0,
                current_accuracy=1.0,
                improvement=0.0,
                passed=True,
                bootstrap=True,
            )

        active = self.store.get_active(document_type, model)
        current_accuracy = 0.0
        regressions = 0
        if active is not None:
            current = await self._run_golden(document_type, model, active)
            current_accuracy = current.accuracy
            regressions = count_regressions(current, candidate)

        return GoldenComparison(
            candidate_accuracy=round(candidate.accuracy, 6),
            current_accuracy=round(current_accuracy, 6),
            improvement=round(candidate.accuracy - current_accuracy, 6),
            passed=round(candidate.accuracy, 6) >= round(current_accuracy, 6),
            regression_count=regressions,
            failed_documents=candidate.failed_documents,
        )

    # ─── Gate (b): Backtest ──────────────────────────────────────────

    async def backtest(
        self, document_type: str, model: str, system_version_id: str, user_version_id: str
    ) -> BacktestResult:
        """Accuracy of a pair on documents with human-labelled feedback.

        Truth per field: the extracted value when feedback says correct, the
        corrected value when it says incorrect (skipped when none was given).
        The newest judgement of a field wins.
        """
        prompts = self.store.pair(system_version_id, user_version_id)
        return await self._backtest(document_type, model, prompts)

    async def _backtest(self, document_type: str, model: str, prompts: PromptPair) -> BacktestResult:
        truths = self._backtest_truths(document_type, model)
        if not truths:
            return BacktestResult()

        extractor = self._extractor(model)
        schema = schema_for(document_type)
        total = correct = 0
        for content_ref, truth in truths.items():
            try:
                raw = await extractor.extract(content_ref, prompts)
            except Exception as e:
                logger.warning("Backtest extraction failed for %s: %s", content_ref, e)
                total += len(truth)
                continue
            score = score_against_truth(content_ref, truth, raw, schema)
            total += score.total_fields
            correct += score.correct_fields

        return BacktestResult(
            accuracy=round(correct / total, 6) if total else None,
            total_fields=total,
            correct_fields=correct,
        )

    def _backtest_truths(self, document_type: str, model: str) -> dict[str, dict[str, str]]:
        truths: dict[str, dict[str, str]] = {}
        for fb in self.feedback.labelled_feedback(document_type, model):
            value = fb.extracted_value if fb.is_correct else fb.corrected_value
            if value is None:
                continue
            if fb.content_ref not in truths:
                if len(truths) >= self.settings.backtest_sample_limit:
                    continue
                truths[fb.content_ref] = {}
            truths[fb.content_ref].setdefault(fb.field_name, value)
        return truths

    # ─── Decision ────────────────────────────────────────────────────

    async def evaluate_and_promote(
        self, document_type: str, model: str, system_version_id: str, user_version_id: str
    ) -> GateDecision:
        """Run both gates and promote, reject or hold the candidate. Never raises."""
        async with self.locks.for_pair(document_type, model):
            try:
                return await self._evaluate(document_type, model, system_version_id, user_version_id)
            except Exception as e:
                logger.error(
                    "Gate run crashed for %s/%s (system=%s user=%s)",
                    document_type, model, system_version_id, user_version_id, exc_info=True,
                )
                reason = f"Gate run failed: {e}"
                try:
                    self.store.record_evaluation(
                        [system_version_id, user_version_id],
                        evaluation={"outcome": GateOutcome.HELD.value, "reason": reason, "error": str(e)},
                    )
                except Exception:
                    logger.error("Could not record gate failure", exc_info=True)
                return GateDecision(
                    outcome=GateOutcome.HELD,
                    document_type=document_type,
                    model=model,
                    system_version_id=system_version_id,
                    user_version_id=user_version_id,
                    reason=reason,
                )

    async def _evaluate(
        self, document_type: str, model: str, system_version_id: str, user_version_id: str
    ) -> GateDecision:
        ids = [system_version_id, user_version_id]

        def decide(outcome: GateOutcome, reason: str, **extra) -> GateDecision:
            return GateDecision(
                outcome=outcome,
                document_type=document_type,
                model=model,
                system_version_id=system_version_id,
                user_version_id=user_version_id,
                reason=reason,
                **extra,
            )

        statuses = {self.store.get(version_id).status for version_id in ids}
        if statuses != {PromptStatus.CANDIDATE}:
            reason = f"Candidate is no longer pending (status: {sorted(s.value for s in statuses)})"
            logger.info("Skipping gate for %s/%s: %s", document_type, model, reason)
            return decide(GateOutcome.HELD, reason)

        candidate_prompts = self.store.pair(system_version_id, user_version_id)

        # (a) golden set
        golden: Optional[GoldenComparison] = None
        try:
            golden = await self._compare(document_type, model, candidate_prompts)
        except Exception as e:
            if not self.settings.allow_backtest_only_promotion:
                reason = f"Golden-set test failed: {e}"
                self.store.record_evaluation(ids, evaluation=_evaluation(GateOutcome.HELD, reason))
                logger.warning("%s for %s/%s; candidate held", reason, document_type, model)
                return decide(GateOutcome.HELD, reason)
            logger.warning(
                "Golden-set test failed for %s/%s, falling back to backtest only: %s",
                document_type, model, e,
            )

        if golden is not None:
            # A bootstrap pass measured nothing, so no accuracy is stored.
            self.store.record_evaluation(
                ids,
                golden_set_accuracy=None if golden.bootstrap else golden.candidate_accuracy,
                regression_count=golden.regression_count,
            )
            if not golden.passed:
                reason = (
                    f"Golden-set regression: {golden.candidate_accuracy:.2%} "
                    f"< {golden.current_accuracy:.2%} ({golden.regression_count} field regressions)"
                )
                self.store.reject(ids, reason, evaluation=_evaluation(GateOutcome.REJECTED, reason, golden))
                logger.warning("Rejected candidate for %s/%s: %s", document_type, model, reason)
                return decide(GateOutcome.REJECTED, reason, golden=golden)
            logger.info(
                "Golden-set passed for %s/%s: %.2f%% (%+.2f%% vs current)%s",
                document_type, model, golden.candidate_accuracy * 100, golden.improvement * 100,
                " [bootstrap]" if golden.bootstrap else "",
            )

        # (b) backtest
        candidate_bt = await self._backtest(document_type, model, candidate_prompts)
        active = self.store.get_active(document_type, model)
        current_bt = await self._backtest(document_type, model, active) if active else BacktestResult()
        if candidate_bt.accuracy is not None:
            self.store.record_evaluation(ids, backtest_accuracy=candidate_bt.accuracy)

        extra = {"golden": golden, "candidate_backtest": candidate_bt, "current_backtest": current_bt}
        if candidate_bt.accuracy is None:
            reason = "No labelled feedback to backtest against"
            self.store.record_evaluation(ids, evaluation=_evaluation(GateOutcome.HELD, reason, golden, candidate_bt, current_bt))
            logger.info("Holding candidate for %s/%s: %s", document_type, model, reason)
            return decide(GateOutcome.HELD, reason, **extra)

        current_accuracy = current_bt.accuracy or 0.0
        margin = round(candidate_bt.accuracy - current_accuracy, 6)
        if margin < self.settings.backtest_min_improvement:
            reason = (
                f"Backtest improvement {margin:+.2%} below required "
                f"{self.settings.backtest_min_improvement:+.2%}"
            )
            self.store.record_evaluation(ids, evaluation=_evaluation(GateOutcome.HELD, reason, golden, candidate_bt, current_bt))
            logger.info("Holding candidate for %s/%s: %s", document_type, model, reason)
            return decide(GateOutcome.HELD, reason, **extra)

        reason = f"Backtest improved {margin:+.2%}" + (
            "; golden set passed" if golden is not None else "; golden set unavailable"
        )
        self.store.record_evaluation(ids, evaluation=_evaluation(GateOutcome.PROMOTED, reason, golden, candidate_bt, current_bt))
        self.store.activate(system_version_id, user_version_id)
        logger.info("Promoted candidate for %s/%s: %s", document_type, model, reason)
        return decide(GateOutcome.PROMOTED, reason, **extra)

    def _extractor(self, model: str) -> FieldExtractor:
        extractor = self.extractors.get(model)
        if extractor is None:
            raise UnknownExtractorError(model)
        return extractor


def _evaluation(
    outcome: GateOutcome,
    reason: str,
    golden: Optional[GoldenComparison] = None,
    candidate_backtest: Optional[BacktestResult] = None,
    current_backtest: Optional[BacktestResult] = None,
) -> dict:
    """JSON-ready record of one gate run."""
    evaluation: dict = {"outcome": outcome.value, "reason": reason}
    if golden is not None:
        evaluation["golden_set"] = {
            "candidate_accuracy": golden.candidate_accuracy,
            "current_accuracy": golden.current_accuracy,
            "improvement": golden.improvement,
            "passed": golden.passed,
            "bootstrap": golden.bootstrap,
            "regression_count": golden.regression_count,
            "failed_documents": [
                {"document_id": d.document_id, "error_count": len(d.errors)}
                for d in golden.failed_documents
            ],
        }
    if candidate_backtest is not None:
        evaluation["candidate_backtest"] = candidate_backtest.model_dump()
    if current_backtest is not None:
        evaluation["current_backtest"] = current_backtest.model_dump()
    return evaluation
