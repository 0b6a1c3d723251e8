"""
Test suite for the prompt evolver: parsing, candidate creation, queue reset,
pair serialization and the detached promotion gate.

Run: pytest tests/ -v
"""

from __future__ import annotations

import asyncio

import pytest

from extraction_guard.exceptions import EvolutionParseError, NoActivePromptsError
from extraction_guard.evolution import PromptEvolver, build_instruction, parse_evolution_response
from extraction_guard.golden_set import GoldenSetGate
from extraction_guard.models import (
    EvolutionRequest,
    FeedbackExample,
    FeedbackSubmission,
    GateOutcome,
    PromptStatus,
)
from fakes import FakeExtractor, FakeRewriter, evolved_json

DOC = "patente_empresa"
MODEL = "gpt-4o"


def _incorrect(model: str = MODEL, **overrides) -> FeedbackSubmission:
    data = {
        "document_type": DOC,
        "field_name": "numero_patente",
        "model": model,
        "is_correct": False,
        "reason": "Wrong digit at the end",
        "extracted_value": "76868",
        "corrected_value": "76869",
    }
    data.update(overrides)
    return FeedbackSubmission(**data)


class _FeedbackDuringRewrite:
    """Rewriter that records a judgement while its call is in flight."""

    def __init__(self, feedback, submission: FeedbackSubmission):
        self.feedback = feedback
        self.submission = submission

    async def rewrite(self, request: EvolutionRequest, instruction: str) -> str:
        await asyncio.sleep(0.01)
        self.feedback.record_feedback(self.submission)
        return evolved_json()


@pytest.fixture
def active(store):
    return store.initialize(DOC, MODEL, "SISTEMA v1", "USUARIO v1")


@pytest.fixture
def rewriter():
    return FakeRewriter(evolved_json())


@pytest.fixture
def evolver(store, feedback, rewriter, locks, settings):
    return PromptEvolver(store, feedback, rewriter, locks, settings)


# ═══════════════════════════════════════════════════════════════════════
# RESPONSE PARSING
# ═══════════════════════════════════════════════════════════════════════


class TestParseEvolutionResponse:
    def test_json_embedded_in_prose(self):
        evolved = parse_evolution_response(evolved_json("S", "U", "Added accent rules"))
        assert evolved.system_prompt == "S"
        assert evolved.user_prompt == "U"
        assert evolved.changes_made == "Added accent rules"

    def test_missing_changes_defaults(self):
        evolved = parse_evolution_response(evolved_json("S", "U", changes=None))
        assert evolved.changes_made == "No changes description provided"

    def test_accents_survive(self):
        evolved = parse_evolution_response(evolved_json("Conserve las tildes: á é í ó ú ñ", "U"))
        assert "ñ" in evolved.system_prompt

    def test_no_json(self):
        with pytest.raises(EvolutionParseError, match="No JSON object"):
            parse_evolution_response("I could not improve these prompts.")

    def test_invalid_json(self):
        with pytest.raises(EvolutionParseError, match="not valid JSON"):
            parse_evolution_response('{"system_prompt": "S", "user_prompt": }')

    def test_missing_prompt_field(self):
        with pytest.raises(EvolutionParseError) as exc_info:
            parse_evolution_response('{"system_prompt": "S"}')
        assert exc_info.value.code == "EVOLUTION_PARSE_FAILED"

    def test_empty_prompt_field(self):
        with pytest.raises(EvolutionParseError):
            parse_evolution_response('{"system_prompt": "", "user_prompt": "U"}')


class TestBuildInstruction:
    def test_includes_context(self):
        request = EvolutionRequest(
            document_type=DOC,
            model=MODEL,
            current_system_prompt="SISTEMA v1",
            current_user_prompt="USUARIO v1",
            error_categories={"numeric_error": 3},
            feedback_examples=[FeedbackExample(field_name="numero_patente", value="76868", reason="Wrong digit")],
        )
        instruction = build_instruction(request)
        assert "SISTEMA v1" in instruction
        assert '"numeric_error": 3' in instruction
        assert 'Wrong value: "76868"' in instruction
        assert "á, é, í, ó, ú, ñ, ü" in instruction
        assert '"system_prompt"' in instruction


# ═══════════════════════════════════════════════════════════════════════
# EVOLVE
# ═══════════════════════════════════════════════════════════════════════


class TestEvolve:
    @pytest.mark.asyncio
    async def test_requires_active_pair(self, evolver):
        with pytest.raises(NoActivePromptsError):
            await evolver.evolve(DOC, MODEL)

    @pytest.mark.asyncio
    async def test_creates_candidate_pair(self, evolver, active, store, feedback, rewriter):
        feedback.record_feedback(_incorrect())
        outcome = await evolver.evolve(DOC, MODEL, created_by="cron")

        system_v = store.get(outcome.system_version_id)
        user_v = store.get(outcome.user_version_id)
        assert system_v.status == PromptStatus.CANDIDATE
        assert system_v.content == "SISTEMA MEJORADO"
        assert user_v.content == "USUARIO MEJORADO"
        assert system_v.parent_version_id == active.system_version_id
        assert user_v.parent_version_id == active.user_version_id
        assert system_v.version_number == 2
        assert system_v.created_by == "cron"
        assert system_v.evolution_reason == {
            "error_categories": {"numeric_error": 1},
            "changes_made": "Clarified numeric fields",
            "feedback_count": 1,
        }
        assert outcome.changes_made == "Clarified numeric fields"

    @pytest.mark.asyncio
    async def test_active_pair_unchanged(self, evolver, active, store):
        await evolver.evolve(DOC, MODEL)
        assert store.get_active(DOC, MODEL) == active

    @pytest.mark.asyncio
    async def test_request_carries_feedback(self, evolver, active, feedback, rewriter):
        feedback.record_feedback(_incorrect())
        await evolver.evolve(DOC, MODEL)
        request, instruction = rewriter.requests[0]
        assert request.current_system_prompt == "SISTEMA v1"
        assert request.error_categories == {"numeric_error": 1}
        assert request.feedback_examples[0].value == "76868"
        assert "Wrong digit at the end" in instruction

    @pytest.mark.asyncio
    async def test_resets_queue(self, evolver, active, feedback):
        feedback.record_feedback(_incorrect())
        await evolver.evolve(DOC, MODEL)
        queue = feedback.get_queue(DOC, MODEL)
        assert queue.should_evolve is False
        assert queue.feedback_count == 0
        assert queue.last_evolved_at is not None

    @pytest.mark.asyncio
    async def test_parse_failure_writes_nothing(self, store, feedback, locks, settings, active):
        evolver = PromptEvolver(store, feedback, FakeRewriter("Sorry, no JSON today."), locks, settings)
        feedback.record_feedback(_incorrect())

        with pytest.raises(EvolutionParseError):
            await evolver.evolve(DOC, MODEL)

        assert len(store.list_versions(DOC, MODEL)) == 2
        queue = feedback.get_queue(DOC, MODEL)
        assert queue.should_evolve is True
        assert queue.feedback_count == 1

    @pytest.mark.asyncio
    async def test_feedback_during_rewrite_survives(self, store, feedback, locks, settings, active):
        feedback.record_feedback(_incorrect())
        rewriter = _FeedbackDuringRewrite(feedback, _incorrect(field_name="titular", reason="Accent dropped"))
        evolver = PromptEvolver(store, feedback, rewriter, locks, settings)

        await evolver.evolve(DOC, MODEL)

        queue = feedback.get_queue(DOC, MODEL)
        assert queue.feedback_count == 1
        assert queue.error_categories == {"accent_error": 1}
        assert queue.should_evolve is True
        assert [q.model for q in feedback.pending_evolutions()] == [MODEL]

    @pytest.mark.asyncio
    async def test_queue_failure_rolls_back_candidates(self, evolver, active, store, feedback, monkeypatch):
        feedback.record_feedback(_incorrect())

        def broken(*args, **kwargs):
            raise RuntimeError("queue write failed")

        monkeypatch.setattr(feedback, "settle_evolution", broken)
        with pytest.raises(RuntimeError, match="queue write failed"):
            await evolver.evolve(DOC, MODEL)

        assert len(store.list_versions(DOC, MODEL)) == 2
        assert feedback.get_queue(DOC, MODEL).should_evolve is True

    @pytest.mark.asyncio
    async def test_evolve_pending(self, evolver, active, store, feedback):
        store.initialize(DOC, "gpt-4o-mini", "S", "U")
        feedback.record_feedback(_incorrect())
        feedback.record_feedback(_incorrect(model="gpt-4o-mini"))
        feedback.record_feedback(_incorrect(model="no-prompts"))

        outcomes = await evolver.evolve_pending()

        assert sorted(o.model for o in outcomes) == ["gpt-4o", "gpt-4o-mini"]
        # The pair without prompts stays pending for a later cycle.
        assert [q.model for q in feedback.pending_evolutions()] == ["no-prompts"]


# ═══════════════════════════════════════════════════════════════════════
# CONCURRENCY
# ═══════════════════════════════════════════════════════════════════════


class TestSerialization:
    @pytest.mark.asyncio
    async def test_same_pair_is_serialized(self, store, feedback, locks, settings, active):
        rewriter = FakeRewriter(evolved_json(), delay=0.02)
        evolver = PromptEvolver(store, feedback, rewriter, locks, settings)

        first, second = await asyncio.gather(evolver.evolve(DOC, MODEL), evolver.evolve(DOC, MODEL))

        assert rewriter.max_in_flight == 1
        assert first.system_version_id != second.system_version_id
        assert store.get_active(DOC, MODEL) == active

    @pytest.mark.asyncio
    async def test_different_pairs_run_concurrently(self, store, feedback, locks, settings, active):
        store.initialize(DOC, "gpt-4o-mini", "S", "U")
        rewriter = FakeRewriter(evolved_json(), delay=0.02)
        evolver = PromptEvolver(store, feedback, rewriter, locks, settings)

        await asyncio.gather(evolver.evolve(DOC, MODEL), evolver.evolve(DOC, "gpt-4o-mini"))

        assert rewriter.max_in_flight == 2


# ═══════════════════════════════════════════════════════════════════════
# DETACHED GATE
# ═══════════════════════════════════════════════════════════════════════


def _respond(content_ref, prompts):
    if "MEJORADO" in prompts.system:
        return {"numero_patente": "76869"}
    return {"numero_patente": "76868"}


@pytest.fixture
def gated_evolver(session_factory, store, feedback, rewriter, locks, settings):
    extractor = FakeExtractor(MODEL, responder=_respond)
    gate = GoldenSetGate(session_factory, store, feedback, [extractor], locks, settings)
    return PromptEvolver(store, feedback, rewriter, locks, settings, gate=gate)


class TestDetachedGate:
    @pytest.mark.asyncio
    async def test_evolution_returns_before_gate_decides(self, gated_evolver, active, store, feedback):
        feedback.record_feedback(_incorrect(content_ref="docs/fb-1.txt"))

        outcome = await gated_evolver.evolve(DOC, MODEL)

        assert store.get(outcome.system_version_id).status == PromptStatus.CANDIDATE
        assert len(gated_evolver.pending_gates) == 1

        decisions = await gated_evolver.wait_for_gates()

        assert [d.outcome for d in decisions] == [GateOutcome.PROMOTED]
        assert store.get_active(DOC, MODEL).system_version_id == outcome.system_version_id
        assert not gated_evolver.pending_gates

    @pytest.mark.asyncio
    async def test_run_gate_false_skips_gate(self, gated_evolver, active):
        await gated_evolver.evolve(DOC, MODEL, run_gate=False)
        assert not gated_evolver.pending_gates

    @pytest.mark.asyncio
    async def test_gate_holds_without_evidence(self, gated_evolver, active, store):
        outcome = await gated_evolver.evolve(DOC, MODEL)
        decisions = await gated_evolver.wait_for_gates()
        assert decisions[0].outcome == GateOutcome.HELD
        assert store.get(outcome.user_version_id).status == PromptStatus.CANDIDATE
