"""
Prompt evolver — turns aggregated feedback into a new candidate prompt pair.

Flow:
  active pair + error histogram + recent examples
  → rewrite collaborator → strict parse → two candidate versions, committed
    with the queue update → detached golden-set gate run

A response that does not parse into (system_prompt, user_prompt) fails the
attempt before anything is written; the queue keeps its counters so the
trigger fires again on the next cycle.

Feedback recorded while the rewrite call is in flight is not part of the
snapshot the attempt evolved from; it stays on the queue for the next cycle.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import TYPE_CHECKING, Optional

from pydantic import ValidationError

from .collaborators import PromptRewriter
from .config import Settings
from .database import session_scope
from .exceptions import EvolutionParseError, NoActivePromptsError
from .feedback import FeedbackAggregator
from .locks import PairLocks
from .models import (
    EvolutionOutcome,
    EvolutionRequest,
    EvolvedPrompts,
    GateDecision,
    PromptRole,
)
from .prompt_store import PromptVersionStore

if TYPE_CHECKING:
    from .golden_set import GoldenSetGate

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

NO_CHANGES_DESCRIPTION = "No changes description provided"


# ─── Instruction & Parsing ──────────────────────────────────────────


def build_instruction(request: EvolutionRequest) -> str:
    """The fixed rewrite instruction for one evolution attempt."""
    examples = "\n".join(
        f'- Field: {e.field_name}, Wrong value: "{e.value}", Why: {e.reason}'
        for e in request.feedback_examples
    ) or "- (none)"
    histogram = json.dumps(request.error_categories, indent=2, ensure_ascii=False, sort_keys=True)

    return f"""You are a prompt engineer improving extraction prompts for {request.document_type} documents processed by {request.model}.

Current System Prompt:
{request.current_system_prompt}

Current User Prompt:
{request.current_user_prompt}

Error Analysis:
{histogram}

Recent Feedback Examples:
{examples}

CRITICAL LEGAL REQUIREMENT:
Spanish accents and special characters (á, é, í, ó, ú, ñ, ü) MUST be preserved exactly.
A value with a removed or altered accent is legally invalid.

Task: Evolve BOTH prompts to fix these errors while keeping every existing requirement
(field list, JSON response format, empty/not-applicable/illegible markers). Focus on:
1. Addressing the specific error categories shown above
2. Improving accuracy for numeric fields (numero_patente, numero_registro, etc.)
3. Ensuring accent preservation is emphasized
4. Making instructions clearer and more specific

Return ONLY valid JSON in this exact format:
{{
  "system_prompt": "improved system prompt here",
  "user_prompt": "improved user prompt here",
  "changes_made": "summary of improvements made"
}}"""


def parse_evolution_response(text: str) -> EvolvedPrompts:
    """Parse a rewrite response into EvolvedPrompts.

    Raises:
        EvolutionParseError: no JSON object, invalid JSON, or a missing/empty
            prompt field.
    """
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        raise EvolutionParseError("No JSON object found in rewrite response", {"response": (text or "")[:500]})
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise EvolutionParseError(f"Rewrite response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EvolutionParseError("Rewrite response JSON is not an object")

    changes = data.get("changes_made")
    try:
        return EvolvedPrompts(
            system_prompt=data.get("system_prompt") or "",
            user_prompt=data.get("user_prompt") or "",
            changes_made=str(changes) if changes else NO_CHANGES_DESCRIPTION,
        )
    except ValidationError as e:
        raise EvolutionParseError(
            "Rewrite response must contain non-empty system_prompt and user_prompt",
            {"errors": e.errors(include_url=False)},
        ) from e


# ─── Evolver ────────────────────────────────────────────────────────


class PromptEvolver:
    """Runs evolution attempts and schedules the promotion gate.

    Usage:
        evolver = PromptEvolver(store, aggregator, rewriter, locks, gate=gate)
        outcome = await evolver.evolve("patente_empresa", "gpt-4o")
        # candidates exist now; the gate decides on promotion in the background
    """

    def __init__(
        self,
        store: PromptVersionStore,
        feedback: FeedbackAggregator,
        rewriter: PromptRewriter,
        locks: PairLocks,
        settings: Optional[Settings] = None,
        gate: Optional["GoldenSetGate"] = None,
    ):
        self.store = store
        self.feedback = feedback
        self.rewriter = rewriter
        self.locks = locks
        self.settings = settings or Settings()
        self.gate = gate
        self.pending_gates: set[asyncio.Task] = set()

    async def evolve(
        self,
        document_type: str,
        model: str,
        created_by: Optional[str] = None,
        run_gate: bool = True,
    ) -> EvolutionOutcome:
        """Create a candidate pair evolved from the active pair.

        Raises:
            NoActivePromptsError: nothing active to evolve from.
            EvolutionParseError: the rewrite response could not be parsed.
        """
        async with self.locks.for_pair(document_type, model):
            active = self.store.get_active(document_type, model)
            if active is None:
                raise NoActivePromptsError(document_type, model)

            queue = self.feedback.get_queue(document_type, model)
            request = EvolutionRequest(
                document_type=document_type,
                model=model,
                current_system_prompt=active.system,
                current_user_prompt=active.user,
                error_categories=queue.error_categories,
                feedback_examples=self.feedback.recent_incorrect_examples(document_type, model),
            )

            logger.info(
                "Evolving prompts for %s/%s (feedback=%d, categories=%s)",
                document_type, model, queue.feedback_count, queue.error_categories,
            )
            response = await self.rewriter.rewrite(request, build_instruction(request))
            try:
                evolved = parse_evolution_response(response)
            except EvolutionParseError:
                logger.warning(
                    "Evolution for %s/%s failed to parse; queue counters kept", document_type, model
                )
                raise

            reason = {
                "error_categories": queue.error_categories,
                "changes_made": evolved.changes_made,
                "feedback_count": queue.feedback_count,
            }
            # Both candidates and the queue update commit together.
            with session_scope(self.store.session_factory) as db:
                system = self.store.add_version(
                    db, document_type, model, PromptRole.SYSTEM, evolved.system_prompt,
                    parent_version_id=active.system_version_id,
                    evolution_reason=reason,
                    created_by=created_by,
                )
                user = self.store.add_version(
                    db, document_type, model, PromptRole.USER, evolved.user_prompt,
                    parent_version_id=active.user_version_id,
                    evolution_reason=reason,
                    created_by=created_by,
                )
                self.feedback.settle_evolution(db, document_type, model, consumed=queue)

        logger.info(
            "Created candidate prompts for %s/%s: system=%s user=%s (%s)",
            document_type, model, system.id, user.id, evolved.changes_made,
        )

        if run_gate and self.gate is not None:
            self._schedule_gate(document_type, model, system.id, user.id)

        return EvolutionOutcome(
            document_type=document_type,
            model=model,
            system_version_id=system.id,
            user_version_id=user.id,
            changes_made=evolved.changes_made,
        )

    async def evolve_pending(self, created_by: Optional[str] = None) -> list[EvolutionOutcome]:
        """Evolve every queue entry flagged should_evolve; failures are logged and skipped."""
        outcomes = []
        for entry in self.feedback.pending_evolutions():
            try:
                outcomes.append(await self.evolve(entry.document_type, entry.model, created_by))
            except (NoActivePromptsError, EvolutionParseError) as e:
                logger.warning("Skipping evolution of %s/%s: %s", entry.document_type, entry.model, e)
        return outcomes

    def _schedule_gate(self, document_type: str, model: str, system_id: str, user_id: str) -> asyncio.Task:
        task = asyncio.create_task(
            self.gate.evaluate_and_promote(document_type, model, system_id, user_id),
            name=f"gate:{document_type}/{model}",
        )
        self.pending_gates.add(task)
        task.add_done_callback(self.pending_gates.discard)
        return task

    async def wait_for_gates(self) -> list[GateDecision]:
        """Await every gate run scheduled so far."""
        return list(await asyncio.gather(*list(self.pending_gates)))
