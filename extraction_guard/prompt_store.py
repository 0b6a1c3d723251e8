"""
Prompt version store — append-only, with exactly one active system+user pair
per (document_type, model).

Versions are never deleted; they only move through
candidate → active → deprecated, or candidate → rejected. Activation swaps
the whole pair inside one transaction and checks the invariant before it
commits, so a half-activated pair is never observable.
"""

from __future__ import annotations

import difflib
import logging
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from .database import session_scope
from .exceptions import ActivationError, PromptVersionNotFoundError
from .models import PromptPair, PromptRole, PromptStatus, PromptVersionView
from .records import PromptVersionRecord, utcnow

logger = logging.getLogger(__name__)


class PromptVersionStore:
    """CRUD and lifecycle transitions for prompt versions.

    Usage:
        store = PromptVersionStore(session_factory)
        pair = store.get_active("patente_empresa", "gpt-4o")
        if pair is None:
            pair = default_prompt_pair("patente_empresa")
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ─── Create / Read ───────────────────────────────────────────────

    def create(
        self,
        document_type: str,
        model: str,
        role: PromptRole | str,
        content: str,
        parent_version_id: Optional[str] = None,
        evolution_reason: Optional[dict] = None,
        created_by: Optional[str] = None,
    ) -> PromptVersionView:
        """Store a new candidate; version_number is parent's + 1 (or 1)."""
        with session_scope(self.session_factory) as db:
            return self.add_version(
                db, document_type, model, role, content,
                parent_version_id=parent_version_id,
                evolution_reason=evolution_reason,
                created_by=created_by,
            )

    def add_version(
        self,
        db: Session,
        document_type: str,
        model: str,
        role: PromptRole | str,
        content: str,
        parent_version_id: Optional[str] = None,
        evolution_reason: Optional[dict] = None,
        created_by: Optional[str] = None,
    ) -> PromptVersionView:
        """Like create(), inside the caller's transaction."""
        role = PromptRole(role)
        version_number = 1
        if parent_version_id is not None:
            parent = _load(db, parent_version_id)
            version_number = parent.version_number + 1

        record = PromptVersionRecord(
            document_type=document_type,
            model=model,
            role=role.value,
            version_number=version_number,
            content=content,
            parent_version_id=parent_version_id,
            status=PromptStatus.CANDIDATE.value,
            evolution_reason=evolution_reason,
            created_by=created_by,
        )
        db.add(record)
        db.flush()
        logger.info(
            "Created %s prompt v%d for %s/%s (%s)",
            role.value, version_number, document_type, model, record.id,
        )
        return _view(record)

    def get(self, version_id: str) -> PromptVersionView:
        with session_scope(self.session_factory) as db:
            return _view(_load(db, version_id))

    def get_active(self, document_type: str, model: str) -> Optional[PromptPair]:
        """The active pair, or None when either role has no active version."""
        with session_scope(self.session_factory) as db:
            active = _active_by_role(db, document_type, model)
            system = active.get(PromptRole.SYSTEM.value)
            user = active.get(PromptRole.USER.value)
            if system is None or user is None:
                return None
            return PromptPair(
                system=system.content,
                user=user.content,
                system_version_id=system.id,
                user_version_id=user.id,
            )

    def pair(self, system_version_id: str, user_version_id: str) -> PromptPair:
        """Resolve two version ids into a PromptPair."""
        system = self.get(system_version_id)
        user = self.get(user_version_id)
        return PromptPair(
            system=system.content,
            user=user.content,
            system_version_id=system.id,
            user_version_id=user.id,
        )

    def initialize(
        self,
        document_type: str,
        model: str,
        system_prompt: str,
        user_prompt: str,
        created_by: Optional[str] = None,
    ) -> PromptPair:
        """Seed version 1 of both roles as the active pair.

        A no-op returning the current pair when one is already active.
        """
        existing = self.get_active(document_type, model)
        if existing is not None:
            logger.info("Prompts for %s/%s already initialized", document_type, model)
            return existing

        system = self.create(document_type, model, PromptRole.SYSTEM, system_prompt, created_by=created_by)
        user = self.create(document_type, model, PromptRole.USER, user_prompt, created_by=created_by)
        self.activate(system.id, user.id)
        return self.pair(system.id, user.id)

    def list_versions(
        self,
        document_type: str,
        model: str,
        role: Optional[PromptRole | str] = None,
    ) -> list[PromptVersionView]:
        with session_scope(self.session_factory) as db:
            query = db.query(PromptVersionRecord).filter(
                PromptVersionRecord.document_type == document_type,
                PromptVersionRecord.model == model,
            )
            if role is not None:
                query = query.filter(PromptVersionRecord.role == PromptRole(role).value)
            records = query.order_by(
                PromptVersionRecord.role,
                PromptVersionRecord.version_number,
                PromptVersionRecord.created_at,
            ).all()
            return [_view(r) for r in records]

    def lineage(self, version_id: str) -> list[PromptVersionView]:
        """The version followed by its ancestors, back to the root."""
        chain: list[PromptVersionView] = []
        seen: set[str] = set()
        with session_scope(self.session_factory) as db:
            current: Optional[str] = version_id
            while current is not None and current not in seen:
                seen.add(current)
                record = _load(db, current)
                chain.append(_view(record))
                current = record.parent_version_id
        return chain

    def diff(self, version_id: str) -> str:
        """Unified diff of a version against its parent (empty parent for roots)."""
        version = self.get(version_id)
        parent_content = ""
        parent_label = "(none)"
        if version.parent_version_id is not None:
            parent = self.get(version.parent_version_id)
            parent_content = parent.content
            parent_label = f"v{parent.version_number}"
        return "".join(difflib.unified_diff(
            parent_content.splitlines(keepends=True),
            version.content.splitlines(keepends=True),
            fromfile=parent_label,
            tofile=f"v{version.version_number}",
        ))

    def leaderboard(
        self,
        document_type: str,
        model: str,
        role: PromptRole | str = PromptRole.SYSTEM,
        limit: int = 20,
    ) -> list[PromptVersionView]:
        """Versions ordered by golden-set accuracy (unscored last), then newest."""
        with session_scope(self.session_factory) as db:
            records = (
                db.query(PromptVersionRecord)
                .filter(
                    PromptVersionRecord.document_type == document_type,
                    PromptVersionRecord.model == model,
                    PromptVersionRecord.role == PromptRole(role).value,
                )
                .order_by(
                    PromptVersionRecord.golden_set_accuracy.is_(None),
                    PromptVersionRecord.golden_set_accuracy.desc(),
                    PromptVersionRecord.version_number.desc(),
                )
                .limit(limit)
                .all()
            )
            return [_view(r) for r in records]

    # ─── Lifecycle ───────────────────────────────────────────────────

    def activate(self, system_version_id: str, user_version_id: str) -> None:
        """Atomically make (system, user) the active pair for their type/model.

        Every other active or candidate version of the pair transitions to
        deprecated; rejected versions keep their status and reason.

        Raises:
            PromptVersionNotFoundError: unknown id.
            ActivationError: wrong roles, mismatched pair, or a rejected version.
        """
        with session_scope(self.session_factory) as db:
            system = _load(db, system_version_id)
            user = _load(db, user_version_id)
            _validate_pair(system, user)

            document_type, model = system.document_type, system.model
            (
                db.query(PromptVersionRecord)
                .filter(
                    PromptVersionRecord.document_type == document_type,
                    PromptVersionRecord.model == model,
                    PromptVersionRecord.id.not_in([system.id, user.id]),
                    PromptVersionRecord.status.in_([
                        PromptStatus.ACTIVE.value,
                        PromptStatus.CANDIDATE.value,
                    ]),
                )
                .update(
                    {PromptVersionRecord.status: PromptStatus.DEPRECATED.value},
                    synchronize_session=False,
                )
            )
            system.status = PromptStatus.ACTIVE.value
            user.status = PromptStatus.ACTIVE.value
            db.flush()

            counts = dict(
                db.query(PromptVersionRecord.role, func.count(PromptVersionRecord.id))
                .filter(
                    PromptVersionRecord.document_type == document_type,
                    PromptVersionRecord.model == model,
                    PromptVersionRecord.status == PromptStatus.ACTIVE.value,
                )
                .group_by(PromptVersionRecord.role)
                .all()
            )
            if counts.get(PromptRole.SYSTEM.value) != 1 or counts.get(PromptRole.USER.value) != 1:
                raise ActivationError(
                    f"Activation would leave {document_type}/{model} without exactly one active pair",
                    {"active_counts": counts},
                )

        logger.info(
            "Activated prompts for %s/%s: system=%s user=%s",
            document_type, model, system_version_id, user_version_id,
        )

    def record_evaluation(
        self,
        version_ids: Iterable[str],
        *,
        golden_set_accuracy: Optional[float] = None,
        backtest_accuracy: Optional[float] = None,
        regression_count: Optional[int] = None,
        evaluation: Optional[dict] = None,
    ) -> None:
        """Persist gate metrics; arguments left as None are not touched."""
        with session_scope(self.session_factory) as db:
            for record in _load_many(db, version_ids):
                if golden_set_accuracy is not None:
                    record.golden_set_accuracy = golden_set_accuracy
                    record.golden_set_run_at = utcnow()
                if backtest_accuracy is not None:
                    record.backtest_accuracy = backtest_accuracy
                if regression_count is not None:
                    record.regression_count = regression_count
                if evaluation is not None:
                    record.evaluation = evaluation

    def reject(self, version_ids: Iterable[str], reason: str, evaluation: Optional[dict] = None) -> None:
        """Mark candidates rejected, keeping the reason on each record."""
        version_ids = list(version_ids)
        with session_scope(self.session_factory) as db:
            for record in _load_many(db, version_ids):
                if record.status == PromptStatus.ACTIVE.value:
                    raise ActivationError(
                        "Cannot reject an active prompt version",
                        {"version_id": record.id},
                    )
                record.status = PromptStatus.REJECTED.value
                record.rejection_reason = reason
                if evaluation is not None:
                    record.evaluation = evaluation
        logger.info("Rejected prompt versions %s: %s", version_ids, reason)


# ─── Helpers ────────────────────────────────────────────────────────


def _view(record: PromptVersionRecord) -> PromptVersionView:
    return PromptVersionView.model_validate(record, from_attributes=True)


def _load(db: Session, version_id: str) -> PromptVersionRecord:
    record = db.get(PromptVersionRecord, version_id)
    if record is None:
        raise PromptVersionNotFoundError(version_id)
    return record


def _load_many(db: Session, version_ids: Iterable[str]) -> list[PromptVersionRecord]:
    return [_load(db, version_id) for version_id in version_ids]


def _active_by_role(db: Session, document_type: str, model: str) -> dict[str, PromptVersionRecord]:
    records = (
        db.query(PromptVersionRecord)
        .filter(
            PromptVersionRecord.document_type == document_type,
            PromptVersionRecord.model == model,
            PromptVersionRecord.status == PromptStatus.ACTIVE.value,
        )
        .all()
    )
    return {r.role: r for r in records}


def _validate_pair(system: PromptVersionRecord, user: PromptVersionRecord) -> None:
    if system.role != PromptRole.SYSTEM.value or user.role != PromptRole.USER.value:
        raise ActivationError(
            "Activation needs one system and one user version",
            {"system_role": system.role, "user_role": user.role},
        )
    if (system.document_type, system.model) != (user.document_type, user.model):
        raise ActivationError(
            "System and user versions belong to different document types or models",
            {
                "system": f"{system.document_type}/{system.model}",
                "user": f"{user.document_type}/{user.model}",
            },
        )
    for record in (system, user):
        if record.status == PromptStatus.REJECTED.value:
            raise ActivationError(
                "Rejected prompt versions cannot be activated",
                {"version_id": record.id},
            )
