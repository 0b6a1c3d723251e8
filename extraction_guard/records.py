"""
ORM tables for the persistence boundary.

Prompt lineage is stored as explicit foreign keys (parent_version_id), never
as object references, so a chain can be walked in any store without cycles.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .database import Base


def _uuid() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PromptVersionRecord(Base):
    """One prompt text for (document_type, model, role). Never deleted."""

    __tablename__ = "prompt_versions"
    __table_args__ = (
        Index("ix_prompt_versions_pair_status", "document_type", "model", "status"),
        Index("ix_prompt_versions_golden", "document_type", "model", "golden_set_accuracy"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    document_type = Column(String(100), nullable=False)
    model = Column(String(50), nullable=False)
    role = Column(String(10), nullable=False)  # system | user
    version_number = Column(Integer, nullable=False, default=1)
    content = Column(Text, nullable=False)
    parent_version_id = Column(String(36), ForeignKey("prompt_versions.id"), nullable=True)
    status = Column(String(20), nullable=False, default="candidate")

    # Metrics
    backtest_accuracy = Column(Float, nullable=True)
    golden_set_accuracy = Column(Float, nullable=True)
    golden_set_run_at = Column(DateTime, nullable=True)
    regression_count = Column(Integer, nullable=False, default=0)

    # Audit
    rejection_reason = Column(Text, nullable=True)
    evolution_reason = Column(JSON, nullable=True)  # Triggering histogram + change summary
    evaluation = Column(JSON, nullable=True)  # Last gate run
    created_at = Column(DateTime, default=utcnow, nullable=False)
    created_by = Column(String(255), nullable=True)

    def __repr__(self):
        return (
            f"<PromptVersion(id={self.id}, {self.document_type}/{self.model}/{self.role} "
            f"v{self.version_number}, status={self.status})>"
        )


class FeedbackRecord(Base):
    """One human judgement of one extracted field."""

    __tablename__ = "extraction_feedback"
    __table_args__ = (
        Index("ix_feedback_pair", "document_type", "model", "is_correct"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    extraction_id = Column(String(36), nullable=True)
    document_id = Column(String(255), nullable=True)
    document_type = Column(String(100), nullable=False)
    content_ref = Column(String(1024), nullable=True)
    field_name = Column(String(255), nullable=False)
    model = Column(String(50), nullable=False)
    is_correct = Column(Boolean, nullable=False)
    reason = Column(String(255), nullable=True)
    extracted_value = Column(Text, nullable=True)
    corrected_value = Column(Text, nullable=True)
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime, default=utcnow, nullable=False)


class EvolutionQueueRecord(Base):
    """Per-(document_type, model) feedback aggregate driving evolution."""

    __tablename__ = "prompt_evolution_queue"
    __table_args__ = (UniqueConstraint("document_type", "model", name="uq_evolution_queue_pair"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    document_type = Column(String(100), nullable=False)
    model = Column(String(50), nullable=False)
    feedback_count = Column(Integer, nullable=False, default=0)
    error_categories = Column(JSON, nullable=False, default=dict)
    should_evolve = Column(Boolean, nullable=False, default=False)
    last_evolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class GoldenSetTruthRecord(Base):
    """Frozen, human-verified snapshot of one benchmark document. Write-once."""

    __tablename__ = "golden_set_truths"

    id = Column(String(36), primary_key=True, default=_uuid)
    document_id = Column(String(255), nullable=False, unique=True)
    document_type = Column(String(100), nullable=False, index=True)
    content_ref = Column(String(1024), nullable=False)
    verified_result = Column(JSON, nullable=False)  # field → value
    verified_by = Column(String(255), nullable=True)
    verified_at = Column(DateTime, default=utcnow, nullable=False)
    notes = Column(Text, nullable=True)


class ExtractionAuditRecord(Base):
    """Raw outputs, consensus and verification of one extraction request."""

    __tablename__ = "extraction_audits"

    id = Column(String(36), primary_key=True, default=_uuid)
    document_id = Column(String(255), nullable=False, index=True)
    document_type = Column(String(100), nullable=False)
    tier = Column(String(20), nullable=False)
    raw_outputs = Column(JSON, nullable=False)
    consensus = Column(JSON, nullable=False)
    verification = Column(JSON, nullable=True)
    prompt_versions = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
