"""
Pydantic models for the extraction guard — the typed contract between
the consensus engine, the verifier, the prompt store and the regression gate.

Raw extractor output is the only loosely-typed data (a map of field name to
string). Everything derived from it is an explicit model, so malformed data
fails at the boundary instead of drifting downstream.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ─── Vocabularies ───────────────────────────────────────────────────


class ConfidenceTier(str, Enum):
    """Overall confidence attached to a consensus result."""

    FULL = "full"
    PARTIAL = "partial"
    REVIEW_REQUIRED = "review_required"


class VerificationStatus(str, Enum):
    """Trust classification of one field against the OCR text layer."""

    VERIFIED = "VERIFIED"
    FUZZY_MATCH = "FUZZY_MATCH"
    SUSPICIOUS = "SUSPICIOUS"  # Numeric near-miss, likely a real digit error
    NOT_FOUND = "NOT_FOUND"


class Zone(str, Enum):
    """Coarse page region of a located line."""

    TOP_LEFT = "TOP_LEFT"
    TOP_RIGHT = "TOP_RIGHT"
    BOTTOM = "BOTTOM"
    UNKNOWN = "UNKNOWN"


class FieldKind(str, Enum):
    NUMERIC = "NUMERIC"
    TEXT = "TEXT"


class PromptRole(str, Enum):
    SYSTEM = "system"
    USER = "user"


class PromptStatus(str, Enum):
    """Lifecycle of a prompt version. Versions are never deleted."""

    CANDIDATE = "candidate"
    ACTIVE = "active"
    REJECTED = "rejected"
    DEPRECATED = "deprecated"


class ErrorCategory(str, Enum):
    """Keyword-derived category of a human error report."""

    ACCENT_ERROR = "accent_error"
    NUMERIC_ERROR = "numeric_error"
    OCR_ERROR = "ocr_error"
    FORMATTING_ERROR = "formatting_error"
    MISSING_FIELD = "missing_field"
    EXTRA_CONTENT = "extra_content"
    OTHER_ERROR = "other_error"


class GateOutcome(str, Enum):
    PROMOTED = "promoted"
    REJECTED = "rejected"
    HELD = "held"  # Left as candidate for later re-evaluation


# ─── Consensus ──────────────────────────────────────────────────────


class ConsensusField(BaseModel):
    """One reconciled field with every extractor's raw candidate retained for audit."""

    field_name: str
    candidates: dict[str, Optional[str]] = Field(default_factory=dict)  # extractor → raw value
    final_value: Optional[str] = None
    match: bool
    confidence: float = Field(ge=0.0, le=1.0)
    critical: bool = False
    needs_review: bool = False


class ConsensusResult(BaseModel):
    """The reconciled result of N extractor outputs for one document."""

    document_type: str
    schema_kind: str  # "fixed" | "open"
    extractors: list[str]
    fields: list[ConsensusField] = Field(default_factory=list)
    tier: ConfidenceTier
    discrepancies: list[str] = Field(default_factory=list)

    @property
    def values(self) -> dict[str, Optional[str]]:
        """Field name → final value, in field order."""
        return {f.field_name: f.final_value for f in self.fields}

    @property
    def match_ratio(self) -> float:
        if not self.fields:
            return 0.0
        return sum(1 for f in self.fields if f.match) / len(self.fields)

    def field(self, name: str) -> Optional[ConsensusField]:
        for f in self.fields:
            if f.field_name == name:
                return f
        return None


# ─── OCR Layout & Verification ──────────────────────────────────────


class BoundingBox(BaseModel):
    """Normalized (0–1) box; top=0 is the top edge, left=0 the left edge."""

    left: float = Field(ge=0.0, le=1.0)
    top: float = Field(ge=0.0, le=1.0)
    width: float = Field(default=0.0, ge=0.0, le=1.0)
    height: float = Field(default=0.0, ge=0.0, le=1.0)


class TextLine(BaseModel):
    """One OCR line in reading order."""

    text: str
    page: int = 1
    bbox: Optional[BoundingBox] = None


class FieldCheck(BaseModel):
    """A field the verifier is asked to locate in the text layer."""

    field: str
    value: Optional[str] = None
    kind: FieldKind = FieldKind.TEXT
    expected_zone: Optional[Zone] = None


class VerificationResult(BaseModel):
    field: str
    value: Optional[str] = None
    status: VerificationStatus
    confidence: float = Field(ge=0.0, le=1.0)
    found_text: Optional[str] = None
    page: Optional[int] = None
    zone: Zone = Zone.UNKNOWN


# ─── Prompts & Evolution ────────────────────────────────────────────


class PromptPair(BaseModel):
    """The system+user prompts handed to an extractor."""

    system: str
    user: str
    system_version_id: Optional[str] = None  # None → hardcoded default
    user_version_id: Optional[str] = None


class PromptVersionView(BaseModel):
    """Read model of a stored prompt version."""

    id: str
    document_type: str
    model: str
    role: PromptRole
    version_number: int
    content: str
    parent_version_id: Optional[str] = None
    status: PromptStatus
    backtest_accuracy: Optional[float] = None
    golden_set_accuracy: Optional[float] = None
    regression_count: int = 0
    rejection_reason: Optional[str] = None
    evolution_reason: Optional[dict] = None
    evaluation: Optional[dict] = None
    created_at: datetime
    created_by: Optional[str] = None


class EvolvedPrompts(BaseModel):
    """The only accepted shape of a rewrite collaborator response."""

    system_prompt: str = Field(min_length=1)
    user_prompt: str = Field(min_length=1)
    changes_made: str = "No changes description provided"


class FeedbackSubmission(BaseModel):
    """One human judgement of one extracted field."""

    document_type: str
    field_name: str
    model: str
    is_correct: bool
    reason: Optional[str] = None  # Required when is_correct is False
    extraction_id: Optional[str] = None
    document_id: Optional[str] = None
    content_ref: Optional[str] = None
    extracted_value: Optional[str] = None
    corrected_value: Optional[str] = None
    reviewed_by: Optional[str] = None


class FeedbackReceipt(BaseModel):
    feedback_id: str
    error_category: Optional[ErrorCategory] = None
    queue: Optional["EvolutionQueueSnapshot"] = None  # None for open-schema types


class FeedbackExample(BaseModel):
    field_name: str
    value: str
    reason: str


class EvolutionRequest(BaseModel):
    """Everything the rewrite collaborator is given."""

    document_type: str
    model: str
    current_system_prompt: str
    current_user_prompt: str
    error_categories: dict[str, int] = Field(default_factory=dict)
    feedback_examples: list[FeedbackExample] = Field(default_factory=list)


class EvolutionQueueSnapshot(BaseModel):
    document_type: str
    model: str
    feedback_count: int = 0
    error_categories: dict[str, int] = Field(default_factory=dict)
    should_evolve: bool = False
    last_evolved_at: Optional[datetime] = None


class EvolutionOutcome(BaseModel):
    document_type: str
    model: str
    system_version_id: str
    user_version_id: str
    changes_made: str


# ─── Golden Set & Gate ──────────────────────────────────────────────


class GoldenSetTruthView(BaseModel):
    """A frozen benchmark document."""

    document_id: str
    document_type: str
    content_ref: str
    verified_result: dict[str, Optional[str]]
    verified_by: Optional[str] = None
    verified_at: datetime
    notes: Optional[str] = None


class GoldenDocumentScore(BaseModel):
    document_id: str
    match_rate: float
    total_fields: int = 0
    correct_fields: int = 0
    field_results: dict[str, bool] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class GoldenSetTestResult(BaseModel):
    accuracy: float
    total_fields: int = 0
    correct_fields: int = 0
    documents: list[GoldenDocumentScore] = Field(default_factory=list)
    bootstrap: bool = False  # No benchmark documents: automatic pass

    @property
    def failed_documents(self) -> list[GoldenDocumentScore]:
        return [d for d in self.documents if d.errors]


class GoldenComparison(BaseModel):
    candidate_accuracy: float
    current_accuracy: float
    improvement: float
    passed: bool
    regression_count: int = 0
    failed_documents: list[GoldenDocumentScore] = Field(default_factory=list)
    bootstrap: bool = False


class BacktestResult(BaseModel):
    accuracy: Optional[float] = None  # None → no labelled feedback to test against
    total_fields: int = 0
    correct_fields: int = 0


class GateDecision(BaseModel):
    outcome: GateOutcome
    document_type: str
    model: str
    system_version_id: str
    user_version_id: str
    reason: str
    golden: Optional[GoldenComparison] = None
    candidate_backtest: Optional[BacktestResult] = None
    current_backtest: Optional[BacktestResult] = None


# ─── Extraction Report ──────────────────────────────────────────────


class ExtractionReport(BaseModel):
    """Final output of one extraction request."""

    document_id: str
    consensus: ConsensusResult
    verification: list[VerificationResult] = Field(default_factory=list)
    verification_available: bool = False
    prompt_versions: dict[str, PromptPair] = Field(default_factory=dict)
    audit_id: Optional[str] = None


FeedbackReceipt.model_rebuild()
