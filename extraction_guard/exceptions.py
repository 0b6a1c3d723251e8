"""
Custom exception hierarchy for the extraction guard.

Each exception type maps to one failure category with a machine-readable
code, so the HTTP layer and the control loop can react without parsing
messages.
"""

from __future__ import annotations


class ExtractionGuardError(Exception):
    """Base exception for all extraction guard failures."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class ExtractorFailureError(ExtractionGuardError):
    """One or more field extractors failed; no consensus is produced."""

    def __init__(self, failed: dict[str, str]):
        names = ", ".join(sorted(failed))
        super().__init__(
            "EXTRACTOR_FAILED",
            f"Extraction aborted, extractor(s) failed: {names}",
            {"failed_extractors": failed},
        )
        self.failed = failed


class UnknownExtractorError(ExtractionGuardError):
    """No extractor is registered for the requested model."""

    def __init__(self, model: str):
        super().__init__(
            "UNKNOWN_EXTRACTOR",
            f"No extractor registered for model '{model}'",
            {"model": model},
        )


class FeedbackValidationError(ExtractionGuardError):
    """Feedback is malformed (e.g. incorrect without a reason)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("FEEDBACK_INVALID", message, details)


class PromptVersionNotFoundError(ExtractionGuardError):
    """A prompt version id does not exist."""

    def __init__(self, version_id: str):
        super().__init__(
            "PROMPT_VERSION_NOT_FOUND",
            f"Prompt version '{version_id}' not found",
            {"version_id": version_id},
        )


class NoActivePromptsError(ExtractionGuardError):
    """There is no active system+user pair to evolve from."""

    def __init__(self, document_type: str, model: str):
        super().__init__(
            "NO_ACTIVE_PROMPTS",
            f"No active prompts found for {document_type}/{model}",
            {"document_type": document_type, "model": model},
        )


class ActivationError(ExtractionGuardError):
    """An activation request would violate the one-active-pair invariant."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("ACTIVATION_INVALID", message, details)


class EvolutionParseError(ExtractionGuardError):
    """The rewrite collaborator's response is not a valid prompt pair."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("EVOLUTION_PARSE_FAILED", message, details)


class GoldenSetTruthExistsError(ExtractionGuardError):
    """A golden-set truth is write-once per document."""

    def __init__(self, document_id: str):
        super().__init__(
            "GOLDEN_TRUTH_EXISTS",
            f"Document '{document_id}' already has a frozen golden-set truth",
            {"document_id": document_id},
        )


class GoldenSetTruthNotFoundError(ExtractionGuardError):
    """No golden-set truth exists for a document."""

    def __init__(self, document_id: str):
        super().__init__(
            "GOLDEN_TRUTH_NOT_FOUND",
            f"Document '{document_id}' is not in the golden set",
            {"document_id": document_id},
        )
