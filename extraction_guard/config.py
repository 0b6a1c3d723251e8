"""
Runtime settings read from environment variables.

Entry points load a `.env` file first (python-dotenv), so every value here
can be set either way. Algorithmic thresholds are module constants in their
own modules; only deployment knobs live here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_DATABASE_URL = "sqlite:///extraction_guard.db"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o"
    extractor_models: tuple[str, ...] = ("gpt-4o", "gpt-4o-mini")

    # Feedback → evolution trigger
    evolution_volume_threshold: int = 50
    evolution_example_limit: int = 10
    feedback_reason_max_length: int = 100

    # Promotion gate
    backtest_min_improvement: float = 0.01
    backtest_sample_limit: int = 50
    golden_set_document_limit: int = 20
    allow_backtest_only_promotion: bool = True

    # Verifier veto
    critical_numeric_fields: tuple[str, ...] = field(default=("numero_patente",))

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            extractor_models=_env_list("EXTRACTOR_MODELS", ("gpt-4o", "gpt-4o-mini")),
            evolution_volume_threshold=int(os.getenv("EVOLUTION_VOLUME_THRESHOLD", "50")),
            evolution_example_limit=int(os.getenv("EVOLUTION_EXAMPLE_LIMIT", "10")),
            feedback_reason_max_length=int(os.getenv("FEEDBACK_REASON_MAX_LENGTH", "100")),
            backtest_min_improvement=float(os.getenv("BACKTEST_MIN_IMPROVEMENT", "0.01")),
            backtest_sample_limit=int(os.getenv("BACKTEST_SAMPLE_LIMIT", "50")),
            golden_set_document_limit=int(os.getenv("GOLDEN_SET_DOCUMENT_LIMIT", "20")),
            allow_backtest_only_promotion=_env_bool("ALLOW_BACKTEST_ONLY_PROMOTION", True),
            critical_numeric_fields=_env_list("CRITICAL_NUMERIC_FIELDS", ("numero_patente",)),
        )
