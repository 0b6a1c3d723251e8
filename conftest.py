"""Pytest configuration — project root importable, fresh in-memory database per test."""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(ROOT / "tests"))

from extraction_guard.config import Settings  # noqa: E402
from extraction_guard.database import create_db_engine, init_db, make_session_factory  # noqa: E402
from extraction_guard.feedback import FeedbackAggregator  # noqa: E402
from extraction_guard.locks import PairLocks  # noqa: E402
from extraction_guard.prompt_store import PromptVersionStore  # noqa: E402


@pytest.fixture(autouse=True)
def _no_llm_calls(monkeypatch):
    """Prevent real LLM API calls during tests — keeps the suite fast and free."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite:///:memory:")


@pytest.fixture
def store(session_factory) -> PromptVersionStore:
    return PromptVersionStore(session_factory)


@pytest.fixture
def feedback(session_factory, settings) -> FeedbackAggregator:
    return FeedbackAggregator(session_factory, settings)


@pytest.fixture
def locks() -> PairLocks:
    return PairLocks()
