"""Wiring of the stateful services around one database and one set of collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .collaborators import FieldExtractor, PromptRewriter, TextLayoutProvider
from .config import Settings
from .database import create_db_engine, init_db, make_session_factory
from .evolution import PromptEvolver
from .feedback import FeedbackAggregator
from .golden_set import GoldenSetGate
from .llm import OpenAIFieldExtractor, OpenAIPromptRewriter
from .locks import PairLocks
from .pipeline import ExtractionPipeline
from .prompt_store import PromptVersionStore


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    store: PromptVersionStore
    feedback: FeedbackAggregator
    gate: GoldenSetGate
    evolver: PromptEvolver
    pipeline: Optional[ExtractionPipeline]
    locks: PairLocks = field(default_factory=PairLocks)


def build_services(
    settings: Settings,
    extractors: Optional[Sequence[FieldExtractor]] = None,
    rewriter: Optional[PromptRewriter] = None,
    layout: Optional[TextLayoutProvider] = None,
    engine: Optional[Engine] = None,
) -> Services:
    """Build every service; collaborators default to the OpenAI-backed ones."""
    engine = engine or create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = make_session_factory(engine)

    if extractors is None:
        extractors = [
            OpenAIFieldExtractor(model=model, api_key=settings.openai_api_key)
            for model in settings.extractor_models
        ]
    if rewriter is None:
        rewriter = OpenAIPromptRewriter(model=settings.openai_model, api_key=settings.openai_api_key)

    locks = PairLocks()
    store = PromptVersionStore(session_factory)
    feedback = FeedbackAggregator(session_factory, settings)
    gate = GoldenSetGate(session_factory, store, feedback, extractors, locks, settings)
    evolver = PromptEvolver(store, feedback, rewriter, locks, settings, gate=gate)
    pipeline = None
    if len(extractors) >= 2:
        pipeline = ExtractionPipeline(extractors, store, session_factory, layout=layout, settings=settings)

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        feedback=feedback,
        gate=gate,
        evolver=evolver,
        pipeline=pipeline,
        locks=locks,
    )
