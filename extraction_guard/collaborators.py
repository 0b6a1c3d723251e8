"""
Protocols for the external collaborators: field extractors, the OCR text
layout provider and the prompt rewrite service.

Anything with the right shape plugs in; llm.py ships OpenAI-backed versions
and the tests use small in-memory fakes.
"""

from __future__ import annotations

from typing import Mapping, Optional, Protocol, runtime_checkable

from .models import EvolutionRequest, PromptPair, TextLine


@runtime_checkable
class FieldExtractor(Protocol):
    """Produces one raw field set for one document."""

    name: str  # Model identifier; keys prompt versions and feedback

    async def extract(self, content_ref: str, prompts: PromptPair) -> Mapping[str, Optional[str]]:
        ...


@runtime_checkable
class TextLayoutProvider(Protocol):
    """Returns the OCR text layer of a document as ordered lines."""

    async def detect(self, content_ref: str) -> list[TextLine]:
        ...


@runtime_checkable
class PromptRewriter(Protocol):
    """Rewrites a prompt pair; returns the raw response text to be parsed."""

    async def rewrite(self, request: EvolutionRequest, instruction: str) -> str:
        ...
