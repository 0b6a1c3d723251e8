"""
OpenAI-backed collaborators: a field extractor for text-layer documents and
the prompt rewrite service used by the evolver.

Design:
  - JSON mode enforced for extraction (structured output, not free text)
  - Prompts come from the version store; nothing here is hardcoded per type
  - No API key → the collaborator raises; callers decide what that means
    (the pipeline fails the request, the gate scores the document 0)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Optional

from openai import AsyncOpenAI

from .exceptions import ExtractionGuardError
from .models import EvolutionRequest, PromptPair

logger = logging.getLogger(__name__)

DocumentLoader = Callable[[str], str]


def read_text_file(content_ref: str) -> str:
    """Default loader: content_ref is a path to the document's text layer."""
    return Path(content_ref).read_text(encoding="utf-8")


def _client(client: Optional[AsyncOpenAI], api_key: Optional[str]) -> AsyncOpenAI:
    if client is not None:
        return client
    if not api_key:
        raise ExtractionGuardError("LLM_UNAVAILABLE", "OPENAI_API_KEY is not set")
    return AsyncOpenAI(api_key=api_key)


class OpenAIFieldExtractor:
    """Extracts a raw field set from document text with a chat model."""

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        loader: DocumentLoader = read_text_file,
        name: Optional[str] = None,
    ):
        self.model = model
        self.name = name or model
        self._api_key = api_key
        self._client = client
        self.loader = loader

    async def extract(self, content_ref: str, prompts: PromptPair) -> dict[str, Optional[str]]:
        client = _client(self._client, self._api_key)
        text = self.loader(content_ref)

        response = await client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": prompts.system},
                {"role": "user", "content": f"{prompts.user}\n\nTexto del documento:\n{text}"},
            ],
            response_format={"type": "json_object"},
            temperature=0,
        )

        content = response.choices[0].message.content
        if not content:
            raise ExtractionGuardError("LLM_EMPTY_RESPONSE", f"{self.name} returned empty content")
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ExtractionGuardError("LLM_BAD_RESPONSE", f"{self.name} did not return a JSON object")

        logger.info("%s extracted %d fields from %s", self.name, len(data), content_ref)
        return {str(k): (None if v is None else str(v)) for k, v in data.items()}


class OpenAIPromptRewriter:
    """Sends the evolution instruction to a chat model; returns raw text."""

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self._api_key = api_key
        self._client = client

    async def rewrite(self, request: EvolutionRequest, instruction: str) -> str:
        client = _client(self._client, self._api_key)
        response = await client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": instruction}],
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or ""
        logger.info(
            "Rewrite for %s/%s returned %d characters", request.document_type, request.model, len(content)
        )
        return content
