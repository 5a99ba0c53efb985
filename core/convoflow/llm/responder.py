"""Language-generation collaborator for ``ai`` nodes."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from convoflow.errors import EvaluationFailure
from convoflow.llm.provider import LLMProvider

logger = logging.getLogger(__name__)


class Responder(ABC):
    """Produces the reply text for an ``ai`` node."""

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        temperature: float,
        max_tokens: int,
        history: list[dict[str, str]] | None = None,
    ) -> str:
        """Return reply text. Raises EvaluationFailure when generation fails."""


class LLMResponder(Responder):
    """Responder backed by an LLMProvider."""

    def __init__(self, llm: LLMProvider):
        self._llm = llm

    async def generate(
        self,
        system_prompt: str,
        temperature: float,
        max_tokens: int,
        history: list[dict[str, str]] | None = None,
    ) -> str:
        messages = [
            {"role": m["role"], "content": m["content"]}
            for m in (history or [])
            if m.get("role") in ("user", "assistant") and m.get("content")
        ]
        if not messages:
            messages = [{"role": "user", "content": "Hello"}]
        try:
            response = await self._llm.acomplete(
                messages=messages,
                system=system_prompt,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except Exception as e:
            raise EvaluationFailure(f"Response generation failed: {e}") from e
        if not response.content.strip():
            raise EvaluationFailure("Response generation returned empty content")
        return response.content.strip()
