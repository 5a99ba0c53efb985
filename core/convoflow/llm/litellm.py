"""LiteLLM-backed provider: one interface over OpenAI, Anthropic, Groq and others."""

import logging
from typing import Any

import litellm

from convoflow.config import RuntimeConfig
from convoflow.llm.provider import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


class LiteLLMProvider(LLMProvider):
    """
    LLM provider that routes through LiteLLM.

    The model string selects the backend ("gpt-4o-mini",
    "anthropic/claude-haiku-4-5-20251001", "groq/llama-3.1-8b-instant", ...).
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float = 0.7,
        **litellm_kwargs: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature
        self._litellm_kwargs = litellm_kwargs

    @classmethod
    def from_config(cls, config: RuntimeConfig | None = None) -> "LiteLLMProvider":
        config = config or RuntimeConfig()
        return cls(
            model=config.model,
            api_key=config.api_key,
            api_base=config.api_base,
            temperature=config.temperature,
        )

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        system: str,
        max_tokens: int,
        temperature: float | None,
        json_mode: bool,
    ) -> dict[str, Any]:
        full_messages = []
        if system:
            full_messages.append({"role": "system", "content": system})
        full_messages.extend(messages)

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": full_messages,
            "max_tokens": max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            **self._litellm_kwargs,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def _to_response(self, response: Any) -> LLMResponse:
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            model=getattr(response, "model", None) or self.model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        kwargs = self._build_kwargs(messages, system, max_tokens, temperature, json_mode)
        response = litellm.completion(**kwargs)
        return self._to_response(response)

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        kwargs = self._build_kwargs(messages, system, max_tokens, temperature, json_mode)
        response = await litellm.acompletion(**kwargs)
        result = self._to_response(response)
        logger.debug(
            f"LLM call: {result.input_tokens} in / {result.output_tokens} out",
            extra={"event": "llm_call", "model": result.model},
        )
        return result
