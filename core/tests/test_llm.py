"""Tests for the LiteLLM provider and the LLM-backed responder."""

from types import SimpleNamespace

import litellm
import pytest

from convoflow.config import RuntimeConfig
from convoflow.errors import EvaluationFailure
from convoflow.llm.litellm import LiteLLMProvider
from convoflow.llm.responder import LLMResponder

from conftest import FakeLLM


def _litellm_response(content: str | None = "Hi!", model: str = "gpt-4o-mini"):
    return SimpleNamespace(
        model=model,
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
    )


class TestLiteLLMProvider:
    def test_build_kwargs(self):
        provider = LiteLLMProvider(model="groq/llama-3.1-8b-instant", api_key="k", temperature=0.2)
        kwargs = provider._build_kwargs(
            [{"role": "user", "content": "hi"}], system="Be brief", max_tokens=50, temperature=None, json_mode=True
        )

        assert kwargs["messages"][0] == {"role": "system", "content": "Be brief"}
        assert kwargs["messages"][1] == {"role": "user", "content": "hi"}
        assert kwargs["temperature"] == 0.2
        assert kwargs["api_key"] == "k"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "api_base" not in kwargs

    def test_explicit_temperature_and_no_system(self):
        provider = LiteLLMProvider()
        kwargs = provider._build_kwargs([], system="", max_tokens=10, temperature=0.0, json_mode=False)
        assert kwargs["messages"] == []
        assert kwargs["temperature"] == 0.0
        assert "response_format" not in kwargs

    def test_from_config(self):
        provider = LiteLLMProvider.from_config(
            RuntimeConfig(model="openai/gpt-4o", temperature=0.1, max_tokens=100, api_key=None, api_base="http://x")
        )
        assert provider.model == "openai/gpt-4o"
        assert provider.api_base == "http://x"

    @pytest.mark.asyncio
    async def test_acomplete_uses_litellm(self, monkeypatch):
        captured = {}

        async def fake_acompletion(**kwargs):
            captured.update(kwargs)
            return _litellm_response("Hello there")

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        provider = LiteLLMProvider(model="gpt-4o-mini")

        response = await provider.acomplete([{"role": "user", "content": "hi"}], system="s", max_tokens=20)

        assert response.content == "Hello there"
        assert response.input_tokens == 12
        assert response.output_tokens == 3
        assert response.stop_reason == "stop"
        assert captured["model"] == "gpt-4o-mini"
        assert captured["max_tokens"] == 20

    def test_complete_handles_null_content(self, monkeypatch):
        monkeypatch.setattr(litellm, "completion", lambda **kwargs: _litellm_response(None))
        assert LiteLLMProvider().complete([{"role": "user", "content": "hi"}]).content == ""


class TestLLMResponder:
    @pytest.mark.asyncio
    async def test_filters_history_and_strips_reply(self):
        llm = FakeLLM("  Sure thing.  ")
        responder = LLMResponder(llm)

        reply = await responder.generate(
            "You are helpful",
            0.5,
            120,
            history=[
                {"role": "system", "content": "ignored"},
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": ""},
                {"role": "assistant", "content": "hello"},
            ],
        )

        assert reply == "Sure thing."
        request = llm.requests[0]
        assert request["messages"] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]
        assert request["system"] == "You are helpful"
        assert (request["temperature"], request["max_tokens"]) == (0.5, 120)

    @pytest.mark.asyncio
    async def test_empty_history_gets_greeting(self):
        llm = FakeLLM("Hi")
        await LLMResponder(llm).generate("p", 0.7, 50)
        assert llm.requests[0]["messages"] == [{"role": "user", "content": "Hello"}]

    @pytest.mark.asyncio
    async def test_failures_raise_evaluation_failure(self):
        with pytest.raises(EvaluationFailure, match="empty"):
            await LLMResponder(FakeLLM("   ")).generate("p", 0.7, 50)

        with pytest.raises(EvaluationFailure, match="quota"):
            await LLMResponder(FakeLLM(error=RuntimeError("quota exceeded"))).generate("p", 0.7, 50)
