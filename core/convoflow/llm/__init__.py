"""LLM provider abstraction."""

from convoflow.llm.litellm import LiteLLMProvider
from convoflow.llm.provider import LLMProvider, LLMResponse
from convoflow.llm.responder import LLMResponder, Responder

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "LLMResponder",
    "Responder",
]
