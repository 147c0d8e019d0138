"""Shared type definitions for the LLM adapter layer.

- Turn: Provider-agnostic conversation turn
- LLMRequest: Request to LLM adapter
- LLMUsage: Token usage from provider response
- LLMResponse: Complete response from a chat-completions call
- LLMCallContext: Observability metadata attached to a call
"""

from dataclasses import dataclass, replace
from typing import Literal


@dataclass(frozen=True)
class Turn:
    """Provider-agnostic conversation turn.

    Attributes:
        role: One of "system", "user", or "assistant"
        content: The text content of the turn
    """

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class LLMUsage:
    """Token usage from provider response.

    All fields are optional as not all providers return all metrics.
    """

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None

    def as_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens or 0,
            "completion_tokens": self.completion_tokens or 0,
            "total_tokens": self.total_tokens or 0,
        }


@dataclass(frozen=True)
class LLMRequest:
    """Request to LLM adapter.

    Attributes:
        model_name: The model identifier (e.g., "deepseek-reasoner")
        messages: List of Turn objects (system turn first if present)
        max_tokens: Maximum tokens in the completion
        temperature: Sampling temperature (0.0 to 2.0), None uses provider default
    """

    model_name: str
    messages: list[Turn]
    max_tokens: int
    temperature: float | None = None

    def with_model(self, model_name: str) -> "LLMRequest":
        return replace(self, model_name=model_name)


@dataclass(frozen=True)
class LLMResponse:
    """Complete response from a chat-completions call.

    Attributes:
        text: The generated text content
        usage: Token usage information (may be None if provider doesn't return it)
        provider_request_id: Provider's request ID for debugging (may be None)
    """

    text: str
    usage: LLMUsage | None
    provider_request_id: str | None


@dataclass(frozen=True)
class LLMCallContext:
    """Correlation fields for llm.request.* log events."""

    conversation_id: str | None = None
    message_id: str | None = None
    attempt: int | None = None
