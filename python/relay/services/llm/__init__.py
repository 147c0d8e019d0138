"""LLM adapter layer for provider-agnostic reply generation.

This module provides a unified interface for calling OpenAI-compatible
chat-completions providers (DeepSeek, Together, OpenAI). It includes:

- A single async adapter parametrized by provider base URL
- Error classification and normalization
- Prompt rendering (provider-agnostic)
- Provider availability gating (known provider + configured key)

Usage:
    from relay.services.llm import LLMRouter, LLMRequest, Turn

    router = LLMRouter.from_settings(httpx_client, settings)
    request = LLMRequest(
        model_name="deepseek-reasoner",
        messages=[Turn(role="user", content="Hello!")],
        max_tokens=500,
    )
    response = await router.generate("deepseek", request)
"""

from relay.services.llm.adapter import LLMAdapter
from relay.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from relay.services.llm.openai_adapter import OpenAICompatibleAdapter
from relay.services.llm.prompt import (
    DEFAULT_SYSTEM_PROMPT,
    HistoryEntry,
    PromptTooLargeError,
    apply_brevity_instruction,
    build_system_prompt,
    render_prompt,
    validate_prompt_size,
)
from relay.services.llm.router import LLMRouter
from relay.services.llm.types import (
    LLMCallContext,
    LLMRequest,
    LLMResponse,
    LLMUsage,
    Turn,
)

__all__ = [
    # Core types
    "Turn",
    "LLMRequest",
    "LLMResponse",
    "LLMUsage",
    "LLMCallContext",
    # Adapters
    "LLMAdapter",
    "OpenAICompatibleAdapter",
    # Router
    "LLMRouter",
    # Errors
    "LLMError",
    "LLMErrorClass",
    "classify_provider_error",
    # Prompt rendering
    "HistoryEntry",
    "render_prompt",
    "build_system_prompt",
    "apply_brevity_instruction",
    "validate_prompt_size",
    "PromptTooLargeError",
    "DEFAULT_SYSTEM_PROMPT",
]
