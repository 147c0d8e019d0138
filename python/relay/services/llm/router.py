"""LLM router for adapter selection and error normalization.

- Resolves the adapter for a provider name
- A provider is available only when it is known and has an API key
- Wraps adapter calls with error normalization (one place, not per adapter)
- Emits llm.request.started / llm.request.finished / llm.request.failed events
  through safe_kv() so prompts and replies never reach the logs

Error handling:
- Provider 401/403 → E_LLM_INVALID_KEY
- Provider 402/429 → E_LLM_RATE_LIMIT
- Timeout → E_LLM_TIMEOUT
- Context too large → E_LLM_CONTEXT_TOO_LARGE
- 200 with blank text → E_LLM_EMPTY_RESPONSE
- Other → E_LLM_PROVIDER_DOWN
"""

import time

import httpx

from relay.logging import get_logger
from relay.services.llm.adapter import LLMAdapter
from relay.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from relay.services.llm.openai_adapter import OpenAICompatibleAdapter
from relay.services.llm.types import LLMCallContext, LLMRequest, LLMResponse
from relay.services.redact import safe_kv

logger = get_logger(__name__)

# Default timeout for LLM requests in seconds
DEFAULT_TIMEOUT_S = 45


def _base_log_fields(provider: str, req: LLMRequest, call_ctx: LLMCallContext | None) -> dict:
    fields: dict = {
        "provider": provider,
        "model_name": req.model_name,
    }
    if call_ctx:
        if call_ctx.conversation_id:
            fields["conversation_id"] = call_ctx.conversation_id
        if call_ctx.message_id:
            fields["message_id"] = call_ctx.message_id
        if call_ctx.attempt is not None:
            fields["attempt"] = call_ctx.attempt
    return fields


class LLMRouter:
    """Routes LLM requests to provider adapters."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_urls: dict[str, str],
        api_keys: dict[str, str | None],
    ):
        """Initialize router with shared HTTP client.

        Args:
            client: Shared httpx.AsyncClient for connection pooling.
            base_urls: Chat-completions base URL per provider name.
            api_keys: Platform API key per provider name (None disables it).
        """
        self._client = client
        self._api_keys = dict(api_keys)
        self._adapters: dict[str, LLMAdapter] = {
            name: OpenAICompatibleAdapter(client, provider=name, base_url=url)
            for name, url in base_urls.items()
        }

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings) -> "LLMRouter":
        return cls(
            client,
            base_urls=settings.provider_base_urls,
            api_keys={
                name: settings.provider_api_key(name) for name in settings.provider_base_urls
            },
        )

    def resolve_adapter(self, provider: str) -> LLMAdapter:
        """Get the adapter for a provider.

        Raises:
            LLMError: If provider is unknown or has no API key configured.
        """
        if provider not in self._adapters:
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"Unknown provider: {provider}",
                provider=provider,
            )

        if not self._api_keys.get(provider):
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"Provider {provider} is not configured",
                provider=provider,
            )

        return self._adapters[provider]

    def is_provider_available(self, provider: str) -> bool:
        """True if provider exists and has an API key."""
        return provider in self._adapters and bool(self._api_keys.get(provider))

    async def generate(
        self,
        provider: str,
        req: LLMRequest,
        *,
        timeout_s: int = DEFAULT_TIMEOUT_S,
        call_context: LLMCallContext | None = None,
    ) -> LLMResponse:
        """Non-streaming LLM generation with error normalization.

        Raises:
            LLMError: With normalized error class on failure.
        """
        adapter = self.resolve_adapter(provider)
        api_key = self._api_keys[provider]
        base = _base_log_fields(provider, req, call_context)

        logger.info(
            "llm.request.started",
            **safe_kv(
                **base,
                message_chars=sum(len(m.content) for m in req.messages),
                num_turns=len(req.messages),
            ),
        )

        start = time.monotonic()

        def failed(error_class: LLMErrorClass, **extra) -> None:
            logger.error(
                "llm.request.failed",
                **safe_kv(
                    **base,
                    outcome="error",
                    error_class=error_class.value,
                    latency_ms=int((time.monotonic() - start) * 1000),
                    **extra,
                ),
            )

        try:
            response = await adapter.generate(req, api_key=api_key, timeout_s=timeout_s)
        except httpx.TimeoutException as e:
            failed(LLMErrorClass.TIMEOUT)
            raise LLMError(LLMErrorClass.TIMEOUT, "Request timed out", provider=provider) from e
        except httpx.HTTPStatusError as e:
            json_body = self._safe_parse_json(e.response)
            error_class = classify_provider_error(provider, e.response.status_code, json_body, None)
            failed(
                error_class,
                status_code=e.response.status_code,
                provider_request_id=e.response.headers.get("x-request-id"),
            )
            raise LLMError(
                error_class,
                f"Provider returned HTTP {e.response.status_code}",
                provider=provider,
            ) from e
        except httpx.NetworkError as e:
            failed(LLMErrorClass.PROVIDER_DOWN)
            raise LLMError(LLMErrorClass.PROVIDER_DOWN, "Network error", provider=provider) from e
        except LLMError as e:
            failed(e.error_class)
            raise
        except Exception as e:
            failed(LLMErrorClass.PROVIDER_DOWN)
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                f"Unexpected error: {type(e).__name__}",
                provider=provider,
            ) from e

        latency_ms = int((time.monotonic() - start) * 1000)

        if not response.text or not response.text.strip():
            failed(LLMErrorClass.EMPTY_RESPONSE)
            raise LLMError(
                LLMErrorClass.EMPTY_RESPONSE,
                "Provider returned an empty response",
                provider=provider,
            )

        usage = response.usage
        logger.info(
            "llm.request.finished",
            **safe_kv(
                **base,
                outcome="success",
                latency_ms=latency_ms,
                tokens_input=usage.prompt_tokens if usage else None,
                tokens_output=usage.completion_tokens if usage else None,
                tokens_total=usage.total_tokens if usage else None,
                provider_request_id=response.provider_request_id,
                reply_chars=len(response.text),
            ),
        )
        return response

    def _safe_parse_json(self, response: httpx.Response) -> dict | None:
        """Safely parse JSON from response, returning None on failure."""
        try:
            return response.json()
        except ValueError:
            return None
