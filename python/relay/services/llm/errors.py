"""LLM error classification and normalization.

Classifies provider errors into normalized error classes. Called by the
router after catching adapter exceptions. All supported providers speak the
OpenAI chat-completions dialect, so one classifier covers them, with a few
provider-specific body markers layered on top.

Error classes:
- E_LLM_INVALID_KEY: Authentication failure (401/403)
- E_LLM_RATE_LIMIT: Rate limit or balance exhausted (429, 402)
- E_LLM_CONTEXT_TOO_LARGE: Context length exceeded
- E_LLM_TIMEOUT: Request timed out
- E_LLM_PROVIDER_DOWN: Provider unavailable (5xx, network error)
- E_LLM_EMPTY_RESPONSE: Provider answered 200 with no usable text
- E_MODEL_NOT_AVAILABLE: Model not found, provider unknown or not configured
"""

from enum import Enum

from relay.logging import get_logger

logger = get_logger(__name__)

KNOWN_PROVIDERS = frozenset({"deepseek", "together", "openai"})


class LLMErrorClass(str, Enum):
    """Normalized LLM error classifications."""

    INVALID_KEY = "E_LLM_INVALID_KEY"
    RATE_LIMIT = "E_LLM_RATE_LIMIT"
    CONTEXT_TOO_LARGE = "E_LLM_CONTEXT_TOO_LARGE"
    TIMEOUT = "E_LLM_TIMEOUT"
    PROVIDER_DOWN = "E_LLM_PROVIDER_DOWN"
    EMPTY_RESPONSE = "E_LLM_EMPTY_RESPONSE"
    MODEL_NOT_AVAILABLE = "E_MODEL_NOT_AVAILABLE"


class LLMError(Exception):
    """Exception for LLM-related errors.

    Attributes:
        error_class: The normalized error classification
        message: Human-readable error message
        provider: The provider that returned the error (if known)
    """

    def __init__(
        self,
        error_class: LLMErrorClass,
        message: str,
        provider: str | None = None,
    ):
        self.error_class = error_class
        self.message = message
        self.provider = provider
        super().__init__(message)


def classify_provider_error(
    provider: str,
    status_code: int | None,
    json_body: dict | None,
    exception: Exception | None,
) -> LLMErrorClass:
    """Classify a provider error into a normalized error class.

    Args:
        provider: One of "deepseek", "together", "openai"
        status_code: HTTP status code (if available)
        json_body: Parsed JSON error response (if available)
        exception: The exception that was raised (if any)
    """
    if exception is not None:
        exception_type = type(exception).__name__
        if "Timeout" in exception_type or "timeout" in str(exception).lower():
            return LLMErrorClass.TIMEOUT
        if "Network" in exception_type or "Connection" in exception_type:
            return LLMErrorClass.PROVIDER_DOWN

    if status_code is None:
        return LLMErrorClass.PROVIDER_DOWN

    if provider not in KNOWN_PROVIDERS:
        logger.warning("unknown_provider_for_error_classification", provider=provider)
        return LLMErrorClass.PROVIDER_DOWN

    if status_code in (401, 403):
        return LLMErrorClass.INVALID_KEY

    # DeepSeek answers 402 when the account balance runs out
    if status_code in (402, 429):
        return LLMErrorClass.RATE_LIMIT

    if status_code == 404:
        return LLMErrorClass.MODEL_NOT_AVAILABLE

    if status_code >= 500:
        return LLMErrorClass.PROVIDER_DOWN

    if status_code in (400, 422) and json_body:
        error = json_body.get("error") or {}
        if isinstance(error, str):
            error = {"message": error}
        error_code = str(error.get("code") or "")
        error_message = str(error.get("message") or "").lower()

        if error_code == "context_length_exceeded":
            return LLMErrorClass.CONTEXT_TOO_LARGE
        if "maximum context length" in error_message or "too long" in error_message:
            return LLMErrorClass.CONTEXT_TOO_LARGE
        if "model" in error_message and (
            "not found" in error_message or "does not exist" in error_message
        ):
            return LLMErrorClass.MODEL_NOT_AVAILABLE

    return LLMErrorClass.PROVIDER_DOWN
