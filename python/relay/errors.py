"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
"""

from enum import Enum
from typing import Any


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"
    E_INTERNAL_ONLY = "E_INTERNAL_ONLY"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_CONVERSATION_NOT_FOUND = "E_CONVERSATION_NOT_FOUND"
    E_MESSAGE_NOT_FOUND = "E_MESSAGE_NOT_FOUND"
    E_CHARACTER_NOT_FOUND = "E_CHARACTER_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_CONVERSATION_MISMATCH = "E_CONVERSATION_MISMATCH"

    # Conflict errors (409)
    E_MESSAGE_NOT_RETRYABLE = "E_MESSAGE_NOT_RETRYABLE"

    # Throttling errors (429)
    E_QUOTA_EXCEEDED = "E_QUOTA_EXCEEDED"
    E_QUEUE_FULL = "E_QUEUE_FULL"

    # Server errors
    E_COORDINATION_UNAVAILABLE = "E_COORDINATION_UNAVAILABLE"  # 503
    E_INTERNAL = "E_INTERNAL"  # 500


ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_INTERNAL_ONLY: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_CONVERSATION_NOT_FOUND: 404,
    ApiErrorCode.E_MESSAGE_NOT_FOUND: 404,
    ApiErrorCode.E_CHARACTER_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_CONVERSATION_MISMATCH: 400,
    ApiErrorCode.E_MESSAGE_NOT_RETRYABLE: 409,
    ApiErrorCode.E_QUOTA_EXCEEDED: 429,
    ApiErrorCode.E_QUEUE_FULL: 429,
    ApiErrorCode.E_COORDINATION_UNAVAILABLE: 503,
    ApiErrorCode.E_INTERNAL: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
        details: Optional machine-readable extras rendered into the envelope
    """

    def __init__(
        self, code: ApiErrorCode, message: str, details: dict[str, Any] | None = None
    ):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class QuotaExceededError(ApiError):
    """The sender has used up their plan's message allowance."""

    def __init__(self, message_type: str, used: int, limit: int):
        self.message_type = message_type
        self.used = used
        self.limit = limit
        super().__init__(
            ApiErrorCode.E_QUOTA_EXCEEDED,
            f"Daily {message_type} message limit reached ({used}/{limit})",
            details={
                "message_type": message_type,
                "used": used,
                "limit": limit,
                "upgrade_required": True,
            },
        )
