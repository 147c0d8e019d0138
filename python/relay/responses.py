"""API response envelopes and exception handlers.

Every response uses one envelope:
- Success: { "data": ... }
- Error: { "error": { "code": "E_...", "message": "...", "request_id": "...",
                      "details": {...} } }

details is only present for errors the client acts on, e.g. a quota
rejection carries the usage counts so the client can show an upgrade prompt.
Request-body problems (malformed JSON, unknown fields, wrong types) all
become 400 E_INVALID_REQUEST instead of FastAPI's default 422.
"""

import json
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from relay.errors import ApiError, ApiErrorCode
from relay.logging import get_logger, get_request_id

logger = get_logger(__name__)

JSON_METHODS = ("POST", "PUT", "PATCH")


def success_response(data: Any) -> dict[str, Any]:
    return {"data": data}


def error_response(
    code: ApiErrorCode,
    message: str,
    request_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build an error envelope.

    Args:
        code: The error code enum value.
        message: Human-readable error message.
        request_id: Correlation id; taken from the request context if None.
        details: Machine-readable extras for the client.
    """
    if request_id is None:
        request_id = get_request_id()

    error: dict[str, Any] = {"code": code.value, "message": message}
    if request_id:
        error["request_id"] = request_id
    if details:
        error["details"] = details

    return {"error": error}


def _json_error(status_code: int, code: ApiErrorCode, message: str, **kwargs) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_response(code, message, **kwargs))


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("api_error", code=exc.code.value, path=request.url.path)
    return _json_error(exc.status_code, exc.code, exc.message, details=exc.details)


async def http_exception_handler(request: Request, exc: Any) -> JSONResponse:
    """Framework-raised HTTP errors (unknown route, wrong method)."""
    status_to_code = {
        400: ApiErrorCode.E_INVALID_REQUEST,
        403: ApiErrorCode.E_FORBIDDEN,
        404: ApiErrorCode.E_NOT_FOUND,
        405: ApiErrorCode.E_INVALID_REQUEST,
        422: ApiErrorCode.E_INVALID_REQUEST,
    }
    code = status_to_code.get(exc.status_code, ApiErrorCode.E_INTERNAL)
    message = str(exc.detail) if exc.detail else "An error occurred"
    return _json_error(exc.status_code, code, message)


def describe_validation_error(exc: RequestValidationError) -> str:
    """First validation problem as "field: reason" (the body prefix dropped)."""
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    reason = first.get("msg", "invalid value")
    if location:
        return f"Invalid request body: {location}: {reason}"
    return f"Invalid request body: {reason}"


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _json_error(400, ApiErrorCode.E_INVALID_REQUEST, describe_validation_error(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return 500 E_INTERNAL.

    Logs the exception server-side but never leaks details to client.
    """
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    return _json_error(500, ApiErrorCode.E_INTERNAL, "Internal server error")


async def reject_malformed_json(request: Request, call_next):
    """Answer an unparseable JSON body with the error envelope before routing."""
    if request.method in JSON_METHODS and "application/json" in request.headers.get(
        "content-type", ""
    ):
        body = await request.body()
        if body:
            try:
                json.loads(body)
            except json.JSONDecodeError:
                return _json_error(400, ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body")
    return await call_next(request)


def register_error_handlers(app: FastAPI) -> None:
    """Install every handler and the malformed-JSON guard on app."""
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.middleware("http")(reject_malformed_json)
