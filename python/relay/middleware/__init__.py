"""Middleware modules for the Relay API."""

from relay.middleware.internal_header import INTERNAL_HEADER, InternalHeaderMiddleware
from relay.middleware.request_id import REQUEST_ID_HEADER, RequestIDMiddleware

__all__ = [
    "INTERNAL_HEADER",
    "InternalHeaderMiddleware",
    "REQUEST_ID_HEADER",
    "RequestIDMiddleware",
]
