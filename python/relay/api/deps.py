"""FastAPI dependencies for route handlers."""

from fastapi import Request

from relay.db.session import get_db, get_session_factory
from relay.logging import get_request_id
from relay.middleware.request_id import get_request_id_from_request

__all__ = ["get_db", "get_session_factory", "get_request_id_dep"]


def get_request_id_dep(request: Request) -> str | None:
    """Request id for correlating the jobs a request submits."""
    return get_request_id_from_request(request) or get_request_id()
