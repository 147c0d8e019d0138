"""Health check endpoints."""

from fastapi import APIRouter, Request

from relay.responses import success_response

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness check endpoint.

    Returns 200 if the process is running. Reports whether Redis was
    reachable at startup but does not fail without it.
    """
    redis_client = getattr(request.app.state, "redis_client", None)
    return success_response({"status": "ok", "redis": redis_client is not None})
