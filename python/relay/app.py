"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, the internal-header guard, request-id
middleware, and routes.

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- This ensures all requests (including rejected ones) get X-Request-ID

Actual execution order per request:
1. RequestIDMiddleware (sets request_id, starts timer)
2. InternalHeaderMiddleware (staging/prod: checks X-Relay-Internal)
3. Route handler

Redis Lifecycle:
- One synchronous client is created at startup and stored in app.state
- install_services() wires the state machine, quotas, stats and notifier to it
- Without Redis the app still serves /health; coordination routes return 503
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from relay.api.routes import create_api_router
from relay.config import get_settings
from relay.logging import configure_logging, get_logger
from relay.middleware.internal_header import InternalHeaderMiddleware
from relay.middleware.request_id import RequestIDMiddleware
from relay.responses import register_error_handlers
from relay.services.redis_client import create_redis_client
from relay.services.registry import install_services, reset_services

# Configure structured logging at import time
configure_logging()

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle resources.

    - Creates the shared Redis client and installs Redis-backed services
    - Closes the client on shutdown
    """
    settings = get_settings()

    redis_client = getattr(app.state, "redis_client", None)
    owns_client = False
    if redis_client is None and settings.redis_url:
        try:
            redis_client = create_redis_client(settings.redis_url)
            redis_client.ping()
            owns_client = True
            logger.info("redis_client_initialized", redis_url=settings.redis_url[:30] + "...")
        except Exception as e:
            logger.warning("redis_client_init_failed", error=str(e))
            redis_client = None

    app.state.redis_client = redis_client
    install_services(redis_client, settings)

    yield

    # Shutdown: close Redis
    reset_services()
    if redis_client is not None and owns_client:
        try:
            redis_client.close()
        except Exception as e:
            logger.warning("redis_client_close_failed", error=str(e))
    logger.info("redis_client_closed")


def create_app(skip_internal_header: bool = False, redis_client=None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        skip_internal_header: If True, skip the internal-header guard (for testing).
        redis_client: Optional pre-built Redis client (for testing).

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Relay API",
        description="Conversation-ordered AI reply pipeline",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.redis_client = redis_client

    register_error_handlers(app)

    # Use router factory to avoid import-time settings loading
    app.include_router(create_api_router())

    if settings.requires_internal_header and not skip_internal_header:
        app.add_middleware(
            InternalHeaderMiddleware, internal_secret=settings.relay_internal_secret
        )
        logger.info("internal_header_middleware_enabled", env=settings.relay_env.value)

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
