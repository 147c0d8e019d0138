"""Celery worker entrypoint.

Run with:
    celery -A apps.worker.main:celery_app worker -Q ai_responses,low_priority,maintenance
    celery -A apps.worker.main:celery_app beat

This module imports the Celery app and explicitly registers all tasks.
Task definitions are in relay.tasks package - no autodiscovery.

Logging Convention:
- All task log entries include request_id, task_name, task_id when available
- Tasks accept `request_id: str | None = None` parameter for correlation
- configure_task_logging() runs at the start of each task

Queue Configuration:
- ai_responses: generate_reply (one in flight per conversation)
- low_priority: acknowledge_message side effects
- maintenance: sweep_stalled_conversations (beat, every 60s)
"""

from celery.signals import worker_process_init

from relay.celery import celery_app
from relay.config import get_settings
from relay.logging import configure_logging, get_logger
from relay.services.redis_client import get_redis
from relay.services.registry import install_services

# =============================================================================
# Task Registration (explicit imports - no autodiscovery)
# =============================================================================

# Each import registers the task with the celery_app
from relay.tasks import (  # noqa: F401
    acknowledge_message,
    generate_reply,
    sweep_stalled_conversations,
)

# =============================================================================
# Worker Lifecycle
# =============================================================================


@worker_process_init.connect
def setup_worker_process(**kwargs):
    """Configure structlog and Redis-backed services per worker process.

    Each forked process gets its own Redis connection pool.
    """
    configure_logging()
    install_services(get_redis(), get_settings())
    logger = get_logger(__name__)
    logger.info("celery_worker_started", queues="ai_responses,low_priority,maintenance")


# Export celery_app for Celery to find
# Command: celery -A apps.worker.main:celery_app worker ...
__all__ = ["celery_app"]
