"""Celery application configuration.

Central configuration for Celery used by both API (for enqueuing)
and worker (for executing tasks).

Queues:
- ai_responses: generate_reply, one job per active conversation message
- low_priority: acknowledge_message side effects
- maintenance: periodic sweeps (celery beat)

Usage:
    from relay.tasks import generate_reply
    generate_reply.apply_async(kwargs={...}, queue="ai_responses")
"""

from celery import Celery

from relay.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery("relay")

# Configure from settings
celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

# Task configuration
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

# A redelivered generate_reply is safe: the job is idempotent per message
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.worker_prefetch_multiplier = 1

celery_app.conf.task_routes = {
    "generate_reply": {"queue": "ai_responses"},
    "acknowledge_message": {"queue": "low_priority"},
    "sweep_stalled_conversations": {"queue": "maintenance"},
}

# Default queue
celery_app.conf.task_default_queue = "default"

# Job priorities (premium conversations first across conversations)
celery_app.conf.broker_transport_options = {
    "priority_steps": list(range(10)),
    "queue_order_strategy": "priority",
}

celery_app.conf.beat_schedule = {
    "sweep-stalled-conversations": {
        "task": "sweep_stalled_conversations",
        "schedule": 60.0,
        "options": {"queue": "maintenance"},
    },
}

# For testing: allow eager mode (synchronous execution)
celery_app.conf.task_always_eager = False


def get_celery_app() -> Celery:
    """Get the Celery application instance."""
    return celery_app
