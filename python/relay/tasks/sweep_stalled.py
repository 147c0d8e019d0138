"""Stalled conversation sweeper task.

Celery beat runs sweep_stalled_conversations every 60 seconds:
- find conversations PROCESSING for longer than PROCESSING_TIMEOUT_S
- if the active message already has a reply, just release the conversation
- otherwise mark it processing_timeout (retryable), drop the dead job's
  in-flight marker so a retry can run, and release
- releasing dispatches the next queued message
"""

from relay.celery import celery_app
from relay.config import get_settings
from relay.db.session import session_scope, transaction
from relay.logging import clear_task_context, configure_task_logging, get_logger
from relay.services import conversation_store as store
from relay.services.admission import clear_response_marker, on_generation_complete
from relay.services.conversation_state import get_state_machine
from relay.services.notifications import MESSAGE_LLM_ERROR, get_notifier

logger = get_logger(__name__)

PROCESSING_TIMEOUT = "processing_timeout"


def sweep_stalled(timeout_s: float | None = None) -> int:
    """Release stalled conversations.

    Returns:
        Number of conversations released.
    """
    if timeout_s is None:
        timeout_s = get_settings().processing_timeout_s

    machine = get_state_machine()
    stalled = machine.find_stalled(timeout_s)
    if not stalled:
        return 0

    released = 0
    with session_scope() as db:
        for conversation_id in stalled:
            active = machine.get_status(conversation_id).active_message_id
            if active is None:
                continue

            message = store.get_message(db, conversation_id, active)
            if message is not None and not message.has_ai_response and not message.failed:
                with transaction(db):
                    store.mark_failed(
                        db,
                        conversation_id,
                        active,
                        error_kind=PROCESSING_TIMEOUT,
                        error_message="Reply generation timed out",
                    )
                clear_response_marker(conversation_id, active)
                get_notifier().publish(
                    conversation_id,
                    MESSAGE_LLM_ERROR,
                    {"message_id": active, "error_kind": PROCESSING_TIMEOUT, "retryable": True},
                )

            result = on_generation_complete(db, conversation_id, active)
            if not result.stale:
                released += 1

    logger.warning("sweep_stalled_conversations", stalled=len(stalled), released=released)
    return released


@celery_app.task(bind=True, max_retries=0, name="sweep_stalled_conversations")
def sweep_stalled_conversations(self, request_id: str | None = None) -> dict:
    configure_task_logging(
        request_id=request_id, task_name="sweep_stalled_conversations", task_id=self.request.id
    )
    try:
        return {"released": sweep_stalled()}
    finally:
        clear_task_context()
