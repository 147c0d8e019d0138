"""Low-priority "like" side effect.

After a reply is persisted the character sometimes likes the user message it
answered. The job runs on the low_priority queue with a short random
countdown and is independent of the conversation's critical path.
"""

from sqlalchemy.orm import Session

from relay.celery import celery_app
from relay.db.session import session_scope, transaction
from relay.logging import clear_task_context, configure_task_logging, get_logger
from relay.services import conversation_store as store
from relay.services.character_stats import get_character_stats
from relay.services.notifications import MESSAGE_LIKED, get_notifier

logger = get_logger(__name__)


def liker_id(character_id: str) -> str:
    return f"ai_{character_id}"


@celery_app.task(bind=True, max_retries=0, name="acknowledge_message")
def acknowledge_message(
    self,
    conversation_id: str,
    message_id: str,
    character_id: str,
    request_id: str | None = None,
) -> dict:
    """Mark a user message as liked by the character and notify the client."""
    configure_task_logging(
        request_id=request_id, task_name="acknowledge_message", task_id=self.request.id
    )
    try:
        with session_scope() as db:
            return run_acknowledge_message(db, conversation_id, message_id, character_id)
    finally:
        clear_task_context()


def run_acknowledge_message(
    db: Session, conversation_id: str, message_id: str, character_id: str
) -> dict:
    message = store.get_message(db, conversation_id, message_id)
    if message is None:
        return {"status": "skipped", "reason": "message_not_found"}
    if message.liked_by_character:
        return {"status": "skipped", "reason": "already_liked"}

    liked_by = liker_id(character_id)
    with transaction(db):
        store.update_message_fields(
            db,
            conversation_id,
            message_id,
            {"liked_by_character": True, "liked_by": liked_by},
        )

    get_character_stats().increment(character_id, total_likes=1)
    get_notifier().publish(
        conversation_id,
        MESSAGE_LIKED,
        {"message_id": message_id, "liked_by": liked_by},
    )
    logger.info("message_acknowledged", conversation_id=conversation_id)
    return {"status": "liked", "liked_by": liked_by}
