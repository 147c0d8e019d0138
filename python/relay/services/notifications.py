"""Live conversation events over Redis pub/sub.

Each event is published as JSON on channel conversation:{cid}:
    {"event": "message:ai_response", "conversation_id": "...", "data": {...}}

Publishing is best effort: a failed publish is logged and never fails the
caller, since the message log stays the source of truth.
"""

import json
from typing import Any

from relay.logging import get_logger

logger = get_logger(__name__)

MESSAGE_PROCESSING = "message:processing"
MESSAGE_QUEUED = "message:queued"
MESSAGE_AI_RESPONSE = "message:ai_response"
MESSAGE_LLM_ERROR = "message:llm_error"
MESSAGE_QUEUE_EXPIRED = "message:queue_expired"
MESSAGE_LIKED = "message:liked"
USAGE_UPDATE = "usage:update"


def channel_for(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class Notifier:
    """Publishes conversation events."""

    def __init__(self, redis_client=None):
        self._redis = redis_client

    def publish(self, conversation_id: str, event: str, payload: dict[str, Any]) -> bool:
        """Publish an event. Returns False if it could not be delivered."""
        if self._redis is None:
            logger.debug("notification_skipped", notification_event=event)
            return False

        body = json.dumps(
            {"event": event, "conversation_id": conversation_id, "data": payload},
            default=str,
        )
        try:
            self._redis.publish(channel_for(conversation_id), body)
        except Exception as e:
            logger.warning("notification_publish_failed", notification_event=event, error=str(e))
            return False

        logger.debug("notification_published", notification_event=event)
        return True


_notifier: Notifier | None = None


def get_notifier() -> Notifier:
    """Get the global notifier; without Redis it drops events."""
    global _notifier
    if _notifier is None:
        _notifier = Notifier(redis_client=None)
    return _notifier


def set_notifier(notifier: Notifier | None) -> None:
    global _notifier
    _notifier = notifier
