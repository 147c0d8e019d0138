"""Message admission: the entry point for inbound user messages.

admit() never blocks on generation. Order of operations:

1. conversation id must belong to the envelope's user/character pair
2. quota check for messages not seen before (before anything is written)
3. persist the message with created_at = receipt time (idempotent)
4. try_admit on the conversation state machine
   - Admitted: submit the generate_reply job, publish message:processing
   - Queued: publish message:queued with the 1-based position
5. count usage and character stats for newly stored messages

on_generation_complete() is the other half: it releases the conversation
after a job and dispatches whatever the state machine promotes next.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from relay.db.models import Sender
from relay.db.session import transaction
from relay.errors import ApiError, ApiErrorCode, InvalidRequestError
from relay.logging import get_logger
from relay.services import conversation_store as store
from relay.services.character_stats import get_character_stats
from relay.services.conversation_state import (
    Admitted,
    AdvanceResult,
    MessageEnvelope,
    Queued,
    get_state_machine,
)
from relay.services.notifications import (
    MESSAGE_PROCESSING,
    MESSAGE_QUEUE_EXPIRED,
    MESSAGE_QUEUED,
    USAGE_UPDATE,
    get_notifier,
)
from relay.services.redact import safe_kv
from relay.services.redis_client import get_redis
from relay.services.usage import get_usage_tracker

logger = get_logger(__name__)

GENERATION_QUEUE = "ai_responses"

# Redis transport: lower values are picked up first
PREMIUM_PRIORITY = 0
STANDARD_PRIORITY = 5

QUEUE_EXPIRED = "queue_expired"
QUEUE_FULL = "queue_full"
DISPATCH_FAILED = "dispatch_failed"


@dataclass(frozen=True)
class AdmitResult:
    message_id: str
    processed_now: bool
    queue_position: int | None
    duplicate: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "processed_now": self.processed_now,
            "queue_position": self.queue_position,
            "duplicate": self.duplicate,
        }


def admit(
    db: Session,
    conversation_id: str,
    envelope: MessageEnvelope,
    *,
    request_id: str | None = None,
) -> AdmitResult:
    """Admit an inbound user message.

    Raises:
        InvalidRequestError(E_CONVERSATION_MISMATCH): Wrong conversation id.
        QuotaExceededError: Free tier limit reached. Nothing was written.
        NotFoundError(E_CHARACTER_NOT_FOUND): Unknown character.
        ApiError(E_QUEUE_FULL): Too many messages waiting. The stored message
            is marked queue_full so it can be retried later.
        ApiError(E_COORDINATION_UNAVAILABLE): Redis failure.
    """
    if conversation_id != envelope.conversation_id:
        raise InvalidRequestError(
            ApiErrorCode.E_CONVERSATION_MISMATCH,
            "Conversation id does not match user and character",
        )

    # A resend of an accepted message was already counted
    if store.get_message(db, conversation_id, envelope.message_id) is None:
        get_usage_tracker().check_quota(
            envelope.user_id, envelope.character_id, envelope.type, is_premium=envelope.is_premium
        )

    with transaction(db):
        store.get_or_create_conversation(
            db,
            conversation_id,
            user_id=envelope.user_id,
            character_id=envelope.character_id,
            is_premium=envelope.is_premium,
        )
        message, created = store.append_message(
            db,
            conversation_id,
            message_id=envelope.message_id,
            sender=Sender.user.value,
            created_at=envelope.received_at,
            type=envelope.type,
            content=envelope.content,
            payload=envelope.payload,
        )

    if not created and (message.has_ai_response or message.failed):
        logger.info(
            "admission.duplicate",
            conversation_id=conversation_id,
            answered=message.has_ai_response,
        )
        return AdmitResult(
            message_id=envelope.message_id,
            processed_now=False,
            queue_position=None,
            duplicate=True,
        )

    result = _enter(db, conversation_id, envelope, request_id=request_id)

    if created and not result.duplicate:
        _count_usage(conversation_id, envelope)

    return result


def _enter(
    db: Session,
    conversation_id: str,
    envelope: MessageEnvelope,
    *,
    request_id: str | None,
) -> AdmitResult:
    """Run try_admit and act on the outcome."""
    machine = get_state_machine()
    notifier = get_notifier()

    try:
        admission = machine.try_admit(conversation_id, envelope)
    except ApiError as e:
        if e.code == ApiErrorCode.E_QUEUE_FULL:
            with transaction(db):
                store.mark_failed(
                    db,
                    conversation_id,
                    envelope.message_id,
                    error_kind=QUEUE_FULL,
                    error_message=e.message,
                )
        raise

    if isinstance(admission, Admitted):
        dispatched = dispatch(db, envelope, request_id=request_id)
        if dispatched:
            notifier.publish(
                conversation_id,
                MESSAGE_PROCESSING,
                {"message_id": envelope.message_id, "temp_id": envelope.temp_id},
            )
        else:
            _fail_dispatch(db, conversation_id, envelope, request_id=request_id)
        logger.info(
            "admission.admitted",
            **safe_kv(conversation_id=conversation_id, message_type=envelope.type),
        )
        return AdmitResult(
            message_id=envelope.message_id, processed_now=dispatched, queue_position=0
        )

    if isinstance(admission, Queued):
        notifier.publish(
            conversation_id,
            MESSAGE_QUEUED,
            {
                "message_id": envelope.message_id,
                "temp_id": envelope.temp_id,
                "position": admission.position,
            },
        )
        logger.info(
            "admission.queued",
            **safe_kv(conversation_id=conversation_id, position=admission.position),
        )
        return AdmitResult(
            message_id=envelope.message_id,
            processed_now=False,
            queue_position=admission.position,
        )

    # Already active or already waiting
    return AdmitResult(
        message_id=envelope.message_id,
        processed_now=admission.position == 0,
        queue_position=admission.position,
        duplicate=True,
    )


def _count_usage(conversation_id: str, envelope: MessageEnvelope) -> None:
    usage = get_usage_tracker()
    count = usage.increment_usage(envelope.user_id, envelope.character_id, envelope.type)
    get_character_stats().record_message(envelope.character_id, envelope.type)
    if count is not None:
        snapshot = usage.get_usage(
            envelope.user_id, envelope.character_id, envelope.type, envelope.is_premium
        )
        get_notifier().publish(conversation_id, USAGE_UPDATE, snapshot.as_dict())


def dispatch(db: Session, envelope: MessageEnvelope, *, request_id: str | None = None) -> bool:
    """Submit the generate_reply job for an active message.

    Premium conversations get a higher job priority; ordering within a
    conversation is untouched because only one job per conversation exists.

    Returns:
        False if the job could not be submitted.
    """
    conversation_id = envelope.conversation_id
    try:
        character = store.get_character_or_404(db, envelope.character_id)
        profile = store.character_profile(character)

        from relay.tasks import generate_reply

        generate_reply.apply_async(
            kwargs={
                "conversation_id": conversation_id,
                "envelope": envelope.to_dict(),
                "character": profile,
                "request_id": request_id,
            },
            queue=GENERATION_QUEUE,
            priority=PREMIUM_PRIORITY if envelope.is_premium else STANDARD_PRIORITY,
        )
        logger.info(
            "generate_reply_enqueued",
            conversation_id=conversation_id,
            premium=envelope.is_premium,
            request_id=request_id,
        )
        return True
    except Exception as e:
        logger.error(
            "generate_reply_enqueue_failed",
            conversation_id=conversation_id,
            error=str(e),
        )
        return False


def _fail_dispatch(
    db: Session,
    conversation_id: str,
    envelope: MessageEnvelope,
    *,
    request_id: str | None,
) -> None:
    """A job that never got submitted must not hold the conversation."""
    with transaction(db):
        store.mark_failed(
            db,
            conversation_id,
            envelope.message_id,
            error_kind=DISPATCH_FAILED,
            error_message="Reply generation could not be scheduled",
        )
    on_generation_complete(
        db, conversation_id, envelope.message_id, request_id=request_id
    )


def _expire(db: Session, conversation_id: str, expired: list[MessageEnvelope]) -> None:
    notifier = get_notifier()
    for envelope in expired:
        with transaction(db):
            if store.get_message(db, conversation_id, envelope.message_id) is not None:
                store.mark_failed(
                    db,
                    conversation_id,
                    envelope.message_id,
                    error_kind=QUEUE_EXPIRED,
                    error_message="Message waited too long in the queue",
                )
        notifier.publish(
            conversation_id,
            MESSAGE_QUEUE_EXPIRED,
            {"message_id": envelope.message_id, "temp_id": envelope.temp_id},
        )


def on_generation_complete(
    db: Session,
    conversation_id: str,
    message_id: str | None = None,
    *,
    request_id: str | None = None,
) -> AdvanceResult:
    """Release the conversation and dispatch the next queued message.

    Args:
        message_id: The message whose job just finished. When given, the
            conversation only advances if that message is still the active
            one, so a duplicate job cannot release someone else's turn.
    """
    machine = get_state_machine()
    notifier = get_notifier()

    result = machine.advance(conversation_id, expected_active=message_id)
    if result.stale:
        return result

    _expire(db, conversation_id, result.expired)

    next_envelope = result.next
    while next_envelope is not None:
        if dispatch(db, next_envelope, request_id=request_id):
            notifier.publish(
                conversation_id,
                MESSAGE_PROCESSING,
                {"message_id": next_envelope.message_id, "temp_id": next_envelope.temp_id},
            )
            break

        with transaction(db):
            store.mark_failed(
                db,
                conversation_id,
                next_envelope.message_id,
                error_kind=DISPATCH_FAILED,
                error_message="Reply generation could not be scheduled",
            )
        step = machine.advance(conversation_id, expected_active=next_envelope.message_id)
        _expire(db, conversation_id, step.expired)
        next_envelope = step.next

    return result


def reset_conversation(
    db: Session, conversation_id: str, *, request_id: str | None = None
) -> dict[str, Any]:
    """Force the conversation idle and start the next queued message."""
    store.get_conversation_or_404(db, conversation_id)
    machine = get_state_machine()
    previous = machine.force_reset(conversation_id)
    result = on_generation_complete(db, conversation_id, request_id=request_id)
    return {
        "previous_active_message_id": previous,
        "next_message_id": result.next.message_id if result.next else None,
        "expired_message_ids": [e.message_id for e in result.expired],
    }


def retry_failed_message(
    db: Session,
    conversation_id: str,
    message_id: str,
    *,
    request_id: str | None = None,
) -> AdmitResult:
    """Clear a failed message's error marker and admit it again.

    The message keeps its original receipt time, so context ordering is
    unchanged. Retries are not counted against the quota.

    Raises:
        NotFoundError: Unknown conversation or message.
        ApiError(E_MESSAGE_NOT_RETRYABLE): Not a failed user message.
    """
    conversation = store.get_conversation_or_404(db, conversation_id)
    message = store.get_message_or_404(db, conversation_id, message_id)
    if message.sender != Sender.user or not message.failed or message.has_ai_response:
        raise ApiError(
            ApiErrorCode.E_MESSAGE_NOT_RETRYABLE, "Only failed user messages can be retried"
        )

    received_at = message.created_at
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=UTC)

    envelope = MessageEnvelope(
        message_id=message.id,
        user_id=conversation.user_id,
        character_id=conversation.character_id,
        received_at=received_at,
        type=message.type,
        content=message.content,
        payload=message.payload,
        is_premium=conversation.is_premium,
    )

    with transaction(db):
        store.clear_error(db, conversation_id, message_id)

    # A job that died mid-episode may still hold the claim
    clear_response_marker(conversation_id, message_id)

    logger.info("admission.retry", conversation_id=conversation_id)
    return _enter(db, conversation_id, envelope, request_id=request_id)


def response_marker_key(conversation_id: str, message_id: str) -> str:
    """In-flight claim taken by the job generating the reply to a message."""
    return f"ai_response:{conversation_id}:{message_id}"


def clear_response_marker(conversation_id: str, message_id: str) -> None:
    redis_client = get_redis()
    if redis_client is None:
        return
    try:
        redis_client.delete(response_marker_key(conversation_id, message_id))
    except Exception as e:
        logger.warning("response_marker_clear_failed", error=str(e))


def received_now() -> datetime:
    """Receipt timestamp for a message arriving now."""
    return datetime.now(UTC)
