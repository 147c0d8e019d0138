"""Conversation and message persistence.

The append-only message log behind the reply pipeline. Functions flush but
never commit; callers own the transaction (see relay.db.session.transaction).

Ordering:
- user messages are ordered by created_at, which is the receipt time
  assigned at admission and preserved through queuing
- a character reply is threaded directly after the user message it answers
  (replies_to), so late replies never land out of place in the context
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from relay.db.models import Character, Conversation, Message, Sender
from relay.errors import ApiErrorCode, InvalidRequestError, NotFoundError
from relay.logging import get_logger
from relay.schemas.message import MessageOut
from relay.services.llm.prompt import (
    HistoryEntry,
    build_system_prompt,
    render_prompt,
    validate_prompt_size,
)
from relay.services.llm.types import Turn

logger = get_logger(__name__)

DEFAULT_CONTEXT_LIMIT = 20

# Columns update_message_fields() may touch
UPDATABLE_FIELDS = frozenset(
    {
        "content",
        "payload",
        "has_ai_response",
        "liked_by_character",
        "liked_by",
        "error_kind",
        "error_message",
        "error_at",
        "ai_metadata",
    }
)


def conversation_id_for(user_id: str, character_id: str) -> str:
    """Deterministic conversation id for a user/character pair."""
    return f"{user_id}_{character_id}"


# =============================================================================
# Lookups
# =============================================================================


def get_conversation(db: Session, conversation_id: str) -> Conversation | None:
    return db.get(Conversation, conversation_id)


def get_conversation_or_404(db: Session, conversation_id: str) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError(ApiErrorCode.E_CONVERSATION_NOT_FOUND, "Conversation not found")
    return conversation


def get_character_or_404(db: Session, character_id: str) -> Character:
    character = db.get(Character, character_id)
    if character is None:
        raise NotFoundError(ApiErrorCode.E_CHARACTER_NOT_FOUND, "Character not found")
    return character


def get_message(db: Session, conversation_id: str, message_id: str) -> Message | None:
    return db.get(Message, (conversation_id, message_id))


def get_message_or_404(db: Session, conversation_id: str, message_id: str) -> Message:
    message = get_message(db, conversation_id, message_id)
    if message is None:
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")
    return message


def message_to_out(message: Message) -> MessageOut:
    """Convert Message ORM model to MessageOut schema."""
    return MessageOut.model_validate(message)


def character_profile(character: Character) -> dict[str, Any]:
    """Serializable character snapshot carried in job payloads."""
    return {
        "id": character.id,
        "name": character.name,
        "system_prompt": character.system_prompt,
        "ai_settings": dict(character.ai_settings or {}),
        "knowledge": list(character.knowledge or []),
    }


# =============================================================================
# Mutations
# =============================================================================


def get_or_create_conversation(
    db: Session,
    conversation_id: str,
    *,
    user_id: str,
    character_id: str,
    is_premium: bool = False,
) -> Conversation:
    """Load the conversation, creating it on first message.

    Raises:
        InvalidRequestError: If the id does not belong to the user/character pair.
        NotFoundError(E_CHARACTER_NOT_FOUND): If the character does not exist.
    """
    if conversation_id != conversation_id_for(user_id, character_id):
        raise InvalidRequestError(
            ApiErrorCode.E_CONVERSATION_MISMATCH,
            "Conversation id does not match user and character",
        )

    conversation = db.get(Conversation, conversation_id)
    if conversation is not None:
        if conversation.is_premium != is_premium:
            conversation.is_premium = is_premium
        return conversation

    get_character_or_404(db, character_id)
    conversation = Conversation(
        id=conversation_id,
        user_id=user_id,
        character_id=character_id,
        is_premium=is_premium,
    )
    db.add(conversation)
    db.flush()
    logger.info("conversation.created", conversation_id=conversation_id)
    return conversation


def append_message(
    db: Session,
    conversation_id: str,
    *,
    message_id: str,
    sender: str,
    created_at: datetime,
    type: str = "text",
    content: str = "",
    payload: dict[str, Any] | None = None,
    replies_to: str | None = None,
    ai_metadata: dict[str, Any] | None = None,
) -> tuple[Message, bool]:
    """Append a message to the log.

    Idempotent on (conversation_id, message_id): a redelivered message
    returns the stored row untouched.

    Returns:
        (message, created) where created is False for a duplicate.
    """
    existing = get_message(db, conversation_id, message_id)
    if existing is not None:
        return existing, False

    message = Message(
        conversation_id=conversation_id,
        id=message_id,
        sender=sender,
        type=type,
        content=content or "",
        payload=payload,
        created_at=created_at,
        replies_to=replies_to,
        ai_metadata=ai_metadata,
    )
    db.add(message)

    conversation = db.get(Conversation, conversation_id)
    if conversation is not None:
        conversation.updated_at = datetime.now(UTC)

    db.flush()
    return message, True


def update_message_fields(
    db: Session, conversation_id: str, message_id: str, patch: dict[str, Any]
) -> Message:
    """Apply a partial update to a stored message.

    Raises:
        InvalidRequestError: If patch names a field that may not be updated.
        NotFoundError(E_MESSAGE_NOT_FOUND): If the message does not exist.
    """
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST,
            f"Fields not updatable: {', '.join(sorted(unknown))}",
        )

    message = get_message_or_404(db, conversation_id, message_id)
    for key, value in patch.items():
        setattr(message, key, value)
    db.flush()
    return message


def mark_answered(db: Session, conversation_id: str, message_id: str) -> Message:
    return update_message_fields(db, conversation_id, message_id, {"has_ai_response": True})


def mark_failed(
    db: Session,
    conversation_id: str,
    message_id: str,
    *,
    error_kind: str,
    error_message: str,
    at: datetime | None = None,
) -> Message:
    """Attach a generation error marker to a user message."""
    return update_message_fields(
        db,
        conversation_id,
        message_id,
        {
            "error_kind": error_kind,
            "error_message": error_message,
            "error_at": at or datetime.now(UTC),
        },
    )


def clear_error(db: Session, conversation_id: str, message_id: str) -> Message:
    return update_message_fields(
        db,
        conversation_id,
        message_id,
        {"error_kind": None, "error_message": None, "error_at": None},
    )


def find_reply_to(db: Session, conversation_id: str, message_id: str) -> Message | None:
    """The character reply answering a user message, if one was persisted."""
    return db.scalars(
        select(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.replies_to == message_id,
        )
        .limit(1)
    ).first()


# =============================================================================
# Context
# =============================================================================


def _thread_order(messages: list[Message]) -> list[Message]:
    """Place each reply right after the message it answers."""
    present = {m.id for m in messages if m.sender == Sender.user}
    replies: dict[str, list[Message]] = {}
    for m in messages:
        if m.replies_to and m.replies_to in present:
            replies.setdefault(m.replies_to, []).append(m)

    ordered: list[Message] = []
    for m in messages:
        if m.replies_to and m.replies_to in present:
            continue
        ordered.append(m)
        ordered.extend(replies.get(m.id, ()))
    return ordered


def get_recent_messages(
    db: Session,
    conversation_id: str,
    *,
    limit: int = DEFAULT_CONTEXT_LIMIT,
    up_to: Message | None = None,
    include_failed: bool = False,
) -> list[Message]:
    """Most recent messages, oldest first.

    Args:
        limit: Maximum number of messages returned.
        up_to: If given, user messages received after it are excluded
            (they are still waiting in the queue).
        include_failed: Keep user messages carrying an error marker.
    """
    query = select(Message).where(Message.conversation_id == conversation_id)
    if not include_failed:
        query = query.where(Message.error_kind.is_(None))
    if up_to is not None:
        query = query.where(
            or_(Message.sender != Sender.user.value, Message.created_at <= up_to.created_at)
        )

    rows = db.scalars(
        query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)
    ).all()
    return _thread_order(list(reversed(rows)))


def to_history_entry(message: Message) -> HistoryEntry:
    return HistoryEntry(
        message_id=message.id,
        sender=message.sender,
        content=message.content,
        type=message.type,
        failed=message.failed,
    )


def build_context_turns(
    db: Session,
    conversation_id: str,
    current: Message,
    character: dict[str, Any],
    *,
    limit: int = DEFAULT_CONTEXT_LIMIT,
) -> list[Turn]:
    """Prompt turns for answering `current`: system first, history, current last."""
    system_prompt = build_system_prompt(
        character.get("name") or "Assistant",
        character.get("system_prompt"),
        character.get("knowledge") or (),
    )
    history = get_recent_messages(db, conversation_id, limit=limit, up_to=current)
    turns = render_prompt(
        system_prompt,
        [to_history_entry(m) for m in history],
        to_history_entry(current),
    )
    validate_prompt_size(turns)
    return turns
