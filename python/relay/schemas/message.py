"""Message and conversation Pydantic schemas.

Request models for the ingress routes and response models shared by the
routes and the live notifications.
"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Valid message types - must match Message.type values
MESSAGE_TYPES = Literal["text", "audio", "media"]

MAX_CONTENT_CHARS = 4000


# =============================================================================
# Request Schemas
# =============================================================================


class SendMessageRequest(BaseModel):
    """Inbound user message.

    message_id is chosen by the caller and must be unique within the
    conversation; resending the same id is a no-op.
    """

    message_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    character_id: str = Field(min_length=1, max_length=128)
    type: MESSAGE_TYPES = "text"
    content: str = Field(default="", max_length=MAX_CONTENT_CHARS)
    payload: dict[str, Any] | None = None
    temp_id: str | None = Field(default=None, max_length=128)
    is_premium: bool = False
    received_at: datetime | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("received_at")
    @classmethod
    def ensure_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# =============================================================================
# Response Schemas
# =============================================================================


class MessageOut(BaseModel):
    """A stored message."""

    id: str
    conversation_id: str
    sender: str  # "user" | "character"
    type: str
    content: str
    created_at: datetime
    replies_to: str | None = None
    has_ai_response: bool = False
    liked_by_character: bool = False
    error_kind: str | None = None
    error_message: str | None = None
    ai_metadata: dict[str, Any] | None = None

    model_config = ConfigDict(from_attributes=True)


class AdmitResponse(BaseModel):
    message_id: str
    processed_now: bool
    queue_position: int | None = None
    duplicate: bool = False


class QueueStatusOut(BaseModel):
    """Coordination state of one conversation."""

    conversation_id: str
    phase: str  # "IDLE" | "PROCESSING"
    active_message_id: str | None = None
    processing_age_s: float | None = None
    queue_length: int
    queued_message_ids: list[str]


class ResetResponse(BaseModel):
    previous_active_message_id: str | None = None
    next_message_id: str | None = None
    expired_message_ids: list[str] = []
