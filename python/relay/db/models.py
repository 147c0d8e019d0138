"""SQLAlchemy ORM models for Relay.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Portable column types are used so the same models run on PostgreSQL and on
SQLite in tests.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Enums
# =============================================================================


class Sender(str, PyEnum):
    """Author of a stored message."""

    user = "user"
    character = "character"


# =============================================================================
# Models
# =============================================================================


class Character(Base):
    """An AI persona a user converses with."""

    __tablename__ = "characters"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Per-character overrides: temperature, max_tokens, model
    ai_settings: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    # Optional knowledge snippets folded into the system prompt
    knowledge: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Conversation(Base):
    """One user talking to one character. Id is "{user_id}_{character_id}"."""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(256), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    character_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("characters.id"), nullable=False
    )
    is_premium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    character: Mapped[Character] = relationship()
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        order_by="Message.created_at",
        cascade="all, delete-orphan",
    )


class Message(Base):
    """A user or character message.

    created_at is the receipt time assigned at admission; history is ordered
    by it. replies_to links a character reply to the user message it answers.
    error_* fields are set when generation failed for a user message.
    """

    __tablename__ = "messages"

    conversation_id: Mapped[str] = mapped_column(
        String(256), ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="text")
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    replies_to: Mapped[str | None] = mapped_column(String(128), nullable=True)

    has_ai_response: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    liked_by_character: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    liked_by: Mapped[str | None] = mapped_column(String(160), nullable=True)

    error_kind: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    ai_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    conversation: Mapped[Conversation] = relationship(back_populates="messages")

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_conversation_replies_to", "conversation_id", "replies_to"),
    )

    @property
    def failed(self) -> bool:
        return self.error_kind is not None
