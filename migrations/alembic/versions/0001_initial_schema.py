"""Initial schema - characters, conversations, messages

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Messages are keyed by (conversation_id, id); the client supplies the id, so
a resent message lands on the same row. created_at is the receipt time and
orders history.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # ==========================================================================
    # characters table
    # ==========================================================================
    op.create_table(
        "characters",
        sa.Column("id", sa.String(128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        sa.Column("ai_settings", sa.JSON(), nullable=True),
        sa.Column("knowledge", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # ==========================================================================
    # conversations table
    # ==========================================================================
    op.create_table(
        "conversations",
        sa.Column("id", sa.String(256), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("character_id", sa.String(128), nullable=False),
        sa.Column("is_premium", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["character_id"], ["characters.id"]),
    )
    op.create_index("ix_conversations_user_id", "conversations", ["user_id"])

    # ==========================================================================
    # messages table
    # ==========================================================================
    op.create_table(
        "messages",
        sa.Column("conversation_id", sa.String(256), nullable=False),
        sa.Column("id", sa.String(128), nullable=False),
        sa.Column("sender", sa.String(16), nullable=False),
        sa.Column("type", sa.String(16), server_default="text", nullable=False),
        sa.Column("content", sa.Text(), server_default="", nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("replies_to", sa.String(128), nullable=True),
        sa.Column("has_ai_response", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column(
            "liked_by_character", sa.Boolean(), server_default=sa.false(), nullable=False
        ),
        sa.Column("liked_by", sa.String(160), nullable=True),
        sa.Column("error_kind", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ai_metadata", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("conversation_id", "id"),
        sa.ForeignKeyConstraint(
            ["conversation_id"],
            ["conversations.id"],
            ondelete="CASCADE",
        ),
        # Sender is a closed set
        sa.CheckConstraint("sender IN ('user', 'character')", name="ck_messages_sender"),
    )
    op.create_index(
        "ix_messages_conversation_created", "messages", ["conversation_id", "created_at"]
    )
    op.create_index(
        "ix_messages_conversation_replies_to", "messages", ["conversation_id", "replies_to"]
    )


def downgrade() -> None:
    op.drop_index("ix_messages_conversation_replies_to", table_name="messages")
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_user_id", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("characters")
