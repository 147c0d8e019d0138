"""Database module for Relay.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from relay.db.engine import create_db_engine, get_engine
from relay.db.models import (
    Base,
    Character,
    Conversation,
    Message,
    Sender,
)
from relay.db.session import get_db, session_scope, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "session_scope",
    "transaction",
    # Base
    "Base",
    # Enums
    "Sender",
    # Models
    "Character",
    "Conversation",
    "Message",
]
