"""Tests for conversation and message persistence and context building."""

from datetime import timedelta

import pytest

from relay.db.models import Conversation
from relay.db.session import transaction
from relay.errors import ApiError, ApiErrorCode
from relay.services import conversation_store as store
from tests.helpers import BASE_TIME

CID = "u1_c1"


def at(seconds: float):
    return BASE_TIME + timedelta(seconds=seconds)


@pytest.fixture
def conversation(db_session, character) -> Conversation:
    with transaction(db_session):
        return store.get_or_create_conversation(
            db_session, CID, user_id="u1", character_id="c1"
        )


def add_user(db, mid: str, seconds: float, content: str | None = None, **kwargs):
    with transaction(db):
        message, _ = store.append_message(
            db,
            CID,
            message_id=mid,
            sender="user",
            created_at=at(seconds),
            content=content if content is not None else f"user {mid}",
            **kwargs,
        )
    return message


def add_reply(db, to: str, seconds: float, content: str | None = None):
    with transaction(db):
        message, _ = store.append_message(
            db,
            CID,
            message_id=f"ai_{to}",
            sender="character",
            created_at=at(seconds),
            content=content if content is not None else f"reply {to}",
            replies_to=to,
        )
        store.mark_answered(db, CID, to)
    return message


class TestConversations:
    def test_conversation_id_for(self):
        assert store.conversation_id_for("u1", "c1") == CID

    def test_created_on_first_use(self, db_session, conversation):
        assert conversation.user_id == "u1"
        assert conversation.character_id == "c1"
        assert conversation.is_premium is False

    def test_existing_conversation_returned(self, db_session, conversation):
        with transaction(db_session):
            again = store.get_or_create_conversation(
                db_session, CID, user_id="u1", character_id="c1", is_premium=True
            )

        assert again.id == conversation.id
        assert again.is_premium is True

    def test_mismatched_id_rejected(self, db_session, character):
        with pytest.raises(ApiError) as exc_info:
            store.get_or_create_conversation(
                db_session, "u2_c1", user_id="u1", character_id="c1"
            )

        assert exc_info.value.code == ApiErrorCode.E_CONVERSATION_MISMATCH

    def test_unknown_character(self, db_session, session_factory):
        with pytest.raises(ApiError) as exc_info:
            store.get_or_create_conversation(
                db_session, "u1_c9", user_id="u1", character_id="c9"
            )

        assert exc_info.value.code == ApiErrorCode.E_CHARACTER_NOT_FOUND

    def test_get_conversation_or_404(self, db_session, session_factory):
        with pytest.raises(ApiError) as exc_info:
            store.get_conversation_or_404(db_session, "nobody_c1")

        assert exc_info.value.status_code == 404


class TestMessages:
    def test_append_is_idempotent(self, db_session, conversation):
        first = add_user(db_session, "m1", 0, "original")

        with transaction(db_session):
            again, created = store.append_message(
                db_session,
                CID,
                message_id="m1",
                sender="user",
                created_at=at(99),
                content="changed",
            )

        assert created is False
        assert again is first
        assert again.content == "original"

    def test_update_rejects_unknown_fields(self, db_session, conversation):
        add_user(db_session, "m1", 0)

        with pytest.raises(ApiError) as exc_info:
            store.update_message_fields(db_session, CID, "m1", {"sender": "character"})

        assert exc_info.value.code == ApiErrorCode.E_INVALID_REQUEST

    def test_update_missing_message(self, db_session, conversation):
        with pytest.raises(ApiError) as exc_info:
            store.update_message_fields(db_session, CID, "nope", {"content": "x"})

        assert exc_info.value.code == ApiErrorCode.E_MESSAGE_NOT_FOUND

    def test_mark_failed_and_clear(self, db_session, conversation):
        add_user(db_session, "m1", 0)

        with transaction(db_session):
            message = store.mark_failed(
                db_session, CID, "m1", error_kind="llm_failure", error_message="down"
            )
        assert message.failed is True
        assert message.error_at is not None

        with transaction(db_session):
            message = store.clear_error(db_session, CID, "m1")
        assert message.failed is False
        assert message.error_message is None

    def test_find_reply_to(self, db_session, conversation):
        add_user(db_session, "m1", 0)
        assert store.find_reply_to(db_session, CID, "m1") is None

        add_reply(db_session, "m1", 5)

        found = store.find_reply_to(db_session, CID, "m1")
        assert found is not None
        assert found.id == "ai_m1"

    def test_message_to_out(self, db_session, conversation):
        message = add_user(db_session, "m1", 0, "hello")

        out = store.message_to_out(message)

        assert out.id == "m1"
        assert out.conversation_id == CID
        assert out.sender == "user"
        assert out.content == "hello"


class TestRecentMessages:
    def test_oldest_first(self, db_session, conversation):
        add_user(db_session, "m1", 0)
        add_reply(db_session, "m1", 1)
        add_user(db_session, "m2", 2)

        ids = [m.id for m in store.get_recent_messages(db_session, CID)]

        assert ids == ["m1", "ai_m1", "m2"]

    def test_late_reply_threaded_after_its_message(self, db_session, conversation):
        add_user(db_session, "m1", 0)
        add_user(db_session, "m2", 1)
        # The reply to m1 was written after m2 arrived
        add_reply(db_session, "m1", 10)

        ids = [m.id for m in store.get_recent_messages(db_session, CID)]

        assert ids == ["m1", "ai_m1", "m2"]

    def test_failed_excluded_by_default(self, db_session, conversation):
        add_user(db_session, "m1", 0)
        add_user(db_session, "m2", 1)
        with transaction(db_session):
            store.mark_failed(db_session, CID, "m1", error_kind="llm_failure", error_message="x")

        assert [m.id for m in store.get_recent_messages(db_session, CID)] == ["m2"]
        assert [
            m.id for m in store.get_recent_messages(db_session, CID, include_failed=True)
        ] == ["m1", "m2"]

    def test_up_to_excludes_later_user_messages(self, db_session, conversation):
        add_user(db_session, "m1", 0)
        current = add_user(db_session, "m2", 1)
        add_user(db_session, "m3", 2)

        ids = [m.id for m in store.get_recent_messages(db_session, CID, up_to=current)]

        assert ids == ["m1", "m2"]

    def test_limit_keeps_most_recent(self, db_session, conversation):
        for i in range(5):
            add_user(db_session, f"m{i}", i)

        ids = [m.id for m in store.get_recent_messages(db_session, CID, limit=2)]

        assert ids == ["m3", "m4"]


class TestBuildContextTurns:
    def test_context_for_current_message(self, db_session, conversation, character):
        add_user(db_session, "m1", 0, "Hi Luna")
        add_reply(db_session, "m1", 1, "Hello there!")
        current = add_user(db_session, "m2", 2, "Seen any comets?")

        turns = store.build_context_turns(db_session, CID, current, character)

        assert [t.role for t in turns] == ["system", "user", "assistant", "user"]
        assert turns[0].content.startswith("You are Luna, a cheerful astronomer.")
        assert "Luna loves comets." in turns[0].content
        assert turns[-1].content == "Seen any comets?"

    def test_context_excludes_failed_and_queued(self, db_session, conversation, character):
        add_user(db_session, "m1", 0, "this failed")
        with transaction(db_session):
            store.mark_failed(db_session, CID, "m1", error_kind="llm_failure", error_message="x")
        current = add_user(db_session, "m2", 1, "Are you there?")
        add_user(db_session, "m3", 2, "still waiting in the queue")

        turns = store.build_context_turns(db_session, CID, current, character)

        assert len(turns) == 2
        assert turns[-1].content == "Are you there?"

    def test_unanswered_burst_is_merged(self, db_session, conversation, character):
        add_user(db_session, "m1", 0, "hey")
        add_user(db_session, "m2", 1, "you there?")
        current = add_user(db_session, "m3", 2, "hello??")

        turns = store.build_context_turns(db_session, CID, current, character)

        assert len(turns) == 2
        assert turns[1].content == "1. hey\n\n2. you there?\n\n3. hello??"
