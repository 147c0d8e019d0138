"""Tests for the generate_reply job body.

Jobs are run with run_generate_reply() and a GenerationPipeline over a
ScriptedRouter, so no Celery worker or provider is involved. Each test
checks that the conversation is released (or deliberately not released)
when the job ends.
"""

import random

import pytest

from relay.services import admission
from relay.services import conversation_store as store
from relay.services.conversation_state import get_state_machine
from relay.services.generation import GenerationPipeline
from relay.services.usage import get_usage_tracker
from relay.tasks.generate_reply import (
    APOLOGY_REPLIES,
    LOW_PRIORITY_QUEUE,
    response_marker_key,
    run_generate_reply,
)
from tests.helpers import ScriptedRouter, fail, make_envelope, ok

CID = "u1_c1"
GOOD = "Comets are my favourite, honestly!"


class FixedRandom(random.Random):
    """random() always returns the same value."""

    def __init__(self, value: float):
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


NO_ACK = FixedRandom(0.99)


class ExplodingPipeline:
    async def generate(self, *args, **kwargs):
        raise RuntimeError("bug in generation")


@pytest.fixture
def job(db_session, services, character, notifier, mock_dispatch):
    """Admit messages and return the job kwargs submitted for each."""

    def admit(*message_ids: str, **extra) -> None:
        for i, mid in enumerate(message_ids):
            admission.admit(db_session, CID, make_envelope(mid, offset_s=i, **extra))

    def kwargs_for(message_id: str) -> dict:
        for call in mock_dispatch.call_args_list:
            submitted = call.kwargs["kwargs"]
            if submitted["envelope"]["message_id"] == message_id:
                return submitted
        raise AssertionError(f"no job submitted for {message_id}")

    def run(message_id: str, router: ScriptedRouter | None = None, **kwargs) -> dict:
        submitted = kwargs_for(message_id)
        kwargs.setdefault("rng", NO_ACK)
        if router is not None:
            kwargs.setdefault("pipeline", GenerationPipeline(router))
        return run_generate_reply(
            submitted["conversation_id"],
            submitted["envelope"],
            submitted["character"],
            **kwargs,
        )

    admit.kwargs_for = kwargs_for
    admit.run = run
    return admit


def load(session_factory, message_id: str):
    with session_factory() as db:
        return store.get_message(db, CID, message_id)


class TestHappyPath:
    def test_reply_persisted_and_conversation_released(self, job, session_factory, notifier):
        job("m1")
        router = ScriptedRouter(ok(GOOD))

        result = job.run("m1", router)

        assert result["status"] == "completed"
        assert result["reply_id"] == "ai_m1"
        assert result["fallback_used"] is False

        reply = load(session_factory, "ai_m1")
        assert reply.sender == "character"
        assert reply.content == GOOD
        assert reply.replies_to == "m1"
        assert reply.ai_metadata["provider"] == "deepseek"
        assert load(session_factory, "m1").has_ai_response is True

        assert get_state_machine().get_status(CID).phase == "IDLE"
        event = notifier.payloads("message:ai_response")[0]
        assert event["replies_to"] == "m1"
        assert event["message"]["content"] == GOOD

    def test_prompt_has_system_first_and_message_last(self, job):
        job("m1")
        router = ScriptedRouter(ok(GOOD))

        job.run("m1", router)

        request = router.calls[0][1]
        assert request.messages[0].role == "system"
        assert request.messages[-1].content == "hello m1"

    def test_token_usage_recorded(self, job):
        job("m1")

        job.run("m1", ScriptedRouter(ok(GOOD, 20, 7)))

        usage = get_usage_tracker().get_token_usage("u1")
        assert usage == {"prompt": 20, "completion": 7, "total": 27, "requests": 1}

    def test_queue_drains_in_order(self, job, mock_dispatch, session_factory):
        job("m1", "m2", "m3")

        job.run("m1", ScriptedRouter(ok(GOOD)))
        job.run("m2", ScriptedRouter(ok(GOOD)))
        job.run("m3", ScriptedRouter(ok(GOOD)))

        submitted = [
            c.kwargs["kwargs"]["envelope"]["message_id"] for c in mock_dispatch.call_args_list
        ]
        assert submitted == ["m1", "m2", "m3"]
        assert all(load(session_factory, f"ai_m{i}") is not None for i in (1, 2, 3))
        assert get_state_machine().get_status(CID).phase == "IDLE"

    def test_second_reply_sees_first_exchange(self, job):
        job("m1", "m2")
        job.run("m1", ScriptedRouter(ok(GOOD)))
        router = ScriptedRouter(ok("Me too, they are magical!"))

        job.run("m2", router)

        roles = [t.role for t in router.calls[0][1].messages]
        assert roles == ["system", "user", "assistant", "user"]


class TestIdempotency:
    def test_redelivery_after_reply_does_not_call_provider(self, job):
        job("m1")
        job.run("m1", ScriptedRouter(ok(GOOD)))
        router = ScriptedRouter()

        result = job.run("m1", router)

        assert result == {"status": "duplicate", "reason": "reply_exists"}
        assert router.calls == []

    def test_in_flight_duplicate_leaves_conversation_alone(self, job, services):
        job("m1", "m2")
        services.set(response_marker_key(CID, "m1"), "1")
        router = ScriptedRouter()

        result = job.run("m1", router)

        assert result == {"status": "duplicate", "reason": "in_flight"}
        assert router.calls == []
        assert get_state_machine().get_status(CID).active_message_id == "m1"

    def test_marker_set_while_generating(self, job, services):
        job("m1")

        job.run("m1", ScriptedRouter(ok(GOOD)))

        assert services.get(response_marker_key(CID, "m1")) == "1"


class TestProviderFailure:
    def test_error_marker_and_no_reply(self, job, session_factory, notifier, services):
        job("m1")

        result = job.run("m1", ScriptedRouter(fail(), fail()))

        assert result["status"] == "provider_failure"
        message = load(session_factory, "m1")
        assert message.error_kind == "llm_failure"
        assert message.has_ai_response is False
        assert load(session_factory, "ai_m1") is None
        assert notifier.payloads("message:llm_error")[0]["retryable"] is True
        assert services.get(response_marker_key(CID, "m1")) is None

    def test_failure_does_not_block_next_message(self, job, mock_dispatch):
        job("m1", "m2")

        job.run("m1", ScriptedRouter(fail(), fail()))

        assert get_state_machine().get_status(CID).active_message_id == "m2"
        assert mock_dispatch.call_args.kwargs["kwargs"]["envelope"]["message_id"] == "m2"

    def test_failed_message_excluded_from_next_context(self, job):
        job("m1", "m2")
        job.run("m1", ScriptedRouter(fail(), fail()))
        router = ScriptedRouter(ok(GOOD))

        job.run("m2", router)

        contents = [t.content for t in router.calls[0][1].messages]
        assert "hello m1" not in contents
        assert contents[-1] == "hello m2"

    def test_failed_message_can_be_retried(self, job, db_session, session_factory):
        job("m1")
        job.run("m1", ScriptedRouter(fail(), fail()))

        admission.retry_failed_message(db_session, CID, "m1")
        result = job.run("m1", ScriptedRouter(ok(GOOD)))

        assert result["status"] == "completed"
        assert load(session_factory, "m1").failed is False


class TestUnexpectedErrors:
    def test_apology_reply_and_release(self, job, session_factory):
        job("m1", "m2")

        result = job.run("m1", pipeline=ExplodingPipeline(), rng=FixedRandom(0.0))

        assert result["status"] == "fallback_reply"
        reply = load(session_factory, "ai_m1")
        assert reply.content in APOLOGY_REPLIES
        assert reply.ai_metadata["fallback_reply"] is True
        assert load(session_factory, "m1").has_ai_response is True
        assert get_state_machine().get_status(CID).active_message_id == "m2"

    def test_missing_message_skipped_and_released(self, job):
        job("m1")
        submitted = job.kwargs_for("m1")
        envelope = dict(submitted["envelope"], message_id="ghost")
        get_state_machine().force_reset(CID)
        get_state_machine().try_admit(CID, make_envelope("ghost"))

        result = run_generate_reply(CID, envelope, submitted["character"], rng=NO_ACK)

        assert result == {"status": "skipped", "reason": "message_not_found"}
        assert get_state_machine().get_status(CID).phase == "IDLE"


class TestAcknowledgement:
    def test_scheduled_on_low_priority_queue(self, job, mock_ack_dispatch):
        job("m1")

        job.run("m1", ScriptedRouter(ok(GOOD)), rng=FixedRandom(0.1))

        mock_ack_dispatch.assert_called_once()
        call = mock_ack_dispatch.call_args
        assert call.kwargs["queue"] == LOW_PRIORITY_QUEUE
        assert 1.0 <= call.kwargs["countdown"] <= 3.0
        assert call.kwargs["kwargs"]["message_id"] == "m1"
        assert call.kwargs["kwargs"]["character_id"] == "c1"

    def test_not_scheduled_above_probability(self, job, mock_ack_dispatch):
        job("m1")

        job.run("m1", ScriptedRouter(ok(GOOD)), rng=FixedRandom(0.9))

        mock_ack_dispatch.assert_not_called()

    def test_schedule_failure_does_not_fail_job(self, job, mock_ack_dispatch):
        job("m1")
        mock_ack_dispatch.side_effect = RuntimeError("broker down")

        result = job.run("m1", ScriptedRouter(ok(GOOD)), rng=FixedRandom(0.1))

        assert result["status"] == "completed"
