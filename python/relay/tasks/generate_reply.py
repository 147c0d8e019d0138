"""Celery task turning an admitted user message into a character reply.

This task:
1. Short-circuits duplicates (persisted reply or in-flight marker)
2. Builds the prompt from recent conversation history
3. Runs the generation pipeline (quality retries + provider fallback)
4. Persists the outcome:
   - reply: stored with replies_to, origin marked answered, usage recorded,
     message:ai_response published, maybe an acknowledgement task
   - ProviderFailure: error marker on the user message, message:llm_error,
     no reply is fabricated
   - unexpected error: a generic apologetic reply so the user sees progress
5. Always releases the conversation (advance + dispatch next) in finally

Delivery:
- acks_late=True, max_retries=0. Retries happen inside the pipeline;
  redelivery after a worker crash is absorbed by the idempotency checks.
"""

import asyncio
import random
from datetime import UTC, datetime

import httpx
from sqlalchemy.orm import Session

from relay.celery import celery_app
from relay.config import get_settings
from relay.db.models import Sender
from relay.db.session import get_session_factory, transaction
from relay.logging import (
    clear_task_context,
    configure_task_logging,
    get_logger,
    set_conversation_context,
)
from relay.services import conversation_store as store
from relay.services.admission import (
    clear_response_marker,
    on_generation_complete,
    response_marker_key,
)
from relay.services.conversation_state import MessageEnvelope
from relay.services.generation import (
    GeneratedReply,
    GenerationPipeline,
    GenerationResult,
    GenerationSettings,
    ProviderFailure,
)
from relay.services.llm.router import LLMRouter
from relay.services.llm.types import Turn
from relay.services.notifications import MESSAGE_AI_RESPONSE, MESSAGE_LLM_ERROR, get_notifier
from relay.services.redact import safe_kv
from relay.services.redis_client import get_redis
from relay.services.usage import get_usage_tracker

logger = get_logger(__name__)

APOLOGY_REPLIES = (
    "Sorry, I got a little distracted there. What were you saying? 😅",
    "Oops, my mind wandered for a second. Could you say that again?",
    "Hmm, I lost my train of thought. Tell me more? 🤔",
    "Sorry, I'm a bit scattered right now. What did you mean?",
)

LOW_PRIORITY_QUEUE = "low_priority"


def reply_id_for(message_id: str) -> str:
    """Deterministic id of the reply to a user message."""
    return f"ai_{message_id}"


@celery_app.task(bind=True, max_retries=0, acks_late=True, name="generate_reply")
def generate_reply(
    self,
    conversation_id: str,
    envelope: dict,
    character: dict,
    request_id: str | None = None,
) -> dict:
    """Generate and persist the reply to one user message.

    Args:
        conversation_id: "{user_id}_{character_id}".
        envelope: MessageEnvelope.to_dict() of the active message.
        character: Character profile (id, name, system_prompt, ai_settings).
        request_id: Optional request ID for log correlation.
    """
    configure_task_logging(
        request_id=request_id, task_name="generate_reply", task_id=self.request.id
    )
    set_conversation_context(conversation_id, envelope.get("user_id"))
    try:
        return run_generate_reply(conversation_id, envelope, character, request_id=request_id)
    finally:
        clear_task_context()


def run_generate_reply(
    conversation_id: str,
    envelope: dict,
    character: dict,
    *,
    request_id: str | None = None,
    pipeline: GenerationPipeline | None = None,
    rng: random.Random | None = None,
) -> dict:
    """Task body, callable without a Celery worker.

    The conversation is advanced exactly once per call, whatever happens
    during generation. The only exception is a duplicate delivery that finds
    another worker still generating: that worker owns the release.
    """
    message = MessageEnvelope.from_dict(envelope)
    rng = rng or random.Random()

    logger.info(
        "generate_reply.started",
        **safe_kv(conversation_id=conversation_id, message_type=message.type),
    )

    db = get_session_factory()()
    result: dict = {"status": "error"}
    try:
        try:
            result = _process(db, conversation_id, message, character, pipeline, rng, request_id)
        except Exception:
            logger.exception("generate_reply.unexpected_error", conversation_id=conversation_id)
            db.rollback()
            result = _persist_apology(db, conversation_id, message, rng)
        logger.info("generate_reply.finished", status=result["status"])
        return result
    finally:
        try:
            if result.get("reason") != "in_flight":
                on_generation_complete(
                    db, conversation_id, message.message_id, request_id=request_id
                )
        except Exception:
            # The stalled-conversation sweep releases it later
            logger.exception("generate_reply.advance_failed", conversation_id=conversation_id)
        db.close()


def _process(
    db: Session,
    conversation_id: str,
    envelope: MessageEnvelope,
    character: dict,
    pipeline: GenerationPipeline | None,
    rng: random.Random,
    request_id: str | None,
) -> dict:
    settings = get_settings()
    message_id = envelope.message_id

    # Step 1: idempotency
    if store.find_reply_to(db, conversation_id, message_id) is not None:
        logger.info("generate_reply.duplicate", reason="reply_exists")
        return {"status": "duplicate", "reason": "reply_exists"}

    redis_client = get_redis()
    marker = response_marker_key(conversation_id, message_id)
    if redis_client is not None and not redis_client.set(
        marker, "1", nx=True, ex=settings.response_marker_ttl_s
    ):
        logger.info("generate_reply.duplicate", reason="in_flight")
        return {"status": "duplicate", "reason": "in_flight"}

    user_message = store.get_message(db, conversation_id, message_id)
    if user_message is None:
        logger.warning("generate_reply.message_missing", conversation_id=conversation_id)
        clear_response_marker(conversation_id, message_id)
        return {"status": "skipped", "reason": "message_not_found"}

    # Step 2: prompt
    turns = store.build_context_turns(
        db,
        conversation_id,
        user_message,
        character,
        limit=settings.context_message_limit,
    )

    # Step 3: generation
    gen_settings = GenerationSettings.from_settings(settings, character.get("ai_settings"))
    outcome = asyncio.run(
        _generate(turns, gen_settings, character, conversation_id, message_id, pipeline)
    )

    # Step 4: persist
    if isinstance(outcome, ProviderFailure):
        return _record_provider_failure(db, conversation_id, envelope, outcome)

    return _persist_reply(db, conversation_id, envelope, character, outcome, rng, request_id)


async def _generate(
    turns: list[Turn],
    settings: GenerationSettings,
    character: dict,
    conversation_id: str,
    message_id: str,
    pipeline: GenerationPipeline | None,
) -> GenerationResult:
    if pipeline is not None:
        return await pipeline.generate(
            turns,
            settings,
            character,
            conversation_id=conversation_id,
            message_id=message_id,
        )

    async with httpx.AsyncClient() as client:
        router = LLMRouter.from_settings(client, get_settings())
        return await GenerationPipeline(router).generate(
            turns,
            settings,
            character,
            conversation_id=conversation_id,
            message_id=message_id,
        )


def _record_provider_failure(
    db: Session,
    conversation_id: str,
    envelope: MessageEnvelope,
    failure: ProviderFailure,
) -> dict:
    """Mark the user message failed; no reply is fabricated."""
    with transaction(db):
        store.mark_failed(
            db,
            conversation_id,
            envelope.message_id,
            error_kind=failure.error_kind,
            error_message=failure.cause,
            at=failure.timestamp,
        )

    # A manual retry must be able to run again
    clear_response_marker(conversation_id, envelope.message_id)

    get_notifier().publish(
        conversation_id,
        MESSAGE_LLM_ERROR,
        {
            "message_id": envelope.message_id,
            "temp_id": envelope.temp_id,
            "error_kind": failure.error_kind,
            "error_class": failure.error_class,
            "attempts": failure.attempts,
            "retryable": True,
        },
    )
    logger.error(
        "generate_reply.provider_failure",
        conversation_id=conversation_id,
        error_class=failure.error_class,
        attempts=failure.attempts,
        providers_tried=list(failure.providers_tried),
    )
    return {"status": "provider_failure", "error_kind": failure.error_kind}


def _persist_reply(
    db: Session,
    conversation_id: str,
    envelope: MessageEnvelope,
    character: dict,
    reply: GeneratedReply,
    rng: random.Random,
    request_id: str | None,
) -> dict:
    settings = get_settings()
    metadata = reply.metadata.as_dict()

    with transaction(db):
        stored, _ = store.append_message(
            db,
            conversation_id,
            message_id=reply_id_for(envelope.message_id),
            sender=Sender.character.value,
            created_at=datetime.now(UTC),
            type=reply.modality,
            content=reply.content,
            replies_to=envelope.message_id,
            ai_metadata=metadata,
        )
        store.mark_answered(db, conversation_id, envelope.message_id)

    get_usage_tracker().record_token_usage(envelope.user_id, metadata["usage"])

    get_notifier().publish(
        conversation_id,
        MESSAGE_AI_RESPONSE,
        {
            "message": store.message_to_out(stored).model_dump(mode="json"),
            "replies_to": envelope.message_id,
            "temp_id": envelope.temp_id,
        },
    )

    if rng.random() < settings.ack_probability:
        _schedule_acknowledgement(conversation_id, envelope, character, rng, request_id)

    logger.info(
        "generate_reply.reply_persisted",
        **safe_kv(
            conversation_id=conversation_id,
            reply_chars=len(reply.content),
            fallback_used=reply.metadata.fallback_used,
            filtered=reply.metadata.filtered,
            attempts=reply.metadata.attempts,
        ),
    )
    return {
        "status": "completed",
        "reply_id": stored.id,
        "fallback_used": reply.metadata.fallback_used,
        "filtered": reply.metadata.filtered,
    }


def _persist_apology(
    db: Session,
    conversation_id: str,
    envelope: MessageEnvelope,
    rng: random.Random,
) -> dict:
    """Unexpected failure: answer with a generic apology instead of nothing."""
    content = rng.choice(APOLOGY_REPLIES)
    try:
        with transaction(db):
            stored, _ = store.append_message(
                db,
                conversation_id,
                message_id=reply_id_for(envelope.message_id),
                sender=Sender.character.value,
                created_at=datetime.now(UTC),
                content=content,
                replies_to=envelope.message_id,
                ai_metadata={"fallback_reply": True, "reason": "unexpected_error"},
            )
            if store.get_message(db, conversation_id, envelope.message_id) is not None:
                store.mark_answered(db, conversation_id, envelope.message_id)
    except Exception:
        logger.exception("generate_reply.apology_failed", conversation_id=conversation_id)
        return {"status": "error"}

    get_notifier().publish(
        conversation_id,
        MESSAGE_AI_RESPONSE,
        {
            "message": store.message_to_out(stored).model_dump(mode="json"),
            "replies_to": envelope.message_id,
            "temp_id": envelope.temp_id,
        },
    )
    return {"status": "fallback_reply", "reply_id": stored.id}


def _schedule_acknowledgement(
    conversation_id: str,
    envelope: MessageEnvelope,
    character: dict,
    rng: random.Random,
    request_id: str | None,
) -> None:
    """Submit the "like" side effect. Never awaited, never fails the job."""
    settings = get_settings()
    countdown = rng.uniform(settings.ack_min_delay_s, settings.ack_max_delay_s)
    try:
        from relay.tasks import acknowledge_message

        acknowledge_message.apply_async(
            kwargs={
                "conversation_id": conversation_id,
                "message_id": envelope.message_id,
                "character_id": character.get("id") or envelope.character_id,
                "request_id": request_id,
            },
            queue=LOW_PRIORITY_QUEUE,
            countdown=countdown,
        )
        logger.info("acknowledgement_scheduled", countdown_s=round(countdown, 2))
    except Exception as e:
        logger.warning("acknowledgement_schedule_failed", error=str(e))

