"""Quality-controlled reply generation.

One call to GenerationPipeline.generate() is one generation episode:

1. Ask the primary provider. On any LLMError ask the fallback provider
   once. If neither produces text, the episode ends with a ProviderFailure.
2. Strip reasoning artifacts (clean_ai_response).
3. Score the text (assess_quality).
4. Acceptable → accept (truncated to max_reply_chars if too long).
   Otherwise, while attempts remain, retry with the next brevity prompt.
5. Out of attempts → accept the best candidate, smart-truncated.
6. Run the content filter; a blocked reply becomes the category safe message.

The result is a tagged value: GeneratedReply or ProviderFailure. Only
unexpected bugs escape as exceptions.

Two independent retry budgets:
- quality: max_attempts total generations (default 2)
- transport: one fallback call per generation
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from relay.logging import get_logger
from relay.services.cleanup import clean_ai_response
from relay.services.content_filter import filter_content, safe_message_for
from relay.services.llm.errors import LLMError
from relay.services.llm.prompt import apply_brevity_instruction
from relay.services.llm.router import LLMRouter
from relay.services.llm.types import LLMCallContext, LLMRequest, LLMUsage, Turn
from relay.services.quality import (
    MAX_REPLY_CHARS,
    QualityAssessment,
    assess_quality,
    smart_truncate,
)
from relay.services.redact import safe_kv

logger = get_logger(__name__)

BREVITY_PROMPTS = (
    "Respond in 1 short sentence only. Be natural and conversational.",
    "Keep response under 20 words. Be brief, human-like, and complete your thought.",
    "One quick, natural reply. Maximum 15 words. End with proper punctuation.",
)

LLM_FAILURE = "llm_failure"


@dataclass(frozen=True)
class GenerationSettings:
    """Provider and quality parameters for one episode."""

    primary_provider: str
    primary_model: str
    fallback_provider: str | None = None
    fallback_model: str | None = None
    temperature: float | None = 1.3
    max_tokens: int = 500
    timeout_s: int = 45
    max_attempts: int = 2
    max_reply_chars: int = MAX_REPLY_CHARS

    @classmethod
    def from_settings(cls, settings, ai_settings: dict | None = None) -> "GenerationSettings":
        """Build from app settings, applying per-character overrides.

        Characters may override temperature, max_tokens and model.
        """
        overrides = ai_settings or {}
        fallback = settings.fallback_provider or None
        primary = settings.primary_provider
        return cls(
            primary_provider=primary,
            primary_model=overrides.get("model") or settings.provider_model(primary),
            fallback_provider=fallback,
            fallback_model=settings.provider_model(fallback) if fallback else None,
            temperature=overrides.get("temperature", settings.llm_temperature),
            max_tokens=int(overrides.get("max_tokens", settings.llm_max_tokens)),
            timeout_s=settings.llm_timeout_s,
            max_attempts=max(1, settings.max_quality_attempts),
            max_reply_chars=settings.max_reply_chars,
        )


@dataclass(frozen=True)
class ProviderFailure:
    """Structured failure: no configured provider produced a reply.

    Distinct from ordinary exceptions so the consumer can persist an error
    marker instead of inventing a reply.
    """

    cause: str
    attempts: int
    error_class: str | None = None
    providers_tried: tuple[str, ...] = ()
    error_kind: str = LLM_FAILURE
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    is_provider_failure = True

    def as_dict(self) -> dict:
        return {
            "error_kind": self.error_kind,
            "error_class": self.error_class,
            "cause": self.cause,
            "attempts": self.attempts,
            "providers_tried": list(self.providers_tried),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ReplyMetadata:
    provider: str
    model: str
    fallback_used: bool
    attempts: int
    truncated: bool
    filtered: bool
    filter_reason: str | None
    quality: dict
    usage: dict

    @property
    def retry_count(self) -> int:
        return self.attempts - 1

    def as_dict(self) -> dict:
        return {
            "provider": self.provider,
            "model": self.model,
            "fallback_used": self.fallback_used,
            "attempts": self.attempts,
            "retry_count": self.retry_count,
            "truncated": self.truncated,
            "filtered": self.filtered,
            "filter_reason": self.filter_reason,
            "quality": self.quality,
            "usage": self.usage,
        }


@dataclass(frozen=True)
class GeneratedReply:
    content: str
    metadata: ReplyMetadata
    modality: str = "text"


GenerationResult = GeneratedReply | ProviderFailure


@dataclass
class _Completion:
    text: str
    provider: str
    model: str
    fallback_used: bool
    usage: LLMUsage | None


@dataclass
class _Candidate:
    text: str
    quality: QualityAssessment
    completion: _Completion
    attempt: int


def _sum_usage(usages: list[LLMUsage | None]) -> dict:
    totals = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    for usage in usages:
        if usage is None:
            continue
        for key, value in usage.as_dict().items():
            totals[key] += value
    return totals


class GenerationPipeline:
    """Provider orchestration with bounded quality retries."""

    def __init__(self, router: LLMRouter):
        self._router = router

    async def generate(
        self,
        messages: list[Turn],
        settings: GenerationSettings,
        character: dict | None = None,
        *,
        conversation_id: str | None = None,
        message_id: str | None = None,
    ) -> GenerationResult:
        """Run one generation episode and return a tagged result."""
        character_id = (character or {}).get("id")
        usages: list[LLMUsage | None] = []
        best: _Candidate | None = None
        last: _Candidate | None = None
        attempts_made = 0

        for attempt in range(1, settings.max_attempts + 1):
            prompt = messages
            if attempt > 1:
                instruction = BREVITY_PROMPTS[min(attempt - 2, len(BREVITY_PROMPTS) - 1)]
                prompt = apply_brevity_instruction(messages, instruction)
                logger.info(
                    "generation.quality_retry",
                    attempt=attempt,
                    brevity_level=attempt - 1,
                    previous_reason=last.quality.reason if last else None,
                )

            attempts_made = attempt
            ctx = LLMCallContext(
                conversation_id=conversation_id, message_id=message_id, attempt=attempt
            )
            completion = await self._complete(prompt, settings, attempt, ctx)

            if isinstance(completion, ProviderFailure):
                if best is None:
                    logger.error(
                        "generation.provider_failure",
                        attempts=attempt,
                        error_class=completion.error_class,
                        character_id=character_id,
                    )
                    return completion
                # A later retry failing at the transport level still leaves an earlier candidate
                logger.warning(
                    "generation.retry_failed_using_candidate",
                    attempt=attempt,
                    error_class=completion.error_class,
                )
                break

            usages.append(completion.usage)
            cleaned = clean_ai_response(completion.text)
            quality = assess_quality(cleaned, settings.max_reply_chars)
            last = _Candidate(text=cleaned, quality=quality, completion=completion, attempt=attempt)
            if best is None or quality.score >= best.quality.score:
                best = last

            logger.info(
                "generation.attempt",
                **safe_kv(
                    attempt=attempt,
                    provider=completion.provider,
                    fallback_used=completion.fallback_used,
                    quality_score=round(quality.score, 3),
                    quality_reason=quality.reason,
                    acceptable=quality.acceptable,
                    reply_chars=len(cleaned),
                ),
            )

            if quality.acceptable:
                text = cleaned
                truncated = False
                if quality.is_too_long:
                    text = smart_truncate(cleaned, settings.max_reply_chars)
                    truncated = text != cleaned
                return self._finish(text, last, truncated, usages, attempts=attempt)

        assert best is not None
        text = smart_truncate(best.text, settings.max_reply_chars)
        logger.warning(
            "generation.attempts_exhausted",
            attempts=attempts_made,
            best_attempt=best.attempt,
            quality_reason=best.quality.reason,
        )
        return self._finish(text, best, text != best.text, usages, attempts=attempts_made)

    async def _complete(
        self,
        messages: list[Turn],
        settings: GenerationSettings,
        attempt: int,
        ctx: LLMCallContext,
    ) -> _Completion | ProviderFailure:
        """Primary provider, then exactly one fallback call."""
        request = LLMRequest(
            model_name=settings.primary_model,
            messages=messages,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )
        tried = [settings.primary_provider]

        try:
            response = await self._router.generate(
                settings.primary_provider, request, timeout_s=settings.timeout_s, call_context=ctx
            )
            return _Completion(
                text=response.text,
                provider=settings.primary_provider,
                model=settings.primary_model,
                fallback_used=False,
                usage=response.usage,
            )
        except LLMError as primary_error:
            last_error = primary_error

        fallback = settings.fallback_provider
        if fallback and self._router.is_provider_available(fallback):
            logger.warning(
                "generation.fallback",
                primary_provider=settings.primary_provider,
                fallback_provider=fallback,
                error_class=last_error.error_class.value,
            )
            tried.append(fallback)
            fallback_model = settings.fallback_model or settings.primary_model
            try:
                response = await self._router.generate(
                    fallback,
                    request.with_model(fallback_model),
                    timeout_s=settings.timeout_s,
                    call_context=ctx,
                )
                return _Completion(
                    text=response.text,
                    provider=fallback,
                    model=fallback_model,
                    fallback_used=True,
                    usage=response.usage,
                )
            except LLMError as fallback_error:
                last_error = fallback_error

        return ProviderFailure(
            cause=last_error.message,
            attempts=attempt,
            error_class=last_error.error_class.value,
            providers_tried=tuple(tried),
        )

    def _finish(
        self,
        text: str,
        candidate: _Candidate,
        truncated: bool,
        usages: list[LLMUsage | None],
        *,
        attempts: int,
    ) -> GeneratedReply:
        try:
            verdict = filter_content(text)
            filter_reason = verdict.reason if verdict.blocked else None
            if verdict.blocked:
                text = safe_message_for(verdict.reason, verdict.category)
        except Exception:
            logger.exception("content_filter_failed")
            filter_reason = "filter_error"
            text = safe_message_for(filter_reason)

        completion = candidate.completion
        metadata = ReplyMetadata(
            provider=completion.provider,
            model=completion.model,
            fallback_used=completion.fallback_used,
            attempts=attempts,
            truncated=truncated,
            filtered=filter_reason is not None,
            filter_reason=filter_reason,
            quality=candidate.quality.as_dict(),
            usage=_sum_usage(usages),
        )

        logger.info(
            "generation.accepted",
            **safe_kv(
                provider=metadata.provider,
                fallback_used=metadata.fallback_used,
                attempts=attempts,
                truncated=truncated,
                filtered=metadata.filtered,
                reply_chars=len(text),
            ),
        )
        return GeneratedReply(content=text, metadata=metadata)
