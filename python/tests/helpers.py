"""Test helpers shared across Relay tests.

Provides:
- make_envelope(): inbound user messages with sensible defaults
- FakeClock: controllable time source for the state machine
- ScriptedRouter: an LLM router that replays canned outcomes
- RecordingNotifier: captures conversation events
"""

from collections import deque
from datetime import UTC, datetime, timedelta

from relay.services.conversation_state import MessageEnvelope
from relay.services.generation import GenerationSettings
from relay.services.llm.errors import LLMError, LLMErrorClass
from relay.services.llm.types import LLMResponse, LLMUsage
from relay.services.notifications import Notifier

BASE_TIME = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def make_envelope(
    message_id: str,
    *,
    user_id: str = "u1",
    character_id: str = "c1",
    content: str | None = None,
    offset_s: float = 0,
    **extra,
) -> MessageEnvelope:
    """User message received offset_s seconds after BASE_TIME."""
    return MessageEnvelope(
        message_id=message_id,
        user_id=user_id,
        character_id=character_id,
        received_at=BASE_TIME + timedelta(seconds=offset_s),
        content=content if content is not None else f"hello {message_id}",
        **extra,
    )


class FakeClock:
    """Callable returning a settable epoch time."""

    def __init__(self, now: float = 1_800_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ok(text: str, prompt_tokens: int = 10, completion_tokens: int = 5) -> LLMResponse:
    return LLMResponse(
        text=text,
        usage=LLMUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
        provider_request_id="req-test",
    )


def fail(error_class: LLMErrorClass = LLMErrorClass.PROVIDER_DOWN) -> LLMError:
    return LLMError(error_class, f"simulated {error_class.value}")


class ScriptedRouter:
    """Replays one outcome per generate() call; records every call.

    Outcomes are LLMResponse objects or LLMError instances (raised).
    """

    def __init__(self, *outcomes, available: tuple[str, ...] = ("deepseek", "together")):
        self._outcomes = deque(outcomes)
        self._available = set(available)
        self.calls: list[tuple[str, object]] = []

    def is_provider_available(self, provider: str) -> bool:
        return provider in self._available

    async def generate(self, provider, req, *, timeout_s=45, call_context=None):
        self.calls.append((provider, req))
        if not self._outcomes:
            raise AssertionError("ScriptedRouter ran out of outcomes")
        outcome = self._outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def providers_called(self) -> list[str]:
        return [provider for provider, _ in self.calls]


def generation_settings(**overrides) -> GenerationSettings:
    values = {
        "primary_provider": "deepseek",
        "primary_model": "deepseek-reasoner",
        "fallback_provider": "together",
        "fallback_model": "meta-llama/Llama-3.3-70B-Instruct-Turbo",
    }
    values.update(overrides)
    return GenerationSettings(**values)


class RecordingNotifier(Notifier):
    """Notifier that keeps every event instead of publishing it."""

    def __init__(self):
        super().__init__(redis_client=None)
        self.events: list[tuple[str, str, dict]] = []

    def publish(self, conversation_id: str, event: str, payload: dict) -> bool:
        self.events.append((conversation_id, event, payload))
        return True

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]

    def payloads(self, event: str) -> list[dict]:
        return [payload for _, name, payload in self.events if name == event]
