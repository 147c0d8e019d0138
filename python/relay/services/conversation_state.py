"""Per-conversation coordination state.

At most one reply is generated per conversation at a time, and user messages
are answered in arrival order. State lives in Redis and is only mutated by
Lua scripts, so each transition is one atomic round trip.

Redis keys (all share STATE_TTL, refreshed on every mutation):
- conv_state:{cid}    hash: phase, active_message_id, processing_started_at
- conv_queue:{cid}    list of queued message ids, FIFO
- conv_pending:{cid}  hash: message id -> envelope JSON
- conv_queued_at:{cid} hash: message id -> time queued (epoch seconds)

Transitions:
- try_admit: IDLE -> PROCESSING(m), or append m to the queue
- advance:   PROCESSING(m) -> PROCESSING(next) | IDLE, skipping expired envelopes
- force_reset: anything -> IDLE, queue untouched

Invariant: phase == PROCESSING iff active_message_id is non-empty.
"""

import json
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import redis

from relay.config import get_settings
from relay.errors import ApiError, ApiErrorCode
from relay.logging import get_logger
from relay.services.redis_client import get_redis

logger = get_logger(__name__)

IDLE = "IDLE"
PROCESSING = "PROCESSING"

DEFAULT_MAX_QUEUE_SIZE = 10
DEFAULT_MESSAGE_TTL_S = 300
DEFAULT_STATE_TTL_S = 3600

STATE_PREFIX = "conv_state:"


def state_key(conversation_id: str) -> str:
    return f"{STATE_PREFIX}{conversation_id}"


def _keys(conversation_id: str) -> list[str]:
    return [
        state_key(conversation_id),
        f"conv_queue:{conversation_id}",
        f"conv_pending:{conversation_id}",
        f"conv_queued_at:{conversation_id}",
    ]


# KEYS: state, queue, pending, queued_at
# ARGV: message_id, envelope_json, max_queue_size, now, state_ttl
TRY_ADMIT_LUA = """
local phase = redis.call('HGET', KEYS[1], 'phase')
local active = redis.call('HGET', KEYS[1], 'active_message_id')
local ttl = tonumber(ARGV[5])

if phase ~= 'PROCESSING' or not active or active == '' then
  redis.call('HSET', KEYS[1], 'phase', 'PROCESSING', 'active_message_id', ARGV[1],
             'processing_started_at', ARGV[4])
  for i = 1, 4 do redis.call('EXPIRE', KEYS[i], ttl) end
  return {'admitted', 0}
end

if active == ARGV[1] then
  return {'duplicate', 0}
end

if redis.call('HEXISTS', KEYS[3], ARGV[1]) == 1 then
  local ids = redis.call('LRANGE', KEYS[2], 0, -1)
  for i, id in ipairs(ids) do
    if id == ARGV[1] then return {'duplicate', i} end
  end
end

local length = redis.call('LLEN', KEYS[2])
if length >= tonumber(ARGV[3]) then
  return {'full', length}
end

local position = redis.call('RPUSH', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[3], ARGV[1], ARGV[2])
redis.call('HSET', KEYS[4], ARGV[1], ARGV[4])
for i = 1, 4 do redis.call('EXPIRE', KEYS[i], ttl) end
return {'queued', position}
"""

# KEYS: state, queue, pending, queued_at
# ARGV: now, message_ttl, state_ttl, expected_active ('' = any)
# Returns: {status, next_envelope_or_empty, expired_envelope...}
ADVANCE_LUA = """
local active = redis.call('HGET', KEYS[1], 'active_message_id') or ''
if ARGV[4] ~= '' and active ~= ARGV[4] then
  return {'stale', active}
end

local now = tonumber(ARGV[1])
local message_ttl = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])
local result = {'idle', ''}

while true do
  local id = redis.call('LPOP', KEYS[2])
  if not id then
    redis.call('HSET', KEYS[1], 'phase', 'IDLE', 'active_message_id', '',
               'processing_started_at', '')
    break
  end
  local envelope = redis.call('HGET', KEYS[3], id)
  local queued_at = tonumber(redis.call('HGET', KEYS[4], id) or '0') or 0
  redis.call('HDEL', KEYS[3], id)
  redis.call('HDEL', KEYS[4], id)
  if envelope then
    if message_ttl > 0 and (now - queued_at) > message_ttl then
      table.insert(result, envelope)
    else
      redis.call('HSET', KEYS[1], 'phase', 'PROCESSING', 'active_message_id', id,
                 'processing_started_at', ARGV[1])
      result[1] = 'next'
      result[2] = envelope
      break
    end
  end
end

for i = 1, 4 do
  if redis.call('EXISTS', KEYS[i]) == 1 then redis.call('EXPIRE', KEYS[i], ttl) end
end
return result
"""

# KEYS: state
# ARGV: state_ttl
FORCE_RESET_LUA = """
local previous = redis.call('HGET', KEYS[1], 'active_message_id') or ''
redis.call('HSET', KEYS[1], 'phase', 'IDLE', 'active_message_id', '',
           'processing_started_at', '')
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
return previous
"""


# =============================================================================
# Types
# =============================================================================


@dataclass(frozen=True)
class MessageEnvelope:
    """An inbound user message as it travels through admission and the queue."""

    message_id: str
    user_id: str
    character_id: str
    received_at: datetime
    type: str = "text"
    content: str = ""
    payload: dict[str, Any] | None = None
    sender: str = "user"
    queued_at: datetime | None = None
    temp_id: str | None = None
    is_premium: bool = False

    @property
    def conversation_id(self) -> str:
        return f"{self.user_id}_{self.character_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "user_id": self.user_id,
            "character_id": self.character_id,
            "received_at": self.received_at.isoformat(),
            "type": self.type,
            "content": self.content,
            "payload": self.payload,
            "sender": self.sender,
            "queued_at": self.queued_at.isoformat() if self.queued_at else None,
            "temp_id": self.temp_id,
            "is_premium": self.is_premium,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageEnvelope":
        queued_at = data.get("queued_at")
        return cls(
            message_id=data["message_id"],
            user_id=data["user_id"],
            character_id=data["character_id"],
            received_at=datetime.fromisoformat(data["received_at"]),
            type=data.get("type") or "text",
            content=data.get("content") or "",
            payload=data.get("payload"),
            sender=data.get("sender") or "user",
            queued_at=datetime.fromisoformat(queued_at) if queued_at else None,
            temp_id=data.get("temp_id"),
            is_premium=bool(data.get("is_premium", False)),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "MessageEnvelope":
        return cls.from_dict(json.loads(raw))


@dataclass(frozen=True)
class Admitted:
    """The message became active; the caller must submit its job."""


@dataclass(frozen=True)
class Queued:
    """The message waits behind the active one. position is 1-based."""

    position: int


@dataclass(frozen=True)
class Duplicate:
    """The message is already active (position 0) or already queued."""

    position: int


Admission = Admitted | Queued | Duplicate


@dataclass(frozen=True)
class AdvanceResult:
    next: MessageEnvelope | None = None
    expired: list[MessageEnvelope] = field(default_factory=list)
    stale: bool = False


@dataclass(frozen=True)
class ConversationStatus:
    conversation_id: str
    phase: str
    active_message_id: str | None
    processing_age_s: float | None
    queue_length: int
    queued_message_ids: list[str]

    def as_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "phase": self.phase,
            "active_message_id": self.active_message_id,
            "processing_age_s": self.processing_age_s,
            "queue_length": self.queue_length,
            "queued_message_ids": list(self.queued_message_ids),
        }


@contextmanager
def _coordination() -> Iterator[None]:
    """Map Redis failures to a 503; ordering cannot be guaranteed without the store."""
    try:
        yield
    except redis.RedisError as e:
        logger.error("conversation_state.redis_error", error=str(e))
        raise ApiError(
            ApiErrorCode.E_COORDINATION_UNAVAILABLE,
            "Conversation coordination unavailable",
        ) from e


# =============================================================================
# State machine
# =============================================================================


class ConversationStateMachine:
    """Atomic per-conversation admission and advancement."""

    def __init__(
        self,
        redis_client: redis.Redis,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        message_ttl_s: int = DEFAULT_MESSAGE_TTL_S,
        state_ttl_s: int = DEFAULT_STATE_TTL_S,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis_client
        self._clock = clock
        self._max_queue_size = max_queue_size
        self._message_ttl_s = message_ttl_s
        self._state_ttl_s = state_ttl_s
        self._try_admit = redis_client.register_script(TRY_ADMIT_LUA)
        self._advance = redis_client.register_script(ADVANCE_LUA)
        self._force_reset = redis_client.register_script(FORCE_RESET_LUA)

    @classmethod
    def from_settings(cls, redis_client: redis.Redis, settings) -> "ConversationStateMachine":
        return cls(
            redis_client,
            max_queue_size=settings.max_queue_size,
            message_ttl_s=settings.message_ttl_s,
            state_ttl_s=settings.state_ttl_s,
        )

    def try_admit(self, conversation_id: str, envelope: MessageEnvelope) -> Admission:
        """Make the message active if the conversation is idle, else queue it.

        Raises:
            ApiError(E_QUEUE_FULL): If max_queue_size messages already wait.
                Nothing is mutated in that case.
            ApiError(E_COORDINATION_UNAVAILABLE): If Redis fails.
        """
        now = self._clock()
        queued = replace(envelope, queued_at=datetime.fromtimestamp(now, UTC))

        with _coordination():
            status, position = self._try_admit(
                keys=_keys(conversation_id),
                args=[
                    envelope.message_id,
                    queued.to_json(),
                    self._max_queue_size,
                    repr(now),
                    self._state_ttl_s,
                ],
            )

        position = int(position)
        if status == "admitted":
            logger.info("conversation_state.admitted", conversation_id=conversation_id)
            return Admitted()
        if status == "queued":
            logger.info(
                "conversation_state.queued", conversation_id=conversation_id, position=position
            )
            return Queued(position=position)
        if status == "duplicate":
            logger.info(
                "conversation_state.duplicate", conversation_id=conversation_id, position=position
            )
            return Duplicate(position=position)

        logger.warning(
            "conversation_state.queue_full", conversation_id=conversation_id, queue_length=position
        )
        raise ApiError(
            ApiErrorCode.E_QUEUE_FULL,
            f"Too many messages waiting: {self._max_queue_size} maximum",
        )

    def advance(
        self, conversation_id: str, expected_active: str | None = None
    ) -> AdvanceResult:
        """Release the active message and promote the queue head.

        Envelopes queued longer than message_ttl_s are dropped and returned in
        `expired`. If expected_active is given and another message is active
        (a duplicate or late job), nothing changes and stale=True.
        """
        with _coordination():
            result = self._advance(
                keys=_keys(conversation_id),
                args=[
                    repr(self._clock()),
                    self._message_ttl_s,
                    self._state_ttl_s,
                    expected_active or "",
                ],
            )

        status = result[0]
        if status == "stale":
            logger.warning(
                "conversation_state.advance_stale",
                conversation_id=conversation_id,
                expected_active=expected_active,
                active_message_id=result[1] or None,
            )
            return AdvanceResult(stale=True)

        expired = [MessageEnvelope.from_json(raw) for raw in result[2:]]
        next_envelope = MessageEnvelope.from_json(result[1]) if status == "next" else None

        if expired:
            logger.warning(
                "conversation_state.expired_skipped",
                conversation_id=conversation_id,
                expired_count=len(expired),
            )
        logger.info(
            "conversation_state.advanced",
            conversation_id=conversation_id,
            next_message_id=next_envelope.message_id if next_envelope else None,
        )
        return AdvanceResult(next=next_envelope, expired=expired)

    def force_reset(self, conversation_id: str) -> str | None:
        """Set the conversation IDLE. The queue is left intact.

        Returns:
            The message id that was active, if any.
        """
        with _coordination():
            previous = self._force_reset(
                keys=[state_key(conversation_id)], args=[self._state_ttl_s]
            )
        logger.warning(
            "conversation_state.force_reset",
            conversation_id=conversation_id,
            previous_active=previous or None,
        )
        return previous or None

    def get_status(self, conversation_id: str) -> ConversationStatus:
        keys = _keys(conversation_id)
        with _coordination():
            pipe = self._redis.pipeline()
            pipe.hgetall(keys[0])
            pipe.lrange(keys[1], 0, -1)
            state, queued = pipe.execute()

        phase = state.get("phase") or IDLE
        active = state.get("active_message_id") or None
        started = state.get("processing_started_at")
        age = round(self._clock() - float(started), 3) if started and active else None
        return ConversationStatus(
            conversation_id=conversation_id,
            phase=phase if active else IDLE,
            active_message_id=active,
            processing_age_s=age,
            queue_length=len(queued),
            queued_message_ids=list(queued),
        )

    def queue_position(self, conversation_id: str, message_id: str) -> int | None:
        """0 if active, 1-based position if queued, None if unknown."""
        status = self.get_status(conversation_id)
        if status.active_message_id == message_id:
            return 0
        if message_id in status.queued_message_ids:
            return status.queued_message_ids.index(message_id) + 1
        return None

    def _iter_states(self) -> Iterator[tuple[str, dict[str, str]]]:
        for key in self._redis.scan_iter(match=f"{STATE_PREFIX}*", count=100):
            yield key[len(STATE_PREFIX) :], self._redis.hgetall(key)

    def find_stalled(self, timeout_s: float) -> list[str]:
        """Conversations that have been PROCESSING for longer than timeout_s."""
        now = self._clock()
        stalled = []
        with _coordination():
            for conversation_id, state in self._iter_states():
                if state.get("phase") != PROCESSING or not state.get("active_message_id"):
                    continue
                started = state.get("processing_started_at")
                if not started or now - float(started) > timeout_s:
                    stalled.append(conversation_id)
        return stalled

    def stats(self) -> dict[str, int]:
        counts = {"conversations": 0, "processing": 0, "idle": 0, "queued_messages": 0}
        with _coordination():
            for conversation_id, state in self._iter_states():
                counts["conversations"] += 1
                if state.get("phase") == PROCESSING and state.get("active_message_id"):
                    counts["processing"] += 1
                else:
                    counts["idle"] += 1
                counts["queued_messages"] += self._redis.llen(f"conv_queue:{conversation_id}")
        return counts


# Global state machine (initialized by app startup or lazily by the worker)
_state_machine: ConversationStateMachine | None = None


def get_state_machine() -> ConversationStateMachine:
    """Get the global state machine.

    Raises:
        ApiError(E_COORDINATION_UNAVAILABLE): If Redis is not configured.
    """
    global _state_machine
    if _state_machine is None:
        client = get_redis()
        if client is None:
            raise ApiError(
                ApiErrorCode.E_COORDINATION_UNAVAILABLE,
                "Conversation coordination unavailable",
            )
        _state_machine = ConversationStateMachine.from_settings(client, get_settings())
    return _state_machine


def set_state_machine(machine: ConversationStateMachine | None) -> None:
    """Set the global state machine (app startup, tests)."""
    global _state_machine
    _state_machine = machine
