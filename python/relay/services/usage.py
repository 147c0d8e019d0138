"""Daily message quotas and token usage tracking using Redis.

Free tier daily limits per user and character:
- text: 30 messages
- audio: 5 voice messages
- media: 5 images
Premium users are unlimited.

Redis keys:
- usage:{user_id}:{character_id}:{type}:{date} - daily message counter
- token_usage:{user_id}:{date} - hash: prompt, completion, total, requests

Fail modes:
- Redis unavailable: quota checks fail open, increments are skipped
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from relay.errors import QuotaExceededError
from relay.logging import get_logger
from relay.services.redact import safe_kv

logger = get_logger(__name__)

DEFAULT_LIMITS = {"text": 30, "audio": 5, "media": 5}

# TTLs
USAGE_TTL_SECONDS = 86400 * 2  # counter outlives its day for reporting
TOKEN_USAGE_TTL_SECONDS = 86400 * 7


def _today() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class UsageSnapshot:
    """Today's usage for one message type."""

    message_type: str
    used: int
    limit: int | None  # None means unlimited

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    def as_dict(self) -> dict:
        return {
            "type": self.message_type,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
        }


class UsageTracker:
    """Per-user quota enforcement and token accounting."""

    def __init__(self, redis_client=None, limits: dict[str, int] | None = None):
        """Initialize usage tracker.

        Args:
            redis_client: Redis client instance (sync). If None, quotas are not enforced.
            limits: Free tier daily limit per message type.
        """
        self._redis = redis_client
        self._limits = dict(limits or DEFAULT_LIMITS)

    @classmethod
    def from_settings(cls, redis_client, settings) -> "UsageTracker":
        return cls(
            redis_client,
            limits={
                "text": settings.free_text_limit,
                "audio": settings.free_audio_limit,
                "media": settings.free_media_limit,
            },
        )

    @property
    def redis_available(self) -> bool:
        """Check if Redis is available."""
        if self._redis is None:
            return False
        try:
            self._redis.ping()
            return True
        except Exception:
            return False

    def limit_for(self, message_type: str, is_premium: bool = False) -> int | None:
        if is_premium:
            return None
        return self._limits.get(message_type, self._limits["text"])

    @staticmethod
    def _usage_key(user_id: str, character_id: str, message_type: str, date: str) -> str:
        return f"usage:{user_id}:{character_id}:{message_type}:{date}"

    def get_usage(
        self, user_id: str, character_id: str, message_type: str, is_premium: bool = False
    ) -> UsageSnapshot:
        """Today's count for a message type. Counts as 0 if Redis is unavailable."""
        used = 0
        if self.redis_available:
            try:
                raw = self._redis.get(
                    self._usage_key(user_id, character_id, message_type, _today())
                )
                used = int(raw) if raw else 0
            except Exception as e:
                logger.warning("usage_read_failed", error=str(e))
        return UsageSnapshot(message_type, used, self.limit_for(message_type, is_premium))

    def check_quota(
        self, user_id: str, character_id: str, message_type: str, is_premium: bool = False
    ) -> None:
        """Reject the message if today's limit for its type is reached.

        Fails open if Redis unavailable.

        Raises:
            QuotaExceededError: If the free tier limit is reached.
        """
        if is_premium:
            return

        if not self.redis_available:
            logger.warning("usage_redis_unavailable", check="quota")
            return  # Fail open

        snapshot = self.get_usage(user_id, character_id, message_type)
        if snapshot.limit is not None and snapshot.used >= snapshot.limit:
            logger.warning(
                "quota.exceeded",
                **safe_kv(message_type=message_type, used=snapshot.used, limit=snapshot.limit),
            )
            raise QuotaExceededError(message_type, snapshot.used, snapshot.limit)

    def increment_usage(self, user_id: str, character_id: str, message_type: str) -> int | None:
        """Count an admitted message. Returns the new count, None if not recorded."""
        if not self.redis_available:
            return None

        try:
            key = self._usage_key(user_id, character_id, message_type, _today())
            pipe = self._redis.pipeline()
            pipe.incr(key)
            pipe.expire(key, USAGE_TTL_SECONDS)
            count, _ = pipe.execute()
            return int(count)
        except Exception as e:
            logger.warning("usage_increment_failed", message_type=message_type, error=str(e))
            return None

    def record_token_usage(self, user_id: str, usage: dict) -> None:
        """Add provider token counts to today's totals."""
        if not self.redis_available:
            return

        try:
            key = f"token_usage:{user_id}:{_today()}"
            pipe = self._redis.pipeline()
            pipe.hincrby(key, "prompt", int(usage.get("prompt_tokens") or 0))
            pipe.hincrby(key, "completion", int(usage.get("completion_tokens") or 0))
            pipe.hincrby(key, "total", int(usage.get("total_tokens") or 0))
            pipe.hincrby(key, "requests", 1)
            pipe.expire(key, TOKEN_USAGE_TTL_SECONDS)
            pipe.execute()
        except Exception as e:
            logger.warning("token_usage_record_failed", error=str(e))

    def get_token_usage(self, user_id: str, date: str | None = None) -> dict[str, int]:
        empty = {"prompt": 0, "completion": 0, "total": 0, "requests": 0}
        if not self.redis_available:
            return empty
        try:
            raw = self._redis.hgetall(f"token_usage:{user_id}:{date or _today()}")
        except Exception:
            return empty
        return {k: int(raw.get(k, 0)) for k in empty}


# Global usage tracker instance (initialized by app startup)
_usage_tracker: UsageTracker | None = None


def get_usage_tracker() -> UsageTracker:
    """Get the global usage tracker.

    Returns a tracker without Redis (quotas not enforced) if not initialized.
    """
    global _usage_tracker
    if _usage_tracker is None:
        _usage_tracker = UsageTracker(redis_client=None)
    return _usage_tracker


def set_usage_tracker(tracker: UsageTracker | None) -> None:
    """Set the global usage tracker instance."""
    global _usage_tracker
    _usage_tracker = tracker
