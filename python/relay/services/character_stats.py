"""Aggregate counters per character.

Counters only ever grow, one HINCRBY per field:
- total_messages: user messages received
- total_likes: user messages the character acknowledged
- total_voice_messages / total_image_messages: by modality

Redis key: character_stats:{character_id} (hash, no TTL)
"""

from relay.logging import get_logger

logger = get_logger(__name__)

STAT_FIELDS = frozenset(
    {"total_messages", "total_likes", "total_voice_messages", "total_image_messages"}
)

# Extra counter bumped per admitted message type
TYPE_STAT_FIELDS = {
    "audio": "total_voice_messages",
    "media": "total_image_messages",
}


class CharacterStats:
    """Increment-only character statistics."""

    def __init__(self, redis_client=None):
        self._redis = redis_client

    def increment(self, character_id: str, **increments: int) -> None:
        """Add non-negative deltas to named counters.

        Raises:
            ValueError: If a counter name is unknown or a delta is negative
                or not an integer.
        """
        unknown = set(increments) - STAT_FIELDS
        if unknown:
            raise ValueError(f"Unknown character stats: {', '.join(sorted(unknown))}")
        for name, delta in increments.items():
            if isinstance(delta, bool) or not isinstance(delta, int) or delta < 0:
                raise ValueError(f"Increment for {name} must be a non-negative integer")

        deltas = {name: delta for name, delta in increments.items() if delta}
        if not deltas or self._redis is None:
            return

        try:
            pipe = self._redis.pipeline()
            for name, delta in deltas.items():
                pipe.hincrby(f"character_stats:{character_id}", name, delta)
            pipe.execute()
        except Exception as e:
            logger.warning("character_stats_increment_failed", error=str(e))

    def record_message(self, character_id: str, message_type: str) -> None:
        increments = {"total_messages": 1}
        extra = TYPE_STAT_FIELDS.get(message_type)
        if extra:
            increments[extra] = 1
        self.increment(character_id, **increments)

    def get(self, character_id: str) -> dict[str, int]:
        counts = dict.fromkeys(sorted(STAT_FIELDS), 0)
        if self._redis is None:
            return counts
        raw = self._redis.hgetall(f"character_stats:{character_id}")
        for name in counts:
            counts[name] = int(raw.get(name, 0))
        return counts


_character_stats: CharacterStats | None = None


def get_character_stats() -> CharacterStats:
    global _character_stats
    if _character_stats is None:
        _character_stats = CharacterStats(redis_client=None)
    return _character_stats


def set_character_stats(stats: CharacterStats | None) -> None:
    global _character_stats
    _character_stats = stats
