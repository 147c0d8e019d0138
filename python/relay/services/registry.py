"""Install the Redis-backed service singletons.

Called from the API lifespan and from worker_process_init so both processes
share one client per process.
"""

from relay.logging import get_logger
from relay.services.character_stats import CharacterStats, set_character_stats
from relay.services.conversation_state import ConversationStateMachine, set_state_machine
from relay.services.notifications import Notifier, set_notifier
from relay.services.redis_client import set_redis
from relay.services.usage import UsageTracker, set_usage_tracker

logger = get_logger(__name__)


def install_services(redis_client, settings) -> None:
    """Wire every Redis-backed service to redis_client (None disables them)."""
    set_redis(redis_client)
    set_usage_tracker(UsageTracker.from_settings(redis_client, settings))
    set_character_stats(CharacterStats(redis_client))
    set_notifier(Notifier(redis_client))
    if redis_client is not None:
        set_state_machine(ConversationStateMachine.from_settings(redis_client, settings))
    else:
        set_state_machine(None)
    logger.info("services_installed", redis=redis_client is not None)


def reset_services() -> None:
    set_redis(None)
    set_usage_tracker(None)
    set_character_stats(None)
    set_notifier(None)
    set_state_machine(None)
