"""Celery tasks for Relay.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.

Usage in API (enqueue):
    from relay.tasks import generate_reply
    generate_reply.apply_async(kwargs={...}, queue="ai_responses")
"""

from relay.tasks.acknowledge_message import acknowledge_message
from relay.tasks.generate_reply import generate_reply
from relay.tasks.sweep_stalled import sweep_stalled_conversations

__all__ = ["acknowledge_message", "generate_reply", "sweep_stalled_conversations"]
