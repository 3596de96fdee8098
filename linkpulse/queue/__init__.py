"""
Message queue for event fan-out.
Implements Strategy Pattern for flexible queue backends.
"""

from linkpulse.queue.factory import create_queue
from linkpulse.queue.models import ANALYTICS_TOPIC, WEBHOOKS_TOPIC, QueueMessage
from linkpulse.queue.strategies import InMemoryQueue, QueueStrategy, RedisStreamQueue

__all__ = [
    "ANALYTICS_TOPIC",
    "WEBHOOKS_TOPIC",
    "InMemoryQueue",
    "QueueMessage",
    "QueueStrategy",
    "RedisStreamQueue",
    "create_queue",
]
