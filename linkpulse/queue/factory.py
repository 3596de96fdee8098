"""
Factory for creating queue instances from settings.
"""

import logging

from redis.asyncio import Redis

from linkpulse.core.setting import QueueBackendOptions, Settings
from linkpulse.queue.strategies import InMemoryQueue, QueueStrategy, RedisStreamQueue

logger = logging.getLogger(__name__)


def create_queue(config: Settings) -> QueueStrategy:
    """
    Build the queue backend named by QUEUE_BACKEND.

    The Redis client connects lazily; a broker that is down shows up as
    failed publishes (logged), never as a failed redirect.
    """
    if config.QUEUE_BACKEND == QueueBackendOptions.redis:
        client = Redis.from_url(
            config.REDIS_URL,
            decode_responses=False,
            socket_connect_timeout=2,
            socket_timeout=5,
        )
        logger.info("Redis Streams queue configured")
        return RedisStreamQueue(client, config.QUEUE_CONSUMER_GROUP)

    logger.info("In-memory queue configured")
    return InMemoryQueue()
