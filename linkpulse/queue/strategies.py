"""
Queue strategies using Strategy Pattern.
Allows switching between queue backends (Redis Streams, In-Memory) without
touching the fan-out or worker code.
"""

import logging
import socket
from abc import ABC, abstractmethod
from collections import deque
from typing import Dict, List

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from linkpulse.queue.models import QueueMessage

logger = logging.getLogger(__name__)


class QueueStrategy(ABC):
    """
    Abstract base class for queue strategies.
    """

    @abstractmethod
    async def publish(self, queue_name: str, message: QueueMessage) -> bool:
        """
        Publish a message to the queue.

        Args:
            queue_name: Name of the queue
            message: QueueMessage to publish

        Returns:
            True if successful, False otherwise
        """

    @abstractmethod
    async def consume(
        self,
        queue_name: str,
        batch_size: int = 1,
        block_time: int = 1000
    ) -> List[QueueMessage]:
        """
        Consume messages from the queue.

        Args:
            queue_name: Name of the queue
            batch_size: Maximum number of messages to retrieve
            block_time: Time to wait for messages (milliseconds)

        Returns:
            List of messages, each with message_id set for ack
        """

    @abstractmethod
    async def ack(self, queue_name: str, message_ids: List[str]) -> bool:
        """Acknowledge messages (mark as processed)."""

    @abstractmethod
    async def get_queue_length(self, queue_name: str) -> int:
        """Number of messages currently held for a queue."""

    async def close(self) -> None:
        """Release backend resources."""


class RedisStreamQueue(QueueStrategy):
    """
    Redis Streams implementation.

    1. Producer appends with XADD
    2. Workers read with XREADGROUP inside one consumer group
    3. Workers acknowledge with XACK
    Unacknowledged messages stay pending and can be reclaimed.
    """

    def __init__(self, redis_client: Redis, consumer_group: str = "linkpulse_workers"):
        self.redis = redis_client
        self.consumer_group = consumer_group
        self.consumer_name = f"worker-{socket.gethostname()}-{id(self)}"
        self._initialized_streams: set[str] = set()

    async def _ensure_stream_exists(self, queue_name: str) -> None:
        if queue_name in self._initialized_streams:
            return
        try:
            await self.redis.xgroup_create(
                name=queue_name,
                groupname=self.consumer_group,
                id="0",
                mkstream=True
            )
            logger.info(f"Created Redis stream: {queue_name}")
        except ResponseError as e:
            # Group already exists
            if "BUSYGROUP" not in str(e):
                raise
        self._initialized_streams.add(queue_name)

    async def publish(self, queue_name: str, message: QueueMessage) -> bool:
        try:
            await self._ensure_stream_exists(queue_name)
            await self.redis.xadd(queue_name, {"data": message.model_dump_json()})
            return True
        except RedisError as e:
            logger.error(f"Redis publish error on {queue_name}: {e}")
            return False

    async def consume(
        self,
        queue_name: str,
        batch_size: int = 1,
        block_time: int = 1000
    ) -> List[QueueMessage]:
        try:
            await self._ensure_stream_exists(queue_name)
            # '>' means messages never delivered to another consumer
            response = await self.redis.xreadgroup(
                groupname=self.consumer_group,
                consumername=self.consumer_name,
                streams={queue_name: ">"},
                count=batch_size,
                block=block_time
            )
        except RedisError as e:
            logger.error(f"Redis consume error on {queue_name}: {e}")
            return []

        messages = []
        for _stream, entries in response or []:
            for message_id, data in entries:
                message_id = message_id.decode() if isinstance(message_id, bytes) else message_id
                raw = data.get(b"data", data.get("data"))
                try:
                    message = QueueMessage.model_validate_json(raw)
                except ValueError as e:
                    logger.warning(f"Dropping unparseable message {message_id} on {queue_name}: {e}")
                    await self.ack(queue_name, [message_id])
                    continue
                message.message_id = message_id
                messages.append(message)
        return messages

    async def ack(self, queue_name: str, message_ids: List[str]) -> bool:
        if not message_ids:
            return True
        try:
            await self.redis.xack(queue_name, self.consumer_group, *message_ids)
            return True
        except RedisError as e:
            logger.error(f"Redis ack error on {queue_name}: {e}")
            return False

    async def get_queue_length(self, queue_name: str) -> int:
        try:
            return await self.redis.xlen(queue_name)
        except RedisError:
            return 0

    async def close(self) -> None:
        await self.redis.aclose()


class InMemoryQueue(QueueStrategy):
    """
    In-memory queue using a deque per topic.

    Not persistent and not shared between processes; used for development
    and tests. Messages are removed on consume, so ack is a no-op.
    """

    def __init__(self):
        self._queues: Dict[str, deque] = {}
        self._sequence = 0

    def _get_queue(self, queue_name: str) -> deque:
        if queue_name not in self._queues:
            self._queues[queue_name] = deque()
        return self._queues[queue_name]

    async def publish(self, queue_name: str, message: QueueMessage) -> bool:
        self._sequence += 1
        stored = message.model_copy(update={"message_id": f"{self._sequence}-0"})
        self._get_queue(queue_name).append(stored)
        return True

    async def consume(
        self,
        queue_name: str,
        batch_size: int = 1,
        block_time: int = 1000
    ) -> List[QueueMessage]:
        """Note: block_time is ignored."""
        queue = self._get_queue(queue_name)
        messages = []
        while queue and len(messages) < batch_size:
            messages.append(queue.popleft())
        return messages

    async def ack(self, queue_name: str, message_ids: List[str]) -> bool:
        return True

    async def get_queue_length(self, queue_name: str) -> int:
        return len(self._get_queue(queue_name))
