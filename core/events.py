"""In-process pub/sub for deployment progress, one topic per deployment id."""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List

from loguru import logger


@dataclass
class DeploymentEvent:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)
    terminal: bool = False


class Subscription:
    """Async iterator over one subscriber's queue. Stops after a terminal event."""

    def __init__(self, bus: "DeploymentEventBus", deployment_id: str, queue: asyncio.Queue):
        self._bus = bus
        self.deployment_id = deployment_id
        self.queue = queue
        self._done = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> DeploymentEvent:
        if self._done:
            raise StopAsyncIteration
        item: DeploymentEvent = await self.queue.get()
        if item.terminal:
            self._done = True
            self.close()
        return item

    def close(self) -> None:
        self._bus.unsubscribe(self.deployment_id, self.queue)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class DeploymentEventBus:
    """Subscribers get a bounded queue; when it is full the oldest event is dropped."""

    def __init__(self, max_queue_size: int = 256):
        self.max_queue_size = max_queue_size
        self._topics: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, deployment_id: str) -> Subscription:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._topics.setdefault(deployment_id, []).append(queue)
        return Subscription(self, deployment_id, queue)

    def unsubscribe(self, deployment_id: str, queue: asyncio.Queue) -> None:
        queues = self._topics.get(deployment_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._topics.pop(deployment_id, None)

    def subscriber_count(self, deployment_id: str) -> int:
        return len(self._topics.get(deployment_id, []))

    @staticmethod
    def _offer(queue: asyncio.Queue, item: DeploymentEvent) -> None:
        if queue.full():
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(item)

    def publish(self, deployment_id: str, event: str, data: Dict[str, Any]) -> None:
        item = DeploymentEvent(event, data)
        for queue in list(self._topics.get(deployment_id, [])):
            self._offer(queue, item)

    def close(self, deployment_id: str, event: str, data: Dict[str, Any]) -> None:
        """Publish the terminal event and forget the topic."""
        item = DeploymentEvent(event, data, terminal=True)
        queues = self._topics.pop(deployment_id, [])
        for queue in queues:
            self._offer(queue, item)
        if queues:
            logger.debug(f"Closed event topic {deployment_id} ({len(queues)} subscriber(s))")
