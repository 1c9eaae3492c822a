import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BusMessage:
    """Typed envelope published on a topic."""

    kind: str
    payload: dict = field(default_factory=dict)
    published_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {"type": self.kind, "payload": self.payload, "published_at": self.published_at}


class Subscription:
    def __init__(self, bus: "EventBus", topic: str, maxsize: int) -> None:
        self.topic = topic
        self._bus = bus
        self._queue: asyncio.Queue[BusMessage] = asyncio.Queue(maxsize=maxsize)

    def offer(self, message: BusMessage) -> bool:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> BusMessage:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class EventBus:
    """In-process publish/subscribe: one publisher, any number of subscribers per topic.

    Topics are plain strings such as ``live:<session_id>:students``.  A slow
    subscriber whose queue is full misses messages; the publisher never blocks.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._maxsize = maxsize
        self._topics: dict[str, list[Subscription]] = {}

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic, self._maxsize)
        self._topics.setdefault(topic, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._topics.get(sub.topic)
        if not subs or sub not in subs:
            return
        subs.remove(sub)
        if not subs:
            del self._topics[sub.topic]

    def publish(self, topic: str, message: BusMessage) -> int:
        """Deliver to every subscriber of *topic*; returns how many received it."""
        delivered = 0
        for sub in list(self._topics.get(topic, [])):
            if sub.offer(message):
                delivered += 1
            else:
                logger.warning("Subscriber queue full on %s, dropped %s", topic, message.kind)
        return delivered

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, []))


def students_topic(session_id: str) -> str:
    return f"live:{session_id}:students"


def presenter_topic(session_id: str) -> str:
    return f"live:{session_id}:presenter"
