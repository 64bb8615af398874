"""Per-session publish/subscribe channel for what-if results.

Each session owns the topic "sandbox:{session_id}" and exactly one terminal
message is published to it:

    {"summary": {"shortTermGain": "...", "longTermGain": "...", "totalGain": "..."}}
    {"error": true, "message": "..."}

There is no replay. A subscriber that attaches after the publish receives
nothing and must read the session status instead.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

from .gains_engine import GainSummary

logger = logging.getLogger(__name__)


def topic_for(session_id: str) -> str:
    """Topic name for a session."""
    return f"sandbox:{session_id}"


def completion_message(summary: GainSummary) -> Dict[str, Any]:
    return {"summary": summary.to_dict()}


def failure_message(message: str) -> Dict[str, Any]:
    return {"error": True, "message": message}


class Subscription:
    """A listener on one topic.

    Use as an async context manager so the listener is removed when the
    owning connection goes away.
    """

    def __init__(self, bus: "NotificationBus", topic: str):
        self.bus = bus
        self.topic = topic
        self._messages: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def deliver(self, message: Dict[str, Any]) -> None:
        self._messages.put_nowait(message)

    async def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next message, or None if timeout elapses first."""
        try:
            if timeout is None:
                return await self._messages.get()
            return await asyncio.wait_for(self._messages.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self.bus.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class NotificationBus(ABC):
    """Pub/sub interface with an explicit open/close lifecycle."""

    def __init__(self):
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False

    def _ensure_open(self) -> None:
        if not self._open:
            raise RuntimeError(f"{type(self).__name__} is not open")

    @abstractmethod
    async def publish(self, topic: str, message: Dict[str, Any]) -> int:
        """Send message to current listeners; returns how many received it."""

    @abstractmethod
    async def subscribe(self, topic: str) -> Subscription:
        """Attach a listener to topic."""

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a listener."""

    @abstractmethod
    def listener_count(self, topic: str) -> int:
        """Number of listeners currently attached to topic."""


class InMemoryNotificationBus(NotificationBus):
    """Process-local pub/sub bus."""

    def __init__(self):
        super().__init__()
        self._topics: Dict[str, Set[Subscription]] = {}

    async def close(self) -> None:
        for subscriptions in list(self._topics.values()):
            for subscription in list(subscriptions):
                subscription.closed = True
        self._topics.clear()
        await super().close()

    async def publish(self, topic: str, message: Dict[str, Any]) -> int:
        self._ensure_open()
        listeners = list(self._topics.get(topic, ()))
        for subscription in listeners:
            subscription.deliver(message)

        if not listeners:
            logger.debug(f"Published to {topic} with no listeners")
        return len(listeners)

    async def subscribe(self, topic: str) -> Subscription:
        self._ensure_open()
        subscription = Subscription(self, topic)
        self._topics.setdefault(topic, set()).add(subscription)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscriptions = self._topics.get(subscription.topic)
        if subscriptions is None:
            return

        subscriptions.discard(subscription)
        if not subscriptions:
            del self._topics[subscription.topic]

    def listener_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))
