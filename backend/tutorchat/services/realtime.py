"""
Realtime channel providers.

A topic per conversation carries ``ChannelEvent`` objects. The in-process provider
fans events out to ``asyncio.Queue`` subscribers; the Redis provider uses pub/sub
with JSON payloads so several server processes share one channel. Providers
never replay history: a subscriber that reconnects has to fetch what it missed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Literal, Optional, Set

from pydantic import BaseModel, Field
import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from ..config import settings
from ..errors import ChannelDisconnected
from ..schemas.message import MessageResponse
from ..utils.time import utcnow


logger = logging.getLogger(__name__)

EventType = Literal["insert", "update", "delete", "read", "typing"]

MESSAGE_EVENT_TYPES = frozenset({"insert", "update", "delete", "read"})
TYPING_EVENT_TYPES = frozenset({"typing"})
ALL_EVENT_TYPES = MESSAGE_EVENT_TYPES | TYPING_EVENT_TYPES


class ChannelEvent(BaseModel):
    """Event pushed on a conversation topic."""
    type: EventType
    conversation_id: str
    message: Optional[MessageResponse] = None
    message_ids: List[str] = []
    user_id: Optional[str] = None
    is_typing: Optional[bool] = None
    occurred_at: datetime = Field(default_factory=utcnow)


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class Subscription(ABC):
    """Async iterator over the events of one topic."""

    def __init__(self, topic: str, event_types: Iterable[str]):
        self.topic = topic
        self.event_types = frozenset(event_types)
        self.closed = False

    def accepts(self, event: ChannelEvent) -> bool:
        return event.type in self.event_types

    def __aiter__(self):
        return self

    @abstractmethod
    async def __anext__(self) -> ChannelEvent:
        """Next accepted event; raises ``ChannelDisconnected`` when the connection drops."""

    async def close(self) -> None:
        self.closed = True


_DISCONNECT = object()
_CLOSE = object()


class QueueSubscription(Subscription):

    def __init__(self, provider: "InMemoryChannelProvider", topic: str, event_types: Iterable[str]):
        super().__init__(topic, event_types)
        self._provider = provider
        self.queue: asyncio.Queue = asyncio.Queue()

    async def __anext__(self) -> ChannelEvent:
        if self.closed:
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if item is _DISCONNECT:
            self.closed = True
            raise ChannelDisconnected()
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._provider._remove(self)
        self.queue.put_nowait(_CLOSE)


class InMemoryChannelProvider:
    """Single-process provider backed by per-topic queue fan-out."""

    enabled = True

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[QueueSubscription]] = defaultdict(set)

    async def publish(self, topic: str, event: ChannelEvent) -> None:
        for sub in list(self._subscribers.get(topic, ())):
            if sub.accepts(event):
                sub.queue.put_nowait(event)

    async def subscribe(self, topic: str, event_types: Iterable[str] = ALL_EVENT_TYPES) -> Subscription:
        sub = QueueSubscription(self, topic, event_types)
        self._subscribers[topic].add(sub)
        return sub

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def disconnect(self, topic: Optional[str] = None) -> None:
        """Drop live subscriptions, as a lost connection would."""
        topics = [topic] if topic else list(self._subscribers)
        for name in topics:
            for sub in list(self._subscribers.get(name, ())):
                self._remove(sub)
                sub.queue.put_nowait(_DISCONNECT)

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                await sub.close()

    def _remove(self, sub: QueueSubscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            self._subscribers.pop(sub.topic, None)


class RedisSubscription(Subscription):

    def __init__(self, pubsub, topic: str, event_types: Iterable[str]):
        super().__init__(topic, event_types)
        self._pubsub = pubsub

    async def __anext__(self) -> ChannelEvent:
        while not self.closed:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                logger.warning("Redis subscription %s dropped: %s", self.topic, e)
                self.closed = True
                raise ChannelDisconnected(details=str(e)) from e
            if not msg or msg.get("type") != "message":
                continue
            data = msg.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            event = ChannelEvent.model_validate_json(data)
            if self.accepts(event):
                return event
        raise StopAsyncIteration

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(self.topic)
            await self._pubsub.aclose()
        except Exception as e:
            logger.debug("Ignoring error while closing subscription %s: %s", self.topic, e)


class RedisChannelProvider:
    """Provider backed by Redis pub/sub, shared between server processes."""

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, topic: str, event: ChannelEvent) -> None:
        await self._redis.publish(topic, event.model_dump_json())

    async def subscribe(self, topic: str, event_types: Iterable[str] = ALL_EVENT_TYPES) -> Subscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(topic)
        return RedisSubscription(pubsub, topic, event_types)

    async def close(self) -> None:
        await self._redis.aclose()


_provider = None


def get_channel_provider():
    """Return the process-wide channel provider."""
    global _provider
    if _provider is not None:
        return _provider
    if settings.REDIS_URL:
        logger.info("Using Redis realtime channel")
        _provider = RedisChannelProvider(settings.REDIS_URL)
    else:
        _provider = InMemoryChannelProvider()
    return _provider
