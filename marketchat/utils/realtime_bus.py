import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from marketchat.core.config import get_settings
from marketchat.core.errors import translate_store_errors

logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def participant_channel(participant_id: str) -> str:
    return f"participant:{participant_id}"


def change_event(event_type: str, conversation_id: str, **extra: Any) -> str:
    # ids only; subscribers re-read and re-authorize before delivering content
    return json.dumps({"type": event_type, "conversation_id": conversation_id, **extra})


class _LocalSub:

    def __init__(self, bus: "LocalBus", channel: str, on_message: OnMessage) -> None:
        self._bus = bus
        self._channel = channel
        self._on_message = on_message
        self._queue: asyncio.Queue = asyncio.Queue()
        self._running = True

    def push(self, message: str) -> None:
        if self._running:
            self._queue.put_nowait(message)

    async def run(self) -> None:
        while self._running:
            message = await self._queue.get()
            if message is None:
                break
            await self._on_message(message)

    async def cancel(self) -> None:
        if not self._running:
            return
        self._running = False
        self._bus._remove(self._channel, self)
        self._queue.put_nowait(None)


class LocalBus:
    """In-process fan-out used when no Redis is configured (single worker)."""

    enabled = False

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[_LocalSub]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for sub in list(self._subscribers.get(channel, ())):
            sub.push(message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> _LocalSub:
        # registered before run() starts, so nothing published in between is lost
        sub = _LocalSub(self, channel, on_message)
        self._subscribers.setdefault(channel, set()).add(sub)
        return sub

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def _remove(self, channel: str, sub: _LocalSub) -> None:
        subs = self._subscribers.get(channel)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[channel]

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                await sub.cancel()


class _RedisSub:

    def __init__(self, pubsub, channel: str, on_message: OnMessage) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._running = True

    @translate_store_errors
    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError:
                if not self._running:
                    break
                raise
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                await self._on_message(data)

    async def cancel(self) -> None:
        if not self._running:
            return
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except RedisError as exc:
            logger.warning("Redis unsubscribe from %s failed: %s", self._channel, exc)


class RedisBus:
    """Cross-worker fan-out over Redis pub/sub."""

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> _RedisSub:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return _RedisSub(pubsub, channel, on_message)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


def create_bus(url: Optional[str]):
    if url:
        logger.info("Realtime bus: redis")
        return RedisBus(url)
    logger.info("Realtime bus: in-process")
    return LocalBus()


async def get_bus():
    global _bus
    if _bus is None:
        _bus = create_bus(get_settings().REDIS_URL)
    return _bus


def set_bus(bus) -> None:
    global _bus
    _bus = bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
