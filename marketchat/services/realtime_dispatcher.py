import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set

from marketchat.core.errors import StoreError
from marketchat.services.chat_service import ChatService, unread_total
from marketchat.services.profile_service import participants_for_display
from marketchat.utils.identity import normalize_id
from marketchat.utils.realtime_bus import conversation_channel, participant_channel

logger = logging.getLogger(__name__)

_END = object()


@dataclass
class StreamUpdate:
    kind: str
    data: Any
    denied: bool = False
    unread_total: Optional[int] = None


Fetcher = Callable[[], Awaitable[StreamUpdate]]


class Subscription:
    """A live view over one store query.

    Iterate it with ``async for`` to receive ``StreamUpdate`` snapshots: one on
    start, then one per change event on ``channel``. Every snapshot is fetched
    through an authorized read. A denied snapshot is delivered once and ends
    the stream. ``cancel()`` may be called any number of times, from any state.
    """

    def __init__(self, kind: str, channel: Optional[str], fetch: Fetcher, bus, on_release=None) -> None:
        self.kind = kind
        self._channel = channel
        self._fetch = fetch
        self._bus = bus
        self._on_release = on_release
        self._queue: asyncio.Queue = asyncio.Queue()
        self._bus_sub = None
        self._task: Optional[asyncio.Task] = None
        self._released = False

    @property
    def closed(self) -> bool:
        return self._released

    async def start(self) -> "Subscription":
        if self._channel is None:
            await self._deny()
            return self
        self._bus_sub = await self._bus.subscribe(self._channel, self._on_event)
        await self._refresh()
        if not self._released:
            self._task = asyncio.create_task(self._listen())
        return self

    async def _listen(self) -> None:
        try:
            await self._bus_sub.run()
        except Exception as exc:
            # the bus connection is gone; hand the failure to the consumer and end the stream
            logger.error("Stream %s lost its subscription to %s: %s", self.kind, self._channel, exc)
            self._queue.put_nowait(exc)
            await self.cancel()

    async def _on_event(self, message: str) -> None:
        await self._refresh()

    async def _refresh(self) -> None:
        if self._released:
            return
        try:
            update = await self._fetch()
        except StoreError as exc:
            logger.error("Stream %s on %s failed: %s", self.kind, self._channel, exc)
            self._queue.put_nowait(exc)
            await self.cancel()
            return
        self._queue.put_nowait(update)
        if update.denied:
            await self.cancel()

    async def _deny(self) -> None:
        self._queue.put_nowait(StreamUpdate(kind=self.kind, data=[] if self.kind != "conversation" else None, denied=True))
        await self.cancel()

    async def cancel(self) -> None:
        if self._released:
            return
        self._released = True
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._bus_sub is not None:
            await self._bus_sub.cancel()
        self._queue.put_nowait(_END)
        if self._on_release is not None:
            self._on_release(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StreamUpdate:
        item = await self._queue.get()
        if item is _END:
            # keep the marker so later reads also end
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.cancel()


class RealtimeDispatcher:

    def __init__(self, chat_service: ChatService, bus, stream_limit: int = 30) -> None:
        self._service = chat_service
        self._bus = bus
        self._stream_limit = stream_limit
        self._active: Set[Subscription] = set()

    async def subscribe_conversations(self, requester_id: Any) -> Subscription:
        """Every conversation the requester takes part in, newest activity first."""
        requester = normalize_id(requester_id)

        async def fetch() -> StreamUpdate:
            items = await self._service.list_conversations(requester)
            return StreamUpdate(kind="conversations", data=items, unread_total=unread_total(items, requester))

        channel = participant_channel(requester) if requester else None
        return await self._start(Subscription("conversations", channel, fetch, self._bus, self._release))

    async def subscribe_conversation(self, conversation_id: str, requester_id: Any) -> Subscription:
        requester = normalize_id(requester_id)

        async def fetch() -> StreamUpdate:
            convo = await self._service.get_conversation(conversation_id, requester)
            if convo is None:
                return StreamUpdate(kind="conversation", data=None, denied=True)
            convo["participants"] = participants_for_display(convo.get("participants") or [], requester)
            return StreamUpdate(kind="conversation", data=convo)

        channel = conversation_channel(conversation_id) if conversation_id and requester else None
        return await self._start(Subscription("conversation", channel, fetch, self._bus, self._release))

    async def subscribe_messages(self, conversation_id: str, requester_id: Any, limit: Optional[int] = None) -> Subscription:
        requester = normalize_id(requester_id)
        size = limit or self._stream_limit

        async def fetch() -> StreamUpdate:
            convo = await self._service.get_conversation(conversation_id, requester)
            if convo is None:
                return StreamUpdate(kind="messages", data=[], denied=True)
            messages, _ = await self._service.get_messages(conversation_id, requester, page_size=size)
            return StreamUpdate(kind="messages", data=messages)

        channel = conversation_channel(conversation_id) if conversation_id and requester else None
        return await self._start(Subscription("messages", channel, fetch, self._bus, self._release))

    async def close(self) -> None:
        for sub in list(self._active):
            await sub.cancel()

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def _start(self, sub: Subscription) -> Subscription:
        self._active.add(sub)
        return await sub.start()

    def _release(self, sub: Subscription) -> None:
        self._active.discard(sub)
