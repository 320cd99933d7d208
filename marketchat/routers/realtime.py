import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from marketchat.core.config import Settings, get_settings
from marketchat.core.errors import StoreError
from marketchat.schemas.chat import Conversation, Message, StreamFrame
from marketchat.services.realtime_dispatcher import RealtimeDispatcher, StreamUpdate, Subscription
from marketchat.utils.dependencies import get_dispatcher, user_from_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["realtime"])

CLOSE_UNAUTHENTICATED = 4401
CLOSE_NOT_FOUND = 4404
CLOSE_STORE_ERROR = 1011


def to_frame(update: StreamUpdate) -> dict:
    if update.kind == "conversations":
        data = [Conversation.from_document(c).model_dump(mode="json", by_alias=True) for c in update.data]
    elif update.kind == "messages":
        data = [Message.from_document(m).model_dump(mode="json", by_alias=True) for m in update.data]
    elif update.data is not None:
        data = Conversation.from_document(update.data).model_dump(mode="json", by_alias=True)
    else:
        data = None
    frame = StreamFrame(kind=update.kind, denied=update.denied, data=data, unread_total=update.unread_total)
    return frame.model_dump(mode="json", by_alias=True)


async def _watch_disconnect(websocket: WebSocket, subscription: Subscription) -> None:
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        await subscription.cancel()


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    watcher = asyncio.create_task(_watch_disconnect(websocket, subscription))
    try:
        async for update in subscription:
            await websocket.send_json(to_frame(update))
            if update.denied:
                await websocket.close(code=CLOSE_NOT_FOUND)
                return
    except WebSocketDisconnect:
        logger.debug("Client left %s stream", subscription.kind)
    except StoreError:
        await websocket.close(code=CLOSE_STORE_ERROR)
    finally:
        watcher.cancel()
        await subscription.cancel()


async def _authenticate(websocket: WebSocket, settings: Settings):
    # JWT via query ?token=..., browsers cannot set headers on WS upgrades
    user = user_from_token(websocket.query_params.get("token"), settings)
    if user is None:
        await websocket.close(code=CLOSE_UNAUTHENTICATED)
    return user


@router.websocket("/conversations")
async def conversations_stream(
    websocket: WebSocket,
    dispatcher: RealtimeDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
):
    user = await _authenticate(websocket, settings)
    if user is None:
        return
    await websocket.accept()
    await _pump(websocket, await dispatcher.subscribe_conversations(user.id))


@router.websocket("/conversations/{conversation_id}")
async def conversation_stream(
    websocket: WebSocket,
    conversation_id: str,
    dispatcher: RealtimeDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
):
    user = await _authenticate(websocket, settings)
    if user is None:
        return
    await websocket.accept()
    await _pump(websocket, await dispatcher.subscribe_conversation(conversation_id, user.id))


@router.websocket("/conversations/{conversation_id}/messages")
async def messages_stream(
    websocket: WebSocket,
    conversation_id: str,
    limit: Optional[int] = None,
    dispatcher: RealtimeDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
):
    user = await _authenticate(websocket, settings)
    if user is None:
        return
    await websocket.accept()
    await _pump(websocket, await dispatcher.subscribe_messages(conversation_id, user.id, limit=limit))
