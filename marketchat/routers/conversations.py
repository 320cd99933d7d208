from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from marketchat.core.config import Settings, get_settings
from marketchat.schemas.chat import (
    Conversation,
    MarkReadResponse,
    Message,
    MessagePage,
    ResolveConversationRequest,
    ResolveConversationResponse,
    SendMessageRequest,
    SendMessageResponse,
    UnreadCountResponse,
)
from marketchat.schemas.user import CurrentUser
from marketchat.services.chat_service import ChatService
from marketchat.services.profile_service import ProfileService, participants_for_display
from marketchat.utils.dependencies import get_chat_service, get_current_user, get_profile_service


router = APIRouter(prefix="/conversations", tags=["chat"])

NOT_FOUND = "Conversation not found"


@router.get("", response_model=List[Conversation])
async def list_conversations(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    items = await service.list_conversations(current_user.id)
    return [Conversation.from_document(it) for it in items]


@router.post("", response_model=ResolveConversationResponse)
async def resolve_conversation(
    body: ResolveConversationRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    profiles: ProfileService = Depends(get_profile_service),
):
    me = {
        "id": current_user.id,
        "display_name": current_user.display_name,
        "role": current_user.role.value,
        "avatar_url": current_user.avatar_url,
    }
    others = [await profiles.complete_participant(p.model_dump()) for p in body.participants]
    related = body.related_entity.model_dump() if body.related_entity else None
    conversation_id = await service.resolve_conversation([me] + others, related)
    return ResolveConversationResponse(conversation_id=conversation_id)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return UnreadCountResponse(total=await service.total_unread(current_user.id))


@router.get("/{conversation_id}", response_model=Conversation)
async def get_conversation(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    convo = await service.get_conversation(conversation_id, current_user.id)
    if convo is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND)
    convo["participants"] = participants_for_display(convo.get("participants") or [], current_user.id)
    return Conversation.from_document(convo)


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(
    conversation_id: str,
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = None,
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    settings: Settings = Depends(get_settings),
):
    if await service.get_conversation(conversation_id, current_user.id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND)
    messages, next_cursor = await service.get_messages(conversation_id, current_user.id, page_size=limit or settings.MESSAGE_PAGE_SIZE, cursor=cursor)
    return MessagePage(items=[Message.from_document(m) for m in messages], next_cursor=next_cursor)


@router.post("/{conversation_id}/messages", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    message = {
        "text": body.text,
        "sender_id": current_user.id,
        "sender_name": current_user.display_name,
        "sender_role": current_user.role.value,
        "sender_avatar": current_user.avatar_url,
        "attachments": [a.model_dump(exclude_none=True) for a in body.attachments or []],
    }
    message_id = await service.send_message(conversation_id, message)
    return SendMessageResponse(message_id=message_id, conversation_id=conversation_id)


@router.post("/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_read(conversation_id: str, current_user: CurrentUser = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    updated = await service.mark_read(conversation_id, current_user.id)
    return MarkReadResponse(updated=updated)


@router.delete("/{conversation_id}/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    conversation_id: str,
    message_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    await service.delete_message(conversation_id, message_id, current_user.role)
