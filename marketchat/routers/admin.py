from fastapi import APIRouter, Depends

from marketchat.schemas.chat import RepairResponse
from marketchat.schemas.user import CurrentUser
from marketchat.services.chat_service import ChatService
from marketchat.utils.dependencies import get_chat_service, require_admin


router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/conversations/repair", response_model=RepairResponse)
async def repair_conversations(admin: CurrentUser = Depends(require_admin), service: ChatService = Depends(get_chat_service)):
    """Rewrite participant ids stored in serialized form to their canonical ids."""
    return RepairResponse(fixed=await service.repair_conversations())
