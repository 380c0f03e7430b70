"""
Message routes that are addressed by message id.
"""

from typing import List

from fastapi import APIRouter, Depends, Query, status

from ..dependencies import get_message_store
from ..schemas.message import DirectMessageCreate, MessageEdit, MessageResponse
from ..services.message_store import MessageStore
from ..utils.security import get_current_user_id


router = APIRouter(prefix="/api/messages", tags=["Messages"])


@router.post("/direct", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_direct(
    data: DirectMessageCreate,
    user_id: str = Depends(get_current_user_id),
    messages: MessageStore = Depends(get_message_store),
):
    """Send to a participant, creating the conversation on first contact."""
    return await messages.send_direct(
        user_id,
        data.recipient_id,
        content=data.content,
        attachments=data.attachments,
        parent_message_id=data.parent_message_id,
        client_message_id=data.client_message_id,
    )


@router.get("/search", response_model=List[MessageResponse])
async def search_messages(
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    messages: MessageStore = Depends(get_message_store),
):
    return await messages.search_messages(user_id, q, limit=limit)


@router.get("/{message_id}", response_model=MessageResponse)
async def get_message(
    message_id: str,
    user_id: str = Depends(get_current_user_id),
    messages: MessageStore = Depends(get_message_store),
):
    return await messages.get_message(message_id, user_id)


@router.patch("/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: str,
    data: MessageEdit,
    user_id: str = Depends(get_current_user_id),
    messages: MessageStore = Depends(get_message_store),
):
    """Edit within the edit window; sender only."""
    return await messages.edit_message(message_id, user_id, data.content)


@router.delete("/{message_id}", response_model=MessageResponse)
async def delete_message(
    message_id: str,
    user_id: str = Depends(get_current_user_id),
    messages: MessageStore = Depends(get_message_store),
):
    """Soft delete; sender only."""
    return await messages.delete_message(message_id, user_id)
