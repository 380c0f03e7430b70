"""
Conversation routes.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from ..dependencies import get_conversation_store, get_message_store
from ..models.conversation import Conversation
from ..schemas.conversation import (
    ConversationCreate,
    ConversationListView,
    ConversationResponse,
    ConversationUpdate,
    UnreadTotal,
)
from ..schemas.message import MarkReadRequest, MessageCreate, MessagePage, MessageResponse, ReadResult
from ..services.conversation_index import build_view
from ..services.conversation_store import ConversationStore
from ..services.message_store import MessageStore
from ..utils.security import get_current_user_id
from ..utils.time import utcnow


router = APIRouter(prefix="/api/conversations", tags=["Conversations"])


async def _respond(
    store: ConversationStore, conversations: List[Conversation], viewer_id: str
) -> List[ConversationResponse]:
    """Attach the other participant's display name to each conversation."""
    others = [c.other_participant(viewer_id) for c in conversations]
    profiles = await store.get_profiles(others)
    return [
        ConversationResponse.for_viewer(
            c, viewer_id, profiles[other].full_name if other in profiles else None
        )
        for c, other in zip(conversations, others)
    ]


@router.get("", response_model=List[ConversationResponse])
async def list_conversations(
    archived: bool = False,
    muted: Optional[bool] = None,
    has_unread: Optional[bool] = None,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    """List the caller's conversations, newest activity first."""
    conversations = await store.list_conversations(user_id, archived=archived, muted=muted, has_unread=has_unread)
    return await _respond(store, conversations, user_id)


@router.get("/view", response_model=ConversationListView)
async def conversation_view(
    q: Optional[str] = None,
    archived: bool = False,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    """Date-grouped list, or ranked search hits when ``q`` is given."""
    conversations = await store.list_conversations(user_id, archived=archived)
    items = await _respond(store, conversations, user_id)
    return build_view(items, q, utcnow())


@router.get("/unread", response_model=UnreadTotal)
async def unread_total(
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    return UnreadTotal(unread_count=await store.total_unread(user_id))


@router.post("", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    data: ConversationCreate,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    """Open (or reuse) the conversation with another participant."""
    conversation = await store.create_or_get_conversation(user_id, data.participant_id, title=data.title)
    return (await _respond(store, [conversation], user_id))[0]


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    conversation = await store.get_conversation(conversation_id, user_id)
    return (await _respond(store, [conversation], user_id))[0]


@router.patch("/{conversation_id}", response_model=ConversationResponse)
async def update_conversation(
    conversation_id: str,
    updates: ConversationUpdate,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
):
    """Update the caller's own archived/muted flags."""
    conversation = await store.get_conversation(conversation_id, user_id)
    if updates.archived is not None:
        conversation = await store.set_archived(conversation_id, user_id, updates.archived)
    if updates.muted is not None:
        conversation = await store.set_muted(conversation_id, user_id, updates.muted)
    return (await _respond(store, [conversation], user_id))[0]


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(
    conversation_id: str,
    cursor: Optional[str] = None,
    after: Optional[str] = None,
    limit: Optional[int] = None,
    user_id: str = Depends(get_current_user_id),
    messages: MessageStore = Depends(get_message_store),
):
    """History page, oldest first."""
    return await messages.list_messages(conversation_id, user_id, cursor=cursor, limit=limit, after=after)


@router.post("/{conversation_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    data: MessageCreate,
    user_id: str = Depends(get_current_user_id),
    messages: MessageStore = Depends(get_message_store),
):
    return await messages.append_message(
        conversation_id,
        user_id,
        content=data.content,
        attachments=data.attachments,
        parent_message_id=data.parent_message_id,
        client_message_id=data.client_message_id,
    )


@router.post("/{conversation_id}/read", response_model=ReadResult)
async def mark_read(
    conversation_id: str,
    data: Optional[MarkReadRequest] = None,
    user_id: str = Depends(get_current_user_id),
    messages: MessageStore = Depends(get_message_store),
):
    """Mark the other participant's messages read."""
    up_to = data.up_to_message_id if data else None
    return await messages.mark_read(conversation_id, user_id, up_to)
