"""
Conversation-related Pydantic schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class ConversationCreate(BaseModel):
    """Schema for opening a conversation with another participant."""
    participant_id: str
    title: Optional[str] = Field(None, max_length=200)


class ConversationUpdate(BaseModel):
    """Per-participant flags; only the caller's own flags change."""
    archived: Optional[bool] = None
    muted: Optional[bool] = None


class ParticipantProfile(BaseModel):
    id: str
    full_name: str
    avatar_url: Optional[str] = None
    is_instructor: bool = False

    class Config:
        from_attributes = True


class ConversationResponse(BaseModel):
    """Conversation as seen by one participant."""
    id: str
    participant_ids: List[str]
    other_participant_id: str
    other_participant_name: Optional[str] = None
    title: Optional[str] = None
    created_at: datetime
    last_message_at: datetime
    last_message_id: Optional[str] = None
    last_message_snippet: Optional[str] = None
    archived: bool
    muted: bool
    unread_count: int

    @classmethod
    def for_viewer(cls, conversation, viewer_id: str, other_name: Optional[str] = None) -> "ConversationResponse":
        return cls(
            id=conversation.id,
            participant_ids=list(conversation.participant_ids),
            other_participant_id=conversation.other_participant(viewer_id),
            other_participant_name=other_name,
            title=conversation.title,
            created_at=conversation.created_at,
            last_message_at=conversation.last_message_at,
            last_message_id=conversation.last_message_id,
            last_message_snippet=conversation.last_message_snippet,
            archived=conversation.is_archived_for(viewer_id),
            muted=conversation.is_muted_for(viewer_id),
            unread_count=conversation.unread_count_for(viewer_id),
        )


class HighlightSpan(BaseModel):
    start: int
    end: int


class ConversationSearchHit(BaseModel):
    conversation: ConversationResponse
    name_highlights: List[HighlightSpan] = []
    snippet_highlights: List[HighlightSpan] = []


class ConversationGroup(BaseModel):
    label: str
    conversations: List[ConversationResponse]


class ConversationListView(BaseModel):
    """Grouped view without a query, flat ranked hits with one."""
    query: Optional[str] = None
    groups: List[ConversationGroup] = []
    hits: List[ConversationSearchHit] = []


class UnreadTotal(BaseModel):
    unread_count: int


class ParticipantProfileUpdate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=100)
    is_instructor: bool = False
    avatar_url: Optional[str] = Field(None, max_length=500)


class TypingSignal(BaseModel):
    is_typing: bool = True
