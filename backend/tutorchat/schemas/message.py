"""
Message-related Pydantic schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime


class AttachmentReference(BaseModel):
    """Durable reference returned by an upload, passed back when sending."""
    storage_path: str
    storage_bucket: str
    original_filename: str
    mime_type: str
    file_size: int
    image_width: Optional[int] = None
    image_height: Optional[int] = None


class AttachmentResponse(BaseModel):
    """Attachment metadata; URLs are resolved separately."""
    id: str
    message_id: str
    original_filename: str
    mime_type: str
    file_size: int
    is_uploaded: bool
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MessageCreate(BaseModel):
    """Schema for sending a message into an existing conversation."""
    content: Optional[str] = None
    attachments: List[AttachmentReference] = []
    parent_message_id: Optional[str] = None
    client_message_id: Optional[str] = Field(None, max_length=64)


class DirectMessageCreate(MessageCreate):
    """First-send path: the conversation is resolved from the recipient."""
    recipient_id: str


class MessageEdit(BaseModel):
    content: str


class MarkReadRequest(BaseModel):
    up_to_message_id: Optional[str] = None


class MessageResponse(BaseModel):
    """Message response schema."""
    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    message_type: Literal["text", "attachment"]
    parent_message_id: Optional[str] = None
    thread_depth: int = 0
    client_message_id: Optional[str] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    attachments: List[AttachmentResponse] = []
    created_at: datetime

    class Config:
        from_attributes = True

    @classmethod
    def from_message(cls, message) -> "MessageResponse":
        response = cls.model_validate(message)
        if response.is_deleted:
            # deleted messages keep id/timestamps only
            response.content = ""
            response.attachments = []
        return response


class MessagePage(BaseModel):
    """One page of history, oldest first."""
    items: List[MessageResponse]
    has_more: bool
    next_cursor: Optional[str] = None


class ReadResult(BaseModel):
    conversation_id: str
    message_ids: List[str]
    unread_count: int


class AccessUrlResponse(BaseModel):
    attachment_id: str
    url: str
    expires_at: datetime
    action: Literal["preview", "download"]
