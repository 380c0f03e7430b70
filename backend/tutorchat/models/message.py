"""
Message and attachment database models.
"""

import uuid

from sqlalchemy import Column, Integer, String, ForeignKey, Text, Boolean, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base, UTCDateTime
from ..utils.time import utcnow


MESSAGE_TYPE_TEXT = "text"
MESSAGE_TYPE_ATTACHMENT = "attachment"


class Message(Base):
    """Append-only chat message with soft edit/delete."""

    __tablename__ = "messages"

    # History pages walk (created_at, id) inside one conversation
    __table_args__ = (
        Index("ix_messages_conversation_order", "conversation_id", "created_at", "id"),
        # A resent client_message_id resolves to the stored row
        UniqueConstraint("conversation_id", "sender_id", "client_message_id", name="uq_messages_client_id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(String(64), nullable=False)

    # Message content
    content = Column(Text, nullable=True)  # null for attachment-only messages
    message_type = Column(String(20), nullable=False, default=MESSAGE_TYPE_TEXT)
    client_message_id = Column(String(64), nullable=True)

    # Threading
    parent_message_id = Column(String(36), ForeignKey("messages.id"), nullable=True)
    thread_depth = Column(Integer, nullable=False, default=0)

    # Edit / delete state
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(UTCDateTime, nullable=True)
    original_content = Column(Text, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(UTCDateTime, nullable=True)
    deleted_by = Column(String(64), nullable=True)

    # Read receipt (one recipient per conversation)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(UTCDateTime, nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
    attachments = relationship(
        "MessageAttachment",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MessageAttachment.created_at",
    )

    @property
    def order_key(self) -> tuple:
        return (self.created_at, self.id)


class MessageAttachment(Base):
    """File attached to a message; ``storage_path`` is an opaque storage reference."""

    __tablename__ = "message_attachments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    message_id = Column(String(36), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)

    original_filename = Column(String(255), nullable=False)
    mime_type = Column(String(120), nullable=False)
    file_size = Column(Integer, nullable=False)
    storage_path = Column(String(500), nullable=False)
    storage_bucket = Column(String(100), nullable=False)
    is_uploaded = Column(Boolean, nullable=False, default=False)

    # Image metadata
    image_width = Column(Integer, nullable=True)
    image_height = Column(Integer, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    message = relationship("Message", back_populates="attachments")
