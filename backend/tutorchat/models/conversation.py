"""
Conversation database model.
"""

import uuid

from sqlalchemy import Column, String, Integer, Boolean, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship

from ..database import Base, UTCDateTime
from ..utils.time import utcnow


class Conversation(Base):
    """One-to-one thread between a student and an instructor.

    The participant pair is stored sorted so the unique constraint covers the
    unordered pair. Per-participant flags live in ``*_participant_1`` /
    ``*_participant_2`` columns; use the slot helpers instead of reading them
    directly.
    """

    __tablename__ = "conversations"

    __table_args__ = (
        UniqueConstraint("participant_1_id", "participant_2_id", name="uq_conversations_pair"),
        CheckConstraint("participant_1_id < participant_2_id", name="ck_conversations_distinct_pair"),
        Index("ix_conversations_p1_last", "participant_1_id", "last_message_at"),
        Index("ix_conversations_p2_last", "participant_2_id", "last_message_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    participant_1_id = Column(String(64), nullable=False)
    participant_2_id = Column(String(64), nullable=False)
    title = Column(String(200), nullable=True)

    # Last message pointer
    last_message_id = Column(String(36), nullable=True)
    last_message_at = Column(UTCDateTime, nullable=False, default=utcnow)
    last_message_snippet = Column(String(200), nullable=True)

    # Per-participant state
    archived_by_participant_1 = Column(Boolean, nullable=False, default=False)
    archived_by_participant_2 = Column(Boolean, nullable=False, default=False)
    muted_by_participant_1 = Column(Boolean, nullable=False, default=False)
    muted_by_participant_2 = Column(Boolean, nullable=False, default=False)
    unread_count_participant_1 = Column(Integer, nullable=False, default=0)
    unread_count_participant_2 = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")

    @staticmethod
    def ordered_pair(user_a: str, user_b: str) -> tuple:
        return (user_a, user_b) if user_a < user_b else (user_b, user_a)

    @property
    def participant_ids(self) -> tuple:
        return (self.participant_1_id, self.participant_2_id)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def slot(self, user_id: str) -> int:
        """Return 1 or 2 for the participant's column suffix."""
        if user_id == self.participant_1_id:
            return 1
        if user_id == self.participant_2_id:
            return 2
        raise ValueError(f"{user_id} is not a participant of conversation {self.id}")

    def other_participant(self, user_id: str) -> str:
        return self.participant_2_id if self.slot(user_id) == 1 else self.participant_1_id

    def is_archived_for(self, user_id: str) -> bool:
        return getattr(self, f"archived_by_participant_{self.slot(user_id)}")

    def is_muted_for(self, user_id: str) -> bool:
        return getattr(self, f"muted_by_participant_{self.slot(user_id)}")

    def unread_count_for(self, user_id: str) -> int:
        return getattr(self, f"unread_count_participant_{self.slot(user_id)}")
