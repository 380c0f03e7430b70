"""
Participant profile model.
"""

from sqlalchemy import Column, String, Boolean

from ..database import Base, UTCDateTime
from ..utils.time import utcnow


class Participant(Base):
    """Display profile for an identity-provider user id."""

    __tablename__ = "participants"

    id = Column(String(64), primary_key=True)
    full_name = Column(String(100), nullable=False)
    avatar_url = Column(String(500), nullable=True)
    is_instructor = Column(Boolean, nullable=False, default=False)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
