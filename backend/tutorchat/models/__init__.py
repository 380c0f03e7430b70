"""
Database models package.
"""

from .conversation import Conversation
from .message import Message, MessageAttachment
from .participant import Participant

__all__ = ["Conversation", "Message", "MessageAttachment", "Participant"]
