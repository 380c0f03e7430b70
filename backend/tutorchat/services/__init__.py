"""
Services package.
"""

from .conversation_store import ConversationStore
from .message_store import MessageStore
from .attachment_service import AttachmentManager, LocalObjectStorage
from .sync_engine import ThreadSync
from .typing_presence import TypingNotifier, TypingPresence
from .scroll import ScrollController

__all__ = [
    "ConversationStore",
    "MessageStore",
    "AttachmentManager",
    "LocalObjectStorage",
    "ThreadSync",
    "TypingNotifier",
    "TypingPresence",
    "ScrollController",
]
