"""
API Routers package.
"""

from .attachments import router as attachments_router
from .conversations import router as conversations_router
from .events import router as events_router
from .files import router as files_router
from .messages import router as messages_router
from .participants import router as participants_router

__all__ = [
    "attachments_router",
    "conversations_router",
    "events_router",
    "files_router",
    "messages_router",
    "participants_router",
]
