"""
FastAPI dependencies wiring the services to the process-wide collaborators.
"""

from datetime import datetime
from typing import Dict, Tuple

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import settings
from .database import get_session_factory
from .services.attachment_service import AttachmentManager, LocalObjectStorage
from .services.conversation_store import ConversationStore
from .services.message_store import MessageStore, RateLimiter
from .services.realtime import get_channel_provider


_rate_limiter = None
_storage = None
_url_cache: Dict[str, Tuple[str, datetime]] = {}


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(settings.MESSAGE_RATE_LIMIT, settings.MESSAGE_RATE_WINDOW_SECONDS)
    return _rate_limiter


def get_object_storage() -> LocalObjectStorage:
    global _storage
    if _storage is None:
        _storage = LocalObjectStorage()
    return _storage


def get_conversation_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ConversationStore:
    return ConversationStore(session_factory)


def get_message_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    channel=Depends(get_channel_provider),
    conversations: ConversationStore = Depends(get_conversation_store),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> MessageStore:
    return MessageStore(session_factory, channel, conversations=conversations, rate_limiter=rate_limiter)


def get_attachment_manager(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    storage: LocalObjectStorage = Depends(get_object_storage),
) -> AttachmentManager:
    return AttachmentManager(session_factory, storage, url_cache=_url_cache)
