"""
Message store adapter.

Appends, edits, soft deletes and read marking run in one transaction each; the
matching channel event is published after the commit. History pages are keyed
by ``(created_at, id)`` cursors.
"""

import logging
import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta
from pathlib import PurePosixPath
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..database import store_session
from ..errors import (
    InvalidRequest,
    MessageNotFound,
    NotAuthor,
    NotEditable,
    RateLimited,
)
from ..models.conversation import Conversation
from ..models.message import Message, MessageAttachment, MESSAGE_TYPE_ATTACHMENT, MESSAGE_TYPE_TEXT
from ..schemas.message import AttachmentReference, MessagePage, MessageResponse, ReadResult
from ..utils.time import from_micros, to_micros, utcnow
from .conversation_store import ConversationStore
from .realtime import ChannelEvent, conversation_topic


logger = logging.getLogger(__name__)


def encode_cursor(created_at: datetime, message_id: str) -> str:
    return f"{to_micros(created_at)}:{message_id}"


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    micros, sep, message_id = cursor.partition(":")
    if not sep or not message_id:
        raise InvalidRequest("Invalid cursor")
    try:
        return from_micros(int(micros)), message_id
    except (ValueError, OverflowError) as e:
        raise InvalidRequest("Invalid cursor") from e


def _older_than(created_at: datetime, message_id: str):
    return or_(
        Message.created_at < created_at,
        and_(Message.created_at == created_at, Message.id < message_id),
    )


def _newer_than(created_at: datetime, message_id: str):
    return or_(
        Message.created_at > created_at,
        and_(Message.created_at == created_at, Message.id > message_id),
    )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _owned_by(storage_path: str, owner_id: str) -> bool:
    """True for a plain ``<owner>/<object>`` reference with no relative segments."""
    if "\\" in storage_path:
        return False
    path = PurePosixPath(storage_path)
    parts = path.parts
    return (
        not path.is_absolute()
        and len(parts) >= 2
        and parts[0] == owner_id
        and all(part not in (".", "..") for part in storage_path.split("/"))
    )


class RateLimiter:
    """Sliding-window limit of messages per sender."""

    def __init__(self, limit: int, window_seconds: float, clock: Callable = utcnow):
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock
        self._sent: Dict[str, Deque[datetime]] = defaultdict(deque)

    def check(self, sender_id: str) -> None:
        now = self.clock()
        sent = self._sent[sender_id]
        while sent and now - sent[0] >= self.window:
            sent.popleft()
        if len(sent) >= self.limit:
            raise RateLimited()
        sent.append(now)


class MessageStore:
    """Service for message persistence and the events that mirror it."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel,
        conversations: Optional[ConversationStore] = None,
        clock: Callable = utcnow,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.clock = clock
        self.conversations = conversations or ConversationStore(session_factory, clock=clock)
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.MESSAGE_RATE_LIMIT, settings.MESSAGE_RATE_WINDOW_SECONDS, clock=clock
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str] = None,
        attachments: Optional[Sequence[AttachmentReference]] = None,
        parent_message_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> MessageResponse:
        """Persist a message, move the last-message pointer and bump the recipient's unread count.

        Sending again with a ``client_message_id`` that is already stored returns
        the stored message unchanged; no second row, unread bump or event.
        """
        content = content.strip() if content else None
        attachments = list(attachments or [])
        if not content and not attachments:
            raise InvalidRequest("Message content is required")
        if content and len(content) > settings.MAX_MESSAGE_LENGTH:
            raise InvalidRequest(f"Message is too long (maximum {settings.MAX_MESSAGE_LENGTH} characters)")
        for ref in attachments:
            if not _owned_by(ref.storage_path, sender_id):
                raise InvalidRequest("Attachment was not uploaded by the sender")

        async with store_session(self.session_factory) as db:
            conversation = await self.conversations.load(db, conversation_id, sender_id)

            if client_message_id:
                stored = await self._find_by_client_id(db, conversation_id, sender_id, client_message_id)
                if stored is not None:
                    logger.debug("Resend of %s resolved to message %s", client_message_id, stored.id)
                    return MessageResponse.from_message(stored)

            thread_depth = 0
            if parent_message_id:
                parent = await db.get(Message, parent_message_id)
                if parent is None or parent.conversation_id != conversation.id:
                    raise InvalidRequest("Parent message does not belong to this conversation")
                thread_depth = min(parent.thread_depth + 1, settings.MAX_THREAD_DEPTH)

            self.rate_limiter.check(sender_id)

            now = self.clock()
            message = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation.id,
                sender_id=sender_id,
                content=content,
                message_type=MESSAGE_TYPE_ATTACHMENT if attachments else MESSAGE_TYPE_TEXT,
                client_message_id=client_message_id,
                parent_message_id=parent_message_id,
                thread_depth=thread_depth,
                is_edited=False,
                is_deleted=False,
                is_read=False,
                created_at=now,
                updated_at=now,
            )
            message.attachments = [
                MessageAttachment(
                    id=str(uuid.uuid4()),
                    message_id=message.id,
                    original_filename=ref.original_filename,
                    mime_type=ref.mime_type,
                    file_size=ref.file_size,
                    storage_path=ref.storage_path,
                    storage_bucket=ref.storage_bucket,
                    is_uploaded=True,
                    image_width=ref.image_width,
                    image_height=ref.image_height,
                    created_at=now,
                )
                for ref in attachments
            ]
            db.add(message)

            self._advance_pointer(conversation, message, now)
            await self.conversations.increment_unread(
                conversation.id, conversation.other_participant(sender_id), db=db
            )
            try:
                await db.commit()
            except IntegrityError:
                # A concurrent resend with the same client_message_id committed first
                await db.rollback()
                stored = None
                if client_message_id:
                    stored = await self._find_by_client_id(db, conversation_id, sender_id, client_message_id)
                if stored is None:
                    raise
                return MessageResponse.from_message(stored)
            response = MessageResponse.from_message(message)

        logger.debug("Message %s appended to %s by %s", response.id, conversation_id, sender_id)
        await self._publish(ChannelEvent(type="insert", conversation_id=conversation_id, message=response))
        return response

    async def send_direct(
        self,
        sender_id: str,
        recipient_id: str,
        content: Optional[str] = None,
        attachments: Optional[Sequence[AttachmentReference]] = None,
        parent_message_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> MessageResponse:
        """First-send path: resolve the conversation for the pair, then append."""
        conversation = await self.conversations.create_or_get_conversation(sender_id, recipient_id)
        return await self.append_message(
            conversation.id,
            sender_id,
            content=content,
            attachments=attachments,
            parent_message_id=parent_message_id,
            client_message_id=client_message_id,
        )

    async def edit_message(self, message_id: str, editor_id: str, new_content: str) -> MessageResponse:
        new_content = (new_content or "").strip()
        if not new_content:
            raise InvalidRequest("Message content is required")
        if len(new_content) > settings.MAX_MESSAGE_LENGTH:
            raise InvalidRequest(f"Message is too long (maximum {settings.MAX_MESSAGE_LENGTH} characters)")

        async with store_session(self.session_factory) as db:
            message = await self._get(db, message_id)
            if message.sender_id != editor_id:
                raise NotEditable("Only the sender can edit this message")
            if message.is_deleted:
                raise NotEditable("Deleted messages cannot be edited")
            now = self.clock()
            if now - message.created_at > timedelta(hours=settings.EDIT_WINDOW_HOURS):
                raise NotEditable(f"Messages can only be edited within {settings.EDIT_WINDOW_HOURS} hours")

            if message.original_content is None:
                message.original_content = message.content
            message.content = new_content
            message.is_edited = True
            message.edited_at = now
            message.updated_at = now

            conversation = await db.get(Conversation, message.conversation_id)
            if conversation.last_message_id == message.id:
                conversation.last_message_snippet = self._snippet(message)
            await db.commit()
            response = MessageResponse.from_message(message)

        await self._publish(ChannelEvent(type="update", conversation_id=response.conversation_id, message=response))
        return response

    async def delete_message(self, message_id: str, requester_id: str) -> MessageResponse:
        """Soft delete; a second delete returns the already deleted message."""
        async with store_session(self.session_factory) as db:
            message = await self._get(db, message_id)
            if message.sender_id != requester_id:
                raise NotAuthor("Only the sender can delete this message")
            if message.is_deleted:
                return MessageResponse.from_message(message)

            now = self.clock()
            message.content = ""
            message.is_deleted = True
            message.deleted_at = now
            message.deleted_by = requester_id
            message.updated_at = now

            conversation = await db.get(Conversation, message.conversation_id)
            if conversation.last_message_id == message.id:
                conversation.last_message_snippet = None
            await db.commit()
            response = MessageResponse.from_message(message)

        logger.info("Message %s deleted by %s", message_id, requester_id)
        await self._publish(ChannelEvent(type="delete", conversation_id=response.conversation_id, message=response))
        return response

    async def mark_read(
        self, conversation_id: str, reader_id: str, up_to_message_id: Optional[str] = None
    ) -> ReadResult:
        """Mark the other participant's messages read, up to and including ``up_to_message_id``."""
        async with store_session(self.session_factory) as db:
            conversation = await self.conversations.load(db, conversation_id, reader_id)
            other_id = conversation.other_participant(reader_id)
            unread = [
                Message.conversation_id == conversation_id,
                Message.sender_id == other_id,
                Message.is_read == False,  # noqa: E712
            ]

            conditions = list(unread)
            if up_to_message_id:
                target = await db.get(Message, up_to_message_id)
                if target is None or target.conversation_id != conversation_id:
                    raise MessageNotFound()
                conditions.append(or_(
                    Message.created_at < target.created_at,
                    and_(Message.created_at == target.created_at, Message.id <= target.id),
                ))

            result = await db.execute(select(Message.id).where(*conditions))
            message_ids = list(result.scalars().all())
            if message_ids:
                await db.execute(
                    update(Message)
                    .where(Message.id.in_(message_ids))
                    .values(is_read=True, read_at=self.clock())
                    .execution_options(synchronize_session=False)
                )

            result = await db.execute(select(func.count()).select_from(Message).where(*unread))
            remaining = int(result.scalar_one())
            await self.conversations.reset_unread(conversation_id, reader_id, db=db, remaining=remaining)
            await db.commit()

        if message_ids:
            await self._publish(ChannelEvent(
                type="read", conversation_id=conversation_id, message_ids=message_ids, user_id=reader_id
            ))
        return ReadResult(conversation_id=conversation_id, message_ids=message_ids, unread_count=remaining)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_message(self, message_id: str, viewer_id: str) -> MessageResponse:
        async with store_session(self.session_factory) as db:
            message = await self._get(db, message_id)
            await self.conversations.load(db, message.conversation_id, viewer_id)
            return MessageResponse.from_message(message)

    async def list_messages(
        self,
        conversation_id: str,
        viewer_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
    ) -> MessagePage:
        """One page of history, oldest first.

        Without ``after`` the page holds the messages just older than ``cursor``
        (the latest ones when it is omitted) and ``next_cursor`` points at the
        oldest item. With ``after`` it holds the messages just newer than that
        cursor and ``next_cursor`` points at the newest item.
        """
        limit = max(1, min(limit or settings.MESSAGE_PAGE_SIZE, 200))
        stmt = select(Message).where(Message.conversation_id == conversation_id)

        if after:
            stmt = stmt.where(_newer_than(*decode_cursor(after))).order_by(
                Message.created_at.asc(), Message.id.asc()
            )
        else:
            if cursor:
                stmt = stmt.where(_older_than(*decode_cursor(cursor)))
            stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc())

        async with store_session(self.session_factory) as db:
            await self.conversations.load(db, conversation_id, viewer_id)
            result = await db.execute(stmt.limit(limit + 1))
            rows = list(result.scalars().all())

        has_more = len(rows) > limit
        rows = rows[:limit]
        if after:
            next_cursor = encode_cursor(rows[-1].created_at, rows[-1].id) if rows else after
        else:
            rows.reverse()
            next_cursor = encode_cursor(rows[0].created_at, rows[0].id) if rows else None

        return MessagePage(
            items=[MessageResponse.from_message(m) for m in rows],
            has_more=has_more,
            next_cursor=next_cursor,
        )

    async def search_messages(self, viewer_id: str, query: str, limit: int = 20) -> List[MessageResponse]:
        """Case-insensitive substring search over the viewer's conversations."""
        query = (query or "").strip()
        if len(query) < 2:
            raise InvalidRequest("Search query must be at least 2 characters")

        stmt = (
            select(Message)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .where(or_(Conversation.participant_1_id == viewer_id,
                       Conversation.participant_2_id == viewer_id))
            .where(Message.is_deleted == False)  # noqa: E712
            .where(Message.content.ilike(f"%{_escape_like(query)}%", escape="\\"))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        async with store_session(self.session_factory) as db:
            result = await db.execute(stmt)
            return [MessageResponse.from_message(m) for m in result.scalars().all()]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get(self, db: AsyncSession, message_id: str) -> Message:
        message = await db.get(Message, message_id)
        if message is None:
            raise MessageNotFound()
        return message

    async def _find_by_client_id(
        self, db: AsyncSession, conversation_id: str, sender_id: str, client_message_id: str
    ) -> Optional[Message]:
        result = await db.execute(
            select(Message).where(
                Message.conversation_id == conversation_id,
                Message.sender_id == sender_id,
                Message.client_message_id == client_message_id,
            )
        )
        return result.scalar_one_or_none()

    def _advance_pointer(self, conversation: Conversation, message: Message, now: datetime) -> None:
        # last_message_at never moves backwards
        if message.created_at >= conversation.last_message_at:
            conversation.last_message_at = message.created_at
            conversation.last_message_id = message.id
            conversation.last_message_snippet = self._snippet(message)
        conversation.updated_at = now

    @staticmethod
    def _snippet(message: Message) -> Optional[str]:
        if message.content:
            return message.content[:settings.SNIPPET_LENGTH]
        if message.attachments:
            return f"[attachment] {message.attachments[0].original_filename}"[:settings.SNIPPET_LENGTH]
        return None

    async def _publish(self, event: ChannelEvent) -> None:
        # The write is already committed; subscribers that miss this reconcile on reconnect
        try:
            await self.channel.publish(conversation_topic(event.conversation_id), event)
        except Exception as e:
            logger.warning("Failed to publish %s event for %s: %s", event.type, event.conversation_id, e)
