"""
Per-thread realtime synchronization.

``ThreadSync`` owns the local view of one open conversation: it loads history,
applies channel events on top of it, keeps optimistic sends in place until the
store confirms them, and reconciles after the channel drops.
"""

import asyncio
import bisect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import settings
from ..errors import ChannelDisconnected, InvalidRequest, MessagingError, StoreUnavailable
from ..models.message import MESSAGE_TYPE_ATTACHMENT, MESSAGE_TYPE_TEXT
from ..schemas.message import AttachmentReference, MessageResponse
from ..utils.time import EPOCH, utcnow
from .message_store import MessageStore, encode_cursor
from .realtime import ChannelEvent, MESSAGE_EVENT_TYPES, Subscription, conversation_topic


logger = logging.getLogger(__name__)


class ThreadState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class EntryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class ThreadEntry:
    """One row of the local thread view."""
    message: MessageResponse
    status: EntryStatus = EntryStatus.SENT
    error: Optional[MessagingError] = None
    # kept for retry while the send is unconfirmed
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def key(self) -> Tuple[datetime, str]:
        return (self.message.created_at, self.message.id)


def _edit_stamp(message: MessageResponse) -> datetime:
    return message.edited_at or EPOCH


class ThreadSync:
    """Local, ordered state of one conversation for one viewer."""

    def __init__(
        self,
        store: MessageStore,
        channel,
        conversation_id: str,
        viewer_id: str,
        page_size: Optional[int] = None,
        clock: Callable = utcnow,
        store_timeout: Optional[float] = None,
        auto_mark_read: bool = False,
        on_change: Optional[Callable[["ThreadSync"], None]] = None,
    ):
        self.store = store
        self.channel = channel
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self.page_size = page_size or settings.MESSAGE_PAGE_SIZE
        self.clock = clock
        self.store_timeout = store_timeout or settings.STORE_TIMEOUT_SECONDS
        self.auto_mark_read = auto_mark_read
        self.on_change = on_change

        self.state = ThreadState.IDLE
        self.has_more = False
        self.last_error: Optional[MessagingError] = None

        self._entries: Dict[str, ThreadEntry] = {}
        self._order: List[Tuple[datetime, str]] = []
        self._subscription: Optional[Subscription] = None
        self._listener: Optional[asyncio.Task] = None
        self._read_task: Optional[asyncio.Task] = None
        self._read_retry = False

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    @property
    def entries(self) -> List[ThreadEntry]:
        return [self._entries[message_id] for _, message_id in self._order]

    @property
    def messages(self) -> List[MessageResponse]:
        return [entry.message for entry in self.entries]

    def get(self, message_id: str) -> Optional[ThreadEntry]:
        return self._entries.get(message_id)

    @property
    def closed(self) -> bool:
        return self.state is ThreadState.CLOSED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Load the latest page, subscribe and go live."""
        if self.state is not ThreadState.IDLE:
            raise InvalidRequest(f"Thread is already {self.state.value}")
        self.state = ThreadState.LOADING
        self._notify()
        try:
            page = await self._call(self.store.list_messages(
                self.conversation_id, self.viewer_id, limit=self.page_size
            ))
        except MessagingError:
            self.state = ThreadState.IDLE
            self._notify()
            raise
        if self.closed:
            return
        for message in page.items:
            self._upsert(message)
        self.has_more = page.has_more

        self._subscription = await self.channel.subscribe(
            conversation_topic(self.conversation_id), MESSAGE_EVENT_TYPES
        )
        if self.closed:
            await self._subscription.close()
            return
        self._listener = asyncio.create_task(self._listen())
        self.state = ThreadState.LIVE
        self._notify()

    async def close(self) -> None:
        """Release the subscription and cancel in-flight work; later results are dropped."""
        if self.closed:
            return
        self.state = ThreadState.CLOSED
        tasks = [t for t in (self._listener, self._read_task) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        logger.debug("Thread %s closed for %s", self.conversation_id, self.viewer_id)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        content: Optional[str] = None,
        attachments: Optional[Sequence[AttachmentReference]] = None,
        parent_message_id: Optional[str] = None,
    ) -> ThreadEntry:
        """Show the message as pending right away, then deliver it.

        Returns the entry as it stands after delivery: ``sent`` with the real id,
        or ``failed`` keeping the text for ``retry``/``discard``.
        """
        if self.closed:
            raise InvalidRequest("Thread is closed")
        temp_id = f"temp-{uuid.uuid4()}"
        attachments = list(attachments or [])
        local = MessageResponse(
            id=temp_id,
            conversation_id=self.conversation_id,
            sender_id=self.viewer_id,
            content=content,
            message_type=MESSAGE_TYPE_ATTACHMENT if attachments else MESSAGE_TYPE_TEXT,
            parent_message_id=parent_message_id,
            client_message_id=temp_id,
            created_at=self.clock(),
        )
        entry = ThreadEntry(
            message=local,
            status=EntryStatus.PENDING,
            payload={"content": content, "attachments": attachments, "parent_message_id": parent_message_id},
        )
        self._insert(entry)
        self._notify()
        return await self._deliver(temp_id)

    async def retry(self, temp_id: str) -> ThreadEntry:
        entry = self._entries.get(temp_id)
        if entry is None or entry.status is not EntryStatus.FAILED:
            raise InvalidRequest("Only failed messages can be retried")
        entry.status = EntryStatus.PENDING
        entry.error = None
        self._notify()
        return await self._deliver(temp_id)

    def discard(self, temp_id: str) -> None:
        entry = self._entries.get(temp_id)
        if entry is None or entry.status is not EntryStatus.FAILED:
            raise InvalidRequest("Only failed messages can be discarded")
        self._remove(temp_id)
        self._notify()

    async def _deliver(self, temp_id: str) -> ThreadEntry:
        entry = self._entries[temp_id]
        try:
            confirmed = await self._call(self.store.append_message(
                self.conversation_id,
                self.viewer_id,
                client_message_id=temp_id,
                **entry.payload,
            ))
        except MessagingError as e:
            if self.closed:
                return entry
            logger.warning("Send failed in %s: %s", self.conversation_id, e.message)
            current = self._entries.get(temp_id)
            if current is not None:
                current.status = EntryStatus.FAILED
                current.error = e
                self._notify()
                return current
            return entry
        if self.closed:
            return entry
        self._confirm(temp_id, confirmed)
        self._notify()
        return self._entries[confirmed.id]

    def _confirm(self, temp_id: str, confirmed: MessageResponse) -> None:
        # The insert event may have replaced the pending entry already
        if temp_id in self._entries:
            self._remove(temp_id)
        self._upsert(confirmed)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def load_older(self) -> List[MessageResponse]:
        """Fetch the page just before the oldest confirmed message."""
        if self.closed or not self.has_more:
            return []
        oldest = self._oldest_confirmed()
        cursor = encode_cursor(*oldest.key) if oldest else None
        page = await self._call(self.store.list_messages(
            self.conversation_id, self.viewer_id, cursor=cursor, limit=self.page_size
        ))
        if self.closed:
            return []
        for message in page.items:
            self._upsert(message)
        self.has_more = page.has_more
        self._notify()
        return page.items

    def _confirmed(self) -> List[ThreadEntry]:
        return [e for e in self.entries if e.status is EntryStatus.SENT]

    def _oldest_confirmed(self) -> Optional[ThreadEntry]:
        confirmed = self._confirmed()
        return confirmed[0] if confirmed else None

    def _newest_confirmed(self) -> Optional[ThreadEntry]:
        confirmed = self._confirmed()
        return confirmed[-1] if confirmed else None

    # ------------------------------------------------------------------
    # Read receipts
    # ------------------------------------------------------------------

    def mark_read(self) -> Optional[asyncio.Task]:
        """Mark the thread read in the background; failures retry on the next insert."""
        if self.closed:
            return None
        if self._read_task is not None and not self._read_task.done():
            return self._read_task
        self._read_task = asyncio.create_task(self._mark_read())
        return self._read_task

    async def _mark_read(self) -> None:
        try:
            await self._call(self.store.mark_read(self.conversation_id, self.viewer_id))
            self._read_retry = False
        except MessagingError as e:
            self._read_retry = True
            logger.warning("Mark read failed for %s: %s", self.conversation_id, e.message)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _listen(self) -> None:
        while not self.closed:
            try:
                async for event in self._subscription:
                    self.apply(event)
                return
            except ChannelDisconnected:
                if self.closed:
                    return
                logger.info("Channel for %s dropped, reconnecting", self.conversation_id)
                if not await self._reconnect():
                    return

    def apply(self, event: ChannelEvent) -> None:
        """Merge one channel event into the local view."""
        if self.closed or event.conversation_id != self.conversation_id:
            return
        if event.type == "insert" and event.message is not None:
            self._upsert(event.message)
            if event.message.sender_id != self.viewer_id and (self.auto_mark_read or self._read_retry):
                self.mark_read()
        elif event.type in ("update", "delete") and event.message is not None:
            self._upsert(event.message)
        elif event.type == "read":
            for message_id in event.message_ids:
                entry = self._entries.get(message_id)
                if entry is not None and not entry.message.is_read:
                    entry.message = entry.message.model_copy(
                        update={"is_read": True, "read_at": event.occurred_at}
                    )
        else:
            return
        self._notify()

    def _upsert(self, incoming: MessageResponse) -> None:
        existing = self._entries.get(incoming.id)
        if existing is None:
            pending = incoming.client_message_id and self._entries.get(incoming.client_message_id)
            if pending and pending.status is not EntryStatus.SENT:
                self._remove(pending.id)
            self._insert(ThreadEntry(message=incoming))
            return

        current = existing.message
        if current.is_deleted and not incoming.is_deleted:
            return
        if not incoming.is_deleted and _edit_stamp(incoming) < _edit_stamp(current):
            return
        if current.is_read and not incoming.is_read:
            incoming = incoming.model_copy(update={"is_read": True, "read_at": current.read_at})
        if incoming.created_at != current.created_at:
            self._remove(incoming.id)
            self._insert(ThreadEntry(message=incoming))
        else:
            existing.message = incoming
            existing.status = EntryStatus.SENT

    def _insert(self, entry: ThreadEntry) -> None:
        # bisect only shifts the tail after the insertion point
        self._entries[entry.id] = entry
        bisect.insort(self._order, entry.key)

    def _remove(self, message_id: str) -> None:
        entry = self._entries.pop(message_id)
        index = bisect.bisect_left(self._order, entry.key)
        if index < len(self._order) and self._order[index] == entry.key:
            del self._order[index]

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    async def _reconnect(self) -> bool:
        self.state = ThreadState.RECONNECTING
        self._notify()
        delay = settings.RECONNECT_INITIAL_DELAY_SECONDS
        for attempt in range(1, settings.RECONNECT_MAX_ATTEMPTS + 1):
            try:
                self._subscription = await self.channel.subscribe(
                    conversation_topic(self.conversation_id), MESSAGE_EVENT_TYPES
                )
                await self._reconcile()
            except (ChannelDisconnected, StoreUnavailable, ConnectionError, OSError) as e:
                logger.warning("Reconnect attempt %d for %s failed: %s", attempt, self.conversation_id, e)
                if self._subscription is not None:
                    await self._subscription.close()
                    self._subscription = None
                await asyncio.sleep(delay)
                delay = min(delay * 2, settings.RECONNECT_MAX_DELAY_SECONDS)
                continue
            if self.closed:
                return False
            self.state = ThreadState.LIVE
            self.last_error = None
            self._notify()
            logger.info("Thread %s live again after %d attempt(s)", self.conversation_id, attempt)
            return True

        self.last_error = ChannelDisconnected("Could not reconnect to the realtime channel")
        logger.error("Giving up reconnecting %s", self.conversation_id)
        self._notify()
        return False

    async def _reconcile(self) -> None:
        """Fetch what was missed while disconnected; the channel never replays it."""
        newest = self._newest_confirmed()
        if newest is None:
            page = await self._call(self.store.list_messages(
                self.conversation_id, self.viewer_id, limit=self.page_size
            ))
            if not self.closed:
                for message in page.items:
                    self._upsert(message)
                self.has_more = page.has_more
            return

        oldest = self._oldest_confirmed()
        cursor = encode_cursor(*newest.key)
        while not self.closed:
            page = await self._call(self.store.list_messages(
                self.conversation_id, self.viewer_id, after=cursor, limit=self.page_size
            ))
            if self.closed:
                return
            for message in page.items:
                self._upsert(message)
            if not page.has_more:
                break
            cursor = page.next_cursor

        await self._refresh_window(oldest.key)

    async def _refresh_window(self, oldest_key: Tuple[datetime, str]) -> None:
        """Re-read the loaded history so missed edits, deletes and reads are applied."""
        cursor = None
        while not self.closed:
            page = await self._call(self.store.list_messages(
                self.conversation_id, self.viewer_id, cursor=cursor, limit=self.page_size
            ))
            if self.closed:
                return
            for message in page.items:
                # older pages stay with load_older
                if (message.created_at, message.id) >= oldest_key:
                    self._upsert(message)
            if not page.has_more or not page.items or (page.items[0].created_at, page.items[0].id) <= oldest_key:
                return
            cursor = page.next_cursor

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable("Store call timed out") from e

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)
