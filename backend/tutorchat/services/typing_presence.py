"""
Typing presence.

``TypingNotifier`` sits on the sending side and turns composer input into
debounced start/stop signals. ``TypingPresence`` sits on the receiving side and
keeps those signals in a short-lived sweep cache, so a lost stop signal expires
on its own. Nothing here is persisted.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..config import settings
from .realtime import ChannelEvent, conversation_topic


logger = logging.getLogger(__name__)


class TypingNotifier:
    """Debounced typing signals for one composer."""

    def __init__(
        self,
        publish: Callable[[bool], Awaitable[None]],
        debounce: Optional[float] = None,
        inactivity: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.publish = publish
        self.debounce = settings.TYPING_DEBOUNCE_SECONDS if debounce is None else debounce
        self.inactivity = settings.TYPING_INACTIVITY_SECONDS if inactivity is None else inactivity
        self.clock = clock
        self.active = False
        self.closed = False
        self._last_start: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._sends: Set[asyncio.Task] = set()

    @classmethod
    def for_channel(cls, channel, conversation_id: str, user_id: str, **kwargs) -> "TypingNotifier":
        async def publish(is_typing: bool) -> None:
            await channel.publish(
                conversation_topic(conversation_id),
                ChannelEvent(type="typing", conversation_id=conversation_id, user_id=user_id, is_typing=is_typing),
            )

        return cls(publish, **kwargs)

    def on_input(self, text: str) -> None:
        if self.closed:
            return
        if not text or not text.strip():
            self.stop()
            return

        now = self.clock()
        if not self.active or self._last_start is None or now - self._last_start >= self.debounce:
            self._last_start = now
            self.active = True
            self._send(True)

        self._cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(self.inactivity, self.stop)

    def stop(self) -> None:
        self._cancel_timer()
        if self.active:
            self.active = False
            self._last_start = None
            self._send(False)

    def close(self) -> None:
        """Composer went away: stop immediately and ignore further input."""
        self.stop()
        self.closed = True

    async def flush(self) -> None:
        """Wait for signals that are still being sent."""
        if self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _send(self, is_typing: bool) -> None:
        task = asyncio.get_running_loop().create_task(self._publish(is_typing))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    async def _publish(self, is_typing: bool) -> None:
        try:
            await self.publish(is_typing)
        except Exception as e:
            logger.warning("Typing signal (%s) not delivered: %s", is_typing, e)


class TypingPresence:
    """Who is typing, per conversation, as seen by ``viewer_id``."""

    def __init__(self, viewer_id: str, ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.viewer_id = viewer_id
        self.ttl = settings.TYPING_TTL_SECONDS if ttl is None else ttl
        self.clock = clock
        # (conversation_id, user_id) -> expiry
        self._expires: Dict[Tuple[str, str], float] = {}

    def receive(self, event: ChannelEvent, now: Optional[float] = None) -> None:
        if event.type != "typing" or not event.user_id or event.user_id == self.viewer_id:
            return
        key = (event.conversation_id, event.user_id)
        if event.is_typing:
            self._expires[key] = (self.clock() if now is None else now) + self.ttl
        else:
            self._expires.pop(key, None)

    def sweep(self, now: Optional[float] = None) -> None:
        now = self.clock() if now is None else now
        for key in [k for k, expiry in self._expires.items() if expiry <= now]:
            del self._expires[key]

    def active_typers(self, conversation_id: str, now: Optional[float] = None) -> List[str]:
        self.sweep(now)
        return [user_id for (conv_id, user_id) in self._expires if conv_id == conversation_id]

    def clear(self) -> None:
        """Typing state does not survive a reconnect."""
        self._expires.clear()

    async def listen(self, subscription) -> None:
        async for event in subscription:
            self.receive(event)


def typing_label(names: List[str]) -> str:
    if not names:
        return ""
    if len(names) == 1:
        return f"{names[0]} is typing..."
    if len(names) == 2:
        return f"{names[0]} and {names[1]} are typing..."
    return f"{', '.join(names[:-1])} and {names[-1]} are typing..."
