"""
History pagination and autoscroll decisions for a thread view.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from ..config import settings
from ..schemas.message import MessagePage


logger = logging.getLogger(__name__)

PageFetcher = Callable[[Optional[str]], Awaitable[MessagePage]]


class ScrollController:
    """Tracks the viewport and deduplicates older-history loads."""

    def __init__(self, viewer_id: str, threshold: Optional[int] = None):
        self.viewer_id = viewer_id
        self.threshold = settings.SCROLL_THRESHOLD_PX if threshold is None else threshold
        self.auto_scroll = True
        self.cancelled = False
        self._loads: Dict[Optional[str], asyncio.Task] = {}

    def update_viewport(self, scroll_top: float, viewport_height: float, content_height: float) -> bool:
        distance_from_bottom = content_height - (scroll_top + viewport_height)
        self.auto_scroll = distance_from_bottom <= self.threshold
        return self.auto_scroll

    def should_scroll_on_new_message(self, sender_id: str) -> bool:
        # Senders always see their own message land
        return self.auto_scroll or sender_id == self.viewer_id

    def should_load_older(self, scroll_top: float, has_more: bool) -> bool:
        return has_more and not self.cancelled and scroll_top <= self.threshold

    async def load_older(self, cursor: Optional[str], fetch: PageFetcher) -> Optional[MessagePage]:
        """Run ``fetch(cursor)`` once; concurrent callers for the same cursor share it.

        Returns None once the controller has been cancelled.
        """
        if self.cancelled:
            return None
        task = self._loads.get(cursor)
        if task is None:
            task = asyncio.create_task(fetch(cursor))
            self._loads[cursor] = task
            task.add_done_callback(lambda _: self._loads.pop(cursor, None))
        try:
            page = await asyncio.shield(task)
        except asyncio.CancelledError:
            if self.cancelled:
                return None
            raise
        return None if self.cancelled else page

    @property
    def loading(self) -> bool:
        return bool(self._loads)

    def cancel(self) -> None:
        """View went away: drop in-flight loads and ignore their results."""
        self.cancelled = True
        for task in list(self._loads.values()):
            task.cancel()
        self._loads.clear()
