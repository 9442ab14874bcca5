import asyncio
import logging
from typing import Awaitable, Callable, Optional


logger = logging.getLogger(__name__)

SEARCH_DEBOUNCE_DELAY = 0.35
SEARCH_MAX_WAIT = 0.8  # dispatch at least this often while the user keeps typing
MIN_SEARCH_LENGTH = 2


class SearchDebouncer:
    """Turns keystrokes into search dispatches.

    Waits for a pause in typing, but never longer than ``max_wait`` after the first
    pending keystroke. Queries shorter than ``min_length`` are ignored, an empty box
    clears the search, and a query equal to the last dispatched one is dropped.
    """

    def __init__(
        self,
        dispatch: Callable[[str], Awaitable[None]],
        wait: float = SEARCH_DEBOUNCE_DELAY,
        max_wait: float = SEARCH_MAX_WAIT,
        min_length: int = MIN_SEARCH_LENGTH,
        last_dispatched: str = "",
    ):
        self._dispatch = dispatch
        self.wait = wait
        self.max_wait = max_wait
        self.min_length = min_length
        self.last_dispatched = last_dispatched
        self._pending: Optional[str] = None
        self._first_pending_at: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    def normalize(self, text: str) -> Optional[str]:
        """Query to dispatch, '' to clear the search, None to ignore"""
        query = text.strip()
        if not query:
            return ""
        if len(query) < self.min_length:
            return None
        return query

    def feed(self, text: str):
        """Record the current contents of the search box"""
        query = self.normalize(text)
        if query is None:
            self.cancel()
            return

        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._first_pending_at is None:
            self._first_pending_at = now
        self._pending = query

        # Atomic swap of the timer
        old_timer = self._timer
        self._timer = None
        if old_timer is not None:
            old_timer.cancel()
        deadline = min(now + self.wait, self._first_pending_at + self.max_wait)
        self._timer = loop.call_at(deadline, self._fire)

    def _fire(self):
        self._timer = None
        query = self._pending
        self._pending = None
        self._first_pending_at = None
        if query is None or query == self.last_dispatched:
            return
        self.last_dispatched = query
        self._task = asyncio.ensure_future(self._dispatch(query))
        self._task.add_done_callback(lambda task: self._log_failure(query, task))

    @staticmethod
    def _log_failure(query: str, task: asyncio.Future):
        if not task.cancelled() and task.exception() is not None:
            logger.error("Search dispatch for %r failed: %s", query, task.exception())

    async def flush(self):
        """Dispatch the pending query now and wait for it"""
        if self._timer is not None:
            self._timer.cancel()
            self._fire()
        if self._task is not None:
            await self._task

    def cancel(self):
        """Forget the pending query without dispatching it"""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
        self._first_pending_at = None
