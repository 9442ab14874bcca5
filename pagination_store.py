import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

import httpx

from collection_api import CollectionApi, CollectionFilters, CollectionPayload
from errors import AuthError, CollectionError, RateLimitedError, RequestCancelledError
from models import Folder, Release, SortField, SortOrder
from scroll_snapshots import SnapshotStore


logger = logging.getLogger(__name__)

ITEMS_PER_PAGE = 48
MAX_BATCHES = 20  # absolute cap, ~960 items on screen
INITIAL_BATCHES_ALLOWED = 10
BATCH_INCREMENT = 5
MOBILE_BREAKPOINT = 768

RATE_LIMITED_MESSAGE = "The service is busy, please try again shortly."
RECONNECT_MESSAGE = "Please reconnect your Discogs account."

T = TypeVar("T")


class PaginationMode(str, Enum):
    INFINITE = "infinite"
    PAGER = "pager"


class StoreStatus(str, Enum):
    IDLE = "idle"
    LOADING_INITIAL = "loading-initial"
    READY = "ready"
    LOADING_MORE = "loading-more"
    CHANGING_PAGE = "changing-page"


def mode_for_width(width: int) -> PaginationMode:
    """Infinite scroll below the mobile breakpoint, pager above it"""
    return PaginationMode.INFINITE if width < MOBILE_BREAKPOINT else PaginationMode.PAGER


def filters_to_query(filters: CollectionFilters, page: int) -> Dict[str, str]:
    """URL query for a view state, leaving out defaults"""
    query: Dict[str, str] = {}
    if filters.folder != 0:
        query["folder"] = str(filters.folder)
    if filters.sort is not SortField.ADDED:
        query["sort"] = filters.sort.value
    if filters.order is not SortOrder.DESC:
        query["order"] = filters.order.value
    if filters.search.strip():
        query["search"] = filters.search.strip()
    if page != 1:
        query["page"] = str(page)
    return query


def _positive_int(value: Optional[str], default: int, minimum: int) -> int:
    try:
        parsed = int(value) if value is not None else default
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def query_to_state(query: Mapping[str, str]) -> Tuple[CollectionFilters, int]:
    """Filters and page from a URL query, falling back to defaults on bad values"""
    try:
        sort = SortField(query.get("sort", SortField.ADDED.value))
    except ValueError:
        sort = SortField.ADDED
    try:
        order = SortOrder(query.get("order", SortOrder.DESC.value))
    except ValueError:
        order = SortOrder.DESC
    filters = CollectionFilters(
        folder=_positive_int(query.get("folder"), 0, 0),
        sort=sort,
        order=order,
        search=query.get("search", "").strip(),
    )
    return filters, _positive_int(query.get("page"), 1, 1)


class RequestGate:
    """Last-request-wins slot: each request gets a generation, older ones are cancelled.

    A response is only handed back if its generation is still the current one, so a
    superseded request can never overwrite state written by a newer one.
    """

    def __init__(self):
        self.generation = 0
        self._task: Optional[asyncio.Future] = None

    def cancel(self):
        self.generation += 1
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def run(self, operation: Awaitable[T]) -> T:
        self.cancel()
        generation = self.generation
        task = asyncio.ensure_future(operation)
        self._task = task
        try:
            result = await task
        except asyncio.CancelledError:
            if generation != self.generation:
                raise RequestCancelledError(generation) from None
            raise
        finally:
            if self._task is task:
                self._task = None
        if generation != self.generation:
            raise RequestCancelledError(generation)
        return result


class UrlSync:
    """One-directional URL query sync.

    ``write`` pushes the store's state to the URL and remembers it, so the navigation
    event caused by our own write is ignored once by ``should_react``. Only foreign
    changes (back/forward, manual edits) make the store reload.
    """

    def __init__(self, navigate: Callable[[Dict[str, str]], None]):
        self._navigate = navigate
        self.current: Dict[str, str] = {}
        self._echo: Optional[Dict[str, str]] = None

    def write(self, query: Dict[str, str]) -> bool:
        if query == self.current:
            return False
        self.current = dict(query)
        self._echo = dict(query)
        self._navigate(dict(query))
        return True

    def should_react(self, query: Mapping[str, str]) -> bool:
        query = dict(query)
        echo = self._echo
        self._echo = None
        if echo is not None and query == echo:
            return False
        if query == self.current:
            return False
        self.current = query
        return True


class PaginationStore:
    """State machine behind the collection view: idle, loading-initial, ready,
    loading-more (infinite) and changing-page (pager)."""

    def __init__(
        self,
        api: CollectionApi,
        mode: PaginationMode = PaginationMode.PAGER,
        url_sync: Optional[UrlSync] = None,
        snapshots: Optional[SnapshotStore] = None,
        per_page: int = ITEMS_PER_PAGE,
    ):
        self.api = api
        self.mode = mode
        self.url_sync = url_sync
        self.snapshots = snapshots
        self.per_page = per_page

        self.items: List[Release] = []
        self.folders: List[Folder] = []
        self.current_page = 1
        self.total_pages = 0
        self.total_items = 0
        self.has_more = True

        self.status = StoreStatus.IDLE
        self.initialized = False
        self.error: Optional[str] = None

        self.filters = CollectionFilters()

        self.batches_loaded = 0
        self.max_batches_allowed = INITIAL_BATCHES_ALLOWED
        self.dom_cap_reached = False

        self._gate = RequestGate()

    @property
    def is_infinite_mode(self) -> bool:
        return self.mode is PaginationMode.INFINITE

    @property
    def is_pager_mode(self) -> bool:
        return self.mode is PaginationMode.PAGER

    @property
    def is_loading(self) -> bool:
        return self.status in (StoreStatus.LOADING_INITIAL, StoreStatus.CHANGING_PAGE)

    @property
    def is_loading_more(self) -> bool:
        return self.status is StoreStatus.LOADING_MORE

    @property
    def is_search_active(self) -> bool:
        return bool(self.filters.search.strip())

    @property
    def can_load_more(self) -> bool:
        return (
            self.is_infinite_mode
            and self.initialized
            and self.status is StoreStatus.READY
            and not self.dom_cap_reached
            and self.has_more
        )

    def set_mode(self, mode: PaginationMode):
        if mode is self.mode:
            return
        logger.debug("Switching pagination mode from %s to %s", self.mode.value, mode.value)
        self.mode = mode
        if mode is PaginationMode.PAGER:
            self.batches_loaded = 0
            self.dom_cap_reached = False

    def update_url(self):
        if self.url_sync is not None:
            self.url_sync.write(filters_to_query(self.filters, self.current_page))

    def _apply_payload(self, payload: CollectionPayload):
        self.total_pages = payload.pagination.pages
        self.total_items = payload.pagination.items
        self.has_more = self.current_page < self.total_pages
        if payload.folders:
            self.folders = payload.folders

    def _fail(self, exc: Exception, message: str):
        logger.error("Collection request failed: %s", exc)
        if isinstance(exc, RateLimitedError):
            self.error = RATE_LIMITED_MESSAGE
        elif isinstance(exc, AuthError):
            self.error = RECONNECT_MESSAGE
        else:
            self.error = message
        self.status = StoreStatus.READY

    async def load_initial(self):
        """Load the first page, discarding whatever was shown before"""
        self.status = StoreStatus.LOADING_INITIAL
        self.error = None
        self.items = []
        self.current_page = 1
        self.batches_loaded = 0
        self.dom_cap_reached = False

        try:
            payload = await self._gate.run(self.api.fetch(self.filters, 1, self.per_page))
        except RequestCancelledError:
            return
        except (CollectionError, httpx.HTTPError) as exc:
            self._fail(exc, "Failed to load collection")
            self.initialized = True
            return

        self.items = list(payload.releases)
        self._apply_payload(payload)
        if self.is_infinite_mode:
            self.batches_loaded = 1
        self.status = StoreStatus.READY
        self.initialized = True
        self.update_url()
        logger.debug(
            "Initial load complete: %d items, %d pages", len(self.items), self.total_pages
        )

    async def load_more(self):
        """Append the next page (infinite mode). Overlapping calls are ignored."""
        if not self.can_load_more:
            return
        if self.batches_loaded >= self.max_batches_allowed:
            self.dom_cap_reached = True
            return

        self.status = StoreStatus.LOADING_MORE
        self.error = None
        next_page = self.current_page + 1

        try:
            payload = await self._gate.run(
                self.api.fetch(self.filters, next_page, self.per_page)
            )
        except RequestCancelledError:
            return
        except (CollectionError, httpx.HTTPError) as exc:
            self._fail(exc, "Failed to load more items")
            return

        seen = {release.id for release in self.items}
        self.items = self.items + [
            release for release in payload.releases if release.id not in seen
        ]
        self.current_page = next_page
        self._apply_payload(payload)
        self.batches_loaded += 1
        if self.batches_loaded >= self.max_batches_allowed:
            self.dom_cap_reached = True
        self.status = StoreStatus.READY
        self.update_url()
        logger.debug(
            "Loaded page %d, %d items in %d batches",
            self.current_page, len(self.items), self.batches_loaded,
        )

    async def change_page(self, page: int):
        """Replace the list with another page (pager mode)"""
        if self.is_infinite_mode or page < 1:
            return

        self.status = StoreStatus.CHANGING_PAGE
        self.error = None

        try:
            payload = await self._gate.run(self.api.fetch(self.filters, page, self.per_page))
        except RequestCancelledError:
            return
        except (CollectionError, httpx.HTTPError) as exc:
            self._fail(exc, "Failed to change page")
            return

        self.items = list(payload.releases)
        self.current_page = page
        self._apply_payload(payload)
        self.status = StoreStatus.READY
        self.initialized = True
        self.update_url()

    async def apply_filters(
        self,
        folder: Optional[int] = None,
        sort: Optional[SortField] = None,
        order: Optional[SortOrder] = None,
        search: Optional[str] = None,
    ):
        """Change filters and reload from page 1 when anything actually changed"""
        current = self.filters
        updated = CollectionFilters(
            folder=current.folder if folder is None else folder,
            sort=current.sort if sort is None else sort,
            order=current.order if order is None else order,
            search=current.search if search is None else search.strip(),
        )
        if updated == current:
            return

        logger.debug("Filters changed to %s, reloading", updated.fingerprint)
        self.filters = updated
        self._gate.cancel()
        if self.snapshots is not None:
            self.snapshots.clear()
        await self.load_initial()

    async def search(self, query: str):
        """Dispatch target for the search debouncer"""
        await self.apply_filters(search=query)

    def raise_batch_cap(self):
        """Allow a few more batches after the cap was hit, never beyond MAX_BATCHES"""
        self.max_batches_allowed = min(self.max_batches_allowed + BATCH_INCREMENT, MAX_BATCHES)
        self.dom_cap_reached = self.batches_loaded >= self.max_batches_allowed

    async def retry(self):
        self.error = None
        if self.is_infinite_mode and self.items:
            await self.load_more()
        else:
            await self.load_initial()

    async def handle_route_change(self, query: Mapping[str, str]):
        """React to back/forward or a manually edited URL, ignoring our own writes"""
        if self.url_sync is not None and not self.url_sync.should_react(query):
            return

        filters, page = query_to_state(query)
        filters_changed = filters != self.filters
        if not filters_changed and page == self.current_page:
            return

        self.filters = filters
        if filters_changed and self.snapshots is not None:
            self.snapshots.clear()
        if self.is_pager_mode and page > 1:
            await self.change_page(page)
        else:
            await self.load_initial()

    def leave(self, scroll_y: float):
        """Snapshot the infinite list before intentionally navigating away"""
        if not self.is_infinite_mode or self.snapshots is None or not self.items:
            return
        self.snapshots.save(
            self.filters,
            self.items,
            self.current_page,
            self.total_pages,
            self.total_items,
            self.batches_loaded,
            scroll_y,
        )
        self.snapshots.expect_restore()

    async def resume(self, query: Mapping[str, str]) -> float:
        """Enter the view from a URL. Returns the scroll offset to restore, 0 for the top."""
        filters, page = query_to_state(query)
        self.filters = filters
        if self.url_sync is not None:
            self.url_sync.current = dict(query)

        if self.is_infinite_mode and self.snapshots is not None:
            snapshot = self.snapshots.restore(filters, page)
            if snapshot is not None:
                self.items = list(snapshot.items)
                self.current_page = snapshot.page
                self.total_pages = snapshot.total_pages
                self.total_items = snapshot.total_items
                self.batches_loaded = snapshot.batches_loaded
                self.has_more = self.current_page < self.total_pages
                self.dom_cap_reached = self.batches_loaded >= self.max_batches_allowed
                self.status = StoreStatus.READY
                self.initialized = True
                logger.debug("Restored %d items at scroll %s", len(self.items), snapshot.scroll_y)
                return snapshot.scroll_y

        if self.is_pager_mode and page > 1:
            await self.change_page(page)
        else:
            await self.load_initial()
        return 0.0
