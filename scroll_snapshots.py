import json
import logging
import time
from typing import Callable, Dict, Iterator, List, MutableMapping, Optional

from pydantic import BaseModel, ValidationError

from collection_api import CollectionFilters
from models import Release, SortField, SortOrder


logger = logging.getLogger(__name__)

SNAPSHOT_TTL_SECONDS = 30 * 60
SNAPSHOT_PREFIX = "collection:snapshot:"
EXPECT_RESTORE_KEY = "collection:expect-restore"


class MemoryStorage(MutableMapping[str, str]):
    """String key-value storage standing in for the browser's sessionStorage"""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str):
        self._data[key] = value

    def __delitem__(self, key: str):
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


class ScrollSnapshot(BaseModel):
    """Infinite-scroll state captured before navigating away"""
    fingerprint: str
    folder: int
    sort: SortField
    order: SortOrder
    search: str
    items: List[Release]
    page: int
    total_pages: int
    total_items: int
    batches_loaded: int
    scroll_y: float
    saved_at: float

    @property
    def filters(self) -> CollectionFilters:
        return CollectionFilters(
            folder=self.folder, sort=self.sort, order=self.order, search=self.search
        )


class SnapshotStore:
    """Saves and restores infinite-scroll state keyed by the active filter fingerprint.

    A snapshot is only restored after an intentional navigation away (``expect_restore``)
    and only when the filters and page still match; anything else is discarded.
    """

    def __init__(
        self,
        storage: Optional[MutableMapping[str, str]] = None,
        ttl: float = SNAPSHOT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage if storage is not None else MemoryStorage()
        self.ttl = ttl
        self._clock = clock

    def save(
        self,
        filters: CollectionFilters,
        items: List[Release],
        page: int,
        total_pages: int,
        total_items: int,
        batches_loaded: int,
        scroll_y: float,
    ) -> ScrollSnapshot:
        snapshot = ScrollSnapshot(
            fingerprint=filters.fingerprint,
            folder=filters.folder,
            sort=filters.sort,
            order=filters.order,
            search=filters.search,
            items=items,
            page=page,
            total_pages=total_pages,
            total_items=total_items,
            batches_loaded=batches_loaded,
            scroll_y=scroll_y,
            saved_at=self._clock(),
        )
        self.clear()
        self.storage[SNAPSHOT_PREFIX + snapshot.fingerprint] = snapshot.model_dump_json()
        return snapshot

    def expect_restore(self):
        """Flag that the next visit should try to restore, set on intentional navigation only"""
        self.storage[EXPECT_RESTORE_KEY] = "1"

    @property
    def restore_expected(self) -> bool:
        return self.storage.get(EXPECT_RESTORE_KEY) == "1"

    def restore(self, filters: CollectionFilters, page: int) -> Optional[ScrollSnapshot]:
        """Matching, fresh snapshot for these filters and page, or None. Always consumes the flag."""
        expected = self.restore_expected
        self.storage.pop(EXPECT_RESTORE_KEY, None)
        if not expected:
            self.clear()
            return None

        raw = self.storage.pop(SNAPSHOT_PREFIX + filters.fingerprint, None)
        self.clear()
        if raw is None:
            return None

        try:
            snapshot = ScrollSnapshot(**json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            logger.warning("Discarding unreadable scroll snapshot")
            return None

        if self._clock() - snapshot.saved_at >= self.ttl:
            logger.debug("Discarding expired scroll snapshot")
            return None
        if snapshot.fingerprint != filters.fingerprint or snapshot.page != page:
            return None
        return snapshot

    def clear(self):
        """Drop every saved snapshot"""
        for key in [key for key in self.storage if key.startswith(SNAPSHOT_PREFIX)]:
            del self.storage[key]
