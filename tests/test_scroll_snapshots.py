from collection_api import CollectionFilters
from conftest import FakeClock, jazz_collection
from models import SortField
from scroll_snapshots import (
    EXPECT_RESTORE_KEY,
    SNAPSHOT_PREFIX,
    MemoryStorage,
    SnapshotStore,
)


def saved_store(clock, filters=CollectionFilters(), page=2):
    store = SnapshotStore(clock=clock)
    store.save(filters, jazz_collection(), page, 4, 20, 2, 812.5)
    store.expect_restore()
    return store


def test_restore_returns_matching_snapshot_and_consumes_it(clock):
    store = saved_store(clock)

    snapshot = store.restore(CollectionFilters(), 2)

    assert snapshot.scroll_y == 812.5
    assert [release.id for release in snapshot.items] == [1, 2, 3, 4, 5]
    assert snapshot.filters == CollectionFilters()
    assert store.restore_expected is False
    assert len(store.storage) == 0


def test_saving_keeps_only_the_latest_snapshot(clock):
    store = SnapshotStore(clock=clock)
    store.save(CollectionFilters(search="blue"), [], 1, 1, 0, 1, 10.0)
    store.save(CollectionFilters(sort=SortField.YEAR), [], 1, 1, 0, 1, 20.0)

    keys = [key for key in store.storage if key.startswith(SNAPSHOT_PREFIX)]
    assert keys == [SNAPSHOT_PREFIX + CollectionFilters(sort=SortField.YEAR).fingerprint]


def test_restore_requires_the_flag(clock):
    store = SnapshotStore(clock=clock)
    store.save(CollectionFilters(), jazz_collection(), 2, 4, 20, 2, 100.0)

    assert store.restore(CollectionFilters(), 2) is None
    assert len(store.storage) == 0


def test_restore_rejects_mismatched_page_or_filters(clock):
    assert saved_store(clock).restore(CollectionFilters(), 3) is None
    assert saved_store(clock).restore(CollectionFilters(search="blue"), 2) is None


def test_expired_snapshot_is_discarded(clock):
    store = saved_store(clock)
    clock.advance(30 * 60)

    assert store.restore(CollectionFilters(), 2) is None


def test_unreadable_snapshot_is_discarded(clock):
    storage = MemoryStorage()
    store = SnapshotStore(storage=storage, clock=clock)
    storage[SNAPSHOT_PREFIX + CollectionFilters().fingerprint] = "{not json"
    storage[EXPECT_RESTORE_KEY] = "1"

    assert store.restore(CollectionFilters(), 1) is None


def test_storage_is_shared_between_store_instances():
    clock = FakeClock()
    storage = MemoryStorage()
    SnapshotStore(storage=storage, clock=clock).save(CollectionFilters(), [], 1, 1, 0, 1, 5.0)
    SnapshotStore(storage=storage, clock=clock).expect_restore()

    snapshot = SnapshotStore(storage=storage, clock=clock).restore(CollectionFilters(), 1)

    assert snapshot is not None
    assert snapshot.scroll_y == 5.0
