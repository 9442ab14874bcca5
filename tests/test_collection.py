import asyncio
from datetime import datetime, timezone

import pytest

from cache import CacheManager
from collection import (
    CollectionQuery,
    CollectionService,
    filter_releases,
    paginate_releases,
    sort_releases,
)
from conftest import FakeDiscogsClient, make_release
from discogs_client import AppTokenCredential, OAuthCredential
from errors import QueryValidationError, RateLimitedError, TransientNetworkError
from models import DiscogsAuth, Mode, ResultMode, SortField, SortOrder
from search_index import SearchIndex


LINKED = DiscogsAuth(
    discogs_username="crate_digger",
    access_token="access-tok",
    access_token_secret="access-secret",
    linked_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
)
DEMO_KEY = "discogs:demo:collection:folder:0"


def make_service(releases, clock=None):
    fake = FakeDiscogsClient(releases)
    cache = CacheManager(ttl_minutes=15, clock=clock) if clock else CacheManager(ttl_minutes=15)
    service = CollectionService(
        cache,
        SearchIndex(),
        fake,
        demo_username="demo_user",
        demo_token="demo-token",
        consumer_key="consumer",
        consumer_secret="consumer-secret",
    )
    return service, fake


def user_query(**kwargs):
    return CollectionQuery(mode=Mode.USER, owner_id="visitor-1", discogs_auth=LINKED, **kwargs)


def test_search_over_a_small_collection_returns_every_match_on_one_page():
    releases = [make_release(n, f"Jazz Sessions Vol. {n}", ["Various"]) for n in range(1, 11)]
    service, fake = make_service(releases)

    result = asyncio.run(service.get_collection(CollectionQuery(search="jazz", per_page=50)))

    assert result.mode is ResultMode.DEMO
    assert len(result.releases) == 10
    assert result.pagination.items == 10
    assert result.pagination.pages == 1
    assert fake.calls["all"] == 1


def test_user_mode_without_a_linked_account_makes_no_remote_calls(releases):
    service, fake = make_service(releases)

    result = asyncio.run(service.get_collection(CollectionQuery(mode=Mode.USER, search="blue")))

    assert result.mode is ResultMode.UNLINKED
    assert result.releases == []
    assert result.folders == []
    assert result.pagination.items == 0
    assert sum(fake.calls.values()) == 0


def test_linked_account_with_no_releases_is_reported_empty():
    service, fake = make_service([])

    result = asyncio.run(service.get_collection(user_query()))

    assert result.mode is ResultMode.EMPTY
    assert result.discogs_username == "crate_digger"
    assert isinstance(fake.credentials[0], OAuthCredential)
    assert fake.credentials[0].username == "crate_digger"


def test_plain_browsing_forwards_a_single_page(releases):
    service, fake = make_service(releases)

    result = asyncio.run(service.get_collection(CollectionQuery(page=2, per_page=2)))

    assert [release.id for release in result.releases] == [3, 4]
    assert result.pagination.page == 2
    assert result.pagination.pages == 3
    assert result.pagination.urls.prev == "?page=1"
    assert [folder.name for folder in result.folders] == ["All", "Jazz"]
    assert fake.calls["page"] == 1
    assert fake.calls["all"] == 0
    assert isinstance(fake.credentials[0], AppTokenCredential)


def test_search_filters_sorts_and_pages_the_whole_folder(releases):
    service, fake = make_service(releases)

    result = asyncio.run(
        service.get_collection(
            CollectionQuery(search="coltrane", sort=SortField.TITLE, order=SortOrder.ASC)
        )
    )
    assert [release.basic_information.title for release in result.releases] == [
        "A Love Supreme",
        "Blue Train",
    ]
    assert result.pagination.items == 2

    second = asyncio.run(service.get_collection(CollectionQuery(search="jazz", page=2, per_page=2)))
    assert [release.id for release in second.releases] == [4]
    assert second.pagination.items == 3
    assert second.pagination.pages == 2
    assert second.pagination.urls.next is None


def test_user_mode_is_decided_by_collection_size_not_match_count(releases):
    service, _ = make_service(releases)

    result = asyncio.run(service.get_collection(user_query(search="zzzz")))

    assert result.mode is ResultMode.USER
    assert result.releases == []
    assert result.pagination.items == 0


def test_concurrent_searches_share_one_materialization(releases):
    service, fake = make_service(releases)

    async def scenario():
        fake.release_gate = asyncio.Event()

        async def open_gate():
            for _ in range(5):
                await asyncio.sleep(0)
            fake.release_gate.set()

        return await asyncio.gather(
            service.get_collection(CollectionQuery(search="blue")),
            service.get_collection(CollectionQuery(search="blue")),
            service.get_collection(CollectionQuery(search="coltrane")),
            open_gate(),
        )

    first, second, third, _ = asyncio.run(scenario())

    assert fake.calls["all"] == 1
    assert fake.calls["folders"] == 1
    assert [r.id for r in first.releases] == [r.id for r in second.releases] == [1, 2]
    assert {r.id for r in third.releases} == {2, 4}


def test_materialized_folder_is_served_from_cache_until_ttl(releases, clock):
    service, fake = make_service(releases, clock)

    asyncio.run(service.get_collection(CollectionQuery(search="blue")))
    asyncio.run(service.get_collection(CollectionQuery(search="miles")))
    assert fake.calls["all"] == 1

    clock.advance(15 * 60)
    asyncio.run(service.get_collection(CollectionQuery(search="miles")))
    assert fake.calls["all"] == 2


def test_fuzzy_search_uses_the_index(releases):
    service, _ = make_service(releases)

    fuzzy = asyncio.run(service.get_collection(CollectionQuery(search="coltrain", fuzzy=True)))
    plain = asyncio.run(service.get_collection(CollectionQuery(search="coltrain")))

    assert {release.id for release in fuzzy.releases} == {2, 4}
    assert plain.releases == []
    assert service.search_index.has_index(DEMO_KEY)


def test_invalid_queries_are_rejected_before_any_remote_call(releases):
    service, fake = make_service(releases)

    for query in (
        CollectionQuery(page=0),
        CollectionQuery(per_page=0),
        CollectionQuery(folder_id=-1),
    ):
        with pytest.raises(QueryValidationError):
            asyncio.run(service.get_collection(query))
    assert sum(fake.calls.values()) == 0


def test_refresh_reloads_and_reports_whether_a_cache_existed(releases):
    service, fake = make_service(releases)

    first = asyncio.run(service.refresh_cache(CollectionQuery()))
    assert first.success is True
    assert first.cache_cleared is False
    assert first.data_refreshed is True
    first_count = len(service.cache_manager.get(DEMO_KEY).releases)

    second = asyncio.run(service.refresh_cache(CollectionQuery()))
    assert second.success is True
    assert second.cache_cleared is True
    assert len(service.cache_manager.get(DEMO_KEY).releases) == first_count == 5
    assert fake.calls["all"] == 2
    assert fake.calls["folders"] == 2


def test_refresh_during_an_in_flight_search_fetches_again(releases):
    service, fake = make_service(releases)

    async def scenario():
        fake.release_gate = asyncio.Event()

        async def refresh_later():
            await asyncio.sleep(0)
            return await service.refresh_cache(CollectionQuery())

        async def open_gate():
            for _ in range(5):
                await asyncio.sleep(0)
            fake.release_gate.set()

        search, refreshed, _ = await asyncio.gather(
            service.get_collection(CollectionQuery(search="blue")),
            refresh_later(),
            open_gate(),
        )
        return search, refreshed

    search, refreshed = asyncio.run(scenario())

    assert refreshed.data_refreshed is True
    assert fake.calls["all"] == 2
    assert [release.id for release in search.releases] == [1, 2]
    assert len(service.cache_manager.get(DEMO_KEY).releases) == 5


def test_refresh_without_a_linked_account(releases):
    service, fake = make_service(releases)

    result = asyncio.run(service.refresh_cache(CollectionQuery(mode=Mode.USER)))

    assert result.success is False
    assert result.data_refreshed is False
    assert sum(fake.calls.values()) == 0


def test_refresh_failure_is_reported_and_throttling_propagates(releases):
    service, fake = make_service(releases)

    fake.error = TransientNetworkError("Discogs unreachable")
    result = asyncio.run(service.refresh_cache(CollectionQuery()))
    assert result.success is False
    assert result.data_refreshed is False
    assert "Discogs unreachable" in result.message

    fake.error = RateLimitedError(retry_after=30)
    with pytest.raises(RateLimitedError):
        asyncio.run(service.refresh_cache(CollectionQuery()))


def test_demo_and_user_scopes_do_not_share_cache_entries(releases):
    service, fake = make_service(releases)

    asyncio.run(service.get_collection(CollectionQuery(search="blue")))
    asyncio.run(service.get_collection(user_query(search="blue")))

    assert fake.calls["all"] == 2
    assert service.cache_manager.has("discogs:user:visitor-1:collection:folder:0")


def test_cleanup_drops_expired_entries_and_their_indexes(releases, clock):
    service, _ = make_service(releases, clock)
    asyncio.run(service.get_collection(CollectionQuery(search="blue")))
    assert service.search_index.has_index(DEMO_KEY)

    clock.advance(15 * 60)

    assert service.cleanup() == 2
    assert not service.search_index.has_index(DEMO_KEY)
    assert len(service.cache_manager) == 0


def test_sorting_by_each_field(releases):
    def ids(sort, order):
        return [release.id for release in sort_releases(releases, sort, order)]

    assert ids(SortField.ADDED, SortOrder.DESC) == [5, 3, 1, 2, 4]
    assert ids(SortField.YEAR, SortOrder.ASC) == [5, 2, 1, 4, 3]
    assert ids(SortField.ARTIST, SortOrder.ASC) == [5, 3, 2, 4, 1]
    assert ids(SortField.TITLE, SortOrder.DESC) == [5, 1, 3, 2, 4]


def test_text_filter_is_a_case_insensitive_substring_match(releases):
    assert [r.id for r in filter_releases(releases, "HARD BOP")] == [2]
    assert [r.id for r in filter_releases(releases, "love")] == [4]
    assert len(filter_releases(releases, "   ")) == 5


def test_paginating_past_the_end_returns_an_empty_page(releases):
    page, pagination = paginate_releases(releases, 4, 2)

    assert page == []
    assert pagination.pages == 3
    assert pagination.items == 5
