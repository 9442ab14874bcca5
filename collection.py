import asyncio
import locale
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

from cache import CacheManager
from config import (
    DEFAULT_PER_PAGE,
    DISCOGS_APP_DEMO_USERNAME,
    DISCOGS_CONSUMER_KEY,
    DISCOGS_CONSUMER_SECRET,
    DISCOGS_TOKEN,
)
from discogs_client import AppTokenCredential, Credential, DiscogsClient, OAuthCredential
from errors import CollectionError, QueryValidationError, RateLimitedError
from models import (
    CollectionResult,
    DiscogsAuth,
    Folder,
    Mode,
    RefreshResult,
    Release,
    ResultMode,
    SortField,
    SortOrder,
    build_pagination,
)
from normalization import parse_year
from search_index import SearchIndex


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionQuery:
    """Everything needed to answer 'page N of this collection under these filters'"""
    mode: Mode = Mode.DEMO
    page: int = 1
    per_page: int = DEFAULT_PER_PAGE
    folder_id: int = 0
    sort: SortField = SortField.ADDED
    order: SortOrder = SortOrder.DESC
    search: Optional[str] = None
    fuzzy: bool = False
    owner_id: Optional[str] = None  # visitor session id
    discogs_auth: Optional[DiscogsAuth] = None


@dataclass(frozen=True)
class CollectionSource:
    """Resolved scope: which account we browse and with which credential"""
    mode: Mode
    credential: Credential
    owner_id: Optional[str] = None

    @property
    def scope_prefix(self) -> str:
        if self.mode is Mode.DEMO:
            return "discogs:demo"
        return f"discogs:user:{self.owner_id or 'unknown'}"

    def collection_key(self, folder_id: int) -> str:
        return f"{self.scope_prefix}:collection:folder:{folder_id}"

    @property
    def folders_key(self) -> str:
        return f"{self.scope_prefix}:folders"


@dataclass(frozen=True)
class CachedCollection:
    """A fully materialized folder"""
    releases: List[Release]
    total_items: int


def filter_releases(releases: List[Release], search: Optional[str]) -> List[Release]:
    """Case-insensitive substring match on artists, title, genres or styles"""
    if not search or not search.strip():
        return list(releases)
    query = search.strip().casefold()

    def matches(release: Release) -> bool:
        info = release.basic_information
        return (
            any(query in artist.name.casefold() for artist in info.artists)
            or query in info.title.casefold()
            or any(query in genre.casefold() for genre in info.genres)
            or any(query in style.casefold() for style in info.styles)
        )

    return [release for release in releases if matches(release)]


def _sort_key(sort: SortField):
    if sort is SortField.ADDED:
        return lambda release: release.date_added.timestamp()
    if sort is SortField.ARTIST:
        def artist_key(release: Release) -> str:
            artists = release.basic_information.artists
            return locale.strxfrm(artists[0].name.casefold() if artists else "")
        return artist_key
    if sort is SortField.TITLE:
        return lambda release: locale.strxfrm(release.basic_information.title.strip().casefold())
    return lambda release: parse_year(release.basic_information.year)


def sort_releases(releases: List[Release], sort: SortField, order: SortOrder) -> List[Release]:
    """Stable sort by the requested field, descending when order is desc"""
    return sorted(releases, key=_sort_key(sort), reverse=order is SortOrder.DESC)


def paginate_releases(releases: List[Release], page: int, per_page: int):
    """Slice one page out of a release list, with totals over the whole list"""
    total_items = len(releases)
    total_pages = math.ceil(total_items / per_page)
    start = (page - 1) * per_page
    return releases[start:start + per_page], build_pagination(
        page, total_pages, per_page, total_items
    )


class CollectionService:
    """Answers collection page requests for demo and linked accounts.

    Plain browsing is forwarded page by page to Discogs. A search needs the whole
    folder, so the first search materializes it into the cache and the search index;
    concurrent requests for the same folder share one in-flight materialization.
    """

    def __init__(
        self,
        cache_manager: CacheManager,
        search_index: SearchIndex,
        discogs_client: DiscogsClient,
        demo_username: str = DISCOGS_APP_DEMO_USERNAME,
        demo_token: str = DISCOGS_TOKEN,
        consumer_key: str = DISCOGS_CONSUMER_KEY,
        consumer_secret: str = DISCOGS_CONSUMER_SECRET,
    ):
        self.cache_manager = cache_manager
        self.search_index = search_index
        self.discogs_client = discogs_client
        self.demo_username = demo_username
        self.demo_token = demo_token
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self._pending: Dict[str, asyncio.Future] = {}

    def resolve_source(self, query: CollectionQuery) -> Optional[CollectionSource]:
        """Pick the credential for a query, None when user mode has no linked account"""
        if query.mode is Mode.DEMO:
            return CollectionSource(
                mode=Mode.DEMO,
                credential=AppTokenCredential(self.demo_username, self.demo_token),
            )
        auth = query.discogs_auth
        if auth is None:
            return None
        return CollectionSource(
            mode=Mode.USER,
            credential=OAuthCredential(
                username=auth.discogs_username,
                access_token=auth.access_token,
                access_token_secret=auth.access_token_secret,
                consumer_key=self.consumer_key,
                consumer_secret=self.consumer_secret,
            ),
            owner_id=query.owner_id,
        )

    @staticmethod
    def _validate(query: CollectionQuery):
        if query.page < 1:
            raise QueryValidationError("page must be 1 or greater")
        if query.per_page < 1:
            raise QueryValidationError("perPage must be 1 or greater")
        if query.folder_id < 0:
            raise QueryValidationError("folder must not be negative")

    @staticmethod
    def _result_mode(source: CollectionSource, total_items: int) -> ResultMode:
        if source.mode is Mode.DEMO:
            return ResultMode.DEMO
        return ResultMode.EMPTY if total_items == 0 else ResultMode.USER

    async def get_collection(self, query: CollectionQuery) -> CollectionResult:
        """Get one page of a collection, searching the whole folder when a query is given"""
        self._validate(query)

        source = self.resolve_source(query)
        if source is None:
            return CollectionResult(
                mode=ResultMode.UNLINKED,
                discogs_username=None,
                releases=[],
                folders=[],
                pagination=build_pagination(query.page, 0, query.per_page, 0),
            )

        folders = await self._folders_for(source)

        search = (query.search or "").strip()
        if search:
            return await self._search_collection(query, source, folders, search)

        logger.info(
            "Fetching page %d of folder %d for %s mode (%s)",
            query.page, query.folder_id, source.mode.value, source.credential.username,
        )
        data = await self.discogs_client.get_collection_page(
            source.credential,
            query.folder_id,
            query.page,
            query.per_page,
            query.sort.value,
            query.order.value,
        )
        pagination = data.pagination
        return CollectionResult(
            mode=self._result_mode(source, pagination.items),
            discogs_username=source.credential.username,
            releases=data.releases,
            folders=folders,
            pagination=build_pagination(
                pagination.page, pagination.pages, pagination.per_page, pagination.items
            ),
        )

    async def _search_collection(
        self,
        query: CollectionQuery,
        source: CollectionSource,
        folders: List[Folder],
        search: str,
    ) -> CollectionResult:
        key = source.collection_key(query.folder_id)
        cached = await self._materialize(source, query.folder_id)

        if query.fuzzy:
            hits = self.search_index.search(key, search, limit=max(len(cached.releases), 1))
            matched_ids = {hit.id for hit in hits}
            filtered = [release for release in cached.releases if release.id in matched_ids]
        else:
            filtered = filter_releases(cached.releases, search)

        ordered = sort_releases(filtered, query.sort, query.order)
        releases, pagination = paginate_releases(ordered, query.page, query.per_page)

        return CollectionResult(
            mode=self._result_mode(source, cached.total_items),
            discogs_username=source.credential.username,
            releases=releases,
            folders=folders,
            pagination=pagination,
        )

    async def _materialize(self, source: CollectionSource, folder_id: int) -> CachedCollection:
        """Return the whole folder from cache, joining or starting a single fetch-all"""
        key = source.collection_key(folder_id)
        cached = self.cache_manager.get(key)
        if cached is not None:
            if not self.search_index.has_index(key):
                self.search_index.build_index(key, cached.releases)
            return cached

        pending = self._pending.get(key)
        if pending is None:
            logger.info("Search initiated, loading full collection for %s", key)
            pending = asyncio.ensure_future(self._fetch_and_cache(source, folder_id, key))
            self._pending[key] = pending
            pending.add_done_callback(lambda task: self._forget_pending(key, task))
        else:
            logger.info("Waiting for in-flight collection fetch for %s", key)

        # Shielded so one caller going away does not cancel the fetch for the others
        return await asyncio.shield(pending)

    def _forget_pending(self, key: str, task: asyncio.Future):
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Collection fetch for %s failed: %s", key, task.exception())

    async def _fetch_and_cache(
        self, source: CollectionSource, folder_id: int, key: str
    ) -> CachedCollection:
        data = await self.discogs_client.get_all_collection_releases(source.credential, folder_id)
        cached = CachedCollection(releases=data.releases, total_items=data.total_items)
        # A refresh may have replaced this fetch while it ran
        if self._pending.get(key) is asyncio.current_task():
            self.cache_manager.set(key, cached)
            self.search_index.build_index(key, cached.releases)
        return cached

    async def _folders_for(self, source: CollectionSource) -> List[Folder]:
        folders = self.cache_manager.get(source.folders_key)
        if folders is None:
            folders = await self.discogs_client.get_folders(source.credential)
            self.cache_manager.set(source.folders_key, folders)
        return folders

    async def get_folders(self, query: CollectionQuery) -> List[Folder]:
        """Full folder listing for the query's scope, empty when unlinked"""
        source = self.resolve_source(query)
        if source is None:
            return []
        return await self._folders_for(source)

    async def refresh_cache(self, query: CollectionQuery) -> RefreshResult:
        """Drop the cached folder and its index, then materialize it again"""
        folder_id = query.folder_id
        source = self.resolve_source(query)
        if source is None:
            return RefreshResult(
                success=False,
                message="No Discogs account is linked to this session",
                cache_cleared=False,
                data_refreshed=False,
            )

        key = source.collection_key(folder_id)
        had_cache = self.cache_manager.has(key)
        self.cache_manager.delete(key)
        self.cache_manager.delete(source.folders_key)
        self.search_index.clear_index(key)
        # Searches already waiting keep their fetch, the refresh starts its own
        self._pending.pop(key, None)

        try:
            await self._folders_for(source)
            await self._materialize(source, folder_id)
        except RateLimitedError:
            raise
        except CollectionError as e:
            logger.error("Failed to refresh cache for %s: %s", key, e)
            return RefreshResult(
                success=False,
                message=f"Failed to refresh cache for folder {folder_id}: {e}",
                cache_cleared=had_cache,
                data_refreshed=False,
            )

        return RefreshResult(
            success=True,
            message=f"Cache refreshed successfully for folder {folder_id}",
            cache_cleared=had_cache,
            data_refreshed=True,
        )

    def cleanup(self) -> int:
        """Sweep expired cache entries and drop the indexes built on them"""
        expired = self.cache_manager.cleanup()
        for key in expired:
            self.search_index.clear_index(key)
        if expired:
            logger.info("Evicted %d expired collection cache entries", len(expired))
        return len(expired)
