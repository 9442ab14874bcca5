import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from config import (
    DISCOGS_API_URL,
    DISCOGS_CONSUMER_KEY,
    DISCOGS_CONSUMER_SECRET,
    DISCOGS_USER_AGENT,
    MAX_PER_PAGE,
    PAGE_FETCH_DELAY_SECONDS,
    RATE_LIMIT_COOLDOWN_SECONDS,
    RATE_LIMIT_LOW_WATERMARK,
    RATE_LIMIT_PREVENTIVE_COOLDOWN_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
    RETRY_ATTEMPTS,
    RETRY_BACKOFF_FACTOR,
    RETRY_DELAY_SECONDS,
)
from errors import (
    AuthError,
    CollectionError,
    RateLimitedError,
    TransientNetworkError,
    UpstreamResponseError,
)
from models import AllReleases, CollectionPage, Folder
from oauth_client import OAuth1Auth


logger = logging.getLogger(__name__)


class DiscogsTokenAuth(httpx.Auth):
    """Personal access token auth used for the demo account"""

    def __init__(self, token: str):
        self.token = token

    def auth_flow(self, request: httpx.Request):
        if not self.token:
            raise AuthError("DISCOGS_TOKEN is not configured for demo mode")
        request.headers["Authorization"] = f"Discogs token={self.token}"
        yield request


@dataclass(frozen=True)
class AppTokenCredential:
    """Fixed service credential browsing the demo account"""
    username: str
    token: str = field(repr=False)

    @property
    def cooldown_key(self) -> str:
        return "app"

    def auth(self) -> httpx.Auth:
        return DiscogsTokenAuth(self.token)


@dataclass(frozen=True)
class OAuthCredential:
    """Credential delegated by a linked Discogs account"""
    username: str
    access_token: str = field(repr=False)
    access_token_secret: str = field(repr=False)
    consumer_key: str = field(default=DISCOGS_CONSUMER_KEY, repr=False)
    consumer_secret: str = field(default=DISCOGS_CONSUMER_SECRET, repr=False)

    @property
    def cooldown_key(self) -> str:
        return f"user:{self.username}"

    def auth(self) -> httpx.Auth:
        return OAuth1Auth(
            self.consumer_key,
            self.consumer_secret,
            token=self.access_token,
            token_secret=self.access_token_secret,
        )


Credential = Union[AppTokenCredential, OAuthCredential]


class DiscogsClient:
    """Client for the Discogs collection endpoints, with retries and a client-side throttle"""

    def __init__(
        self,
        base_url: str = DISCOGS_API_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        retries: int = RETRY_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SECONDS,
        backoff_factor: float = RETRY_BACKOFF_FACTOR,
        page_delay: float = PAGE_FETCH_DELAY_SECONDS,
        cooldown_seconds: float = RATE_LIMIT_COOLDOWN_SECONDS,
        low_watermark: int = RATE_LIMIT_LOW_WATERMARK,
        preventive_cooldown_seconds: float = RATE_LIMIT_PREVENTIVE_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.retries = retries
        self.retry_delay = retry_delay
        self.backoff_factor = backoff_factor
        self.page_delay = page_delay
        self.cooldown_seconds = cooldown_seconds
        self.low_watermark = low_watermark
        self.preventive_cooldown_seconds = preventive_cooldown_seconds
        self._clock = clock
        self._cooldown_until: Dict[str, float] = {}
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"User-Agent": DISCOGS_USER_AGENT},
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    def cooldown_remaining(self, credential: Credential) -> float:
        """Seconds left on the credential's cool-down, 0 when it may call again"""
        expires_at = self._cooldown_until.get(credential.cooldown_key)
        if expires_at is None:
            return 0.0
        remaining = expires_at - self._clock()
        if remaining <= 0:
            del self._cooldown_until[credential.cooldown_key]
            return 0.0
        return remaining

    def in_cooldown(self, credential: Credential) -> bool:
        return self.cooldown_remaining(credential) > 0

    def _activate_cooldown(self, credential: Credential, seconds: float):
        self._cooldown_until[credential.cooldown_key] = self._clock() + seconds
        logger.warning(
            "Discogs throttle: cooling down %s for %ss", credential.cooldown_key, seconds
        )

    def _inspect_rate_limit(self, credential: Credential, response: httpx.Response):
        """Read X-Discogs-Ratelimit-* headers and cool down before the quota runs out"""
        try:
            remaining = int(response.headers["X-Discogs-Ratelimit-Remaining"])
            limit = int(response.headers.get("X-Discogs-Ratelimit", 0))
            used = int(response.headers.get("X-Discogs-Ratelimit-Used", 0))
        except (KeyError, ValueError):
            return

        logger.debug("Discogs rate limit: %d/%d used, %d remaining", used, limit, remaining)
        if remaining <= self.low_watermark:
            logger.warning("Discogs rate limit running low (%d remaining)", remaining)
            self._activate_cooldown(credential, self.preventive_cooldown_seconds)

    async def _get(
        self, credential: Credential, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """GET with exponential backoff on network errors and 5xx"""
        if self.in_cooldown(credential):
            raise RateLimitedError(retry_after=self.cooldown_seconds)

        delay = self.retry_delay
        for attempt in range(self.retries):
            try:
                response = await self.client.get(path, params=params, auth=credential.auth())
            except httpx.TransportError as e:
                if attempt == self.retries - 1:
                    raise TransientNetworkError(f"Discogs request failed: {e}") from e
                logger.warning(
                    "Request to %s failed (attempt %d/%d), retrying in %ss: %s",
                    path, attempt + 1, self.retries, delay, e,
                )
            else:
                status = response.status_code
                if status == 429:
                    logger.error("Discogs returned 429 for %s", path)
                    self._activate_cooldown(credential, self.cooldown_seconds)
                    raise RateLimitedError(retry_after=self.cooldown_seconds)
                if status in (401, 403):
                    raise AuthError(f"Discogs rejected the credential for {credential.username}")
                if status >= 500:
                    if attempt == self.retries - 1:
                        raise TransientNetworkError(f"Discogs responded with HTTP {status}")
                    logger.warning(
                        "Discogs responded %d for %s (attempt %d/%d), retrying in %ss",
                        status, path, attempt + 1, self.retries, delay,
                    )
                elif response.is_error:
                    raise UpstreamResponseError(status)
                else:
                    self._inspect_rate_limit(credential, response)
                    return response.json()

            await asyncio.sleep(delay)  # Exponential backoff
            delay *= self.backoff_factor

        raise TransientNetworkError(f"Discogs request to {path} failed")

    @staticmethod
    def _collection_path(username: str) -> str:
        return f"/users/{quote(username, safe='')}/collection/folders"

    async def get_folders(self, credential: Credential) -> List[Folder]:
        """List the collection folders of the credential's account"""
        data = await self._get(credential, self._collection_path(credential.username))
        return [Folder(**folder) for folder in data.get("folders", [])]

    async def get_collection_page(
        self,
        credential: Credential,
        folder_id: int,
        page: int,
        per_page: int,
        sort: str = "added",
        order: str = "desc",
    ) -> CollectionPage:
        """Fetch a single page of a collection folder"""
        data = await self._get(
            credential,
            f"{self._collection_path(credential.username)}/{folder_id}/releases",
            params={"page": page, "per_page": per_page, "sort": sort, "sort_order": order},
        )
        return CollectionPage(**data)

    async def get_all_collection_releases(
        self,
        credential: Credential,
        folder_id: int = 0,
        sort: str = "added",
        order: str = "desc",
        per_page: int = MAX_PER_PAGE,
    ) -> AllReleases:
        """Fetch every page of a folder sequentially, skipping pages that keep failing"""
        logger.info("Fetching all releases for folder %d of %s", folder_id, credential.username)

        first_page = await self.get_collection_page(
            credential, folder_id, 1, per_page, sort, order
        )
        total_pages = first_page.pagination.pages
        releases = list(first_page.releases)
        logger.info(
            "Total pages: %d, total items: %d", total_pages, first_page.pagination.items
        )

        for page in range(2, total_pages + 1):
            await asyncio.sleep(self.page_delay)
            # Wait out our own preventive throttle, only a real 429 aborts the folder
            wait = self.cooldown_remaining(credential)
            while wait > 0:
                logger.info("Waiting %.1fs for the Discogs rate limit before page %d", wait, page)
                await asyncio.sleep(wait)
                wait = self.cooldown_remaining(credential)
            try:
                page_data = await self.get_collection_page(
                    credential, folder_id, page, per_page, sort, order
                )
            except RateLimitedError:
                raise
            except CollectionError as e:
                logger.warning("Skipping page %d/%d of folder %d: %s", page, total_pages, folder_id, e)
                continue
            releases.extend(page_data.releases)
            logger.info("Fetched page %d/%d", page, total_pages)

        logger.info("Loaded %d releases for folder %d", len(releases), folder_id)
        return AllReleases(releases=releases, total_items=len(releases))
