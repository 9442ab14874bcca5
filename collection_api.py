import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from errors import AuthError, RateLimitedError
from models import Folder, Mode, Pagination, Release, SortField, SortOrder


logger = logging.getLogger(__name__)

CLIENT_TIMEOUT_SECONDS = 30.0  # first search materializes the whole collection


@dataclass(frozen=True)
class CollectionFilters:
    """Active filter set of a browsing view"""
    folder: int = 0
    sort: SortField = SortField.ADDED
    order: SortOrder = SortOrder.DESC
    search: str = ""

    @property
    def fingerprint(self) -> str:
        return f"{self.folder}|{self.sort.value}|{self.order.value}|{self.search.strip()}"


class CollectionPayload(BaseModel):
    """Body of /api/collection and /api/collection/search"""
    model_config = ConfigDict(populate_by_name=True)

    mode: str
    discogs_username: Optional[str] = Field(default=None, alias="discogsUsername")
    releases: List[Release] = []
    folders: List[Folder] = []
    pagination: Pagination
    total_results: Optional[int] = Field(default=None, alias="totalResults")


class CollectionApi:
    """Async consumer of the collection HTTP API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        mode: Mode = Mode.DEMO,
        timeout: float = CLIENT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.mode = mode
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def close(self):
        await self.client.aclose()

    def _params(self, filters: CollectionFilters, page: int, per_page: int) -> dict:
        params = {
            "page": page,
            "perPage": per_page,
            "sort": filters.sort.value,
            "order": filters.order.value,
            "mode": self.mode.value,
        }
        if filters.folder:
            params["folder"] = filters.folder
        return params

    @staticmethod
    def _check(response: httpx.Response):
        if response.status_code == 429:
            raise RateLimitedError(response.json().get("message", ""))
        if response.status_code in (401, 403):
            raise AuthError("Please reconnect your Discogs account.")
        response.raise_for_status()

    async def get_collection(
        self, filters: CollectionFilters, page: int, per_page: int
    ) -> CollectionPayload:
        response = await self.client.get(
            "/api/collection", params=self._params(filters, page, per_page)
        )
        self._check(response)
        return CollectionPayload(**response.json())

    async def search_collection(
        self, filters: CollectionFilters, page: int, per_page: int
    ) -> CollectionPayload:
        params = self._params(filters, page, per_page)
        params["q"] = filters.search.strip()
        response = await self.client.get("/api/collection/search", params=params)
        self._check(response)
        return CollectionPayload(**response.json())

    async def fetch(self, filters: CollectionFilters, page: int, per_page: int) -> CollectionPayload:
        """Search endpoint when a query is active, plain listing otherwise"""
        if filters.search.strip():
            return await self.search_collection(filters, page, per_page)
        return await self.get_collection(filters, page, per_page)

    async def get_folders(self) -> List[Folder]:
        response = await self.client.get(
            "/api/collection/folders", params={"mode": self.mode.value}
        )
        self._check(response)
        return [Folder(**folder) for folder in response.json()["folders"]]
