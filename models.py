from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict


class Mode(str, Enum):
    """Requested browsing mode"""
    DEMO = "demo"
    USER = "user"


class ResultMode(str, Enum):
    """Mode reported back with a collection result"""
    DEMO = "demo"
    USER = "user"
    UNLINKED = "unlinked"  # user mode requested without a linked account
    EMPTY = "empty"  # linked account with nothing in it


class SortField(str, Enum):
    ADDED = "added"
    ARTIST = "artist"
    TITLE = "title"
    YEAR = "year"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class Artist(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    id: Optional[int] = None
    resource_url: Optional[str] = None


class Label(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    catno: str = ""
    id: Optional[int] = None


class Format(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    qty: str = "1"
    text: Optional[str] = None
    descriptions: List[str] = []


class Track(BaseModel):
    model_config = ConfigDict(extra="allow")

    position: str = ""
    title: str
    duration: str = ""


class BasicInformation(BaseModel):
    """Release descriptor as returned inside a Discogs collection item"""
    model_config = ConfigDict(extra="allow")

    id: int
    title: str
    year: int = 0
    artists: List[Artist] = []
    labels: List[Label] = []
    formats: List[Format] = []
    genres: List[str] = []
    styles: List[str] = []
    thumb: str = ""
    cover_image: str = ""
    tracklist: List[Track] = []
    master_id: Optional[int] = None
    resource_url: Optional[str] = None


class Release(BaseModel):
    """One item of a Discogs collection folder"""
    model_config = ConfigDict(extra="allow")

    id: int
    instance_id: Optional[int] = None
    date_added: datetime
    folder_id: int = 0
    rating: int = 0
    basic_information: BasicInformation


class Folder(BaseModel):
    """Collection folder, folder 0 is the implicit 'All' folder"""
    model_config = ConfigDict(extra="allow")

    id: int
    name: str
    count: int = 0
    resource_url: Optional[str] = None


class PaginationUrls(BaseModel):
    first: Optional[str] = None
    prev: Optional[str] = None
    next: Optional[str] = None
    last: Optional[str] = None


class Pagination(BaseModel):
    page: int
    pages: int
    per_page: int
    items: int
    urls: PaginationUrls = PaginationUrls()


class CollectionPage(BaseModel):
    """One upstream page of releases"""
    releases: List[Release]
    pagination: Pagination


class AllReleases(BaseModel):
    """Every release of a folder, fetched page by page"""
    releases: List[Release]
    total_items: int


class DiscogsAuth(BaseModel):
    """Delegated credential stored in a visitor session. Never serialized to clients."""
    discogs_username: str
    access_token: str
    access_token_secret: str
    linked_at: datetime


class CollectionResult(BaseModel):
    """Uniform answer of the collection orchestrator"""
    mode: ResultMode
    discogs_username: Optional[str] = None
    releases: List[Release] = []
    folders: List[Folder] = []
    pagination: Pagination


class RefreshResult(BaseModel):
    success: bool
    message: str
    cache_cleared: bool
    data_refreshed: bool


def build_pagination(page: int, pages: int, per_page: int, items: int) -> Pagination:
    """Pagination block with relative navigation links"""
    return Pagination(
        page=page,
        pages=pages,
        per_page=per_page,
        items=items,
        urls=PaginationUrls(
            first="?page=1" if page > 1 else None,
            prev=f"?page={page - 1}" if page > 1 else None,
            next=f"?page={page + 1}" if page < pages else None,
            last=f"?page={pages}" if page < pages else None,
        ),
    )
