import asyncio
import math
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from errors import CollectionError
from models import AllReleases, CollectionPage, Folder, Pagination, Release


class FakeClock:
    """Manually advanced clock for TTL and cool-down tests"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_release(
    release_id: int,
    title: str = "Untitled",
    artists: Sequence[str] = ("Unknown Artist",),
    year: int = 0,
    added: str = "2020-01-01T00:00:00-08:00",
    genres: Sequence[str] = (),
    styles: Sequence[str] = (),
    labels: Sequence[Tuple[str, str]] = (("Blue Note", "BLP-1500"),),
    folder_id: int = 1,
) -> Release:
    return Release(
        id=release_id,
        instance_id=release_id * 10,
        date_added=added,
        folder_id=folder_id,
        rating=0,
        basic_information={
            "id": release_id,
            "title": title,
            "year": year,
            "artists": [{"name": name, "id": index} for index, name in enumerate(artists)],
            "labels": [{"name": name, "catno": catno} for name, catno in labels],
            "formats": [{"name": "Vinyl", "qty": "1", "descriptions": ["LP"]}],
            "genres": list(genres),
            "styles": list(styles),
        },
    )


def jazz_collection() -> List[Release]:
    return [
        make_release(1, "Kind of Blue", ["Miles Davis"], 1959, "2021-03-01T10:00:00-08:00",
                     ["Jazz"], ["Modal"]),
        make_release(2, "Blue Train", ["John Coltrane"], 1957, "2021-01-15T10:00:00-08:00",
                     ["Jazz"], ["Hard Bop"]),
        make_release(3, "Homogenic", ["Björk"], 1997, "2022-06-01T10:00:00-08:00",
                     ["Electronic"], ["Trip Hop"], labels=[("One Little Indian", "TPLP71")]),
        make_release(4, "A Love Supreme", ["John Coltrane"], 1965, "2020-11-20T10:00:00-08:00",
                     ["Jazz"], ["Free Jazz"]),
        make_release(5, "Untitled Demo", ["anonymous"], 0, "2023-02-02T10:00:00-08:00",
                     ["Rock"], []),
    ]


class FakeDiscogsClient:
    """Stand-in for DiscogsClient that serves pages out of a release list"""

    def __init__(self, releases: List[Release], folders: Optional[List[Folder]] = None):
        self.releases = releases
        self.folders = folders if folders is not None else [
            Folder(id=0, name="All", count=len(releases)),
            Folder(id=3, name="Jazz", count=3),
        ]
        self.calls: Counter = Counter()
        self.credentials: List[object] = []
        self.release_gate: Optional[asyncio.Event] = None
        self.error: Optional[CollectionError] = None

    async def get_folders(self, credential) -> List[Folder]:
        self.calls["folders"] += 1
        self.credentials.append(credential)
        return self.folders

    async def get_collection_page(self, credential, folder_id, page, per_page, sort="added", order="desc"):
        self.calls["page"] += 1
        self.credentials.append(credential)
        if self.error is not None:
            raise self.error
        total = len(self.releases)
        start = (page - 1) * per_page
        return CollectionPage(
            releases=self.releases[start:start + per_page],
            pagination=Pagination(
                page=page, pages=math.ceil(total / per_page), per_page=per_page, items=total
            ),
        )

    async def get_all_collection_releases(self, credential, folder_id=0, sort="added", order="desc"):
        self.calls["all"] += 1
        if self.release_gate is not None:
            await self.release_gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return AllReleases(releases=list(self.releases), total_items=len(self.releases))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def releases() -> List[Release]:
    return jazz_collection()


def release_json(release: Release) -> Dict:
    return release.model_dump(mode="json")
