"""
Shared test fixtures.

Database tests run against a throwaway SQLite file through aiosqlite. The
TMDB client and the mapping cache are replaced with in-memory doubles that
count their calls.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from watchlist_import.import_progress import ProgressReporter
from watchlist_import.mapping_cache import CachedMapping
from watchlist_import.models import Base


# ===================
# DATABASE
# ===================

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ===================
# TMDB DOUBLE
# ===================

def movie_row(tmdb_id: int, title: str, year: int | None) -> dict:
    return {"id": tmdb_id, "title": title, "release_date": f"{year}-06-01" if year else ""}


def tv_row(tmdb_id: int, name: str, year: int | None) -> dict:
    return {"id": tmdb_id, "name": name, "first_air_date": f"{year}-01-15" if year else ""}


class FakeSearch:
    """Stands in for the ``tmdb`` module.

    ``movies``/``tv`` map ``(query, year)`` to result rows; ``year=None`` is
    the unfiltered search. ``found`` maps IMDb ids to ``/find`` payloads.
    Queries listed in ``failing`` raise like a TMDB outage would.
    """

    def __init__(self, movies=None, tv=None, found=None, failing=()):
        self.movies = dict(movies or {})
        self.tv = dict(tv or {})
        self.found = dict(found or {})
        self.failing = set(failing)
        self.calls: list[tuple] = []

    @property
    def search_calls(self) -> list[tuple]:
        return [call for call in self.calls if call[0] in ("movie", "tv")]

    async def find_by_imdb_id(self, imdb_id: str) -> dict:
        self.calls.append(("find", imdb_id))
        if imdb_id in self.failing:
            raise RuntimeError("TMDB unavailable")
        return self.found.get(imdb_id, {"movie_results": [], "tv_results": []})

    async def search_movie(self, query: str, page: int = 1, year: int | None = None) -> dict:
        self.calls.append(("movie", query, year))
        if query in self.failing:
            raise RuntimeError("TMDB unavailable")
        return {"results": self.movies.get((query, year), [])}

    async def search_tv(self, query: str, page: int = 1, year: int | None = None) -> dict:
        self.calls.append(("tv", query, year))
        if query in self.failing:
            raise RuntimeError("TMDB unavailable")
        return {"results": self.tv.get((query, year), [])}


# ===================
# MAPPING CACHE DOUBLE
# ===================

class FakeMappingCache:
    def __init__(self, entries=None):
        self.entries: dict = dict(entries or {})
        self.lookups = 0
        self.inserts = 0

    async def batch_lookup(self, keys):
        self.lookups += 1
        return {key: self.entries[key] for key in keys if key in self.entries}

    async def batch_insert(self, entries):
        self.inserts += 1
        self.entries.update(entries)


class BrokenMappingCache(FakeMappingCache):
    async def batch_insert(self, entries):
        raise RuntimeError("cache down")


@pytest.fixture
def fake_search():
    return FakeSearch()


@pytest.fixture
def fake_cache():
    return FakeMappingCache()


def cached(tmdb_id: int, media_type: str) -> CachedMapping:
    return CachedMapping(tmdb_id, media_type)


# ===================
# PROGRESS
# ===================

class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def tick(self, seconds: float) -> None:
        self.now += seconds


def unthrottled_reporter() -> ProgressReporter:
    return ProgressReporter(min_items=1, min_interval=0.0)
