import logging
from datetime import datetime, timezone
from typing import Iterable, NamedTuple

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import MAPPING_CACHE_QUERY_CHUNK
from .models import TmdbImdbMapping, TmdbTitleMapping

logger = logging.getLogger(__name__)

UNKNOWN_YEAR = 0


class TitleKey(NamedTuple):
    title: str
    year: int | None
    media_type: str


class CachedMapping(NamedTuple):
    tmdb_id: int
    media_type: str


# IMDb ids are plain strings, title lookups use TitleKey.
MappingKey = str | TitleKey


def normalize_cache_title(value: str) -> str:
    return " ".join(str(value or "").lower().split())


def title_key(title: str, year: int | None, media_type: str) -> TitleKey:
    return TitleKey(normalize_cache_title(title), year, media_type)


def _chunks(values: list, size: int):
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _insert_for(session: AsyncSession):
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    return sqlite_insert if dialect == "sqlite" else pg_insert


class MappingCache:
    """Persistent external-key to TMDB id lookups shared by every import.

    Lookups return only the keys that were found; a missing key is a cache
    miss, never a negative match. Writes are upserts and never raise: the
    cache must not be able to fail an import.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        query_chunk_size: int = MAPPING_CACHE_QUERY_CHUNK,
    ):
        self._session_factory = session_factory
        self._query_chunk_size = max(1, query_chunk_size)

    async def batch_lookup(self, keys: Iterable[MappingKey]) -> dict[MappingKey, CachedMapping]:
        keys = list(keys or [])
        imdb_ids = sorted({key for key in keys if isinstance(key, str) and key})
        title_keys = {key for key in keys if isinstance(key, TitleKey)}
        found: dict[MappingKey, CachedMapping] = {}
        if not imdb_ids and not title_keys:
            return found
        try:
            async with self._session_factory() as session:
                if imdb_ids:
                    found.update(await self._lookup_imdb(session, imdb_ids))
                if title_keys:
                    found.update(await self._lookup_titles(session, title_keys))
        except Exception:
            logger.exception("Mapping cache lookup failed (imdb=%d, titles=%d)", len(imdb_ids), len(title_keys))
            return {}
        return found

    async def _lookup_imdb(self, session: AsyncSession, imdb_ids: list[str]) -> dict[MappingKey, CachedMapping]:
        found: dict[MappingKey, CachedMapping] = {}
        for chunk in _chunks(imdb_ids, self._query_chunk_size):
            rows = (
                await session.execute(select(TmdbImdbMapping).where(TmdbImdbMapping.imdb_id.in_(chunk)))
            ).scalars().all()
            for row in rows:
                found[row.imdb_id] = CachedMapping(int(row.tmdb_id), row.media_type)
        return found

    async def _lookup_titles(self, session: AsyncSession, keys: set[TitleKey]) -> dict[MappingKey, CachedMapping]:
        # Query by title only, then match year and media type in memory.
        wanted = {(key.title, key.year or UNKNOWN_YEAR, key.media_type): key for key in keys}
        titles = sorted({key.title for key in keys})
        found: dict[MappingKey, CachedMapping] = {}
        for chunk in _chunks(titles, self._query_chunk_size):
            rows = (
                await session.execute(select(TmdbTitleMapping).where(TmdbTitleMapping.title.in_(chunk)))
            ).scalars().all()
            for row in rows:
                key = wanted.get((row.title, row.year, row.media_type))
                if key is not None:
                    found[key] = CachedMapping(int(row.tmdb_id), row.media_type)
        return found

    async def batch_insert(self, entries: dict[MappingKey, CachedMapping]) -> None:
        if not entries:
            return
        now = datetime.now(timezone.utc)
        imdb_rows = [
            {"imdb_id": key, "tmdb_id": value.tmdb_id, "media_type": value.media_type, "updated_at": now}
            for key, value in entries.items()
            if isinstance(key, str) and key
        ]
        title_rows = [
            {
                "title": key.title,
                "year": key.year or UNKNOWN_YEAR,
                "media_type": key.media_type,
                "tmdb_id": value.tmdb_id,
                "updated_at": now,
            }
            for key, value in entries.items()
            if isinstance(key, TitleKey) and key.title
        ]
        try:
            async with self._session_factory() as session:
                insert = _insert_for(session)
                if imdb_rows:
                    stmt = insert(TmdbImdbMapping).values(imdb_rows)
                    await session.execute(
                        stmt.on_conflict_do_update(
                            index_elements=["imdb_id"],
                            set_={
                                "tmdb_id": stmt.excluded.tmdb_id,
                                "media_type": stmt.excluded.media_type,
                                "updated_at": stmt.excluded.updated_at,
                            },
                        )
                    )
                if title_rows:
                    stmt = insert(TmdbTitleMapping).values(title_rows)
                    await session.execute(
                        stmt.on_conflict_do_update(
                            index_elements=["title", "year", "media_type"],
                            set_={
                                "tmdb_id": stmt.excluded.tmdb_id,
                                "updated_at": stmt.excluded.updated_at,
                            },
                        )
                    )
                await session.commit()
        except Exception:
            logger.exception("Mapping cache write failed (imdb=%d, titles=%d)", len(imdb_rows), len(title_rows))
