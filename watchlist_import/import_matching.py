"""Resolve parsed import records to TMDB ids.

Every record goes through the mapping cache first; only cache misses reach
the search API. Misses fall back through a fixed ladder of searches:

    exact year -> year - 1 -> year + 1 -> unfiltered search, closest year within +/-2

IMDb records carrying an IMDb id try the TMDB ``/find`` cross-reference
before the ladder and search only the media type implied by their title
type. IMDb records without a year stay unmatched when ``/find`` misses.
Letterboxd records have no usable id, so the ladder runs for movies
and TV independently and the candidate closer to the target year wins.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Hashable, Sequence

from .config import (
    IMDB_MATCH_BATCH_DELAY,
    IMDB_MATCH_BATCH_SIZE,
    LETTERBOXD_MATCH_BATCH_SIZE,
    MAPPING_CACHE_FLUSH_SIZE,
    MAPPING_CACHE_PROBE_ORDER,
)
from .import_csv import ImdbItem, LetterboxdItem, RawImportRecord, UnsupportedSourceError, _coerce_year
from .mapping_cache import CachedMapping, MappingKey, TitleKey, normalize_cache_title, title_key

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("movie", "tv")
YEAR_WINDOW = 2
UNKNOWN_TITLE = "Unknown Title"

# Order in which cached title keys are probed when a title/year pair was
# cached under both media types. Movie-first carries no meaning; override
# with MAPPING_CACHE_PROBE_ORDER or the matcher's cache_probe_order argument.
DEFAULT_CACHE_PROBE_ORDER: tuple[str, ...] = MAPPING_CACHE_PROBE_ORDER


@dataclass(frozen=True)
class Candidate:
    tmdb_id: int
    media_type: str
    title: str
    year: int | None


@dataclass(frozen=True)
class MatchResult:
    record: RawImportRecord
    tmdb_id: int | None
    media_type: str
    title: str

    @property
    def matched(self) -> bool:
        return self.tmdb_id is not None


@dataclass(frozen=True)
class MatchProgress:
    processed: int
    total: int
    cache_hits: int
    results: tuple[MatchResult, ...] = ()


def infer_media_type(title_type: str | None) -> str:
    lowered = str(title_type or "").lower()
    if "series" in lowered or "tv" in lowered or "mini" in lowered:
        return "tv"
    return "movie"


def _row_year(row: dict, media_type: str) -> int | None:
    field = "first_air_date" if media_type == "tv" else "release_date"
    return _coerce_year(str(row.get(field) or ""))


def _to_candidate(row: dict | None, media_type: str, fallback_year: int | None = None) -> Candidate | None:
    if not isinstance(row, dict):
        return None
    tmdb_id = row.get("id")
    if not isinstance(tmdb_id, int) or tmdb_id <= 0:
        return None
    title = str(row.get("title") or row.get("name") or "").strip()
    return Candidate(
        tmdb_id=tmdb_id,
        media_type=media_type,
        title=title,
        year=_row_year(row, media_type) or fallback_year,
    )


def _first_candidate(rows: list[dict], media_type: str, fallback_year: int | None = None) -> Candidate | None:
    for row in rows:
        candidate = _to_candidate(row, media_type, fallback_year)
        if candidate:
            return candidate
    return None


def closest_year_row(rows: list[dict], target_year: int, media_type: str, window: int = YEAR_WINDOW) -> dict | None:
    best: tuple[int, int, dict] | None = None
    for rank, row in enumerate(rows):
        year = _row_year(row, media_type)
        if year is None:
            continue
        diff = abs(year - target_year)
        if diff > window:
            continue
        if best is None or (diff, rank) < (best[0], best[1]):
            best = (diff, rank, row)
    return best[2] if best else None


async def _search(search, media_type: str, query: str, year: int | None = None) -> list[dict]:
    search_fn = search.search_tv if media_type == "tv" else search.search_movie
    data = await search_fn(query, page=1, year=year)
    return [row for row in (data or {}).get("results", []) if isinstance(row, dict)]


async def search_year_ladder(search, media_type: str, title: str, year: int | None) -> Candidate | None:
    query = (title or "").strip()
    if not query:
        return None

    if year is None:
        # Only the top result, and only when it carries a date.
        rows = await _search(search, media_type, query)
        if not rows or _row_year(rows[0], media_type) is None:
            return None
        return _to_candidate(rows[0], media_type)

    for attempt in (year, year - 1, year + 1):
        rows = await _search(search, media_type, query, attempt)
        candidate = _first_candidate(rows, media_type, fallback_year=attempt)
        if candidate:
            return candidate

    rows = await _search(search, media_type, query)
    return _to_candidate(closest_year_row(rows, year, media_type), media_type)


def pick_closer_candidate(movie: Candidate | None, tv: Candidate | None, year: int | None) -> Candidate | None:
    if movie and tv:
        if year is None:
            return movie
        movie_diff = abs(movie.year - year) if movie.year is not None else float("inf")
        tv_diff = abs(tv.year - year) if tv.year is not None else float("inf")
        return tv if tv_diff < movie_diff else movie
    return movie or tv


class RecordMatcher:
    """Cache-first matching of one import source.

    ``search`` is anything exposing the ``tmdb`` module's search functions
    and ``cache`` anything exposing ``batch_lookup``/``batch_insert``.
    """

    batch_size = 5
    batch_delay = 0.0

    def __init__(
        self,
        search,
        cache,
        *,
        batch_size: int | None = None,
        batch_delay: float | None = None,
        cache_flush_size: int = MAPPING_CACHE_FLUSH_SIZE,
    ):
        self.search = search
        self.cache = cache
        if batch_size is not None:
            self.batch_size = max(1, batch_size)
        if batch_delay is not None:
            self.batch_delay = max(0.0, batch_delay)
        self.cache_flush_size = max(1, cache_flush_size)

    def resolution_key(self, record: RawImportRecord) -> Hashable:
        raise NotImplementedError

    def cache_probe_keys(self, key: Hashable) -> list[MappingKey]:
        raise NotImplementedError

    def cache_store_key(self, key: Hashable, candidate: Candidate) -> MappingKey:
        raise NotImplementedError

    def default_media_type(self, record: RawImportRecord) -> str:
        return "movie"

    async def resolve(self, record: RawImportRecord) -> Candidate | None:
        raise NotImplementedError

    def _result(self, record: RawImportRecord, candidate: Candidate | None) -> MatchResult:
        if candidate is None:
            return MatchResult(
                record=record,
                tmdb_id=None,
                media_type=self.default_media_type(record),
                title=record.title or UNKNOWN_TITLE,
            )
        return MatchResult(
            record=record,
            tmdb_id=candidate.tmdb_id,
            media_type=candidate.media_type,
            title=record.title or candidate.title or UNKNOWN_TITLE,
        )

    def _cached_result(self, record: RawImportRecord, hit: CachedMapping) -> MatchResult:
        return MatchResult(
            record=record,
            tmdb_id=hit.tmdb_id,
            media_type=hit.media_type,
            title=record.title or UNKNOWN_TITLE,
        )

    def _first_hit(self, key: Hashable, cached: dict[MappingKey, CachedMapping]) -> CachedMapping | None:
        for probe in self.cache_probe_keys(key):
            hit = cached.get(probe)
            if hit is not None:
                return hit
        return None

    async def _resolve_safely(self, record: RawImportRecord) -> Candidate | None:
        try:
            return await self.resolve(record)
        except Exception:
            logger.warning("Lookup failed for %r (%s); treating as unmatched", record.title, record.year, exc_info=True)
            return None

    async def _store(self, entries: dict[MappingKey, CachedMapping]) -> None:
        if not entries:
            return
        try:
            await self.cache.batch_insert(entries)
        except Exception:
            logger.exception("Could not write %d mapping cache entries", len(entries))

    async def match(self, record: RawImportRecord) -> MatchResult:
        key = self.resolution_key(record)
        cached = await self.cache.batch_lookup(self.cache_probe_keys(key))
        hit = self._first_hit(key, cached)
        if hit is not None:
            return self._cached_result(record, hit)
        candidate = await self._resolve_safely(record)
        if candidate is not None:
            await self._store({self.cache_store_key(key, candidate): CachedMapping(candidate.tmdb_id, candidate.media_type)})
        return self._result(record, candidate)

    async def match_all(self, records: Sequence[RawImportRecord]) -> AsyncIterator[MatchProgress]:
        total = len(records)
        # Records sharing a key are resolved once and fanned out.
        groups: dict[Hashable, list[RawImportRecord]] = {}
        for record in records:
            groups.setdefault(self.resolution_key(record), []).append(record)

        probe_keys = [probe for key in groups for probe in self.cache_probe_keys(key)]
        cached = await self.cache.batch_lookup(probe_keys) if probe_keys else {}

        cache_hits = 0
        hit_results: list[MatchResult] = []
        pending: list[Hashable] = []
        for key, members in groups.items():
            hit = self._first_hit(key, cached)
            if hit is None:
                pending.append(key)
                continue
            cache_hits += len(members)
            hit_results.extend(self._cached_result(record, hit) for record in members)

        processed = len(hit_results)
        if hit_results:
            yield MatchProgress(processed, total, cache_hits, tuple(hit_results))

        new_entries: dict[MappingKey, CachedMapping] = {}
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            candidates = await asyncio.gather(*(self._resolve_safely(groups[key][0]) for key in batch))
            step: list[MatchResult] = []
            for key, candidate in zip(batch, candidates):
                if candidate is not None:
                    new_entries[self.cache_store_key(key, candidate)] = CachedMapping(
                        candidate.tmdb_id, candidate.media_type
                    )
                step.extend(self._result(record, candidate) for record in groups[key])
            processed += len(step)
            if len(new_entries) >= self.cache_flush_size:
                await self._store(new_entries)
                new_entries = {}
            yield MatchProgress(processed, total, cache_hits, tuple(step))
            if self.batch_delay and start + self.batch_size < len(pending):
                await asyncio.sleep(self.batch_delay)

        await self._store(new_entries)
        logger.info(
            "Matched %d records (%d unique, %d cache hits, %d searched)",
            total,
            len(groups),
            cache_hits,
            len(pending),
        )


class ImdbMatcher(RecordMatcher):
    batch_size = IMDB_MATCH_BATCH_SIZE
    batch_delay = IMDB_MATCH_BATCH_DELAY

    def resolution_key(self, record: ImdbItem) -> MappingKey:
        if record.external_id:
            return record.external_id
        return title_key(record.title, record.year, infer_media_type(record.title_type))

    def cache_probe_keys(self, key: MappingKey) -> list[MappingKey]:
        return [key]

    def cache_store_key(self, key: MappingKey, candidate: Candidate) -> MappingKey:
        return key

    def default_media_type(self, record: ImdbItem) -> str:
        return infer_media_type(record.title_type)

    async def find_by_imdb_id(self, imdb_id: str) -> Candidate | None:
        try:
            data = await self.search.find_by_imdb_id(imdb_id)
        except Exception:
            logger.info("IMDb id lookup failed for %s, falling back to search", imdb_id)
            return None
        data = data or {}
        for media_type, field in (("tv", "tv_results"), ("movie", "movie_results")):
            candidate = _first_candidate(data.get(field) or [], media_type)
            if candidate:
                return candidate
        return None

    async def resolve(self, record: ImdbItem) -> Candidate | None:
        if record.external_id:
            candidate = await self.find_by_imdb_id(record.external_id)
            if candidate:
                return candidate
        if record.year is None:
            return None
        return await search_year_ladder(
            self.search,
            infer_media_type(record.title_type),
            record.title,
            record.year,
        )


class LetterboxdMatcher(RecordMatcher):
    batch_size = LETTERBOXD_MATCH_BATCH_SIZE
    batch_delay = 0.0

    def __init__(self, search, cache, *, cache_probe_order: Sequence[str] | None = None, **kwargs):
        super().__init__(search, cache, **kwargs)
        order = tuple(mt for mt in (cache_probe_order or DEFAULT_CACHE_PROBE_ORDER) if mt in MEDIA_TYPES)
        self.cache_probe_order = order or MEDIA_TYPES

    def resolution_key(self, record: LetterboxdItem) -> tuple[str, int | None]:
        return (normalize_cache_title(record.title), record.year)

    def cache_probe_keys(self, key: tuple[str, int | None]) -> list[MappingKey]:
        title, year = key
        return [TitleKey(title, year, media_type) for media_type in self.cache_probe_order]

    def cache_store_key(self, key: tuple[str, int | None], candidate: Candidate) -> MappingKey:
        title, year = key
        return TitleKey(title, year, candidate.media_type)

    async def _ladder(self, media_type: str, record: LetterboxdItem) -> Candidate | None:
        try:
            return await search_year_ladder(self.search, media_type, record.title, record.year)
        except Exception:
            logger.warning("%s search failed for %r (%s)", media_type, record.title, record.year, exc_info=True)
            return None

    async def resolve(self, record: LetterboxdItem) -> Candidate | None:
        movie, tv = await asyncio.gather(
            self._ladder("movie", record),
            self._ladder("tv", record),
        )
        return pick_closer_candidate(movie, tv, record.year)


def matcher_for_source(source: str, search, cache, **kwargs) -> RecordMatcher:
    if source == "imdb":
        return ImdbMatcher(search, cache, **kwargs)
    if source == "letterboxd":
        return LetterboxdMatcher(search, cache, **kwargs)
    raise UnsupportedSourceError(source)
