import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from .config import IMPORT_SAVE_CHUNK_SIZE
from .import_csv import count_lines, parse_import_csv
from .import_matching import MatchResult, matcher_for_source
from .import_progress import ProgressEvent, ProgressReporter
from .watchlist_writer import WatchlistBatchWriter, WatchlistCandidate

logger = logging.getLogger(__name__)

EMPTY_IMPORT_MESSAGE = "No valid items found in CSV"


@dataclass(frozen=True)
class ImportSummary:
    total: int
    results: tuple[MatchResult, ...]

    @property
    def matched(self) -> list[MatchResult]:
        return [result for result in self.results if result.matched]

    @property
    def failed(self) -> int:
        return self.total - len(self.matched)


def _cached_suffix(cache_hits: int) -> str:
    return f" ({cache_hits} from cache)" if cache_hits > 0 else ""


class ImportPipeline:
    """parse -> match -> save, reported as a stream of progress events.

    The stream always ends with exactly one ``complete`` or ``error`` event.
    """

    def __init__(
        self,
        search,
        mapping_cache,
        writer: WatchlistBatchWriter,
        *,
        save_chunk_size: int = IMPORT_SAVE_CHUNK_SIZE,
        reporter_factory: Callable[[], ProgressReporter] = ProgressReporter,
        matcher_options: dict | None = None,
    ):
        self.search = search
        self.mapping_cache = mapping_cache
        self.writer = writer
        self.save_chunk_size = max(1, save_chunk_size)
        self.reporter_factory = reporter_factory
        self.matcher_options = dict(matcher_options or {})

    def _matcher(self, source: str):
        return matcher_for_source(source, self.search, self.mapping_cache, **self.matcher_options.get(source, {}))

    async def match_only(self, source: str, content: str | bytes) -> ImportSummary:
        records = parse_import_csv(source, content)
        results: list[MatchResult] = []
        if records:
            async for step in self._matcher(source).match_all(records):
                results.extend(step.results)
        return ImportSummary(total=len(records), results=tuple(results))

    async def run(self, user_id: str, source: str, content: str | bytes) -> AsyncIterator[ProgressEvent]:
        reporter = self.reporter_factory()
        try:
            async with aclosing(self._run(reporter, user_id, source, content)) as events:
                async for event in events:
                    yield event
        except Exception as exc:
            logger.exception("Import failed (user=%s, source=%s)", user_id, source)
            if not reporter.finished:
                yield reporter.error(f"Import failed: {exc}")

    async def _run(
        self,
        reporter: ProgressReporter,
        user_id: str,
        source: str,
        content: str | bytes,
    ) -> AsyncIterator[ProgressEvent]:
        yield reporter.begin("parsing", count_lines(content), "Parsing CSV file...")
        records = parse_import_csv(source, content)
        total = len(records)
        if total == 0:
            logger.info("Import had no usable rows (user=%s, source=%s)", user_id, source)
            yield reporter.error(EMPTY_IMPORT_MESSAGE)
            return
        yield reporter.finish(total, total, f"Parsed {total} items")

        results: list[MatchResult] = []
        cache_hits = 0
        yield reporter.begin("matching", total, f"Matching {total} items...")
        async for step in self._matcher(source).match_all(records):
            results.extend(step.results)
            cache_hits = step.cache_hits
            event = reporter.advance(
                step.processed,
                total,
                f"Matching {step.processed}/{total} items{_cached_suffix(cache_hits)}...",
                cached=cache_hits,
            )
            if event is not None:
                yield event

        matched = [result for result in results if result.matched]
        failed = total - len(matched)
        yield reporter.finish(
            total,
            total,
            f"Matched {len(matched)} of {total} items to TMDB{_cached_suffix(cache_hits)}",
            cached=cache_hits,
        )
        logger.info(
            "Import matching done (user=%s, source=%s): total=%d matched=%d failed=%d cached=%d",
            user_id,
            source,
            total,
            len(matched),
            failed,
            cache_hits,
        )

        to_save = len(matched)
        added = 0
        skipped = 0
        yield reporter.begin("saving", to_save, "Saving items to your watchlist...")
        for start in range(0, to_save, self.save_chunk_size):
            chunk = matched[start:start + self.save_chunk_size]
            candidates = [WatchlistCandidate(r.tmdb_id, r.media_type, r.title) for r in chunk]
            try:
                result = await self.writer.batch_add(user_id, candidates)
                added += result.added
                skipped += result.skipped
            except Exception:
                logger.exception("Saving chunk %d failed (user=%s)", start // self.save_chunk_size + 1, user_id)
                skipped += len(chunk)
            processed = min(start + self.save_chunk_size, to_save)
            event = reporter.advance(
                processed,
                to_save,
                f"Saved {added} items ({processed}/{to_save})",
                added=added,
                skipped=skipped,
                failed=failed,
            )
            if event is not None:
                yield event
        yield reporter.finish(
            to_save,
            to_save,
            f"Saved {added} items",
            added=added,
            skipped=skipped,
            failed=failed,
        )

        yield reporter.complete(added=added, skipped=skipped, failed=failed, total=total)
