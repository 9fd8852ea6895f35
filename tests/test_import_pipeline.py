"""End-to-end import runs: parse, match against fakes, save to SQLite."""

from conftest import FakeMappingCache, FakeSearch, movie_row, unthrottled_reporter
from watchlist_import.import_pipeline import EMPTY_IMPORT_MESSAGE, ImportPipeline
from watchlist_import.import_progress import PHASE_ORDER
from watchlist_import.watchlist_writer import WatchlistBatchWriter

USER = "user-123"

IMDB_CSV = (
    "Const,Title,Year,Title Type\n"
    "tt0113277,Heat,1995,movie\n"
    "tt0078748,Alien,1979,movie\n"
    "tt0000001,Nothing Matches This,2000,movie\n"
)


def imdb_search() -> FakeSearch:
    return FakeSearch(
        found={"tt0113277": {"movie_results": [movie_row(949, "Heat", 1995)], "tv_results": []}},
        movies={("Alien", 1979): [movie_row(348, "Alien", 1979)]},
    )


def make_pipeline(session_factory, search, cache=None, writer=None):
    return ImportPipeline(
        search,
        cache if cache is not None else FakeMappingCache(),
        writer if writer is not None else WatchlistBatchWriter(session_factory),
        reporter_factory=unthrottled_reporter,
        matcher_options={"imdb": {"batch_delay": 0}},
    )


async def run_events(pipeline, source, content, user_id=USER):
    return [event async for event in pipeline.run(user_id, source, content)]


def assert_well_formed(events):
    progress = [event.progress for event in events]
    assert progress == sorted(progress)
    assert sum(1 for event in events if event.terminal) == 1
    assert events[-1].terminal
    phases = [event.type for event in events if not event.terminal]
    ranks = [PHASE_ORDER.index(phase) for phase in phases]
    assert ranks == sorted(ranks)


class TestImportRun:
    async def test_three_row_imdb_import(self, session_factory):
        search = imdb_search()
        events = await run_events(make_pipeline(session_factory, search), "imdb", IMDB_CSV)

        assert_well_formed(events)
        assert [phase for phase in PHASE_ORDER if phase in {e.type for e in events}] == list(PHASE_ORDER)
        complete = events[-1]
        assert complete.type == "complete"
        assert complete.total == 3
        assert complete.failed == 1
        assert complete.added == 2
        assert complete.added + complete.skipped + complete.failed == 3
        assert ("find", "tt0113277") in search.calls
        assert ("movie", "Alien", 1979) in search.calls

    async def test_reimport_is_skipped(self, session_factory):
        pipeline = make_pipeline(session_factory, imdb_search())
        await run_events(pipeline, "imdb", IMDB_CSV)
        complete = (await run_events(pipeline, "imdb", IMDB_CSV))[-1]
        assert (complete.added, complete.skipped, complete.failed) == (0, 2, 1)

    async def test_same_title_two_years_saves_one_row(self, session_factory):
        search = FakeSearch(
            movies={
                ("Dune", 1984): [movie_row(841, "Dune", 1984)],
            }
        )
        content = "Name,Year\nDune,1984\nDune,1985\n"
        events = await run_events(make_pipeline(session_factory, search), "letterboxd", content)

        complete = events[-1]
        assert complete.type == "complete"
        assert (complete.added, complete.skipped, complete.failed) == (1, 1, 0)

    async def test_second_run_is_served_from_cache(self, session_factory):
        search = imdb_search()
        cache = FakeMappingCache()
        pipeline = make_pipeline(session_factory, search, cache=cache)
        await run_events(pipeline, "imdb", IMDB_CSV)
        calls = len(search.calls)

        events = await run_events(pipeline, "imdb", IMDB_CSV.replace("tt0000001,Nothing Matches This,2000,movie\n", ""))
        assert len(search.calls) == calls
        matching = [event for event in events if event.type == "matching" and event.cached]
        assert matching and matching[-1].cached == 2

    async def test_empty_import_is_an_error_event(self, session_factory):
        events = await run_events(make_pipeline(session_factory, FakeSearch()), "imdb", "Const,Title,Year\n\n")
        assert [event.type for event in events] == ["parsing", "error"]
        assert events[-1].message == EMPTY_IMPORT_MESSAGE

    async def test_unexpected_failure_ends_with_one_error(self, session_factory):
        class ExplodingCache(FakeMappingCache):
            async def batch_lookup(self, keys):
                raise RuntimeError("database gone")

        pipeline = make_pipeline(session_factory, imdb_search(), cache=ExplodingCache())
        events = await run_events(pipeline, "imdb", IMDB_CSV)
        assert_well_formed(events)
        assert events[-1].type == "error"
        assert "database gone" in events[-1].message

    async def test_unsupported_source_is_an_error_event(self, session_factory):
        events = await run_events(make_pipeline(session_factory, FakeSearch()), "trakt", IMDB_CSV)
        assert events[-1].type == "error"

    async def test_failing_save_counts_as_skipped(self, session_factory):
        class BrokenWriter(WatchlistBatchWriter):
            async def batch_add(self, user_id, items):
                raise RuntimeError("write failed")

        pipeline = make_pipeline(session_factory, imdb_search(), writer=BrokenWriter(session_factory))
        complete = (await run_events(pipeline, "imdb", IMDB_CSV))[-1]
        assert complete.type == "complete"
        assert (complete.added, complete.skipped, complete.failed) == (0, 2, 1)

    async def test_nothing_matched_still_completes(self, session_factory):
        events = await run_events(make_pipeline(session_factory, FakeSearch()), "letterboxd", "Name,Year\nNope,2001\n")
        complete = events[-1]
        assert complete.type == "complete"
        assert (complete.added, complete.skipped, complete.failed) == (0, 0, 1)
        assert complete.progress == 100


class TestMatchOnly:
    async def test_summary(self, session_factory):
        summary = await make_pipeline(session_factory, imdb_search()).match_only("imdb", IMDB_CSV)
        assert summary.total == 3
        assert summary.failed == 1
        assert sorted(result.tmdb_id for result in summary.matched) == [348, 949]

    async def test_empty(self, session_factory):
        summary = await make_pipeline(session_factory, FakeSearch()).match_only("imdb", "")
        assert summary.total == 0
        assert summary.results == ()
