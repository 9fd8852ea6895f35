"""WatchlistBatchWriter against a real (SQLite) database."""

from sqlalchemy import select

from watchlist_import.models import WatchlistItem
from watchlist_import.watchlist_writer import BatchAddResult, WatchlistBatchWriter, WatchlistCandidate

USER = "user-123"


def candidates(*ids, media_type="movie"):
    return [WatchlistCandidate(tmdb_id, media_type, f"Title {tmdb_id}") for tmdb_id in ids]


async def stored_rows(session_factory, user_id=USER):
    async with session_factory() as session:
        rows = (await session.execute(select(WatchlistItem).where(WatchlistItem.user_id == user_id))).scalars().all()
    return sorted((row.tmdb_id, row.media_type) for row in rows)


class TestBatchAdd:
    async def test_idempotent(self, session_factory):
        writer = WatchlistBatchWriter(session_factory, batch_size=2)
        items = candidates(1, 2, 3, 4, 5)

        assert await writer.batch_add(USER, items) == BatchAddResult(added=5, skipped=0)
        assert await writer.batch_add(USER, items) == BatchAddResult(added=0, skipped=5)
        assert len(await stored_rows(session_factory)) == 5

    async def test_rows_default_to_plan_to_watch(self, session_factory):
        await WatchlistBatchWriter(session_factory).batch_add(USER, candidates(7))
        async with session_factory() as session:
            row = (await session.execute(select(WatchlistItem))).scalar_one()
        assert row.status == "plan_to_watch"
        assert row.title == "Title 7"
        assert row.added_at is not None

    async def test_media_type_is_part_of_identity(self, session_factory):
        writer = WatchlistBatchWriter(session_factory)
        await writer.batch_add(USER, candidates(1396, media_type="movie"))
        result = await writer.batch_add(USER, candidates(1396, media_type="tv"))
        assert result == BatchAddResult(added=1, skipped=0)
        assert await stored_rows(session_factory) == [(1396, "movie"), (1396, "tv")]

    async def test_users_are_independent(self, session_factory):
        writer = WatchlistBatchWriter(session_factory)
        await writer.batch_add(USER, candidates(1))
        assert await writer.batch_add("someone-else", candidates(1)) == BatchAddResult(added=1, skipped=0)

    async def test_duplicates_within_one_call(self, session_factory):
        writer = WatchlistBatchWriter(session_factory)
        result = await writer.batch_add(USER, candidates(1, 2, 1, 1))
        assert result == BatchAddResult(added=2, skipped=2)
        assert await stored_rows(session_factory) == [(1, "movie"), (2, "movie")]

    async def test_empty(self, session_factory):
        assert await WatchlistBatchWriter(session_factory).batch_add(USER, []) == BatchAddResult(added=0, skipped=0)

    async def test_failing_batch_is_skipped_and_others_proceed(self, session_factory):
        class FlakyWriter(WatchlistBatchWriter):
            calls = 0

            async def insert_batch(self, user_id, batch):
                self.calls += 1
                if self.calls == 2:
                    raise RuntimeError("insert failed")
                return await super().insert_batch(user_id, batch)

        writer = FlakyWriter(session_factory, batch_size=2)
        result = await writer.batch_add(USER, candidates(1, 2, 3, 4, 5))
        assert result == BatchAddResult(added=3, skipped=2)
        assert await stored_rows(session_factory) == [(1, "movie"), (2, "movie"), (5, "movie")]

    async def test_existence_check_failure_falls_back_to_constraint(self, session_factory):
        class BlindWriter(WatchlistBatchWriter):
            async def existing_keys(self, user_id, tmdb_ids):
                raise RuntimeError("select failed")

        await WatchlistBatchWriter(session_factory).batch_add(USER, candidates(1))
        result = await BlindWriter(session_factory).batch_add(USER, candidates(1, 2))
        assert result.added == 0
        assert result.skipped == 2
        assert await stored_rows(session_factory) == [(1, "movie")]
