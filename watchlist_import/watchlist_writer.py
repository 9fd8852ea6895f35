import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import WATCHLIST_INSERT_BATCH_SIZE
from .models import WatchlistItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchlistCandidate:
    tmdb_id: int
    media_type: str
    title: str


@dataclass(frozen=True)
class BatchAddResult:
    added: int
    skipped: int


class WatchlistBatchWriter:
    """Adds imported titles to a user's watchlist without duplicating rows.

    Existing ``(tmdb_id, media_type)`` pairs are looked up once before any
    insert, and repeats inside one call are collapsed to their first
    occurrence. New rows go in fixed-size batches, each committed on its own:
    a failing batch is counted as skipped and the remaining batches still run.
    Nothing is rolled back across batches.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int = WATCHLIST_INSERT_BATCH_SIZE,
    ):
        self._session_factory = session_factory
        self.batch_size = max(1, batch_size)

    async def existing_keys(self, user_id: str, tmdb_ids: set[int]) -> set[tuple[int, str]]:
        if not tmdb_ids:
            return set()
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(WatchlistItem.tmdb_id, WatchlistItem.media_type).where(
                        WatchlistItem.user_id == user_id,
                        WatchlistItem.tmdb_id.in_(sorted(tmdb_ids)),
                    )
                )
            ).all()
        return {(int(tmdb_id), media_type) for tmdb_id, media_type in rows}

    async def insert_batch(self, user_id: str, batch: Sequence[WatchlistCandidate]) -> int:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            session.add_all(
                [
                    WatchlistItem(
                        user_id=user_id,
                        tmdb_id=item.tmdb_id,
                        media_type=item.media_type,
                        title=item.title,
                        status="plan_to_watch",
                        added_at=now,
                    )
                    for item in batch
                ]
            )
            await session.commit()
        return len(batch)

    async def batch_add(self, user_id: str, items: Sequence[WatchlistCandidate]) -> BatchAddResult:
        if not items:
            return BatchAddResult(added=0, skipped=0)

        try:
            existing = await self.existing_keys(user_id, {item.tmdb_id for item in items})
        except Exception:
            # The unique constraint still rejects duplicates at insert time.
            logger.exception("Could not load existing watchlist rows (user=%s)", user_id)
            existing = set()

        seen = set(existing)
        new_items: list[WatchlistCandidate] = []
        for item in items:
            key = (item.tmdb_id, item.media_type)
            if key in seen:
                continue
            seen.add(key)
            new_items.append(item)
        already_present = len(items) - len(new_items)

        added = 0
        failed = 0
        for start in range(0, len(new_items), self.batch_size):
            batch = new_items[start:start + self.batch_size]
            try:
                added += await self.insert_batch(user_id, batch)
            except Exception:
                logger.exception(
                    "Watchlist insert batch %d failed (user=%s, items=%d)",
                    start // self.batch_size + 1,
                    user_id,
                    len(batch),
                )
                failed += len(batch)

        logger.info(
            "Watchlist batch add (user=%s): requested=%d added=%d existing=%d failed=%d",
            user_id,
            len(items),
            added,
            already_present,
            failed,
        )
        return BatchAddResult(added=added, skipped=already_present + failed)
