from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_current_user_id
from .database import get_db
from .models import WatchlistItem

router = APIRouter(prefix="/api/watchlist", tags=["watchlist"])


def _serialize_watchlist_item(item: WatchlistItem) -> dict:
    return {
        "id": str(item.id),
        "tmdb_id": int(item.tmdb_id),
        "media_type": item.media_type,
        "title": item.title,
        "status": item.status,
        "added_at": item.added_at.isoformat() if item.added_at else None,
    }


@router.get("")
async def list_watchlist(
    limit: int = Query(500, ge=1, le=2000),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    rows = (
        await db.execute(
            select(WatchlistItem)
            .where(WatchlistItem.user_id == user_id)
            .order_by(WatchlistItem.added_at.desc())
            .limit(limit)
        )
    ).scalars().all()
    return {"results": [_serialize_watchlist_item(row) for row in rows]}
