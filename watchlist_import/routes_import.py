import logging
from contextlib import aclosing

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from . import tmdb
from .auth import get_current_user_id
from .config import IMPORT_MAX_BYTES, IMPORT_RATE_LIMIT
from .database import async_session
from .import_csv import IMPORT_SOURCES, UnsupportedSourceError
from .import_pipeline import ImportPipeline
from .mapping_cache import MappingCache
from .watchlist_writer import WatchlistBatchWriter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/import", tags=["import"])
limiter = Limiter(key_func=get_remote_address)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_import_pipeline() -> ImportPipeline:
    return ImportPipeline(
        search=tmdb,
        mapping_cache=MappingCache(async_session),
        writer=WatchlistBatchWriter(async_session),
    )


async def _read_upload(file: UploadFile | None, source: str | None) -> tuple[str, bytes]:
    normalized_source = (source or "").strip().lower()
    if file is None or not normalized_source:
        raise HTTPException(status_code=400, detail="Missing file or source")
    if normalized_source not in IMPORT_SOURCES:
        raise HTTPException(status_code=400, detail="Invalid source")
    content = await file.read(IMPORT_MAX_BYTES + 1)
    if len(content) > IMPORT_MAX_BYTES:
        raise HTTPException(status_code=400, detail="CSV file is too large.")
    return normalized_source, content


async def _event_stream(request: Request, pipeline: ImportPipeline, user_id: str, source: str, content: bytes):
    async with aclosing(pipeline.run(user_id, source, content)) as events:
        async for event in events:
            if await request.is_disconnected():
                logger.info("Import client disconnected (user=%s, source=%s); stopping", user_id, source)
                break
            yield event.to_sse()


@router.post("/stream")
@limiter.limit(IMPORT_RATE_LIMIT)
async def stream_import(
    request: Request,
    file: UploadFile | None = File(None),
    source: str | None = Form(None),
    user_id: str = Depends(get_current_user_id),
    pipeline: ImportPipeline = Depends(get_import_pipeline),
):
    normalized_source, content = await _read_upload(file, source)
    logger.info("Import stream started (user=%s, source=%s, bytes=%d)", user_id, normalized_source, len(content))
    return StreamingResponse(
        _event_stream(request, pipeline, user_id, normalized_source, content),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("")
@limiter.limit(IMPORT_RATE_LIMIT)
async def match_import(
    request: Request,
    file: UploadFile | None = File(None),
    source: str | None = Form(None),
    user_id: str = Depends(get_current_user_id),
    pipeline: ImportPipeline = Depends(get_import_pipeline),
):
    normalized_source, content = await _read_upload(file, source)
    try:
        summary = await pipeline.match_only(normalized_source, content)
    except UnsupportedSourceError:
        raise HTTPException(status_code=400, detail="Invalid source")
    if summary.total == 0:
        raise HTTPException(
            status_code=400,
            detail=f"No valid items found in CSV. Make sure you exported your data from {normalized_source} correctly.",
        )
    matched = summary.matched
    logger.info(
        "Import preview (user=%s, source=%s): matched %d of %d",
        user_id,
        normalized_source,
        len(matched),
        summary.total,
    )
    return {
        "success": True,
        "total": summary.total,
        "matched": len(matched),
        "failed": summary.failed,
        "items": [
            {"tmdb_id": result.tmdb_id, "media_type": result.media_type, "title": result.title}
            for result in matched
        ],
    }
