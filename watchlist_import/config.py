import os


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name, "")
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return max(minimum, int(str(raw).strip()))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(name, "")
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return max(minimum, float(str(raw).strip()))
    except ValueError:
        return default


def _env_media_types(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    values = tuple(
        part.strip().lower()
        for part in str(raw or "").split(",")
        if part.strip().lower() in ("movie", "tv")
    )
    return values or default


DATABASE_POOL_SIZE = _env_int("DATABASE_POOL_SIZE", 5)
DATABASE_MAX_OVERFLOW = _env_int("DATABASE_MAX_OVERFLOW", 10, minimum=0)

IMDB_MATCH_BATCH_SIZE = _env_int("IMDB_MATCH_BATCH_SIZE", 5)
IMDB_MATCH_BATCH_DELAY = _env_float("IMDB_MATCH_BATCH_DELAY", 0.1)
LETTERBOXD_MATCH_BATCH_SIZE = _env_int("LETTERBOXD_MATCH_BATCH_SIZE", 20)

WATCHLIST_INSERT_BATCH_SIZE = _env_int("WATCHLIST_INSERT_BATCH_SIZE", 100)
IMPORT_SAVE_CHUNK_SIZE = _env_int("IMPORT_SAVE_CHUNK_SIZE", 100)

MAPPING_CACHE_QUERY_CHUNK = _env_int("MAPPING_CACHE_QUERY_CHUNK", 100)
MAPPING_CACHE_FLUSH_SIZE = _env_int("MAPPING_CACHE_FLUSH_SIZE", 50)
# Arbitrary tie-break for title keys cached under both media types.
MAPPING_CACHE_PROBE_ORDER = _env_media_types("MAPPING_CACHE_PROBE_ORDER", ("movie", "tv"))

PROGRESS_MIN_ITEMS = _env_int("PROGRESS_MIN_ITEMS", 10)
PROGRESS_MIN_INTERVAL = _env_float("PROGRESS_MIN_INTERVAL", 0.5)

IMPORT_MAX_BYTES = _env_int("IMPORT_MAX_BYTES", 10 * 1024 * 1024)
IMPORT_RATE_LIMIT = os.environ.get("IMPORT_RATE_LIMIT", "10/minute").strip() or "10/minute"
