import os
import httpx

BASE_URL = "https://api.themoviedb.org/3"
_client: httpx.AsyncClient | None = None


def _get_api_key() -> str:
    key = os.environ.get("TMDB_API_KEY", "")
    if not key:
        raise RuntimeError("TMDB_API_KEY environment variable not set.")
    return key


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=10)
    return _client


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


async def _get(path: str, params: dict | None = None) -> dict:
    params = params or {}
    params["api_key"] = _get_api_key()
    client = await _get_client()
    resp = await client.get(f"{BASE_URL}{path}", params=params)
    resp.raise_for_status()
    return resp.json()


async def find_by_imdb_id(imdb_id: str) -> dict:
    data = await _get(f"/find/{imdb_id}", {"external_source": "imdb_id"})
    return {
        "movie_results": data.get("movie_results") or [],
        "tv_results": data.get("tv_results") or [],
    }


async def search_movie(query: str, page: int = 1, year: int | None = None) -> dict:
    params = {"query": query, "page": page, "include_adult": "false"}
    if year is not None:
        params["year"] = year
    return await _get("/search/movie", params)


async def search_tv(query: str, page: int = 1, year: int | None = None) -> dict:
    params = {"query": query, "page": page, "include_adult": "false"}
    if year is not None:
        params["first_air_date_year"] = year
    return await _get("/search/tv", params)
