"""TMDB API client: searches, images and cached title logos."""

import logging
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Request

from watchtower.services.logo_cache import LogoCache, clean_title
from watchtower.services.results import ApiResult, error_from_exception, error_from_response

logger = logging.getLogger(__name__)

TMDB_BASE_URL = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE_URL = "https://image.tmdb.org/t/p"
LOGO_SERVE_PREFIX = "/api/cache/tmdb/logos"


def select_logo(logos: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Prefer an English logo, otherwise trust TMDB's own ordering."""
    if not logos:
        return None
    for logo in logos:
        if logo.get("iso_639_1") == "en":
            return logo
    return logos[0]


def logo_serve_url(filename: str) -> str:
    return f"{LOGO_SERVE_PREFIX}/{filename}"


def _year_of(date: Optional[str]) -> Optional[int]:
    if date and date[:4].isdigit():
        return int(date[:4])
    return None


class TMDBClient:
    """Client for the TMDB v3 API."""

    def __init__(
        self,
        api_key: str,
        logo_cache: Optional[LogoCache] = None,
        timeout: float = 10.0,
        base_url: str = TMDB_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.logo_cache = logo_cache
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    async def _request(self, path: str, params: Dict = None) -> ApiResult:
        query = dict(params or {})
        query["api_key"] = self.api_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.base_url}{path}",
                    params=query,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error(f"[TMDB] Request {path} failed: {e}")
            return error_from_exception(e)

        if response.status_code >= 400:
            result = error_from_response(response)
            if result.error.is_rate_limited:
                logger.error(f"[TMDB] RATE LIMITED! Retry after: {result.error.retry_after or 'unknown'}s. Path: {path}")
            return result
        try:
            return ApiResult.ok(response.json())
        except ValueError:
            return ApiResult.fail(-1, f"Invalid JSON from TMDB for {path}")

    async def search_movie(self, title: str, year: Optional[int] = None) -> ApiResult:
        params = {"query": title}
        if year:
            params["year"] = year
        result = await self._request("/search/movie", params)
        if not result.success:
            return result
        return ApiResult.ok(result.data.get("results", []))

    async def search_tv(self, title: str, year: Optional[int] = None) -> ApiResult:
        params = {"query": title}
        if year:
            params["first_air_date_year"] = year
        result = await self._request("/search/tv", params)
        if not result.success:
            return result
        return ApiResult.ok(result.data.get("results", []))

    async def get_movie_images(self, tmdb_id: int) -> ApiResult:
        return await self._request(f"/movie/{tmdb_id}/images")

    async def get_tv_images(self, tmdb_id: int) -> ApiResult:
        return await self._request(f"/tv/{tmdb_id}/images")

    async def find_by_imdb(self, imdb_id: str) -> ApiResult:
        """Look up a movie or show by IMDB id; data is None when TMDB has no match."""
        result = await self._request(f"/find/{imdb_id}", {"external_source": "imdb_id"})
        if not result.success:
            return result

        movies = result.data.get("movie_results") or []
        if movies:
            movie = movies[0]
            return ApiResult.ok({
                "type": "movie",
                "id": movie.get("id"),
                "title": movie.get("title"),
                "year": _year_of(movie.get("release_date")),
                "posterPath": movie.get("poster_path"),
                "rating": movie.get("vote_average") or None,
            })

        shows = result.data.get("tv_results") or []
        if shows:
            show = shows[0]
            return ApiResult.ok({
                "type": "show",
                "id": show.get("id"),
                "title": show.get("name"),
                "year": _year_of(show.get("first_air_date")),
                "posterPath": show.get("poster_path"),
                "rating": show.get("vote_average") or None,
            })

        return ApiResult.ok(None)

    async def get_cached_logo_url(self, media_type: str, title: str, year: Optional[int] = None) -> Optional[str]:
        """Resolve a title logo through the local cache, asking TMDB on a miss.

        media_type is "movie" or "tv". Returns a local serve URL or None.
        Only confirmed answers are cached: "no such title" and "title has no
        logos" become negative entries, transport errors are not recorded.
        """
        if self.logo_cache is None:
            return None

        title = clean_title(title)
        label = f'{media_type} "{title}" ({year or "no year"})'

        cached = await self.logo_cache.lookup(media_type, title, year)
        if cached.hit:
            if cached.filename:
                logger.info(f"[TMDB] Logo cache HIT: {label} -> {cached.filename}")
                return logo_serve_url(cached.filename)
            logger.info(f"[TMDB] Logo cache HIT (no logo exists): {label}")
            return None

        logger.info(f"[TMDB] Logo cache MISS: {label} - fetching from TMDB...")

        search = await self._search_for_logo(media_type, title, year)
        if not search.success:
            logger.error(f"[TMDB] Search failed for {label}: {search.error.message}")
            return None
        if not search.data:
            logger.warning(f"[TMDB] No match found for {label}")
            await self.logo_cache.store(media_type, title, year, None)
            return None

        match = search.data[0]
        tmdb_id = match.get("id")
        images = await (self.get_movie_images(tmdb_id) if media_type == "movie" else self.get_tv_images(tmdb_id))
        if not images.success:
            logger.error(f"[TMDB] Failed to get images for {label} (TMDB ID: {tmdb_id}): {images.error.message}")
            return None

        logo = select_logo(images.data.get("logos") or [])
        if logo is None:
            logger.warning(f"[TMDB] No logos available for {label} (TMDB ID: {tmdb_id})")
            await self.logo_cache.store(media_type, title, year, None, tmdb_id)
            return None

        remote_url = f"{TMDB_IMAGE_BASE_URL}/w500{logo['file_path']}"
        filename = await self.logo_cache.store(media_type, title, year, remote_url, tmdb_id)
        if filename is None:
            logger.error(f"[TMDB] Failed to download/cache logo for {label}")
            return None

        logger.info(f"[TMDB] Logo cached for {label} (TMDB ID: {tmdb_id})")
        return logo_serve_url(filename)

    async def _search_for_logo(self, media_type: str, title: str, year: Optional[int]) -> ApiResult:
        # Plex may report a show's last-aired year, so shows search without it first
        if media_type == "movie":
            result = await self.search_movie(title, year)
            if year and (not result.success or not result.data):
                result = await self.search_movie(title)
        else:
            result = await self.search_tv(title)
            if year and (not result.success or not result.data):
                result = await self.search_tv(title, year)
        return result


def get_tmdb_client(request: Request) -> Optional[TMDBClient]:
    """Dependency returning the app-scoped TMDB client, or None when unconfigured."""
    return getattr(request.app.state, "tmdb_client", None)
