"""Plex Media Server API client."""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from fastapi import Depends, HTTPException, Request

from watchtower.config import settings
from watchtower.services.results import ApiResult, error_from_exception, error_from_response

logger = logging.getLogger(__name__)

PLEX_DISCOVER_URL = "https://discover.provider.plex.tv"

PLEX_HEADERS = {
    "X-Plex-Product": "Watchtower",
    "X-Plex-Version": "1.0.0",
    "X-Plex-Platform": "Web",
    "X-Plex-Device": "Browser",
    "X-Plex-Device-Name": "Watchtower Web",
    "Accept": "application/json",
}


class PlexClient:
    """Client for a Plex Media Server plus the plex.tv Discover API."""

    def __init__(
        self,
        server_url: str,
        token: str,
        client_id: str = "watchtower-001",
        timeout: float = 10.0,
        discover_url: str = PLEX_DISCOVER_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.discover_url = discover_url.rstrip("/")
        self.token = token
        self.client_id = client_id
        self.timeout = timeout
        self._transport = transport
        self.headers = {
            **PLEX_HEADERS,
            "X-Plex-Client-Identifier": client_id,
            "X-Plex-Token": token,
        }

    async def _send(self, url: str, params: Dict = None, headers: Dict = None) -> ApiResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, transport=self._transport) as client:
                response = await client.get(url, params=params, headers=headers or self.headers)
        except httpx.HTTPError as e:
            logger.error(f"[Plex] Request to {url} failed: {e}")
            return error_from_exception(e)

        if response.status_code >= 400:
            result = error_from_response(response)
            if result.error.is_rate_limited:
                logger.error(f"[Plex] RATE LIMITED, retry after {result.error.retry_after or 'unknown'}s: {url}")
            return result
        return ApiResult.ok(response)

    async def _request(self, path: str, params: Dict = None, base_url: str = None) -> ApiResult:
        """GET a Plex endpoint and unwrap its MediaContainer."""
        result = await self._send(f"{base_url or self.server_url}{path}", params=params)
        if not result.success:
            return result
        try:
            body = result.data.json()
        except ValueError:
            return ApiResult.fail(-1, f"Invalid JSON from Plex for {path}")
        return ApiResult.ok(body.get("MediaContainer", {}) if isinstance(body, dict) else {})

    async def test_connection(self) -> bool:
        """Test if the server answers with this token."""
        result = await self._request("/identity")
        return result.success

    async def get_libraries(self) -> ApiResult:
        result = await self._request("/library/sections")
        if not result.success:
            return result
        return ApiResult.ok([
            {"key": str(d.get("key")), "title": d.get("title", ""), "type": d.get("type", "")}
            for d in result.data.get("Directory", [])
        ])

    async def get_library_items(self, section_key: str, limit: int = 1000, offset: int = 0) -> ApiResult:
        params = {"X-Plex-Container-Size": limit, "X-Plex-Container-Start": offset}
        result = await self._request(f"/library/sections/{section_key}/all", params=params)
        if not result.success:
            return result
        return ApiResult.ok(result.data.get("Metadata", []))

    async def get_metadata(self, rating_key: str) -> ApiResult:
        result = await self._request(f"/library/metadata/{rating_key}")
        if not result.success:
            return result
        items = result.data.get("Metadata", [])
        if not items:
            return ApiResult.fail(404, f"Metadata {rating_key} not found", status=404)
        return ApiResult.ok(items[0])

    async def get_on_deck(self, limit: int = 20) -> ApiResult:
        result = await self._request("/library/onDeck", params={"X-Plex-Container-Size": limit})
        if not result.success:
            return result
        return ApiResult.ok(result.data.get("Metadata", []))

    async def get_recently_added(self, section: Optional[str] = None, limit: int = 20) -> ApiResult:
        path = f"/library/sections/{section}/recentlyAdded" if section else "/library/recentlyAdded"
        result = await self._request(path, params={"X-Plex-Container-Size": limit})
        if not result.success:
            return result
        return ApiResult.ok(result.data.get("Metadata", []))

    async def get_watchlist(self, sort: str = "watchlistedAt:desc", limit: int = 50) -> ApiResult:
        """Get the user's watchlist from the Discover API."""
        params = {
            "includeCollections": 1,
            "includeExternalMedia": 1,
            "includeGuids": 1,
            "X-Plex-Container-Size": limit,
            "X-Plex-Container-Start": 0,
            "sort": sort,
            "X-Plex-Token": self.token,
        }
        result = await self._request("/library/sections/watchlist/all", params=params, base_url=self.discover_url)
        if not result.success:
            logger.error(f"[Plex] Failed to fetch watchlist: {result.error.message}")
            return result
        return ApiResult.ok(result.data.get("Metadata", []))

    async def get_image(self, path: str) -> ApiResult:
        """Fetch image bytes; data is a (bytes, content_type) tuple."""
        result = await self._send(
            f"{self.server_url}{path}",
            headers={**self.headers, "Accept": "image/*"},
        )
        if not result.success:
            logger.error(f"[Plex] Image fetch failed ({result.error.message}): {path}")
            return result
        response = result.data
        return ApiResult.ok((response.content, response.headers.get("content-type", "image/jpeg")))


def external_ids(item: Dict[str, Any]) -> Dict[str, Any]:
    """Pull imdb/tmdb ids out of a Plex item's guid and Guid list."""
    ids: Dict[str, Any] = {}
    candidates: List[str] = [item.get("guid") or ""]
    candidates += [g.get("id", "") for g in item.get("Guid", []) or [] if isinstance(g, dict)]
    for guid in candidates:
        if guid.startswith("imdb://") and "imdb_id" not in ids:
            ids["imdb_id"] = guid[len("imdb://"):]
        elif guid.startswith("tmdb://") and "tmdb_id" not in ids:
            value = guid[len("tmdb://"):]
            if value.isdigit():
                ids["tmdb_id"] = int(value)
    return ids


def get_plex_token(request: Request) -> str:
    """The caller's Plex token, falling back to the configured server token."""
    token = request.headers.get("X-Plex-Token") or settings.plex_token
    if not token:
        raise HTTPException(status_code=401, detail="Missing X-Plex-Token")
    return token


def get_plex_client(token: str = Depends(get_plex_token)) -> PlexClient:
    """Dependency to get a Plex client acting as the calling user."""
    return PlexClient(
        server_url=settings.plex_server_url,
        token=token,
        client_id=settings.plex_client_id,
        timeout=settings.request_timeout,
    )


def plex_image_url(path: Optional[str]) -> str:
    """Route local library art through the image proxy; leave remote URLs alone."""
    if not path:
        return ""
    if path.startswith("/library/"):
        return f"/api/plex/image?path={quote(path, safe='')}"
    return path
