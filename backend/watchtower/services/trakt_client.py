"""Trakt API client for public watchlists."""

import logging
from typing import Dict, Optional

import httpx

from watchtower.services.results import ApiResult, error_from_exception, error_from_response

logger = logging.getLogger(__name__)

TRAKT_BASE_URL = "https://api.trakt.tv"


class TraktClient:
    """Read-only client for Trakt's public user endpoints."""

    def __init__(
        self,
        client_id: str,
        timeout: float = 10.0,
        base_url: str = TRAKT_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "trakt-api-version": "2",
            "trakt-api-key": self.client_id,
        }

    async def _request(self, path: str) -> ApiResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}{path}", headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"[Trakt] Request {path} failed: {e}")
            return error_from_exception(e)

        if response.status_code == 404:
            return ApiResult.fail(404, "User not found or watchlist is private", status=404)
        if response.status_code >= 400:
            return error_from_response(response)
        try:
            return ApiResult.ok(response.json())
        except ValueError:
            return ApiResult.fail(-1, f"Invalid JSON from Trakt for {path}")

    async def get_public_watchlist(self, username: str, media_type: Optional[str] = None) -> ApiResult:
        """Get a user's public watchlist, optionally only "movies" or "shows"."""
        path = f"/users/{username}/watchlist"
        if media_type:
            path = f"{path}/{media_type}"
        return await self._request(path)
