"""IMDB watchlist scraper.

IMDB has no public watchlist API, so the list page is fetched and parsed.
Modern pages embed their data as ``__NEXT_DATA__`` JSON; older markup is
handled by scanning title links, and as a last resort bare ``/title/tt...``
ids.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from bs4 import BeautifulSoup

from watchtower.exceptions import InvalidListIdError
from watchtower.services.results import ApiResult, error_from_exception, error_from_response

logger = logging.getLogger(__name__)

IMDB_BASE_URL = "https://www.imdb.com"
IMDB_TIMEOUT = 15.0

IMDB_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

_TITLE_HREF = re.compile(r"/title/(tt\d+)")
_TITLE_ID = re.compile(r"/title/(tt\d{7,})")
_LIST_ID = re.compile(r"^(ur|ls)\d+$")


def watchlist_url(list_id: str, base_url: str = IMDB_BASE_URL) -> str:
    """Page URL for a user watchlist (ur...) or a custom list (ls...)."""
    if not _LIST_ID.match(list_id):
        raise InvalidListIdError(f"Invalid IMDB list ID format: {list_id}")
    if list_id.startswith("ur"):
        return f"{base_url}/user/{list_id}/watchlist"
    return f"{base_url}/list/{list_id}"


def _parse_next_data(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    tag = soup.find("script", id="__NEXT_DATA__")
    if tag is None or not tag.string:
        return []
    try:
        data = json.loads(tag.string)
    except ValueError as e:
        logger.error(f"[IMDB] Failed to parse __NEXT_DATA__: {e}")
        return []

    edges = (
        ((((data.get("props") or {}).get("pageProps") or {}).get("mainColumnData") or {})
         .get("predefinedList") or {})
        .get("titleListItemSearch") or {}
    ).get("edges") or []

    items = []
    for edge in edges:
        node = (edge or {}).get("listItem") or {}
        imdb_id = node.get("id")
        if not imdb_id:
            continue
        title = (
            (node.get("titleText") or {}).get("text")
            or (node.get("originalTitleText") or {}).get("text")
            or imdb_id
        )
        title_type = ((node.get("titleType") or {}).get("id") or "").lower()
        items.append({
            "imdbId": imdb_id,
            "title": title,
            "type": "show" if "series" in title_type or "tv" in title_type else "movie",
            "year": (node.get("releaseYear") or {}).get("year"),
        })
    return items


def parse_watchlist_html(page: str) -> List[Dict[str, Any]]:
    """Extract watchlist entries, deduplicated by IMDB id, in page order."""
    items = []
    seen = set()

    def add(item):
        if item["imdbId"] not in seen:
            seen.add(item["imdbId"])
            items.append(item)

    soup = BeautifulSoup(page, "html.parser")
    for item in _parse_next_data(soup):
        add(item)
    if items:
        return items

    for link in soup.find_all("a", href=_TITLE_HREF):
        imdb_id = _TITLE_HREF.search(link["href"]).group(1)
        title = link.get_text(" ", strip=True)
        if len(title) < 2:
            continue
        # Type and year are refined later from TMDB
        add({"imdbId": imdb_id, "title": title, "type": "movie", "year": None})

    if not items:
        for imdb_id in _TITLE_ID.findall(page):
            add({"imdbId": imdb_id, "title": imdb_id, "type": "movie", "year": None})

    return items


class IMDBClient:
    """Fetches public IMDB watchlists and lists."""

    def __init__(
        self,
        timeout: float = IMDB_TIMEOUT,
        base_url: str = IMDB_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    async def get_public_watchlist(self, list_id: str) -> ApiResult:
        try:
            url = watchlist_url(list_id, self.base_url)
        except InvalidListIdError as e:
            return ApiResult.fail(400, str(e), status=400)

        logger.info(f"[IMDB] Fetching watchlist from: {url}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True, transport=self._transport
            ) as client:
                response = await client.get(url, headers=IMDB_HEADERS)
        except httpx.HTTPError as e:
            logger.error(f"[IMDB] Request for {list_id} failed: {e}")
            return error_from_exception(e)

        if response.status_code == 404:
            return ApiResult.fail(404, f"IMDB watchlist not found or not public: {list_id}", status=404)
        if response.status_code >= 400:
            return error_from_response(response)

        items = parse_watchlist_html(response.text)
        logger.info(f"[IMDB] Found {len(items)} items in watchlist {list_id}")
        return ApiResult.ok(items)

    async def get_watchlists(self, list_ids: List[str]) -> ApiResult:
        """Fetch several lists concurrently and merge them by IMDB id.

        Failed lists are logged and skipped. The result only fails when every
        list failed.
        """
        if not list_ids:
            return ApiResult.ok([])

        results = await asyncio.gather(*(self.get_public_watchlist(list_id) for list_id in list_ids))

        merged: Dict[str, Dict[str, Any]] = {}
        last_error: Optional[ApiResult] = None
        for list_id, result in zip(list_ids, results):
            if not result.success:
                logger.error(f"[IMDB] Failed to fetch watchlist {list_id}: {result.error.message}")
                last_error = result
                continue
            for item in result.data:
                merged.setdefault(item["imdbId"], item)

        if all(not r.success for r in results):
            return last_error

        logger.info(f"[IMDB] Total unique items: {len(merged)}")
        return ApiResult.ok(list(merged.values()))
