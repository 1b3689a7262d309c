"""Per-user cache of the merged watchlist.

Only the merged records are cached. Availability (isLocal, localRatingKey,
isWatched) changes whenever the library does, so it is stripped before
writing and recomputed on every read.
"""

import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from fastapi import Request
from pydantic import ValidationError

from watchtower.models.cache_model import CacheResult
from watchtower.models.settings_model import UserSettings
from watchtower.models.watchlist import UnifiedWatchlistResult
from watchtower.services.disk_cache import DiskJSONCache, RevalidatingCache, user_cache_key
from watchtower.services.results import ApiResult
from watchtower.services.settings_storage import get_settings_store

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "watchlist"

VOLATILE_FIELDS = {"is_local": False, "local_rating_key": None, "is_watched": None}


def to_payload(result: UnifiedWatchlistResult) -> Dict[str, Any]:
    items = [item.model_copy(update=VOLATILE_FIELDS) for item in result.items]
    return UnifiedWatchlistResult(items=items, counts=result.counts).to_json_dict()


def source_scope(trakt_username: Optional[str], imdb_ids: Sequence[str]) -> List[str]:
    """Describe which external sources feed a merged watchlist.

    Two requests with the same token but different enabled sources must not
    share a cache entry.
    """
    scope = []
    if trakt_username:
        scope.append(f"trakt:{trakt_username.lower()}")
    if imdb_ids:
        scope.append("imdb:" + ",".join(sorted(imdb_ids)))
    return scope


def settings_scope(user_settings: Optional[UserSettings], trakt_enabled: bool) -> List[str]:
    if user_settings is None:
        return []
    trakt_username = user_settings.trakt_username if trakt_enabled else None
    return source_scope(trakt_username, user_settings.imdb_watchlist_ids)


class WatchlistCache:
    """Stale-while-revalidate watchlist storage.

    Entries are keyed by a hash of the user's token plus the scope of
    enabled sources.
    """

    def __init__(
        self,
        data_path: str,
        fresh_ttl: float = 5 * 60,
        stale_ttl: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.disk = DiskJSONCache(Path(data_path), CACHE_NAMESPACE, fresh_ttl, stale_ttl, clock=clock)
        self.revalidating = RevalidatingCache(self.disk)

    @staticmethod
    def key_for(token: str, scope: Sequence[str] = ()) -> str:
        return user_cache_key(CACHE_NAMESPACE, token, *scope)

    async def get(
        self, token: str, scope: Sequence[str] = ()
    ) -> Optional[Tuple[UnifiedWatchlistResult, CacheResult]]:
        cached = await self.disk.get(self.key_for(token, scope))
        if cached is None:
            return None
        try:
            result = UnifiedWatchlistResult.model_validate(cached.data)
        except ValidationError as e:
            logger.warning(f"[WatchlistCache] Discarding unreadable cache entry: {e.error_count()} errors")
            return None
        logger.info(
            f"[WatchlistCache] Cache {'stale' if cached.is_stale else 'hit'} - {len(result.items)} items"
        )
        return result, cached

    async def set(self, token: str, result: UnifiedWatchlistResult, scope: Sequence[str] = ()) -> None:
        await self.disk.set(self.key_for(token, scope), to_payload(result))
        logger.info(f"[WatchlistCache] Cached {len(result.items)} items")

    async def invalidate(self, token: str, scope: Sequence[str] = ()) -> None:
        await self.disk.invalidate(self.key_for(token, scope))
        logger.info("[WatchlistCache] Cache invalidated")

    async def status(self, token: str, scope: Sequence[str] = ()) -> Dict[str, Any]:
        return await self.disk.status(self.key_for(token, scope))

    async def get_or_fetch(
        self,
        token: str,
        fetcher: Callable[[], Awaitable[ApiResult]],
        force_refresh: bool = False,
        scope: Sequence[str] = (),
    ) -> Tuple[UnifiedWatchlistResult, CacheResult]:
        """Serve the cached merge, refreshing in the background once stale.

        fetcher returns an ApiResult wrapping a UnifiedWatchlistResult. Raises
        OriginUnavailableError on a miss that cannot be fetched.
        """

        async def fetch_payload() -> ApiResult:
            result = await fetcher()
            if not result.success:
                return result
            return ApiResult.ok(to_payload(result.data))

        key = self.key_for(token, scope)
        payload, meta = await self.revalidating.get_or_fetch(key, fetch_payload, force_refresh)
        try:
            return UnifiedWatchlistResult.model_validate(payload), meta
        except ValidationError:
            logger.warning("[WatchlistCache] Cached payload no longer matches the model, refetching")
            payload, meta = await self.revalidating.get_or_fetch(key, fetch_payload, force_refresh=True)
            return UnifiedWatchlistResult.model_validate(payload), meta

    async def drain(self) -> None:
        await self.revalidating.drain()


def get_watchlist_cache(request: Request) -> WatchlistCache:
    """Dependency to get the app-scoped watchlist cache."""
    return request.app.state.watchlist_cache


async def get_watchlist_scope(request: Request, user_id: Optional[int] = None) -> List[str]:
    """Dependency resolving the caller's enabled sources into a cache scope."""
    if user_id is None:
        return []
    user_settings = await get_settings_store(request).get(user_id)
    return settings_scope(user_settings, request.app.state.trakt_client is not None)
