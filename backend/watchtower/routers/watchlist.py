import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from watchtower.exceptions import OriginUnavailableError
from watchtower.services.library_index import build_library_index
from watchtower.services.plex_client import PlexClient, get_plex_client, get_plex_token
from watchtower.services.settings_storage import UserSettingsStore, get_settings_store
from watchtower.services.tmdb_client import get_tmdb_client
from watchtower.services.watchlist import (
    IMDBWatchlistSource,
    PlexWatchlistSource,
    TraktWatchlistSource,
    WatchlistUnifier,
)
from watchtower.services.watchlist_cache import (
    WatchlistCache,
    get_watchlist_cache,
    get_watchlist_scope,
    settings_scope,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_unifier(request: Request) -> WatchlistUnifier:
    return request.app.state.unifier


@router.get("")
async def get_watchlist(
    request: Request,
    refresh: bool = False,
    user_id: Optional[int] = None,
    token: str = Depends(get_plex_token),
    plex: PlexClient = Depends(get_plex_client),
    unifier: WatchlistUnifier = Depends(get_unifier),
    watchlist_cache: WatchlistCache = Depends(get_watchlist_cache),
    settings_store: UserSettingsStore = Depends(get_settings_store),
):
    """Unified watchlist.

    The merged list comes from the per-user cache when usable; local
    availability is always computed against the current library.
    """
    user_settings = await settings_store.get(user_id) if user_id is not None else None
    trakt_username = user_settings.trakt_username if user_settings else None
    imdb_ids = user_settings.imdb_watchlist_ids if user_settings else []

    state = request.app.state
    tmdb = get_tmdb_client(request)
    trakt_source = None
    if state.trakt_client is not None and trakt_username:
        trakt_source = TraktWatchlistSource(state.trakt_client, trakt_username, tmdb)
    imdb_source = IMDBWatchlistSource(state.imdb_client, imdb_ids, tmdb) if imdb_ids else None
    scope = settings_scope(user_settings, state.trakt_client is not None)

    logger.info(
        f"[Watchlist] user={user_id} trakt={trakt_username} imdb={','.join(imdb_ids) or 'none'} refresh={refresh}"
    )

    library = await build_library_index(plex)

    async def fetch_merged():
        plex_source = PlexWatchlistSource(plex, tmdb=tmdb, library=library)
        return await unifier.collect(plex_source, trakt_source, imdb_source, library)

    try:
        merged, meta = await watchlist_cache.get_or_fetch(
            token, fetch_merged, force_refresh=refresh, scope=scope
        )
    except OriginUnavailableError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    result = unifier.annotate(merged, library, fallback_added_at=meta.cached_at)
    return {
        **result.to_json_dict(),
        "isStale": meta.is_stale,
        "cachedAt": meta.cached_at,
        "traktEnabled": trakt_source is not None,
        "imdbEnabled": imdb_source is not None,
    }


@router.delete("/cache")
async def invalidate_watchlist(
    token: str = Depends(get_plex_token),
    scope: List[str] = Depends(get_watchlist_scope),
    watchlist_cache: WatchlistCache = Depends(get_watchlist_cache),
):
    """Drop the caller's cached watchlist so the next read refetches.

    Pass the same ``user_id`` as the watchlist read to reach its entry.
    """
    await watchlist_cache.invalidate(token, scope)
    return {"success": True}
