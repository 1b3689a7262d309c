import time
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from watchtower.exceptions import InvalidListIdError
from watchtower.models.settings_model import IMDBValidation, TraktValidation, UserSettings
from watchtower.services.imdb_client import watchlist_url
from watchtower.services.settings_storage import UserSettingsStore, get_settings_store
from watchtower.services.watchlist_cache import WatchlistCache, get_watchlist_cache, settings_scope

router = APIRouter()


# Pydantic models for requests
class UserSettingsUpdate(BaseModel):
    trakt_username: Optional[str] = None
    imdb_watchlist_ids: Optional[List[str]] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


@router.get("/{user_id}")
async def get_user_settings(
    user_id: int,
    store: UserSettingsStore = Depends(get_settings_store),
):
    """Get a user's watchlist source settings plus their last validation results."""
    user_settings = await store.get(user_id) or UserSettings()
    validation = await store.get_validation(user_id)
    return {
        "settings": user_settings.model_dump(mode="json", by_alias=True),
        "validation": validation.model_dump(mode="json", by_alias=True),
    }


@router.put("/{user_id}")
async def save_user_settings(
    user_id: int,
    data: UserSettingsUpdate,
    request: Request,
    store: UserSettingsStore = Depends(get_settings_store),
    watchlist_cache: WatchlistCache = Depends(get_watchlist_cache),
):
    """Save a user's settings. Only fields present in the body change."""
    changes = data.model_dump(exclude_unset=True)
    if changes.get("imdb_watchlist_ids") is not None:
        ids = [i.strip() for i in changes["imdb_watchlist_ids"] if i.strip()]
        for list_id in ids:
            try:
                watchlist_url(list_id)
            except InvalidListIdError as e:
                raise HTTPException(status_code=400, detail=str(e))
        changes["imdb_watchlist_ids"] = list(dict.fromkeys(ids))
    elif "imdb_watchlist_ids" in changes:
        changes["imdb_watchlist_ids"] = []
    if "trakt_username" in changes:
        changes["trakt_username"] = (changes["trakt_username"] or "").strip() or None

    trakt_enabled = request.app.state.trakt_client is not None
    previous_scope = settings_scope(await store.get(user_id), trakt_enabled)
    try:
        updated = await store.set(user_id, changes)
    except OSError:
        raise HTTPException(status_code=500, detail="Failed to save settings")

    # The new sources map to a new cache key; drop the entry built from the old ones
    token = request.headers.get("X-Plex-Token")
    if token:
        await watchlist_cache.invalidate(token, previous_scope)

    return {"success": True, "settings": updated.model_dump(mode="json", by_alias=True)}


@router.post("/{user_id}/validate")
async def validate_user_sources(
    user_id: int,
    request: Request,
    store: UserSettingsStore = Depends(get_settings_store),
):
    """Check that the configured Trakt and IMDB lists are reachable and remember the outcome."""
    user_settings = await store.get(user_id)
    if user_settings is None:
        raise HTTPException(status_code=404, detail="No settings saved for this user")

    state = request.app.state
    now = _now_ms()

    trakt = None
    if user_settings.trakt_username and state.trakt_client is not None:
        result = await state.trakt_client.get_public_watchlist(user_settings.trakt_username)
        trakt = TraktValidation(
            username=user_settings.trakt_username,
            status="valid" if result.success else "invalid",
            item_count=len(result.data) if result.success else None,
            message=None if result.success else result.error.message,
            validated_at=now,
        )
    await store.set_trakt_validation(user_id, trakt)

    imdb = []
    for list_id in user_settings.imdb_watchlist_ids:
        result = await state.imdb_client.get_public_watchlist(list_id)
        imdb.append(IMDBValidation(
            list_id=list_id,
            status="valid" if result.success else "invalid",
            item_count=len(result.data) if result.success else None,
            message=None if result.success else result.error.message,
            validated_at=now,
        ))
    await store.set_imdb_validations(user_id, imdb)

    validation = await store.get_validation(user_id)
    return validation.model_dump(mode="json", by_alias=True)
