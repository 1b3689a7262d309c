"""Cache maintenance and cached asset endpoints."""

import re
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse

from watchtower.services.image_cache import ImageCache, get_image_cache
from watchtower.services.logo_cache import LogoCache
from watchtower.services.plex_client import get_plex_token
from watchtower.services.watchlist_cache import WatchlistCache, get_watchlist_cache, get_watchlist_scope

router = APIRouter()

LOGO_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
}

_SAFE_FILENAME = re.compile(r"^[a-z0-9-]+\.(png|jpg|webp|svg)$")


def get_logo_cache(request: Request) -> LogoCache:
    return request.app.state.logo_cache


@router.get("/tmdb/logos/{filename}")
async def get_cached_logo(filename: str, logo_cache: LogoCache = Depends(get_logo_cache)):
    """Serve a logo file previously downloaded into the logo cache."""
    if not _SAFE_FILENAME.match(filename):
        raise HTTPException(status_code=400, detail="Invalid logo filename")

    path = logo_cache.logo_path(filename)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Logo not cached")

    return FileResponse(
        path,
        media_type=LOGO_MEDIA_TYPES[path.suffix],
        headers={"Cache-Control": "public, max-age=604800"},
    )


@router.get("/stats")
async def get_cache_stats(
    image_cache: ImageCache = Depends(get_image_cache),
    logo_cache: LogoCache = Depends(get_logo_cache),
):
    return {
        "images": image_cache.stats(),
        "logos": await logo_cache.stats(),
    }


@router.delete("/images")
async def clear_image_cache(image_cache: ImageCache = Depends(get_image_cache)):
    await image_cache.clear()
    return {"success": True}


@router.delete("/logos/negative")
async def clear_negative_logos(logo_cache: LogoCache = Depends(get_logo_cache)):
    """Forget "no logo" results so those titles are looked up again."""
    removed = await logo_cache.clear_negative()
    return {"success": True, "removed": removed}


@router.post("/logos/clean")
async def clean_expired_logos(logo_cache: LogoCache = Depends(get_logo_cache)):
    removed = await logo_cache.clean_expired()
    return {"success": True, "removed": removed}


@router.get("/watchlist/status")
async def get_watchlist_cache_status(
    token: str = Depends(get_plex_token),
    scope: List[str] = Depends(get_watchlist_scope),
    watchlist_cache: WatchlistCache = Depends(get_watchlist_cache),
):
    return await watchlist_cache.status(token, scope)
