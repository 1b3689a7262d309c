from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from watchtower.exceptions import OriginUnavailableError
from watchtower.services.disk_cache import RevalidatingCache, user_cache_key
from watchtower.services.image_cache import ImageCache, get_image_cache
from watchtower.services.plex_client import PlexClient, get_plex_client, get_plex_token

router = APIRouter()

IMAGE_CACHE_CONTROL = "public, max-age=31536000, immutable"


def get_plex_cache(request: Request) -> RevalidatingCache:
    return request.app.state.plex_cache


@router.get("/status")
async def get_plex_status(client: PlexClient = Depends(get_plex_client)):
    """Check the connection to the Plex server."""
    connected = await client.test_connection()
    return {"connected": connected, "url": client.server_url}


@router.get("/image")
async def get_image(
    path: str = Query(..., description="Plex image path, e.g. /library/metadata/1/thumb/1"),
    client: PlexClient = Depends(get_plex_client),
    image_cache: ImageCache = Depends(get_image_cache),
):
    """Proxy a Plex image through the memory and disk image cache."""
    if not path.startswith("/"):
        raise HTTPException(status_code=400, detail="Image path must be a server path")

    result = await image_cache.get_or_fetch(path, client.get_image)
    if not result.success:
        raise HTTPException(status_code=result.error.status or 502, detail=result.error.message)

    image = result.data
    return Response(
        content=image.data,
        media_type=image.content_type,
        headers={"Cache-Control": IMAGE_CACHE_CONTROL},
    )


@router.get("/libraries")
async def get_libraries(
    refresh: bool = False,
    token: str = Depends(get_plex_token),
    client: PlexClient = Depends(get_plex_client),
    plex_cache: RevalidatingCache = Depends(get_plex_cache),
):
    """Library sections, served from the Plex cache and revalidated when stale."""
    try:
        libraries, meta = await plex_cache.get_or_fetch(
            user_cache_key("libraries", token), client.get_libraries, force_refresh=refresh
        )
    except OriginUnavailableError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    return {"libraries": libraries, "isStale": meta.is_stale, "cachedAt": meta.cached_at}
