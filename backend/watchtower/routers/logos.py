from typing import Literal, Optional

from fastapi import APIRouter, Depends

from watchtower.services.tmdb_client import TMDBClient, get_tmdb_client

router = APIRouter()


@router.get("")
async def get_logo(
    title: str,
    type: Literal["movie", "show", "tv"] = "movie",
    year: Optional[int] = None,
    tmdb: Optional[TMDBClient] = Depends(get_tmdb_client),
):
    """Resolve a title logo. url is null when TMDB is unconfigured or has none."""
    if tmdb is None:
        return {"url": None}

    media_type = "movie" if type == "movie" else "tv"
    url = await tmdb.get_cached_logo_url(media_type, title, year)
    return {"url": url}
