"""Multi-source watchlist records."""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import Field

from watchtower.models.cache_model import CamelModel

MediaType = Literal["movie", "show"]


class WatchlistSource(str, Enum):
    PLEX = "plex"
    TRAKT = "trakt"
    IMDB = "imdb"


# Canonical ordering for `sources` so merged output is deterministic
SOURCE_ORDER = [WatchlistSource.PLEX, WatchlistSource.TRAKT, WatchlistSource.IMDB]


class AddedAt(CamelModel):
    """Unix seconds at which each source added the item."""

    plex: Optional[int] = None
    trakt: Optional[int] = None
    imdb: Optional[int] = None

    def earliest(self) -> int:
        stamps = [t for t in (self.plex, self.trakt, self.imdb) if t is not None]
        return min(stamps) if stamps else 0


class UnifiedWatchlistItem(CamelModel):
    id: str
    title: str
    type: MediaType
    year: Optional[int] = None
    thumb: str = ""
    sources: List[WatchlistSource]
    added_at: AddedAt = Field(default_factory=AddedAt)
    local_rating_key: Optional[str] = None
    is_local: bool = False
    imdb_id: Optional[str] = None
    tmdb_id: Optional[int] = None
    plex_guid: Optional[str] = None
    rating: Optional[float] = None
    is_watched: Optional[bool] = None


class WatchlistCounts(CamelModel):
    all: int = 0
    plex: int = 0
    trakt: int = 0
    imdb: int = 0


class UnifiedWatchlistResult(CamelModel):
    items: List[UnifiedWatchlistItem]
    counts: WatchlistCounts


class LocalLibraryItem(CamelModel):
    """One title from the local Plex library, as seen by the unifier."""

    rating_key: str
    type: MediaType
    is_watched: bool = False
    thumb: Optional[str] = None
    rating: Optional[float] = None
    imdb_id: Optional[str] = None
    tmdb_id: Optional[int] = None
