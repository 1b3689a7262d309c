"""Index of the local Plex library used to annotate watchlist availability."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from watchtower.models.watchlist import LocalLibraryItem
from watchtower.services.plex_client import PlexClient, external_ids

logger = logging.getLogger(__name__)

_STRIP = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")

LIBRARY_PAGE_SIZE = 1000


def normalize_match_title(title: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    return _SPACES.sub(" ", _STRIP.sub("", title.lower())).strip()


def title_year_key(title: Optional[str], year: Optional[int]) -> Optional[str]:
    if not title or not year:
        return None
    return f"{normalize_match_title(title)}:{year}"


def is_watched(item: Dict[str, Any], media_type: str) -> bool:
    """A movie counts once viewed; a show only once every episode is viewed."""
    if media_type == "movie":
        return (item.get("viewCount") or 0) > 0
    leaf_count = item.get("leafCount") or 0
    return leaf_count > 0 and (item.get("viewedLeafCount") or 0) >= leaf_count


@dataclass
class LibraryIndex:
    by_guid: Dict[str, LocalLibraryItem] = field(default_factory=dict)
    by_title_year: Dict[str, LocalLibraryItem] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.by_guid)

    def add(self, item: Dict[str, Any], media_type: str) -> LocalLibraryItem:
        ids = external_ids(item)
        local = LocalLibraryItem(
            rating_key=str(item.get("ratingKey")),
            type=media_type,
            is_watched=is_watched(item, media_type),
            thumb=item.get("thumb"),
            rating=item.get("audienceRating") or item.get("rating"),
            imdb_id=ids.get("imdb_id"),
            tmdb_id=ids.get("tmdb_id"),
        )
        if item.get("guid"):
            self.by_guid[item["guid"]] = local
        key = title_year_key(item.get("title"), item.get("year"))
        if key:
            self.by_title_year[key] = local
        return local

    def find(self, guid: Optional[str], title: Optional[str], year: Optional[int]) -> Optional[LocalLibraryItem]:
        """Match by GUID first, then by normalized title + year."""
        if guid and guid in self.by_guid:
            return self.by_guid[guid]
        key = title_year_key(title, year)
        if key:
            return self.by_title_year.get(key)
        return None


async def build_library_index(plex: PlexClient) -> LibraryIndex:
    """Scan every movie and show section. Unreachable sections are skipped."""
    index = LibraryIndex()

    libraries = await plex.get_libraries()
    if not libraries.success:
        logger.error(f"[Library] Failed to list libraries: {libraries.error.message}")
        return index

    for library in libraries.data:
        if library["type"] not in ("movie", "show"):
            continue
        items = await plex.get_library_items(library["key"], limit=LIBRARY_PAGE_SIZE)
        if not items.success:
            logger.warning(f"[Library] Skipping section {library['title']}: {items.error.message}")
            continue
        for item in items.data:
            index.add(item, library["type"])

    logger.info(f"[Library] Indexed {len(index)} local items")
    return index
