"""Unified watchlist across Plex, Trakt and IMDB.

Each source adapter turns one service's watchlist into
``UnifiedWatchlistItem`` records. The unifier fetches every configured source
concurrently, merges records that describe the same title and then annotates
local availability. Merging is a pure function of the fetched lists, so the
merged set can be cached; availability cannot and is always recomputed from
the live library index.

Identity: records that share an IMDB id, a TMDB id (per media type) or a Plex
GUID are the same title. Normalized title + year is only used when one side
has no external id at all.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from watchtower.models.watchlist import (
    SOURCE_ORDER,
    AddedAt,
    UnifiedWatchlistItem,
    UnifiedWatchlistResult,
    WatchlistCounts,
    WatchlistSource,
)
from watchtower.services.imdb_client import IMDBClient
from watchtower.services.library_index import LibraryIndex, normalize_match_title
from watchtower.services.plex_client import PlexClient, external_ids, plex_image_url
from watchtower.services.results import NETWORK_ERROR, ApiError, ApiResult
from watchtower.services.tmdb_client import TMDB_IMAGE_BASE_URL, TMDBClient
from watchtower.services.trakt_client import TraktClient

logger = logging.getLogger(__name__)

RATING_POLICIES = ("external_first", "local_first")

# Merge order: Plex carries local info, IMDB refines types from TMDB
MERGE_ORDER = [WatchlistSource.PLEX, WatchlistSource.IMDB, WatchlistSource.TRAKT]

ImageUrlBuilder = Callable[[Optional[str]], str]


def item_id(item: UnifiedWatchlistItem) -> str:
    """Stable record id, taken from the strongest identity available."""
    if item.imdb_id:
        return item.imdb_id
    if item.tmdb_id:
        return f"tmdb-{item.type}-{item.tmdb_id}"
    if item.plex_guid:
        return item.plex_guid
    return item.id


def id_keys(item: UnifiedWatchlistItem) -> List[str]:
    keys = []
    if item.imdb_id:
        keys.append(f"imdb:{item.imdb_id}")
    if item.tmdb_id:
        # TMDB numbers movies and shows separately
        keys.append(f"tmdb:{item.type}:{item.tmdb_id}")
    if item.plex_guid:
        keys.append(f"plex:{item.plex_guid}")
    return keys


def title_key(item: UnifiedWatchlistItem) -> str:
    return f"title:{normalize_match_title(item.title)}:{item.year or 'unknown'}"


def _earliest(*stamps: Optional[int]) -> Optional[int]:
    present = [s for s in stamps if s is not None]
    return min(present) if present else None


def merge_items(existing: UnifiedWatchlistItem, incoming: UnifiedWatchlistItem) -> UnifiedWatchlistItem:
    """Combine two records of the same title; the existing record wins scalar fields."""
    sources = [s for s in SOURCE_ORDER if s in existing.sources or s in incoming.sources]
    merged = existing.model_copy(update={
        "sources": sources,
        "added_at": AddedAt(
            plex=_earliest(existing.added_at.plex, incoming.added_at.plex),
            trakt=_earliest(existing.added_at.trakt, incoming.added_at.trakt),
            imdb=_earliest(existing.added_at.imdb, incoming.added_at.imdb),
        ),
        "thumb": existing.thumb or incoming.thumb,
        "year": existing.year or incoming.year,
        "imdb_id": existing.imdb_id or incoming.imdb_id,
        "tmdb_id": existing.tmdb_id or incoming.tmdb_id,
        "plex_guid": existing.plex_guid or incoming.plex_guid,
        "rating": existing.rating or incoming.rating,
    })
    merged.id = item_id(merged)
    return merged


def merge_watchlists(items: List[UnifiedWatchlistItem]) -> List[UnifiedWatchlistItem]:
    """Deduplicate records in the given order. The first record of a title wins its scalars."""
    records: List[Optional[UnifiedWatchlistItem]] = []
    index: Dict[str, int] = {}

    for item in items:
        keys = id_keys(item)
        matches = sorted({index[k] for k in keys if k in index})

        if not matches:
            by_title = index.get(title_key(item))
            # Title matching only links records when one side lacks external ids
            if by_title is not None and (not keys or not id_keys(records[by_title])):
                matches = [by_title]

        if not matches:
            target = len(records)
            records.append(item.model_copy(update={"id": item_id(item)}))
        else:
            target = matches[0]
            # The incoming item bridged several records, fold them together
            for other in matches[1:]:
                records[target] = merge_items(records[target], records[other])
                records[other] = None
                for key, position in index.items():
                    if position == other:
                        index[key] = target
            records[target] = merge_items(records[target], item)

        for key in id_keys(records[target]):
            index[key] = target
        index.setdefault(title_key(records[target]), target)

    return [r for r in records if r is not None]


def sort_items(items: List[UnifiedWatchlistItem], fallback: int = 0) -> List[UnifiedWatchlistItem]:
    """Newest first by the earliest time any source added the item, ties by id."""
    return sorted(items, key=lambda i: (-(i.added_at.earliest() or fallback), i.id))


def count_sources(items: List[UnifiedWatchlistItem]) -> WatchlistCounts:
    return WatchlistCounts(
        all=len(items),
        plex=sum(1 for i in items if WatchlistSource.PLEX in i.sources),
        trakt=sum(1 for i in items if WatchlistSource.TRAKT in i.sources),
        imdb=sum(1 for i in items if WatchlistSource.IMDB in i.sources),
    )


def enrich_ids_from_library(items: List[UnifiedWatchlistItem], library: LibraryIndex) -> None:
    """Plex watchlist entries often lack external ids; borrow them from the library copy."""
    for item in items:
        if not item.plex_guid or (item.imdb_id and item.tmdb_id):
            continue
        local = library.by_guid.get(item.plex_guid)
        if local is None:
            continue
        item.imdb_id = item.imdb_id or local.imdb_id
        item.tmdb_id = item.tmdb_id or local.tmdb_id


def annotate_availability(
    items: List[UnifiedWatchlistItem],
    library: LibraryIndex,
    image_url_builder: ImageUrlBuilder = plex_image_url,
    rating_policy: str = "external_first",
) -> List[UnifiedWatchlistItem]:
    """Return copies of items with isLocal, localRatingKey and isWatched set from the library."""
    annotated = []
    for item in items:
        local = library.find(item.plex_guid, item.title, item.year)
        if local is None:
            annotated.append(item.model_copy(update={
                "is_local": False,
                "local_rating_key": None,
                "is_watched": None,
            }))
            continue

        if rating_policy == "local_first":
            rating = local.rating or item.rating
        else:
            rating = item.rating or local.rating

        annotated.append(item.model_copy(update={
            "is_local": True,
            "local_rating_key": local.rating_key,
            "is_watched": local.is_watched,
            "thumb": image_url_builder(local.thumb) if local.thumb else item.thumb,
            "rating": rating,
        }))
    return annotated


async def enrich_from_tmdb(items: List[UnifiedWatchlistItem], tmdb: TMDBClient, refine: bool = False) -> None:
    """Fill posters, TMDB ids and ratings by IMDB id. refine also trusts TMDB's type and year."""
    for item in items:
        if not item.imdb_id:
            continue
        found = await tmdb.find_by_imdb(item.imdb_id)
        if not found.success or not found.data:
            continue
        data = found.data
        if data.get("posterPath") and not item.thumb:
            item.thumb = f"{TMDB_IMAGE_BASE_URL}/w342{data['posterPath']}"
        if refine:
            item.type = data["type"]
            item.tmdb_id = data.get("id") or item.tmdb_id
            item.year = data.get("year") or item.year
        elif data["type"] == item.type:
            item.tmdb_id = item.tmdb_id or data.get("id")
        if data.get("rating"):
            item.rating = data["rating"]


async def enrich_plex_from_tmdb(items: List[UnifiedWatchlistItem], tmdb: TMDBClient) -> None:
    """Give Plex watchlist entries a TMDB id and rating so they merge with other sources.

    Entries with an IMDB id are looked up directly. Entries still without a
    TMDB id fall back to a title search, taking the first result. Lookups that
    fail are skipped.
    """
    for item in items:
        if item.imdb_id:
            found = await tmdb.find_by_imdb(item.imdb_id)
            if found.success and found.data and found.data["type"] == item.type:
                item.tmdb_id = item.tmdb_id or found.data.get("id")
                item.rating = item.rating or found.data.get("rating")

        if not item.tmdb_id and item.title:
            search = tmdb.search_movie if item.type == "movie" else tmdb.search_tv
            result = await search(item.title, item.year)
            if not result.success:
                logger.warning(f"[Watchlist] TMDB search for '{item.title}' failed: {result.error.message}")
                continue
            if not result.data:
                continue
            match = result.data[0]
            item.tmdb_id = match.get("id")
            if not item.rating and (match.get("vote_average") or 0) > 0:
                item.rating = match["vote_average"]

        item.id = item_id(item)


def _parse_iso(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
    except ValueError:
        return None


class PlexWatchlistSource:
    name = WatchlistSource.PLEX

    def __init__(
        self,
        plex: PlexClient,
        image_url_builder: ImageUrlBuilder = plex_image_url,
        tmdb: Optional[TMDBClient] = None,
        library: Optional[LibraryIndex] = None,
    ):
        self.plex = plex
        self.image_url_builder = image_url_builder
        self.tmdb = tmdb
        self.library = library

    @staticmethod
    def to_item(raw: Dict[str, Any], image_url_builder: ImageUrlBuilder = plex_image_url) -> Optional[UnifiedWatchlistItem]:
        if raw.get("type") not in ("movie", "show"):
            return None
        ids = external_ids(raw)
        item = UnifiedWatchlistItem(
            id=raw.get("guid") or str(raw.get("ratingKey")),
            title=raw.get("title", ""),
            type=raw["type"],
            year=raw.get("year"),
            thumb=image_url_builder(raw.get("thumb")),
            sources=[WatchlistSource.PLEX],
            added_at=AddedAt(plex=raw.get("watchlistedAt") or raw.get("addedAt")),
            imdb_id=ids.get("imdb_id"),
            tmdb_id=ids.get("tmdb_id"),
            plex_guid=raw.get("guid"),
        )
        item.id = item_id(item)
        return item

    async def fetch(self) -> ApiResult:
        result = await self.plex.get_watchlist()
        if not result.success:
            return result
        items = [i for i in (self.to_item(raw, self.image_url_builder) for raw in result.data) if i is not None]
        if self.library is not None:
            enrich_ids_from_library(items, self.library)
        if self.tmdb is not None:
            await enrich_plex_from_tmdb(items, self.tmdb)
        return ApiResult.ok(items)


class TraktWatchlistSource:
    name = WatchlistSource.TRAKT

    def __init__(self, trakt: TraktClient, username: str, tmdb: Optional[TMDBClient] = None):
        self.trakt = trakt
        self.username = username
        self.tmdb = tmdb

    @staticmethod
    def to_item(raw: Dict[str, Any]) -> Optional[UnifiedWatchlistItem]:
        media_type = raw.get("type")
        media = raw.get(media_type) if media_type in ("movie", "show") else None
        if not media:
            logger.warning(f"[Watchlist] Skipping Trakt entry of type {media_type}")
            return None
        ids = media.get("ids") or {}
        item = UnifiedWatchlistItem(
            id=ids.get("imdb") or f"trakt-{ids.get('trakt')}",
            title=media.get("title") or "",
            type=media_type,
            year=media.get("year"),
            sources=[WatchlistSource.TRAKT],
            added_at=AddedAt(trakt=_parse_iso(raw.get("listed_at"))),
            imdb_id=ids.get("imdb"),
            tmdb_id=ids.get("tmdb"),
        )
        item.id = item_id(item)
        return item

    async def fetch(self) -> ApiResult:
        result = await self.trakt.get_public_watchlist(self.username)
        if not result.success:
            return result
        items = [i for i in (self.to_item(raw) for raw in result.data or []) if i is not None]
        if self.tmdb is not None:
            await enrich_from_tmdb(items, self.tmdb)
        return ApiResult.ok(items)


class IMDBWatchlistSource:
    name = WatchlistSource.IMDB

    def __init__(self, imdb: IMDBClient, list_ids: List[str], tmdb: Optional[TMDBClient] = None):
        self.imdb = imdb
        self.list_ids = list_ids
        self.tmdb = tmdb

    @staticmethod
    def to_item(raw: Dict[str, Any]) -> UnifiedWatchlistItem:
        return UnifiedWatchlistItem(
            id=raw["imdbId"],
            title=raw.get("title") or raw["imdbId"],
            type=raw.get("type", "movie"),
            year=raw.get("year"),
            sources=[WatchlistSource.IMDB],
            added_at=AddedAt(imdb=raw.get("addedAt")),
            imdb_id=raw["imdbId"],
        )

    async def fetch(self) -> ApiResult:
        result = await self.imdb.get_watchlists(self.list_ids)
        if not result.success:
            return result
        items = [self.to_item(raw) for raw in result.data]
        if self.tmdb is not None:
            # Scraped types and years are guesses, TMDB is authoritative
            await enrich_from_tmdb(items, self.tmdb, refine=True)
        return ApiResult.ok(items)


class WatchlistUnifier:
    """Merges the configured watchlist sources into one deduplicated list."""

    def __init__(self, rating_policy: str = "external_first", image_url_builder: ImageUrlBuilder = plex_image_url):
        if rating_policy not in RATING_POLICIES:
            raise ValueError(f"Unknown rating policy: {rating_policy}")
        self.rating_policy = rating_policy
        self.image_url_builder = image_url_builder

    async def _fetch_all(self, sources: Dict[WatchlistSource, Any]) -> Tuple[Dict[WatchlistSource, List[UnifiedWatchlistItem]], Dict[WatchlistSource, ApiError]]:
        names = list(sources)
        results = await asyncio.gather(*(sources[n].fetch() for n in names), return_exceptions=True)

        fetched: Dict[WatchlistSource, List[UnifiedWatchlistItem]] = {}
        errors: Dict[WatchlistSource, ApiError] = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.error(f"[Watchlist] {name.value} source crashed: {result}")
                errors[name] = ApiError(NETWORK_ERROR, str(result) or result.__class__.__name__)
            elif not result.success:
                logger.error(f"[Watchlist] Failed to fetch {name.value} watchlist: {result.error.message}")
                errors[name] = result.error
            else:
                fetched[name] = result.data
                logger.info(f"[Watchlist] {name.value}: {len(result.data)} items")
        return fetched, errors

    async def collect(self, plex, trakt=None, imdb=None, library: Optional[LibraryIndex] = None) -> ApiResult:
        """Fetch and merge without availability, the cacheable half of unify.

        Fails only when every configured source failed.
        """
        if library is None:
            library = LibraryIndex()
        sources = {WatchlistSource.PLEX: plex}
        if trakt is not None:
            sources[WatchlistSource.TRAKT] = trakt
        if imdb is not None:
            sources[WatchlistSource.IMDB] = imdb

        fetched, errors = await self._fetch_all(sources)
        if not fetched:
            error = errors.get(WatchlistSource.PLEX) or next(iter(errors.values()))
            return ApiResult(success=False, error=error)

        enrich_ids_from_library(fetched.get(WatchlistSource.PLEX, []), library)

        ordered = []
        for name in MERGE_ORDER:
            ordered.extend(fetched.get(name, []))
        items = sort_items(merge_watchlists(ordered))
        return ApiResult.ok(UnifiedWatchlistResult(items=items, counts=count_sources(items)))

    def annotate(self, result: UnifiedWatchlistResult, library: LibraryIndex, fallback_added_at: int = 0) -> UnifiedWatchlistResult:
        items = annotate_availability(result.items, library, self.image_url_builder, self.rating_policy)
        return UnifiedWatchlistResult(items=sort_items(items, fallback_added_at), counts=result.counts)

    async def unify(self, plex, trakt=None, imdb=None, library: Optional[LibraryIndex] = None) -> UnifiedWatchlistResult:
        """Merged, availability-annotated watchlist. Failed sources contribute nothing."""
        if library is None:
            library = LibraryIndex()
        collected = await self.collect(plex, trakt, imdb, library)
        if not collected.success:
            empty = UnifiedWatchlistResult(items=[], counts=WatchlistCounts())
            return self.annotate(empty, library)
        return self.annotate(collected.data, library)
