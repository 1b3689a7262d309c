from watchtower.models.cache_model import (
    CacheEntry,
    CacheResult,
    CachedImage,
    LogoCacheEntry,
    LogoCacheIndex,
    LogoLookup,
)
from watchtower.models.watchlist import (
    AddedAt,
    LocalLibraryItem,
    UnifiedWatchlistItem,
    UnifiedWatchlistResult,
    WatchlistCounts,
    WatchlistSource,
)
from watchtower.models.settings_model import (
    IMDBValidation,
    TraktValidation,
    UserSettings,
    ValidationCache,
)

__all__ = [
    "CacheEntry",
    "CacheResult",
    "CachedImage",
    "LogoCacheEntry",
    "LogoCacheIndex",
    "LogoLookup",
    "AddedAt",
    "LocalLibraryItem",
    "UnifiedWatchlistItem",
    "UnifiedWatchlistResult",
    "WatchlistCounts",
    "WatchlistSource",
    "IMDBValidation",
    "TraktValidation",
    "UserSettings",
    "ValidationCache",
]
