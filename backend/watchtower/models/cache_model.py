"""Envelopes persisted by the disk caches."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys on disk."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CacheEntry(CamelModel):
    """Versioned envelope written by DiskJSONCache."""

    version: int
    fetched_at: int  # epoch milliseconds
    data: Any


class CacheResult(CamelModel):
    """A usable cache hit."""

    data: Any
    is_stale: bool
    cached_at: int  # epoch seconds


class CachedImage(CamelModel):
    data: bytes
    content_type: str
    cached_at: int  # epoch milliseconds

    @property
    def size(self) -> int:
        return len(self.data)


class LogoCacheEntry(CamelModel):
    # Bare filename, or None for a confirmed "no logo" result
    logo_filename: Optional[str] = None
    fetched_at: int
    tmdb_id: Optional[int] = None


class LogoCacheIndex(CamelModel):
    version: int = 2
    entries: Dict[str, LogoCacheEntry] = Field(default_factory=dict)


class LogoLookup(CamelModel):
    hit: bool
    filename: Optional[str] = None
