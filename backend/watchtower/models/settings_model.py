"""Per-user settings records stored under <data>/settings/."""

from typing import List, Literal, Optional

from watchtower.models.cache_model import CamelModel

SETTINGS_VERSION = 1

ValidationStatus = Literal["valid", "invalid"]


class UserSettings(CamelModel):
    version: int = SETTINGS_VERSION
    trakt_username: Optional[str] = None
    imdb_watchlist_ids: List[str] = []  # ur12345678 or ls12345678
    updated_at: int = 0  # epoch milliseconds


class TraktValidation(CamelModel):
    username: str
    status: ValidationStatus
    item_count: Optional[int] = None
    message: Optional[str] = None
    validated_at: int


class IMDBValidation(CamelModel):
    list_id: str
    status: ValidationStatus
    item_count: Optional[int] = None
    message: Optional[str] = None
    validated_at: int


class ValidationCache(CamelModel):
    trakt: Optional[TraktValidation] = None
    imdb: List[IMDBValidation] = []
