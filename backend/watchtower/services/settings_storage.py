"""Per-user settings and source validation results, one JSON file per user."""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import Request
from pydantic import ValidationError

from watchtower.models.settings_model import (
    SETTINGS_VERSION,
    IMDBValidation,
    TraktValidation,
    UserSettings,
    ValidationCache,
)
from watchtower.services.disk_cache import read_json_file, run_blocking, write_json_file

logger = logging.getLogger(__name__)

SETTINGS_DIR = "settings"


class UserSettingsStore:
    """Reads and writes <data>/settings/user-<id>.json and validation-<id>.json."""

    def __init__(self, data_path: str, clock: Callable[[], float] = time.time):
        self.directory = Path(data_path) / SETTINGS_DIR
        self._clock = clock

    def settings_path(self, user_id: int) -> Path:
        return self.directory / f"user-{user_id}.json"

    def validation_path(self, user_id: int) -> Path:
        return self.directory / f"validation-{user_id}.json"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def get(self, user_id: int) -> Optional[UserSettings]:
        """Stored settings, or None when missing, unreadable or from another version."""
        raw = await run_blocking(read_json_file, self.settings_path(user_id))
        if not isinstance(raw, dict):
            return None
        if raw.get("version") != SETTINGS_VERSION:
            logger.info(f"[UserSettings] Version mismatch for user {user_id}, ignoring stored settings")
            return None
        try:
            return UserSettings.model_validate(raw)
        except ValidationError:
            return None

    async def set(self, user_id: int, changes: Dict[str, Any]) -> UserSettings:
        """Merge changes into the stored settings and save.

        Unlike the caches, a failed write raises OSError.
        """
        existing = await self.get(user_id) or UserSettings()
        updated = existing.model_copy(update={
            **changes,
            "version": SETTINGS_VERSION,
            "updated_at": self._now_ms(),
        })
        try:
            await run_blocking(
                write_json_file,
                self.settings_path(user_id),
                updated.model_dump(mode="json", by_alias=True),
                2,
            )
        except OSError as e:
            logger.error(f"[UserSettings] Failed to save settings for user {user_id}: {e}")
            raise
        logger.info(f"[UserSettings] Saved settings for user {user_id}")
        return updated

    async def delete(self, user_id: int) -> None:
        try:
            await run_blocking(self.settings_path(user_id).unlink)
            logger.info(f"[UserSettings] Deleted settings for user {user_id}")
        except FileNotFoundError:
            pass

    async def get_validation(self, user_id: int) -> ValidationCache:
        raw = await run_blocking(read_json_file, self.validation_path(user_id))
        if not isinstance(raw, dict):
            return ValidationCache()
        try:
            return ValidationCache.model_validate(raw)
        except ValidationError:
            return ValidationCache()

    async def set_validation(self, user_id: int, cache: ValidationCache) -> None:
        try:
            await run_blocking(
                write_json_file,
                self.validation_path(user_id),
                cache.model_dump(mode="json", by_alias=True),
                2,
            )
        except OSError as e:
            logger.error(f"[ValidationCache] Failed to save for user {user_id}: {e}")

    async def set_trakt_validation(self, user_id: int, validation: Optional[TraktValidation]) -> None:
        cache = await self.get_validation(user_id)
        cache.trakt = validation
        await self.set_validation(user_id, cache)

    async def set_imdb_validations(self, user_id: int, validations: List[IMDBValidation]) -> None:
        """Replace every IMDB validation for the user."""
        cache = await self.get_validation(user_id)
        cache.imdb = validations
        await self.set_validation(user_id, cache)


def get_settings_store(request: Request) -> UserSettingsStore:
    return request.app.state.settings_store
