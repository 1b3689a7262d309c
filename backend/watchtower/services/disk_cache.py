"""File-backed JSON caches with a stale-while-revalidate read policy.

Each cache instance owns one directory under the data path and stores one
versioned envelope per key:

    {"version": 1, "fetchedAt": <epoch ms>, "data": <payload>}

Reads classify an entry by age:

* younger than ``fresh_ttl``  -> fresh hit, no refresh needed
* younger than ``stale_ttl``  -> stale hit, served but should be refreshed
* older, wrong version, unreadable -> miss

Writes are best effort. A failed write is logged and never reaches the
caller, because a missing entry is a state every reader already handles.
"""

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from watchtower.exceptions import OriginUnavailableError
from watchtower.models.cache_model import CacheEntry, CacheResult
from watchtower.services.results import ApiResult

logger = logging.getLogger(__name__)

CACHE_VERSION = 1

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def user_cache_key(prefix: str, token: str, *scope: str) -> str:
    """Per-user cache key; the credential itself never reaches the filesystem.

    Extra scope strings partition one user's entries, e.g. by which upstream
    sources fed the cached value.
    """
    digest = hashlib.sha256("\n".join((token,) + scope).encode("utf-8")).hexdigest()[:16]
    return f"{prefix}-{digest}"


def read_json_file(path: Path) -> Optional[Any]:
    """Blocking JSON read, returns None when missing or unparseable."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def write_json_file(path: Path, data: Any, indent: Optional[int] = None) -> None:
    """Blocking atomic JSON write (temp file + os.replace)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    # One temp file per call; concurrent writers to the same path must not share it
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent)
        os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)


async def run_blocking(func: Callable, *args) -> Any:
    """Run blocking file I/O off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


class DiskJSONCache:
    """Versioned JSON cache stored as one file per key."""

    def __init__(
        self,
        root: Path,
        namespace: str,
        fresh_ttl: float,
        stale_ttl: float,
        version: int = CACHE_VERSION,
        clock: Callable[[], float] = time.time,
    ):
        if stale_ttl < fresh_ttl:
            raise ValueError("stale_ttl must be >= fresh_ttl")
        self.directory = Path(root) / namespace
        self.namespace = namespace
        self.fresh_ttl = fresh_ttl
        self.stale_ttl = stale_ttl
        self.version = version
        self.clock = clock

    def path_for(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _load_entry(self, key: str) -> Optional[CacheEntry]:
        raw = read_json_file(self.path_for(key))
        if not isinstance(raw, dict):
            return None
        try:
            return CacheEntry.model_validate(raw)
        except ValueError:
            return None

    async def get(self, key: str) -> Optional[CacheResult]:
        """Return a fresh or stale hit, or None for a miss."""
        entry = await run_blocking(self._load_entry, key)
        if entry is None:
            return None

        if entry.version != self.version:
            logger.info(f"[{self.namespace}] Version mismatch for {key}, treating as miss")
            return None

        age_ms = self._now_ms() - entry.fetched_at
        if age_ms >= self.stale_ttl * 1000:
            logger.debug(f"[{self.namespace}] Entry {key} too old ({age_ms // 1000}s)")
            return None

        is_stale = age_ms >= self.fresh_ttl * 1000
        return CacheResult(
            data=entry.data,
            is_stale=is_stale,
            cached_at=entry.fetched_at // 1000,
        )

    async def set(self, key: str, payload: Any) -> None:
        """Write the payload wholesale; failures are logged and swallowed."""
        entry = {"version": self.version, "fetchedAt": self._now_ms(), "data": payload}
        try:
            await run_blocking(write_json_file, self.path_for(key), entry)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"[{self.namespace}] Failed to save cache for {key}: {e}")

    async def invalidate(self, key: str) -> None:
        try:
            await run_blocking(self.path_for(key).unlink)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[{self.namespace}] Failed to invalidate {key}: {e}")

    async def status(self, key: str) -> Dict[str, Any]:
        """Describe the entry for diagnostics."""
        entry = await run_blocking(self._load_entry, key)
        info = {
            "exists": entry is not None,
            "fresh": False,
            "usable": False,
            "ageSeconds": 0,
            "freshTtlSeconds": int(self.fresh_ttl),
            "staleTtlSeconds": int(self.stale_ttl),
        }
        if entry is not None:
            age_ms = self._now_ms() - entry.fetched_at
            versioned = entry.version == self.version
            info["ageSeconds"] = round(age_ms / 1000)
            info["fresh"] = versioned and age_ms < self.fresh_ttl * 1000
            info["usable"] = versioned and age_ms < self.stale_ttl * 1000
        return info


Fetcher = Callable[[], Awaitable[ApiResult]]


class RevalidatingCache:
    """Stale-while-revalidate orchestration over a DiskJSONCache.

    Fresh hits are returned as is. Stale hits are returned immediately and a
    background refresh is spawned. Misses fetch from the origin synchronously
    and write through.
    """

    def __init__(self, disk: DiskJSONCache):
        self.disk = disk
        self._refreshing: Dict[str, asyncio.Task] = {}

    async def get_or_fetch(
        self, key: str, fetcher: Fetcher, force_refresh: bool = False
    ) -> Tuple[Any, CacheResult]:
        if not force_refresh:
            cached = await self.disk.get(key)
            if cached is not None:
                if cached.is_stale:
                    self.schedule_refresh(key, fetcher)
                return cached.data, cached

        result = await fetcher()
        if not result.success:
            raise OriginUnavailableError(result.error, source=self.disk.namespace)

        await self.disk.set(key, result.data)
        now = int(self.disk.clock())
        return result.data, CacheResult(data=result.data, is_stale=False, cached_at=now)

    def schedule_refresh(self, key: str, fetcher: Fetcher) -> Optional[asyncio.Task]:
        """Spawn a background refresh unless one is already running for key."""
        running = self._refreshing.get(key)
        if running is not None and not running.done():
            return running
        task = asyncio.create_task(self._refresh(key, fetcher))
        self._refreshing[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return task

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._refreshing.get(key) is task:
            del self._refreshing[key]

    async def _refresh(self, key: str, fetcher: Fetcher) -> None:
        try:
            result = await fetcher()
        except Exception as e:
            logger.error(f"[{self.disk.namespace}] Background refresh of {key} crashed: {e}")
            return
        if not result.success:
            logger.warning(
                f"[{self.disk.namespace}] Background refresh of {key} failed: {result.error.message}"
            )
            return
        await self.disk.set(key, result.data)
        logger.debug(f"[{self.disk.namespace}] Refreshed {key}")

    async def drain(self) -> None:
        """Wait for in-flight refreshes (shutdown and tests)."""
        pending = [t for t in self._refreshing.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def plex_cache(data_path: str, fresh_ttl: float, stale_ttl: float) -> DiskJSONCache:
    return DiskJSONCache(Path(data_path), "plex", fresh_ttl, stale_ttl)
