"""Two-tier image cache: bounded LRU memory over a sharded disk store.

Lookup order is memory, then disk, then the origin (Plex). A disk hit is
promoted back into memory. Writes land in memory immediately and are
persisted to disk by a background task the caller never waits on.
"""

import asyncio
import json
import logging
import shutil
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Set

from fastapi import Request

from watchtower.models.cache_model import CachedImage
from watchtower.services.cache import MemoryLRUCache
from watchtower.services.disk_cache import run_blocking
from watchtower.services.results import ApiResult

logger = logging.getLogger(__name__)


def image_cache_key(source_path: str) -> str:
    return MemoryLRUCache.make_key(source_path)


class DiskImageStore:
    """Content-addressed image files: <root>/<key[:2]>/<key>.cache + .meta sidecar."""

    def __init__(self, root: Path, max_age_seconds: float, clock: Callable[[], float] = time.time):
        self.root = Path(root)
        self.max_age_ms = int(max_age_seconds * 1000)
        self._clock = clock

    def path_for(self, key: str) -> Path:
        return self.root / key[:2] / f"{key}.cache"

    def _read(self, key: str) -> Optional[CachedImage]:
        file_path = self.path_for(key)
        meta_path = file_path.with_name(f"{file_path.name}.meta")
        try:
            data = file_path.read_bytes()
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            cached_at = int(meta["cachedAt"])
            content_type = meta["contentType"]
        except (OSError, ValueError, KeyError, TypeError):
            return None

        if int(self._clock() * 1000) - cached_at > self.max_age_ms:
            file_path.unlink(missing_ok=True)
            meta_path.unlink(missing_ok=True)
            return None

        return CachedImage(data=data, content_type=content_type, cached_at=cached_at)

    def _write(self, key: str, image: CachedImage) -> None:
        file_path = self.path_for(key)
        meta_path = file_path.with_name(f"{file_path.name}.meta")
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(image.data)
        meta_path.write_text(
            json.dumps({"contentType": image.content_type, "cachedAt": image.cached_at}),
            encoding="utf-8",
        )

    async def read(self, key: str) -> Optional[CachedImage]:
        try:
            return await run_blocking(self._read, key)
        except OSError as e:
            logger.warning(f"[ImageCache] Disk read failed for {key}: {e}")
            return None

    async def write(self, key: str, image: CachedImage) -> None:
        await run_blocking(self._write, key, image)

    async def clear(self) -> None:
        await run_blocking(lambda: shutil.rmtree(self.root, ignore_errors=True))


ImageFetcher = Callable[[str], Awaitable[ApiResult]]


class ImageCache:
    """Image byte cache with memory and disk tiers."""

    def __init__(self, memory: MemoryLRUCache, disk: DiskImageStore, clock: Callable[[], float] = time.time):
        self.memory = memory
        self.disk = disk
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()
        self._inflight: Dict[str, asyncio.Task] = {}

    async def get(self, source_path: str) -> Optional[CachedImage]:
        key = image_cache_key(source_path)

        cached = self.memory.get(key)
        if cached is not None:
            return cached

        cached = await self.disk.read(key)
        if cached is not None:
            self.memory.set(key, cached)
            return cached

        return None

    async def put(self, source_path: str, data: bytes, content_type: str) -> None:
        key = image_cache_key(source_path)
        image = CachedImage(data=data, content_type=content_type, cached_at=int(self._clock() * 1000))
        self.memory.set(key, image)

        task = asyncio.create_task(self._write_to_disk(key, image))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_to_disk(self, key: str, image: CachedImage) -> None:
        try:
            await self.disk.write(key, image)
        except Exception as e:
            logger.error(f"[ImageCache] Failed to write to disk: {e}")

    async def get_or_fetch(self, source_path: str, fetcher: ImageFetcher) -> ApiResult:
        """Serve from cache, or fetch from the origin and cache the bytes.

        Concurrent misses for the same path share one origin request.
        """
        cached = await self.get(source_path)
        if cached is not None:
            return ApiResult.ok(cached)

        key = image_cache_key(source_path)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch_and_store(source_path, fetcher))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        # A cancelled caller must not cancel the fetch other callers are waiting on
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _fetch_and_store(self, source_path: str, fetcher: ImageFetcher) -> ApiResult:
        result = await fetcher(source_path)
        if not result.success:
            return result

        data, content_type = result.data
        await self.put(source_path, data, content_type)
        return ApiResult.ok(
            CachedImage(data=data, content_type=content_type, cached_at=int(self._clock() * 1000))
        )

    def stats(self) -> Dict[str, int]:
        stats = self.memory.stats()
        stats["pendingDiskWrites"] = len(self._pending)
        return stats

    async def clear(self) -> None:
        self.memory.clear()
        try:
            await self.disk.clear()
            logger.info("[ImageCache] Cache cleared")
        except OSError as e:
            logger.error(f"[ImageCache] Failed to clear disk cache: {e}")

    async def drain(self) -> None:
        """Wait for background disk writes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def create_image_cache(settings) -> ImageCache:
    memory = MemoryLRUCache(
        max_bytes=settings.image_memory_max_bytes,
        max_items=settings.image_memory_max_items,
        ttl_seconds=settings.image_memory_ttl_seconds,
        size_of=lambda image: image.size,
    )
    disk = DiskImageStore(Path(settings.image_cache_dir), settings.image_disk_ttl_seconds)
    return ImageCache(memory, disk)


def get_image_cache(request: Request) -> ImageCache:
    """Dependency to get the app-scoped image cache."""
    return request.app.state.image_cache
