import asyncio
import json

import pytest

from conftest import FakeClock
from watchtower.models.cache_model import CachedImage
from watchtower.services.cache import MemoryLRUCache
from watchtower.services.image_cache import DiskImageStore, ImageCache, image_cache_key
from watchtower.services.results import ApiResult


class FakeDiskStore:
    """In-memory stand-in for DiskImageStore that records writes."""

    def __init__(self, fail_writes=False):
        self.entries = {}
        self.writes = []
        self.fail_writes = fail_writes

    async def read(self, key):
        return self.entries.get(key)

    async def write(self, key, image):
        self.writes.append(key)
        if self.fail_writes:
            raise OSError("read-only file system")
        self.entries[key] = image

    async def clear(self):
        self.entries.clear()


class CountingOrigin:
    def __init__(self, data=b"\xff\xd8\xffimage", content_type="image/jpeg"):
        self.calls = []
        self.result = ApiResult.ok((data, content_type))

    async def __call__(self, path):
        self.calls.append(path)
        return self.result


def make_memory(clock, max_bytes=1024):
    return MemoryLRUCache(max_bytes, 100, 60, size_of=lambda image: image.size, clock=clock)


@pytest.mark.asyncio
async def test_cold_request_fetches_origin_once_and_fills_both_tiers(clock):
    disk = FakeDiskStore()
    cache = ImageCache(make_memory(clock), disk, clock=clock)
    origin = CountingOrigin()
    path = "/library/metadata/1/thumb/1"

    first = await cache.get_or_fetch(path, origin)
    await cache.drain()

    assert first.success
    assert first.data.data == b"\xff\xd8\xffimage"
    assert origin.calls == [path]
    key = image_cache_key(path)
    assert key in cache.memory
    assert disk.writes == [key]

    second = await cache.get_or_fetch(path, origin)
    assert second.data.data == first.data.data
    assert second.data.content_type == "image/jpeg"
    assert origin.calls == [path]


@pytest.mark.asyncio
async def test_disk_hit_is_promoted_to_memory(clock):
    disk = FakeDiskStore()
    key = image_cache_key("/p")
    disk.entries[key] = CachedImage(data=b"png", content_type="image/png", cached_at=1)
    cache = ImageCache(make_memory(clock), disk, clock=clock)

    hit = await cache.get("/p")

    assert hit.data == b"png"
    assert cache.memory.get(key) is not None


@pytest.mark.asyncio
async def test_failed_disk_write_keeps_memory_copy(clock, caplog):
    disk = FakeDiskStore(fail_writes=True)
    cache = ImageCache(make_memory(clock), disk, clock=clock)

    await cache.put("/p", b"data", "image/png")
    await cache.drain()

    assert (await cache.get("/p")).data == b"data"
    assert disk.entries == {}
    assert "Failed to write to disk" in caplog.text


@pytest.mark.asyncio
async def test_origin_failure_is_returned_and_not_cached(clock):
    cache = ImageCache(make_memory(clock), FakeDiskStore(), clock=clock)

    async def failing(path):
        return ApiResult.fail(404, "HTTP 404: Not Found", status=404)

    result = await cache.get_or_fetch("/missing", failing)

    assert not result.success
    assert result.error.is_not_found
    assert await cache.get("/missing") is None


@pytest.mark.asyncio
async def test_concurrent_cold_requests_share_one_origin_fetch(clock):
    cache = ImageCache(make_memory(clock), FakeDiskStore(), clock=clock)
    release = asyncio.Event()
    calls = []

    async def slow_origin(path):
        calls.append(path)
        await release.wait()
        return ApiResult.ok((b"\x89PNGbytes", "image/png"))

    path = "/library/metadata/7/thumb/1"
    waiters = [asyncio.create_task(cache.get_or_fetch(path, slow_origin)) for _ in range(5)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*waiters)
    await cache.drain()

    assert len(calls) == 1
    assert all(r.success and r.data.data == b"\x89PNGbytes" for r in results)

    # Once settled, a later miss on another path fetches again
    await cache.get_or_fetch("/library/metadata/8/thumb/1", slow_origin)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_stats_and_clear(clock):
    disk = FakeDiskStore()
    cache = ImageCache(make_memory(clock), disk, clock=clock)
    await cache.put("/a", b"12345", "image/png")
    await cache.drain()

    stats = cache.stats()
    assert stats["memorySize"] == 5
    assert stats["memoryItems"] == 1
    assert stats["pendingDiskWrites"] == 0

    await cache.clear()
    assert await cache.get("/a") is None


class TestDiskImageStore:
    @pytest.mark.asyncio
    async def test_round_trip_with_sidecar(self, tmp_path, clock):
        store = DiskImageStore(tmp_path, max_age_seconds=60, clock=clock)
        key = image_cache_key("/library/1/thumb")
        image = CachedImage(data=b"bytes", content_type="image/webp", cached_at=int(clock.now * 1000))

        await store.write(key, image)

        path = store.path_for(key)
        assert path.parent.name == key[:2]
        assert path.read_bytes() == b"bytes"
        meta = json.loads(path.with_name(f"{path.name}.meta").read_text())
        assert meta == {"contentType": "image/webp", "cachedAt": image.cached_at}

        loaded = await store.read(key)
        assert loaded.data == b"bytes"
        assert loaded.content_type == "image/webp"

    @pytest.mark.asyncio
    async def test_expired_entry_is_deleted_on_read(self, tmp_path, clock):
        store = DiskImageStore(tmp_path, max_age_seconds=60, clock=clock)
        key = image_cache_key("/old")
        await store.write(key, CachedImage(data=b"x", content_type="image/png", cached_at=int(clock.now * 1000)))

        clock.advance(61)
        assert await store.read(key) is None

        path = store.path_for(key)
        assert not path.exists()
        assert not path.with_name(f"{path.name}.meta").exists()

    @pytest.mark.asyncio
    async def test_missing_sidecar_is_miss(self, tmp_path, clock):
        store = DiskImageStore(tmp_path, max_age_seconds=60, clock=clock)
        key = image_cache_key("/orphan")
        path = store.path_for(key)
        path.parent.mkdir(parents=True)
        path.write_bytes(b"x")

        assert await store.read(key) is None

    @pytest.mark.asyncio
    async def test_end_to_end_with_real_disk(self, tmp_path):
        clock = FakeClock()
        memory = make_memory(clock)
        cache = ImageCache(memory, DiskImageStore(tmp_path, 3600, clock=clock), clock=clock)
        origin = CountingOrigin()

        await cache.get_or_fetch("/library/2/art", origin)
        await cache.drain()

        # A fresh process starts with an empty memory tier
        restarted = ImageCache(make_memory(clock), DiskImageStore(tmp_path, 3600, clock=clock), clock=clock)
        hit = await restarted.get_or_fetch("/library/2/art", origin)

        assert hit.success
        assert len(origin.calls) == 1
