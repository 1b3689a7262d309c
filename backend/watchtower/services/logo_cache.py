"""Local cache of TMDB title logos.

The index at ``<data>/tmdb/logo-cache.json`` maps a normalized
``type:title:year`` key to a bare filename under ``<data>/tmdb/logos/``, or
to ``None`` when TMDB was asked and has no logo. The three states
(never asked, found, confirmed absent) are kept distinct:

* found entries live 7 days
* confirmed-absent entries live 24 hours so they get retried
* a found entry whose bytes do not match its extension is evicted on read
"""

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx

from watchtower.models.cache_model import LogoCacheEntry, LogoCacheIndex, LogoLookup
from watchtower.services.disk_cache import read_json_file, run_blocking, write_json_file

logger = logging.getLogger(__name__)

CACHE_DIR = "tmdb"
LOGOS_DIR = "logos"
CACHE_INDEX_FILE = "logo-cache.json"
INDEX_VERSION = 2

LOGO_TTL_SECONDS = 7 * 24 * 60 * 60
NEGATIVE_TTL_SECONDS = 24 * 60 * 60

_YEAR_SUFFIX = re.compile(r"\s*\(\d{4}\)\s*$")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def clean_title(title: str) -> str:
    """Drop a trailing "(2017)" style year that upstream metadata embeds in titles."""
    return _YEAR_SUFFIX.sub("", title).strip()


def normalize_title(title: str) -> str:
    return _NON_ALNUM.sub("", clean_title(title).lower())


def logo_cache_key(media_type: str, title: str, year: Optional[int] = None) -> str:
    return f"{media_type}:{normalize_title(title)}:{year or 'unknown'}"


def logo_filename_base(media_type: str, title: str, year: Optional[int] = None) -> str:
    return f"{media_type}-{normalize_title(title)[:50]}-{year or 'unknown'}"


def detect_image_extension(data: bytes, content_type: Optional[str] = None) -> str:
    """Sniff the real format from magic bytes, then the content type, then assume PNG."""
    if len(data) >= 8:
        if data[:4] == b"\x89PNG":
            return ".png"
        if data[:3] == b"\xff\xd8\xff":
            return ".jpg"
        if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
            return ".webp"
        head = data[:100].decode("utf-8", errors="ignore").strip()
        if head.startswith("<?xml") or head.startswith("<svg"):
            return ".svg"

    if content_type:
        if "svg" in content_type:
            return ".svg"
        if "png" in content_type:
            return ".png"
        if "jpeg" in content_type or "jpg" in content_type:
            return ".jpg"
        if "webp" in content_type:
            return ".webp"

    return ".png"


def _migrate_index(raw: Any) -> Optional[Dict[str, Any]]:
    """Bring an index read from disk up to INDEX_VERSION.

    Version 1 stored ``logoPath``, sometimes as a full filesystem path.
    Version 2 stores ``logoFilename`` as a bare filename.
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("entries"), dict):
        return None

    version = raw.get("version", 1)
    if version == INDEX_VERSION:
        return raw
    if version != 1:
        return None

    entries = {}
    for key, entry in raw["entries"].items():
        if not isinstance(entry, dict):
            continue
        logo_path = entry.get("logoPath")
        migrated = {
            "logoFilename": Path(logo_path).name if logo_path else None,
            "fetchedAt": entry.get("fetchedAt", 0),
        }
        if entry.get("tmdbId") is not None:
            migrated["tmdbId"] = entry["tmdbId"]
        entries[key] = migrated
    return {"version": INDEX_VERSION, "entries": entries}


class LogoCache:
    """Disk-backed logo index with negative caching and corruption checks."""

    def __init__(
        self,
        data_path: str,
        ttl_seconds: float = LOGO_TTL_SECONDS,
        negative_ttl_seconds: float = NEGATIVE_TTL_SECONDS,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(data_path) / CACHE_DIR
        self.logos_dir = self.cache_dir / LOGOS_DIR
        self.index_path = self.cache_dir / CACHE_INDEX_FILE
        self.ttl_ms = int(ttl_seconds * 1000)
        self.negative_ttl_ms = int(negative_ttl_seconds * 1000)
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        # Every read-modify-write of the index file runs under this lock
        self._index_lock = asyncio.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def logo_path(self, filename: str) -> Path:
        return self.logos_dir / Path(filename).name

    def _is_valid(self, entry: LogoCacheEntry) -> bool:
        ttl = self.ttl_ms if entry.logo_filename else self.negative_ttl_ms
        return self._now_ms() - entry.fetched_at < ttl

    # Index persistence

    def _load_index_sync(self) -> LogoCacheIndex:
        raw = read_json_file(self.index_path)
        migrated = _migrate_index(raw)
        if migrated is None:
            return LogoCacheIndex(version=INDEX_VERSION)
        try:
            index = LogoCacheIndex.model_validate(migrated)
        except ValueError:
            return LogoCacheIndex(version=INDEX_VERSION)
        if migrated is not raw:
            logger.info(f"[LogoCache] Migrated index to version {INDEX_VERSION}")
            self._save_index_sync(index)
        return index

    def _save_index_sync(self, index: LogoCacheIndex) -> None:
        try:
            write_json_file(self.index_path, index.model_dump(mode="json", by_alias=True), indent=2)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"[LogoCache] Failed to save index: {e}")

    async def load_index(self) -> LogoCacheIndex:
        return await run_blocking(self._load_index_sync)

    async def save_index(self, index: LogoCacheIndex) -> None:
        await run_blocking(self._save_index_sync, index)

    # File checks

    def _check_file_sync(self, filename: str) -> str:
        """Return "ok", "missing" or "corrupt" for a cached logo file."""
        path = self.logo_path(filename)
        try:
            data = path.read_bytes()
        except OSError:
            return "missing"

        actual = detect_image_extension(data)
        recorded = path.suffix.lower()
        if recorded != actual:
            logger.warning(f"[LogoCache] Corrupted logo detected: {filename} (is {actual}, saved as {recorded})")
            return "corrupt"
        return "ok"

    def _unlink_logo(self, filename: str) -> None:
        try:
            self.logo_path(filename).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[LogoCache] Failed to delete {filename}: {e}")

    # Public API

    async def lookup(self, media_type: str, title: str, year: Optional[int] = None) -> LogoLookup:
        key = logo_cache_key(media_type, title, year)
        async with self._index_lock:
            index = await self.load_index()
            entry = index.entries.get(key)

            if entry is None or not self._is_valid(entry):
                return LogoLookup(hit=False)

            if entry.logo_filename is None:
                return LogoLookup(hit=True, filename=None)

            state = await run_blocking(self._check_file_sync, entry.logo_filename)
            if state == "missing":
                return LogoLookup(hit=False)
            if state == "corrupt":
                await run_blocking(self._unlink_logo, entry.logo_filename)
                del index.entries[key]
                await self.save_index(index)
                return LogoLookup(hit=False)

            return LogoLookup(hit=True, filename=entry.logo_filename)

    async def store(
        self,
        media_type: str,
        title: str,
        year: Optional[int],
        source_url: Optional[str],
        tmdb_id: Optional[int] = None,
    ) -> Optional[str]:
        """Record a lookup result; a None source_url records "no logo exists".

        Returns the stored filename. A download failure records nothing, so the
        next request retries instead of seeing a false negative.
        """
        filename = None
        if source_url:
            filename = await self._download(source_url, logo_filename_base(media_type, title, year))
            if filename is None:
                return None

        key = logo_cache_key(media_type, title, year)
        async with self._index_lock:
            index = await self.load_index()
            index.entries[key] = LogoCacheEntry(
                logo_filename=filename,
                fetched_at=self._now_ms(),
                tmdb_id=tmdb_id,
            )
            await self.save_index(index)
        return filename

    async def _download(self, url: str, filename_base: str) -> Optional[str]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"[LogoCache] Error downloading logo: {e}")
            return None

        if response.status_code != 200:
            logger.error(f"[LogoCache] Failed to download logo: {response.status_code}")
            return None

        data = response.content
        filename = filename_base + detect_image_extension(data, response.headers.get("content-type", ""))
        try:
            await run_blocking(self._write_logo, filename, data)
        except OSError as e:
            logger.error(f"[LogoCache] Failed to write logo {filename}: {e}")
            return None
        return filename

    def _write_logo(self, filename: str, data: bytes) -> None:
        self.logos_dir.mkdir(parents=True, exist_ok=True)
        self.logo_path(filename).write_bytes(data)

    async def clean_expired(self) -> int:
        """Drop expired entries and their files."""
        async with self._index_lock:
            index = await self.load_index()
            expired = [k for k, e in index.entries.items() if not self._is_valid(e)]
            for key in expired:
                entry = index.entries.pop(key)
                if entry.logo_filename:
                    await run_blocking(self._unlink_logo, entry.logo_filename)
            if expired:
                await self.save_index(index)
        return len(expired)

    async def clear_negative(self) -> int:
        """Forget every "no logo" result so they are looked up again."""
        async with self._index_lock:
            index = await self.load_index()
            negative = [k for k, e in index.entries.items() if e.logo_filename is None]
            for key in negative:
                del index.entries[key]
            if negative:
                await self.save_index(index)
        return len(negative)

    async def clear_title(self, media_type: str, title: str, year: Optional[int] = None) -> bool:
        key = logo_cache_key(media_type, title, year)
        async with self._index_lock:
            index = await self.load_index()
            entry = index.entries.pop(key, None)
            if entry is None:
                return False
            if entry.logo_filename:
                await run_blocking(self._unlink_logo, entry.logo_filename)
            await self.save_index(index)
        return True

    async def stats(self) -> Dict[str, int]:
        index = await self.load_index()
        stats = {
            "totalEntries": len(index.entries),
            "validEntries": 0,
            "expiredEntries": 0,
            "withLogos": 0,
            "withoutLogos": 0,
        }
        for entry in index.entries.values():
            if not self._is_valid(entry):
                stats["expiredEntries"] += 1
                continue
            stats["validEntries"] += 1
            if entry.logo_filename:
                stats["withLogos"] += 1
            else:
                stats["withoutLogos"] += 1
        return stats
