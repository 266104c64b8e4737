"""Disk-backed LRU cache for file content, trees and branch lists.

Layout::

    <cache_dir>/
        index.json                  entry metadata, rewritten atomically
        blobs/<sha256(key)>-<nonce> one file per write

Blobs are written to a temp file, fsynced and renamed into place before the
entry is registered, so the index never points at a partial file. Every write
gets its own blob name, so replaced and evicted blobs are deleted after the
index lock is released without racing a newer write of the same key. A missing
or corrupt index means a cold cache; blob files not in the index are ignored.

Eviction is least-recently-used, first within the repository that is being
written to and then across all repositories. Entries that are being read
hold a lease and are never evicted.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import os
import secrets
import tempfile
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Any, Callable, NamedTuple, Union

from ReBrowse.errors import CacheError, CacheFullError
from ReBrowse.jsonfile import read_json, write_json
from ReBrowse.models import (
    CacheEntry,
    CacheStats,
    ClearResult,
    RepositoryCacheStats,
)

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
BLOB_DIR = "blobs"
INDEX_VERSION = 1


class CacheKey(NamedTuple):
    """Identifies one cache entry; ``str(key)`` is ``{repo}/{branch}/{path}``."""

    repository_id: str
    branch: str
    path: str

    def __str__(self) -> str:
        return f"{self.repository_id}/{self.branch}/{self.path}"


KeyLike = Union[CacheKey, str]


class CacheManager:
    """LRU cache of fetched content, bounded per repository and globally.

    Args:
        cache_dir: Root directory of the cache.
        max_repository_bytes: Ceiling for one repository's entries.
        max_total_bytes: Ceiling for the whole cache.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        cache_dir: Path,
        max_repository_bytes: int = 100 * 1024 * 1024,
        max_total_bytes: int = 5 * 1024 * 1024 * 1024,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir)
        self.blob_dir = self.cache_dir / BLOB_DIR
        self.index_path = self.cache_dir / INDEX_FILE
        self.max_repository_bytes = max_repository_bytes
        self.max_total_bytes = max_total_bytes
        self.clock = clock

        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._leases: Counter[str] = Counter()
        self._last_tick = 0.0
        self._version = 0
        self._written_version = 0

        self.blob_dir.mkdir(parents=True, exist_ok=True)
        self._load_index()

    @staticmethod
    def make_key(repository_id: str, branch: str, path: str) -> CacheKey:
        return CacheKey(repository_id, branch, path)

    # -- index -------------------------------------------------------------

    def _load_index(self) -> None:
        raw = read_json(self.index_path)
        if raw is None:
            return
        try:
            entries = [CacheEntry.from_dict(item) for item in raw["entries"]]
        except (KeyError, TypeError, ValueError):
            logger.warning("Cache index %s is corrupt; starting with a cold cache", self.index_path)
            return

        for entry in entries:
            if not Path(entry.disk_path).is_file():
                continue
            self._entries[entry.key] = entry
            self._last_tick = max(self._last_tick, entry.last_accessed_at)
        logger.debug("Loaded %d cache entries", len(self._entries))

    def _save_index(self) -> None:
        with self._lock:
            snapshot = [e.to_dict() for e in self._entries.values()]
            version = self._version

        with self._write_lock:
            if version < self._written_version:
                return
            try:
                write_json(self.index_path, {"version": INDEX_VERSION, "entries": snapshot})
            except OSError as exc:
                raise CacheError("Could not write the cache index.") from exc
            self._written_version = version

    def flush(self) -> None:
        """Persist access times recorded since the last write."""
        self._save_index()

    def _tick(self) -> float:
        # Strictly increasing so LRU order is total even within one clock tick
        now = self.clock()
        if now <= self._last_tick:
            now = self._last_tick + 1e-6
        self._last_tick = now
        return now

    def _blob_path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.blob_dir / f"{digest}-{secrets.token_hex(4)}"

    # -- lookups -----------------------------------------------------------

    def peek(self, key: KeyLike) -> CacheEntry | None:
        """Return a copy of the entry without touching its recency."""
        with self._lock:
            entry = self._entries.get(str(key))
            return dataclasses.replace(entry) if entry else None

    def get(self, key: KeyLike) -> CacheEntry | None:
        """Return a copy of the entry and mark it most recently used."""
        with self._lock:
            entry = self._entries.get(str(key))
            if entry is None:
                return None
            entry.last_accessed_at = self._tick()
            self._version += 1
            return dataclasses.replace(entry)

    def read(self, key: KeyLike) -> bytes | None:
        """Return the cached bytes, or None on a miss."""
        skey = str(key)
        while True:
            with self._lock:
                entry = self._entries.get(skey)
                if entry is None:
                    return None
                entry.last_accessed_at = self._tick()
                self._version += 1
                disk_path = entry.disk_path
                self._leases[skey] += 1

            try:
                with open(disk_path, "rb") as fh:
                    return fh.read()
            except OSError:
                with self._lock:
                    current = self._entries.get(skey)
                    # A concurrent put replaced the blob; read the new one
                    replaced = current is not None and current.disk_path != disk_path
                    if current is not None and not replaced:
                        del self._entries[skey]
                        self._version += 1
                if not replaced:
                    logger.warning("Cached blob for %s is missing; dropping entry", skey)
                    return None
            finally:
                with self._lock:
                    self._leases[skey] -= 1
                    if self._leases[skey] <= 0:
                        del self._leases[skey]

    def get_json(self, key: KeyLike) -> Any | None:
        data = self.read(key)
        if data is None:
            return None
        try:
            return json.loads(data)
        except ValueError:
            logger.warning("Cached JSON for %s is corrupt", key)
            return None

    # -- writes ------------------------------------------------------------

    def put(self, key: CacheKey, data: bytes, *, sha: str = "", kind: str = "file") -> CacheEntry:
        """Store *data* under *key*, evicting older entries as needed.

        Raises:
            CacheFullError: the entry cannot fit even after eviction.
            CacheError: the blob could not be written.
        """
        skey = str(key)
        size = len(data)
        if size > self.max_repository_bytes or size > self.max_total_bytes:
            raise CacheFullError(
                f"{key.path or kind} ({size:,} bytes) is larger than the cache allows."
            )

        final_path = self._blob_path(skey)
        tmp: str | None = None
        try:
            fd, tmp = tempfile.mkstemp(dir=self.blob_dir, prefix=".tmp-")
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, final_path)
        except OSError as exc:
            if tmp is not None:
                self._unlink(tmp)
            raise CacheError() from exc

        try:
            with self._lock:
                victims = self._plan_eviction(key, size)
                for victim in victims:
                    del self._entries[victim.key]
                previous = self._entries.get(skey)
                now = self._tick()
                entry = CacheEntry(
                    key=skey,
                    repository_id=key.repository_id,
                    branch=key.branch,
                    path=key.path,
                    size=size,
                    disk_path=str(final_path),
                    sha=sha,
                    kind=kind,
                    fetched_at=now,
                    last_accessed_at=now,
                )
                self._entries[skey] = entry
                self._version += 1
                result = dataclasses.replace(entry)
        except CacheFullError:
            self._unlink(final_path)
            raise

        # Unreferenced now; removed outside the index lock
        for victim in victims:
            self._unlink(victim.disk_path)
        if previous is not None:
            self._unlink(previous.disk_path)
        if victims:
            logger.info("Evicted %d cache entries to make room for %s", len(victims), skey)
        self._save_index()
        return result

    def put_json(self, key: CacheKey, value: Any, *, kind: str) -> CacheEntry:
        return self.put(key, json.dumps(value).encode("utf-8"), kind=kind)

    def _plan_eviction(self, key: CacheKey, size: int) -> list[CacheEntry]:
        """Pick LRU victims so *size* more bytes fit. Caller holds the lock."""
        skey = str(key)
        others = [e for e in self._entries.values() if e.key != skey]
        victims: list[CacheEntry] = []
        chosen: set[str] = set()

        def evict_until(candidates: list[CacheEntry], used: int, ceiling: int) -> int:
            for entry in sorted(candidates, key=lambda e: e.last_accessed_at):
                if used + size <= ceiling:
                    break
                if entry.key in chosen or self._leases.get(entry.key):
                    continue
                victims.append(entry)
                chosen.add(entry.key)
                used -= entry.size
            return used

        repo_entries = [e for e in others if e.repository_id == key.repository_id]
        repo_used = evict_until(
            repo_entries, sum(e.size for e in repo_entries), self.max_repository_bytes
        )
        if repo_used + size > self.max_repository_bytes:
            raise CacheFullError(
                "The repository cache is full and its entries are in use."
            )

        total_used = sum(e.size for e in others if e.key not in chosen)
        total_used = evict_until(others, total_used, self.max_total_bytes)
        if total_used + size > self.max_total_bytes:
            raise CacheFullError("The cache is full and its entries are in use.")
        return victims

    @staticmethod
    def _unlink(path: str | Path) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Could not remove cache file %s", path)

    def invalidate(self, key: KeyLike) -> bool:
        """Mark an entry stale. Its bytes stay available for offline use."""
        with self._lock:
            entry = self._entries.get(str(key))
            if entry is None:
                return False
            entry.stale = True
            self._version += 1
        self._save_index()
        return True

    def clear(
        self,
        repository_id: str | None = None,
        branch: str | None = None,
        path: str | None = None,
    ) -> ClearResult:
        """Remove matching entries; no arguments clears everything."""
        with self._lock:
            removed = [
                e
                for e in self._entries.values()
                if (repository_id is None or e.repository_id == repository_id)
                and (branch is None or e.branch == branch)
                and (path is None or e.path == path)
            ]
            for entry in removed:
                del self._entries[entry.key]
            if removed:
                self._version += 1

        for entry in removed:
            self._unlink(entry.disk_path)
        if removed:
            self._save_index()
            logger.info("Cleared %d cache entries", len(removed))
        return ClearResult(
            files_cleared=sum(1 for e in removed if e.kind == "file"),
            bytes_freed=sum(e.size for e in removed),
            repositories_affected=len({e.repository_id for e in removed}),
        )

    # -- reporting ---------------------------------------------------------

    def entries(self, repository_id: str, branch: str | None = None) -> list[CacheEntry]:
        with self._lock:
            return [
                dataclasses.replace(e)
                for e in self._entries.values()
                if e.repository_id == repository_id and (branch is None or e.branch == branch)
            ]

    def stats(self, repository_id: str | None = None) -> CacheStats:
        with self._lock:
            entries = [
                e
                for e in self._entries.values()
                if repository_id is None or e.repository_id == repository_id
            ]

        by_repo: dict[str, list[CacheEntry]] = {}
        for entry in entries:
            by_repo.setdefault(entry.repository_id, []).append(entry)

        repositories = [
            RepositoryCacheStats(
                repository_id=repo_id,
                file_count=sum(1 for e in items if e.kind == "file"),
                total_size=sum(e.size for e in items),
                percentage_used=_percentage(sum(e.size for e in items), self.max_repository_bytes),
                oldest_entry=min(e.fetched_at for e in items),
                newest_entry=max(e.fetched_at for e in items),
            )
            for repo_id, items in sorted(by_repo.items())
        ]
        total = sum(e.size for e in entries)
        return CacheStats(
            repositories=repositories,
            file_count=sum(r.file_count for r in repositories),
            total_size=total,
            percentage_used=_percentage(total, self.max_total_bytes),
            repository_count=len(repositories),
            max_repository_size=self.max_repository_bytes,
            max_total_size=self.max_total_bytes,
        )


def _percentage(used: int, ceiling: int) -> float:
    return round(used / ceiling * 100, 2) if ceiling else 0.0
