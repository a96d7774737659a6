"""Persistent, git-aware cache for repository analysis results.

Analysing a repository (scanning every source file for work markers) is the
most expensive thing the daemon does outside remote sessions. This cache keeps
those results across cycles and restarts, and invalidates them when the code
they describe changes.

Key Features:
    - Keys derived from repo path, sorted exclude paths, and a config hash
    - TTL expiry and LRU eviction bounded by entry count and total bytes
    - Git-based invalidation, with an incremental path when the changed
      files between two commits can be listed
    - Sampled content-hash invalidation when git invalidation is disabled
    - One JSON file per key, written atomically with aiofiles

Example:
    >>> cache = PersistentAnalysisCache(cache_dir=".autopilot-cache")
    >>> await cache.warm_cache()
    >>> key = cache.generate_key("/repo", ["vendor"], config_hash="abc")
    >>> result = await cache.get(key, "/repo", current_commit_hash=head)
    >>> if not result.hit:
    ...     await cache.set(key, "/repo", analysis, ["vendor"])

Thread Safety:
    A single daemon instance is the only writer. Operations take an
    asyncio.Lock so eviction and persistence finish inside ``set`` and
    ``update_incremental`` before any other cache call proceeds.
"""

import asyncio
import copy
import hashlib
import json
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import aiofiles
import structlog

from repo_autopilot.exceptions import GitOperationError
from repo_autopilot.utils import git_info
from repo_autopilot.utils.circuit_breaker import CircuitBreaker

log = structlog.get_logger(__name__)

T = TypeVar("T")

CACHE_FORMAT_VERSION = 1

CONTENT_HASH_MAX_DEPTH = 4
CONTENT_HASH_MAX_SAMPLES = 100
CONTENT_HASH_SKIP_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        "dist",
        "build",
        "coverage",
        ".next",
        ".cache",
        ".turbo",
        "__pycache__",
        ".venv",
        ".autopilot-cache",
    }
)


@dataclass
class CacheEntry:
    """One cached analysis of a repository."""

    key: str
    repo_path: str
    git_commit_hash: str
    git_branch: str
    content_hash: str
    data: dict[str, Any]
    file_cache: dict[str, Any] = field(default_factory=dict)
    exclude_paths: list[str] = field(default_factory=list)
    timestamp: float = 0.0
    last_access_time: float = 0.0
    access_count: int = 0
    size_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["version"] = CACHE_FORMAT_VERSION
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry from its persisted form.

        Raises:
            ValueError: If the payload was written by another format version
            KeyError: If a required field is missing
        """
        if payload.get("version") != CACHE_FORMAT_VERSION:
            raise ValueError(f"Unsupported cache format version: {payload.get('version')}")
        return cls(
            key=payload["key"],
            repo_path=payload["repo_path"],
            git_commit_hash=payload["git_commit_hash"],
            git_branch=payload["git_branch"],
            content_hash=payload["content_hash"],
            data=payload["data"],
            file_cache=payload.get("file_cache", {}),
            exclude_paths=payload.get("exclude_paths", []),
            timestamp=payload["timestamp"],
            last_access_time=payload.get("last_access_time", payload["timestamp"]),
            access_count=payload.get("access_count", 0),
            size_bytes=payload.get("size_bytes", 0),
        )


@dataclass
class CacheLookupResult:
    """Outcome of :meth:`PersistentAnalysisCache.get`.

    A hit with ``requires_full_analysis`` False means the caller may re-analyse
    only ``changed_files`` and patch the entry with ``update_incremental``.
    """

    hit: bool
    reason: str
    data: dict[str, Any] | None = None
    file_cache: dict[str, Any] | None = None
    requires_full_analysis: bool = True
    changed_files: list[str] = field(default_factory=list)


@dataclass
class CacheStats:
    """Counters describing cache effectiveness."""

    hits: int = 0
    misses: int = 0
    invalidations: int = 0
    evictions: int = 0
    persist_writes: int = 0
    persist_reads: int = 0
    incremental_updates: int = 0
    total_entries: int = 0
    total_size_bytes: int = 0
    hit_rate: float = 0.0
    average_access_time_ms: float = 0.0


class PersistentAnalysisCache:
    """Size- and TTL-bounded analysis cache mirrored to disk.

    Attributes:
        cache_dir: Directory holding one ``<key>.json`` file per entry
        max_entries: Maximum number of entries kept in memory and on disk
        ttl_seconds: Maximum entry age before it is treated as stale
        max_size_bytes: Maximum total serialized size of all entries
    """

    def __init__(
        self,
        cache_dir: Path | str = ".autopilot-cache",
        max_entries: int = 100,
        ttl_seconds: float = 30 * 60,
        max_size_bytes: int = 100 * 1024 * 1024,
        persist_to_disk: bool = True,
        use_git_invalidation: bool = True,
        enable_incremental_analysis: bool = True,
        enabled: bool = True,
        git_breaker: CircuitBreaker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.max_size_bytes = max_size_bytes
        self.persist_to_disk = persist_to_disk
        self.use_git_invalidation = use_git_invalidation
        self.enable_incremental_analysis = enable_incremental_analysis
        self.enabled = enabled
        self._git_breaker = git_breaker
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._stats = CacheStats()
        self._access_time_total_ms = 0.0
        self._access_samples = 0

    @staticmethod
    def generate_key(repo_path: str, exclude_paths: list[str], config_hash: str = "") -> str:
        """Derive a cache key that ignores the order of ``exclude_paths``."""
        material = json.dumps(
            {
                "repo_path": repo_path,
                "exclude_paths": sorted(exclude_paths),
                "config_hash": config_hash,
            },
            sort_keys=True,
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]

    async def get(
        self,
        key: str,
        repo_path: str,
        current_commit_hash: str | None = None,
    ) -> CacheLookupResult:
        """Look up an entry and decide whether it is still valid.

        Args:
            key: Key from :meth:`generate_key`
            repo_path: Repository the entry describes
            current_commit_hash: HEAD of the checkout right now, if known

        Returns:
            CacheLookupResult describing a hit, an incremental hit, or a miss
        """
        if not self.enabled:
            return CacheLookupResult(hit=False, reason="Cache disabled")

        started = time.perf_counter()
        async with self._lock:
            try:
                return await self._lookup(key, repo_path, current_commit_hash)
            finally:
                self._record_access_time((time.perf_counter() - started) * 1000)

    async def _lookup(self, key: str, repo_path: str, current_commit_hash: str | None) -> CacheLookupResult:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            log.debug("cache_miss", key=key, reason="absent")
            return CacheLookupResult(hit=False, reason="No cache entry found")

        if self._is_expired(entry):
            await self._delete(key)
            self._stats.invalidations += 1
            self._stats.misses += 1
            log.debug("cache_expired", key=key)
            return CacheLookupResult(hit=False, reason="Cache entry expired")

        if self.use_git_invalidation and entry.git_commit_hash and current_commit_hash:
            if current_commit_hash != entry.git_commit_hash:
                changed_files = None
                if self.enable_incremental_analysis:
                    changed_files = await self._git_call(
                        lambda: git_info.get_changed_files(
                            repo_path, entry.git_commit_hash, current_commit_hash
                        ),
                        None,
                    )

                if changed_files:
                    self._touch(entry)
                    self._stats.hits += 1
                    log.info(
                        "cache_incremental_hit",
                        key=key,
                        changed_files=len(changed_files),
                    )
                    return CacheLookupResult(
                        hit=True,
                        reason="Incremental update available",
                        data=copy.deepcopy(entry.data),
                        file_cache=copy.deepcopy(entry.file_cache),
                        requires_full_analysis=False,
                        changed_files=changed_files,
                    )

                await self._delete(key)
                self._stats.invalidations += 1
                self._stats.misses += 1
                log.info("cache_invalidated", key=key, reason="commit_changed")
                return CacheLookupResult(hit=False, reason="Git commit changed")

        elif not self.use_git_invalidation or not entry.git_commit_hash:
            content_hash = await asyncio.to_thread(compute_content_hash, repo_path)
            if content_hash != entry.content_hash:
                await self._delete(key)
                self._stats.invalidations += 1
                self._stats.misses += 1
                log.info("cache_invalidated", key=key, reason="content_changed")
                return CacheLookupResult(hit=False, reason="Content hash changed")

        self._touch(entry)
        self._stats.hits += 1
        log.debug("cache_hit", key=key, access_count=entry.access_count)
        return CacheLookupResult(
            hit=True,
            reason="Cache hit",
            data=copy.deepcopy(entry.data),
            file_cache=copy.deepcopy(entry.file_cache),
            requires_full_analysis=False,
        )

    async def set(
        self,
        key: str,
        repo_path: str,
        data: dict[str, Any],
        exclude_paths: list[str],
        file_cache: dict[str, Any] | None = None,
    ) -> None:
        """Store a full analysis, evicting least-recently-used entries first.

        Args:
            key: Key from :meth:`generate_key`
            repo_path: Repository the analysis describes
            data: JSON-serializable analysis payload
            exclude_paths: Paths excluded from the analysis
            file_cache: Optional per-file results used for incremental updates
        """
        if not self.enabled:
            return

        commit_hash = await self._git_call(lambda: git_info.get_commit_hash(repo_path), "")
        branch = await self._git_call(lambda: git_info.get_current_branch(repo_path), "")
        content_hash = await asyncio.to_thread(compute_content_hash, repo_path)

        now = self._clock()
        entry = CacheEntry(
            key=key,
            repo_path=repo_path,
            git_commit_hash=commit_hash,
            git_branch=branch,
            content_hash=content_hash,
            data=copy.deepcopy(data),
            file_cache=copy.deepcopy(file_cache or {}),
            exclude_paths=sorted(exclude_paths),
            timestamp=now,
            last_access_time=now,
        )
        entry.size_bytes = _serialized_size(entry)

        if entry.size_bytes > self.max_size_bytes:
            log.warning(
                "cache_entry_too_large",
                key=key,
                size_bytes=entry.size_bytes,
                max_size_bytes=self.max_size_bytes,
            )
            return

        async with self._lock:
            self._entries.pop(key, None)

            while self._entries and len(self._entries) >= self.max_entries:
                await self._evict_lru()
            while self._entries and self._total_size() + entry.size_bytes > self.max_size_bytes:
                await self._evict_lru()

            self._entries[key] = entry
            await self._persist(entry)

        log.info("cache_set", key=key, size_bytes=entry.size_bytes, commit=commit_hash[:8])

    async def update_incremental(
        self,
        key: str,
        changed_files: list[str],
        partial: dict[str, Any],
        file_results: dict[str, Any] | None = None,
    ) -> bool:
        """Patch an entry after re-analysing only the changed files.

        Only the top-level payload fields present in ``partial`` are replaced.
        Per-file results for ``changed_files`` come from ``file_results``; a
        changed file with no result there (deleted, or now excluded) is
        dropped from the per-file cache.

        Returns:
            False when the key is not cached, True once the entry is patched
            and persisted
        """
        if not self.enabled:
            return False

        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False

            entry.data.update(copy.deepcopy(partial))
            file_results = file_results or {}
            for path in changed_files:
                if path in file_results:
                    entry.file_cache[path] = copy.deepcopy(file_results[path])
                else:
                    entry.file_cache.pop(path, None)

            entry.git_commit_hash = await self._git_call(
                lambda: git_info.get_commit_hash(entry.repo_path), entry.git_commit_hash
            )
            entry.content_hash = await asyncio.to_thread(compute_content_hash, entry.repo_path)
            now = self._clock()
            entry.timestamp = now
            entry.last_access_time = now
            entry.size_bytes = _serialized_size(entry)

            while self._total_size() > self.max_size_bytes and len(self._entries) > 1:
                await self._evict_lru(keep=key)

            self._stats.incremental_updates += 1
            await self._persist(entry)

        log.info("cache_incremental_update", key=key, changed_files=len(changed_files))
        return True

    async def invalidate(self, repo_path: str) -> int:
        """Drop every entry describing ``repo_path``.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            keys = [key for key, entry in self._entries.items() if entry.repo_path == repo_path]
            for key in keys:
                await self._delete(key)
            self._stats.invalidations += len(keys)

        log.info("cache_repo_invalidated", repo_path=repo_path, removed=len(keys))
        return len(keys)

    async def clear(self) -> None:
        """Remove all entries from memory and disk."""
        async with self._lock:
            for key in list(self._entries):
                await self._delete(key)
            if self.persist_to_disk and self.cache_dir.exists():
                for path in self.cache_dir.glob("*.json"):
                    path.unlink(missing_ok=True)

        log.info("cache_cleared")

    async def warm_cache(self) -> int:
        """Load persisted entries into memory.

        Expired files are deleted instead of loaded. Unreadable, corrupt, or
        foreign-format files are skipped. Entries beyond ``max_entries`` are
        dropped, oldest access first.

        Returns:
            Number of entries loaded
        """
        if not self.enabled or not self.persist_to_disk or not self.cache_dir.exists():
            return 0

        loaded = 0
        async with self._lock:
            for path in sorted(self.cache_dir.glob("*.json")):
                try:
                    async with aiofiles.open(path) as f:
                        entry = CacheEntry.from_dict(json.loads(await f.read()))
                except (OSError, ValueError, KeyError, TypeError) as e:
                    log.debug("cache_file_skipped", path=str(path), error=str(e))
                    continue

                self._stats.persist_reads += 1
                if self._is_expired(entry):
                    path.unlink(missing_ok=True)
                    log.debug("cache_file_expired", path=str(path))
                    continue

                self._entries[entry.key] = entry
                loaded += 1

            while len(self._entries) > self.max_entries or self._total_size() > self.max_size_bytes:
                await self._evict_lru()

        log.info("cache_warmed", entries=loaded)
        return loaded

    def get_stats(self) -> CacheStats:
        """Return a fresh copy of the counters with derived fields filled in."""
        stats = CacheStats(**asdict(self._stats))
        stats.total_entries = len(self._entries)
        stats.total_size_bytes = self._total_size()
        lookups = stats.hits + stats.misses
        stats.hit_rate = stats.hits / lookups if lookups else 0.0
        stats.average_access_time_ms = (
            self._access_time_total_ms / self._access_samples if self._access_samples else 0.0
        )
        return stats

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.timestamp > self.ttl_seconds

    def _touch(self, entry: CacheEntry) -> None:
        entry.access_count += 1
        entry.last_access_time = self._clock()

    def _total_size(self) -> int:
        return sum(entry.size_bytes for entry in self._entries.values())

    def _record_access_time(self, elapsed_ms: float) -> None:
        self._access_time_total_ms += elapsed_ms
        self._access_samples += 1

    async def _evict_lru(self, keep: str | None = None) -> None:
        candidates = [entry for key, entry in self._entries.items() if key != keep]
        if not candidates:
            return
        victim = min(candidates, key=lambda entry: entry.last_access_time)
        await self._delete(victim.key)
        self._stats.evictions += 1
        log.debug("cache_evicted", key=victim.key, last_access_time=victim.last_access_time)

    async def _delete(self, key: str) -> None:
        self._entries.pop(key, None)
        if self.persist_to_disk:
            self._entry_path(key).unlink(missing_ok=True)

    def _entry_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    async def _persist(self, entry: CacheEntry) -> None:
        if not self.persist_to_disk:
            return

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self._entry_path(entry.key)
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(entry.to_dict()))

        tmp_path.replace(path)
        self._stats.persist_writes += 1

    async def _git_call(self, operation: Callable[[], Awaitable[T]], fallback: T) -> T:
        """Run a git query, returning ``fallback`` when git is unavailable."""
        if self._git_breaker is not None:
            value, _ = await self._git_breaker.execute_with_fallback(operation, fallback)
            return value

        try:
            return await operation()
        except GitOperationError as e:
            log.debug("cache_git_unavailable", error=e.message)
            return fallback


def compute_content_hash(repo_path: str | Path) -> str:
    """Hash a bounded sample of file metadata under ``repo_path``.

    The tree is walked depth first in sorted order, at most
    ``CONTENT_HASH_MAX_DEPTH`` levels deep, until ``CONTENT_HASH_MAX_SAMPLES``
    files are seen. Dependency and build directories are skipped.
    """
    root = Path(repo_path)
    samples: list[str] = []

    def walk(directory: Path, depth: int) -> None:
        if depth > CONTENT_HASH_MAX_DEPTH or len(samples) >= CONTENT_HASH_MAX_SAMPLES:
            return
        try:
            children = sorted(os.scandir(directory), key=lambda child: child.name)
        except OSError:
            return

        for child in children:
            if len(samples) >= CONTENT_HASH_MAX_SAMPLES:
                return
            try:
                if child.is_dir(follow_symlinks=False):
                    if child.name not in CONTENT_HASH_SKIP_DIRS:
                        walk(Path(child.path), depth + 1)
                elif child.is_file(follow_symlinks=False):
                    stat = child.stat()
                    relative = Path(child.path).relative_to(root).as_posix()
                    samples.append(f"{relative}:{int(stat.st_mtime * 1000)}:{stat.st_size}")
            except OSError:
                continue

    walk(root, 0)
    digest = hashlib.sha256("|".join(sorted(samples)).encode("utf-8")).hexdigest()
    return digest[:32]


def _serialized_size(entry: CacheEntry) -> int:
    return len(json.dumps(entry.to_dict()).encode("utf-8"))
