"""Discover new work by scanning source files for unresolved markers.

Scan results are kept in :class:`PersistentAnalysisCache`. When only a few
files changed since the cached commit, just those files are rescanned and
the cached entry is patched in place.
"""

import asyncio
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from repo_autopilot.config.settings import DiscoveryConfig
from repo_autopilot.exceptions import GitOperationError
from repo_autopilot.utils import git_info
from repo_autopilot.utils.caching import PersistentAnalysisCache
from repo_autopilot.utils.circuit_breaker import CircuitBreaker

log = structlog.get_logger(__name__)

MAX_FILE_BYTES = 1024 * 1024
MAX_TITLE_LENGTH = 80


@dataclass
class MarkerHit:
    """One marker comment found in a source file."""

    file: str
    line: int
    marker: str
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "line": self.line, "marker": self.marker, "text": self.text}


@dataclass
class DiscoveredTask:
    """Candidate issue derived from a marker."""

    title: str
    body: str
    file: str
    line: int


class MarkerScanner:
    """Finds marker comments in a checkout, using the analysis cache."""

    def __init__(
        self,
        config: DiscoveryConfig,
        cache: PersistentAnalysisCache,
        git_breaker: CircuitBreaker | None = None,
    ):
        self.config = config
        self.cache = cache
        self.git_breaker = git_breaker
        self.repo_path = str(Path(config.repo_path).resolve())
        markers = "|".join(re.escape(marker) for marker in config.markers)
        self._marker_re = re.compile(
            rf"(?:#|//|/\*|<!--|--|\*)\s*({markers})\b(?:\([^)]*\))?[\s:\-]*(.*?)\s*(?:\*/|-->)?\s*$"
        )
        self._extensions = {ext.lower() for ext in config.file_extensions}
        self._excluded = {path.strip("/") for path in config.exclude_paths}
        self._excluded.add(Path(cache.cache_dir).name)

    @property
    def cache_key(self) -> str:
        return self.cache.generate_key(self.repo_path, self.config.exclude_paths, self.config.config_hash())

    async def scan(self) -> list[MarkerHit]:
        """Return every marker in the checkout, reusing cached results where valid."""
        key = self.cache_key
        commit = await self._current_commit()
        lookup = await self.cache.get(key, self.repo_path, commit or None)

        if lookup.hit and lookup.changed_files:
            file_results = await asyncio.to_thread(self._scan_paths, lookup.changed_files)
            file_cache = dict(lookup.file_cache)
            for path in lookup.changed_files:
                if path in file_results:
                    file_cache[path] = file_results[path]
                else:
                    file_cache.pop(path, None)
            markers = _flatten(file_cache)
            await self.cache.update_incremental(key, lookup.changed_files, {"markers": markers}, file_results)
            log.info("discovery_incremental_scan", changed_files=len(lookup.changed_files), markers=len(markers))
            return [MarkerHit(**hit) for hit in markers]

        if lookup.hit:
            log.debug("discovery_cache_hit", key=key)
            return [MarkerHit(**hit) for hit in (lookup.data or {}).get("markers", [])]

        log.info("discovery_full_scan", repo_path=self.repo_path, reason=lookup.reason)
        file_cache = await asyncio.to_thread(self._scan_tree)
        markers = _flatten(file_cache)
        await self.cache.set(key, self.repo_path, {"markers": markers}, self.config.exclude_paths, file_cache)
        return [MarkerHit(**hit) for hit in markers]

    async def discover(self, existing_titles: set[str], limit: int) -> list[DiscoveredTask]:
        """Candidate tasks whose titles are not already on the board.

        Args:
            existing_titles: Lower-cased titles already tracked
            limit: Maximum number of tasks to return
        """
        if limit <= 0:
            return []

        seen = set(existing_titles)
        tasks: list[DiscoveredTask] = []
        for hit in await self.scan():
            if not hit.text:
                continue
            task = _task_from_marker(hit)
            normalized = task.title.strip().lower()
            if normalized in seen:
                continue
            seen.add(normalized)
            tasks.append(task)
            if len(tasks) >= limit:
                break
        return tasks

    async def _current_commit(self) -> str:
        async def operation() -> str:
            return await git_info.get_commit_hash(self.repo_path)

        if self.git_breaker is not None:
            value, _ = await self.git_breaker.execute_with_fallback(operation, "")
            return value
        try:
            return await operation()
        except GitOperationError as e:
            log.debug("discovery_git_unavailable", error=e.message)
            return ""

    def _is_excluded(self, rel_path: str) -> bool:
        parts = Path(rel_path).parts
        if any(part in self._excluded for part in parts):
            return True
        return any(rel_path == path or rel_path.startswith(f"{path}/") for path in self._excluded)

    def _wanted(self, rel_path: str) -> bool:
        return Path(rel_path).suffix.lower() in self._extensions and not self._is_excluded(rel_path)

    def _scan_tree(self) -> dict[str, list[dict[str, Any]]]:
        results: dict[str, list[dict[str, Any]]] = {}
        root = Path(self.repo_path)
        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            dirnames[:] = sorted(
                d for d in dirnames if not self._is_excluded(d if rel_dir == "." else f"{rel_dir}/{d}")
            )
            for filename in sorted(filenames):
                rel_path = filename if rel_dir == "." else f"{rel_dir}/{filename}"
                if self._wanted(rel_path):
                    hits = self._scan_file(rel_path)
                    if hits:
                        results[rel_path] = hits
        return results

    def _scan_paths(self, rel_paths: list[str]) -> dict[str, list[dict[str, Any]]]:
        results: dict[str, list[dict[str, Any]]] = {}
        for rel_path in rel_paths:
            if self._wanted(rel_path) and (Path(self.repo_path) / rel_path).is_file():
                hits = self._scan_file(rel_path)
                if hits:
                    results[rel_path] = hits
        return results

    def _scan_file(self, rel_path: str) -> list[dict[str, Any]]:
        path = Path(self.repo_path) / rel_path
        try:
            if path.stat().st_size > MAX_FILE_BYTES:
                return []
            content = path.read_text(encoding="utf-8", errors="ignore")
        except OSError as e:
            log.debug("discovery_file_unreadable", path=rel_path, error=str(e))
            return []

        hits = []
        for line_number, line in enumerate(content.splitlines(), start=1):
            match = self._marker_re.search(line)
            if match:
                hits.append(MarkerHit(rel_path, line_number, match.group(1), match.group(2).strip()).to_dict())
        return hits


def _flatten(file_cache: dict[str, list[dict[str, Any]]]) -> list[dict[str, Any]]:
    return [hit for path in sorted(file_cache) for hit in file_cache[path]]


def _task_from_marker(hit: MarkerHit) -> DiscoveredTask:
    text = hit.text.rstrip(".")
    title = f"{hit.marker}: {text}"
    if len(title) > MAX_TITLE_LENGTH:
        title = title[: MAX_TITLE_LENGTH - 3].rstrip() + "..."

    body = (
        f"Found an unresolved `{hit.marker}` marker in `{hit.file}` at line {hit.line}:\n\n"
        f"> {hit.text}\n\n"
        "Resolve the marker and remove the comment once the work is done."
    )
    return DiscoveredTask(title=title, body=body, file=hit.file, line=hit.line)
