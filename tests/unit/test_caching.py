"""Tests for repo_autopilot/utils/caching.py - persistent analysis cache."""

import json
from unittest.mock import AsyncMock

import pytest

from repo_autopilot.exceptions import GitOperationError
from repo_autopilot.utils import git_info
from repo_autopilot.utils.caching import PersistentAnalysisCache, compute_content_hash


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    (path / "app.py").write_text("print('hi')\n")
    return path


@pytest.fixture
def git_head(monkeypatch):
    """Pretend the checkout is a git repo at commit c1."""
    head = AsyncMock(return_value="c1")
    monkeypatch.setattr(git_info, "get_commit_hash", head)
    monkeypatch.setattr(git_info, "get_current_branch", AsyncMock(return_value="main"))
    monkeypatch.setattr(git_info, "get_changed_files", AsyncMock(return_value=["app.py"]))
    return head


@pytest.fixture
def no_git(monkeypatch):
    """Pretend git is unavailable."""
    failing = AsyncMock(side_effect=GitOperationError("not a git repository"))
    monkeypatch.setattr(git_info, "get_commit_hash", failing)
    monkeypatch.setattr(git_info, "get_current_branch", failing)
    monkeypatch.setattr(git_info, "get_changed_files", failing)


@pytest.fixture
def cache(tmp_path, clock):
    return PersistentAnalysisCache(cache_dir=tmp_path / "cache", clock=clock)


class TestKeys:
    """Tests for key generation."""

    def test_exclude_order_ignored(self):
        """Should produce the same key regardless of exclude path order."""
        first = PersistentAnalysisCache.generate_key("/repo", ["dist", "vendor"], "h1")
        second = PersistentAnalysisCache.generate_key("/repo", ["vendor", "dist"], "h1")

        assert first == second

    def test_config_hash_changes_key(self):
        """Should produce a different key for a different configuration."""
        assert PersistentAnalysisCache.generate_key("/repo", [], "h1") != PersistentAnalysisCache.generate_key(
            "/repo", [], "h2"
        )


class TestLookup:
    """Tests for get/set."""

    @pytest.mark.asyncio
    async def test_disabled_cache_misses(self, tmp_path, repo):
        """Should always miss when disabled."""
        cache = PersistentAnalysisCache(cache_dir=tmp_path / "cache", enabled=False)

        result = await cache.get("k", str(repo))

        assert result.hit is False
        assert result.reason == "Cache disabled"

    @pytest.mark.asyncio
    async def test_absent_entry_misses(self, cache, repo):
        """Should miss and count the miss for unknown keys."""
        result = await cache.get("missing", str(repo), "c1")

        assert result.hit is False
        assert result.reason == "No cache entry found"
        assert cache.get_stats().misses == 1

    @pytest.mark.asyncio
    async def test_same_commit_hits(self, cache, repo, git_head):
        """Should hit while HEAD is unchanged."""
        await cache.set("k", str(repo), {"markers": [1]}, ["dist"])

        result = await cache.get("k", str(repo), "c1")

        assert result.hit is True
        assert result.reason == "Cache hit"
        assert result.data == {"markers": [1]}
        assert result.requires_full_analysis is False
        assert cache.get_stats().hit_rate == 1.0

    @pytest.mark.asyncio
    async def test_hit_rate_counts_hits_and_misses(self, cache, repo, git_head):
        """Should report hits over all lookups."""
        await cache.set("k", str(repo), {"markers": []}, [])

        await cache.get("k", str(repo), "c1")
        await cache.get("k", str(repo), "c1")
        await cache.get("k", str(repo), "c1")
        await cache.get("missing", str(repo), "c1")

        stats = cache.get_stats()
        assert (stats.hits, stats.misses) == (3, 1)
        assert stats.hit_rate == 0.75

    @pytest.mark.asyncio
    async def test_callers_cannot_mutate_entries(self, cache, repo, git_head):
        """Should keep the stored payload independent of the caller's objects."""
        analysis = {"markers": [1]}
        await cache.set("k", str(repo), analysis, [])
        analysis["markers"].append(2)

        first = await cache.get("k", str(repo), "c1")
        first.data["markers"].append(3)
        second = await cache.get("k", str(repo), "c1")

        assert second.data == {"markers": [1]}
        persisted = json.loads((cache.cache_dir / "k.json").read_text())
        assert persisted["data"] == second.data

    @pytest.mark.asyncio
    async def test_expired_entry_misses(self, cache, repo, git_head, clock):
        """Should drop entries older than the TTL."""
        await cache.set("k", str(repo), {"markers": []}, [])
        clock.advance(31 * 60)

        result = await cache.get("k", str(repo), "c1")

        assert result.hit is False
        assert result.reason == "Cache entry expired"
        assert not (cache.cache_dir / "k.json").exists()

    @pytest.mark.asyncio
    async def test_commit_change_offers_incremental(self, cache, repo, git_head):
        """Should report changed files when git can list them."""
        await cache.set("k", str(repo), {"markers": []}, [], file_cache={"app.py": []})

        result = await cache.get("k", str(repo), "c2")

        assert result.hit is True
        assert result.reason == "Incremental update available"
        assert result.changed_files == ["app.py"]
        assert result.file_cache == {"app.py": []}

    @pytest.mark.asyncio
    async def test_commit_change_without_diff_invalidates(self, cache, repo, git_head, monkeypatch):
        """Should invalidate when the changed files cannot be listed."""
        await cache.set("k", str(repo), {"markers": []}, [])
        monkeypatch.setattr(
            git_info, "get_changed_files", AsyncMock(side_effect=GitOperationError("bad revision"))
        )

        result = await cache.get("k", str(repo), "c2")

        assert result.hit is False
        assert result.reason == "Git commit changed"
        assert cache.get_stats().invalidations == 1

    @pytest.mark.asyncio
    async def test_incremental_disabled_invalidates(self, tmp_path, repo, git_head, clock):
        """Should not diff commits when incremental analysis is off."""
        cache = PersistentAnalysisCache(cache_dir=tmp_path / "cache", enable_incremental_analysis=False, clock=clock)
        await cache.set("k", str(repo), {"markers": []}, [])

        result = await cache.get("k", str(repo), "c2")

        assert result.reason == "Git commit changed"

    @pytest.mark.asyncio
    async def test_content_hash_without_git(self, cache, repo, no_git):
        """Should fall back to the content hash outside git."""
        await cache.set("k", str(repo), {"markers": []}, [])
        assert (await cache.get("k", str(repo))).hit is True

        (repo / "new_module.py").write_text("x = 1\n")
        result = await cache.get("k", str(repo))

        assert result.hit is False
        assert result.reason == "Content hash changed"

    @pytest.mark.asyncio
    async def test_oversized_entry_not_stored(self, tmp_path, repo, git_head):
        """Should refuse entries larger than the whole cache."""
        cache = PersistentAnalysisCache(cache_dir=tmp_path / "cache", max_size_bytes=64)

        await cache.set("k", str(repo), {"markers": ["x" * 200]}, [])

        assert cache.get_stats().total_entries == 0


class TestEviction:
    """Tests for LRU eviction."""

    @pytest.mark.asyncio
    async def test_least_recently_used_evicted(self, tmp_path, repo, git_head, clock):
        """Should evict the entry accessed longest ago."""
        cache = PersistentAnalysisCache(cache_dir=tmp_path / "cache", max_entries=2, clock=clock)
        await cache.set("a", str(repo), {}, [])
        clock.advance(1)
        await cache.set("b", str(repo), {}, [])
        clock.advance(1)
        await cache.get("a", str(repo), "c1")
        clock.advance(1)

        await cache.set("c", str(repo), {}, [])

        assert (await cache.get("a", str(repo), "c1")).hit is True
        assert (await cache.get("b", str(repo), "c1")).hit is False
        assert cache.get_stats().evictions == 1


class TestPersistence:
    """Tests for disk persistence."""

    @pytest.mark.asyncio
    async def test_warm_cache_restores_entries(self, tmp_path, repo, git_head, clock):
        """Should reload persisted entries in a new instance."""
        first = PersistentAnalysisCache(cache_dir=tmp_path / "cache", clock=clock)
        await first.set("k", str(repo), {"markers": [{"file": "app.py"}]}, [])

        second = PersistentAnalysisCache(cache_dir=tmp_path / "cache", clock=clock)
        loaded = await second.warm_cache()
        result = await second.get("k", str(repo), "c1")

        assert loaded == 1
        assert result.hit is True
        assert result.data == {"markers": [{"file": "app.py"}]}

    @pytest.mark.asyncio
    async def test_warm_cache_skips_corrupt_and_expired(self, tmp_path, repo, git_head, clock):
        """Should ignore unreadable files and delete expired ones."""
        first = PersistentAnalysisCache(cache_dir=tmp_path / "cache", clock=clock)
        await first.set("old", str(repo), {}, [])
        (tmp_path / "cache" / "broken.json").write_text("{not json")
        (tmp_path / "cache" / "foreign.json").write_text(json.dumps({"version": 99}))
        clock.advance(31 * 60)

        second = PersistentAnalysisCache(cache_dir=tmp_path / "cache", clock=clock)
        loaded = await second.warm_cache()

        assert loaded == 0
        assert not (tmp_path / "cache" / "old.json").exists()

    @pytest.mark.asyncio
    async def test_clear_removes_files(self, cache, repo, git_head):
        """Should remove every entry from memory and disk."""
        await cache.set("k", str(repo), {}, [])

        await cache.clear()

        assert cache.get_stats().total_entries == 0
        assert list(cache.cache_dir.glob("*.json")) == []

    @pytest.mark.asyncio
    async def test_invalidate_by_repo_path(self, cache, repo, tmp_path, git_head):
        """Should drop only the entries for the given repository."""
        other = tmp_path / "other"
        other.mkdir()
        await cache.set("a", str(repo), {}, [])
        await cache.set("b", str(other), {}, [])

        removed = await cache.invalidate(str(repo))

        assert removed == 1
        assert (await cache.get("b", str(other), "c1")).hit is True


class TestIncrementalUpdate:
    """Tests for update_incremental."""

    @pytest.mark.asyncio
    async def test_patches_changed_files(self, cache, repo, git_head):
        """Should replace results for changed files and drop deleted ones."""
        await cache.set(
            "k",
            str(repo),
            {"markers": ["old"], "version": 1},
            [],
            file_cache={"app.py": ["old"], "gone.py": ["stale"]},
        )
        git_head.return_value = "c2"

        updated = await cache.update_incremental(
            "k", ["app.py", "gone.py"], {"markers": ["new"]}, {"app.py": ["new"]}
        )
        result = await cache.get("k", str(repo), "c2")

        assert updated is True
        assert result.data == {"markers": ["new"], "version": 1}
        assert result.file_cache == {"app.py": ["new"]}
        assert cache.get_stats().incremental_updates == 1

    @pytest.mark.asyncio
    async def test_unknown_key(self, cache):
        """Should report False for keys that are not cached."""
        assert await cache.update_incremental("missing", ["a.py"], {}) is False


class TestContentHash:
    """Tests for compute_content_hash."""

    def test_skips_dependency_dirs(self, repo):
        """Should ignore files under node_modules."""
        before = compute_content_hash(repo)
        (repo / "node_modules").mkdir()
        (repo / "node_modules" / "lib.js").write_text("x")

        assert compute_content_hash(repo) == before

    def test_detects_new_files(self, repo):
        """Should change when a sampled file is added."""
        before = compute_content_hash(repo)
        (repo / "extra.py").write_text("y = 2\n")

        assert compute_content_hash(repo) != before
