"""Tests for the two-tier container-config cache."""

from __future__ import annotations

import json
from pathlib import Path

from runbox.container_config import ContainerConfigCache, cache_key
from runbox.types import CacheVolume, ContainerConfig

CONFIG = ContainerConfig(
    base_image="python:3.11-alpine",
    setup_commands=("pip install requests",),
    run_command=("python", "/app/code.py"),
    cache_volumes=(CacheVolume("pip-cache", "/root/.cache/pip"),),
)


def test_key_is_order_insensitive_and_short():
    assert cache_key("python", ["b", "a"]) == cache_key("python", ["a", "b"])
    assert len(cache_key("python", [])) == 16
    assert cache_key("python", ["a"]) != cache_key("ruby", ["a"])


def test_set_then_get(tmp_path: Path):
    cache = ContainerConfigCache(tmp_path)
    assert cache.set("python", ["requests"], CONFIG)
    assert cache.get("python", ["requests"]) == CONFIG


def test_miss(tmp_path: Path):
    assert ContainerConfigCache(tmp_path).get("python", ["nope"]) is None


def test_disk_file_format(tmp_path: Path):
    cache = ContainerConfigCache(tmp_path)
    cache.set("python", ["b", "a"], CONFIG)
    raw = json.loads((tmp_path / f"{cache_key('python', ['a', 'b'])}.json").read_text())
    assert raw["language"] == "python"
    assert raw["packages"] == ["a", "b"]
    assert raw["hitCount"] == 1
    assert raw["config"]["baseImage"] == "python:3.11-alpine"
    assert raw["config"]["cacheVolumes"] == [{"name": "pip-cache", "mountPath": "/root/.cache/pip"}]
    assert "createdAt" in raw
    assert "lastAccessed" in raw


def test_survives_restart_and_counts_hits(tmp_path: Path):
    ContainerConfigCache(tmp_path).set("python", [], CONFIG)

    fresh = ContainerConfigCache(tmp_path)
    assert fresh.get("python", []) == CONFIG
    assert fresh.get("python", []) == CONFIG
    raw = json.loads((tmp_path / f"{cache_key('python', [])}.json").read_text())
    assert raw["hitCount"] == 3


def test_memory_entry_dropped_when_file_deleted(tmp_path: Path):
    cache = ContainerConfigCache(tmp_path)
    cache.set("python", [], CONFIG)
    (tmp_path / f"{cache_key('python', [])}.json").unlink()
    assert cache.get("python", []) is None
    assert cache.stats().memory_size == 0


def test_lru_eviction_keeps_disk(tmp_path: Path):
    cache = ContainerConfigCache(tmp_path, max_memory_entries=2)
    for lang in ("a", "b", "c"):
        cache.set(lang, [], CONFIG)
    stats = cache.stats()
    assert stats.memory_size == 2
    assert stats.disk_size == 3
    # Evicted entry still comes back from disk
    assert cache.get("a", []) == CONFIG


def test_corrupt_file_is_a_miss(tmp_path: Path):
    cache = ContainerConfigCache(tmp_path)
    (tmp_path / f"{cache_key('python', [])}.json").write_text("{not json")
    assert cache.get("python", []) is None


def test_malformed_entry_is_a_miss(tmp_path: Path):
    cache = ContainerConfigCache(tmp_path)
    (tmp_path / f"{cache_key('python', [])}.json").write_text(
        json.dumps({"language": "python", "config": {"baseImage": ""}})
    )
    assert cache.get("python", []) is None


def test_write_failure_returns_false_and_skips_memory(tmp_path: Path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    cache = ContainerConfigCache(blocker / "sub")
    assert cache.set("python", [], CONFIG) is False
    assert cache.stats().memory_size == 0
    assert cache.get("python", []) is None


def test_clear(tmp_path: Path):
    cache = ContainerConfigCache(tmp_path)
    cache.set("python", [], CONFIG)
    cache.set("ruby", [], CONFIG)
    cache.clear()
    stats = cache.stats()
    assert (stats.memory_size, stats.disk_size) == (0, 0)
    assert stats.cache_dir == str(tmp_path)
