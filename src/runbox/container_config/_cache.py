"""Two-tier (memory LRU + one JSON file per key) container-config cache.

Disk is the source of truth. Memory only ever holds entries that were
successfully written to, or read from, disk; an entry whose file disappears is
dropped from memory on the next lookup. Disk errors are logged and reported as
misses, never raised.
"""

from __future__ import annotations

import hashlib
import json
import threading
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from runbox.logger import logger
from runbox.types import ContainerConfig, ContainerConfigCacheEntry, utc_now


def cache_key(language: str, packages: Iterable[str]) -> str:
    """First 16 hex chars of sha256 over ``language:sorted,packages``."""
    data = f"{language}:{','.join(sorted(packages))}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class CacheStats:
    memory_size: int
    disk_size: int
    cache_dir: str


class ContainerConfigCache:
    def __init__(self, cache_dir: str | Path, max_memory_entries: int = 100) -> None:
        self._dir = Path(cache_dir)
        self._max = max(1, max_memory_entries)
        self._memory: OrderedDict[str, ContainerConfigCacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def cache_dir(self) -> Path:
        return self._dir

    def _file(self, key: str) -> Path:
        return self._dir / f"{key}.json"

    def _write(self, key: str, entry: ContainerConfigCacheEntry) -> bool:
        path = self._file(key)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(entry.to_dict(), indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.warning("Config cache write failed", path=str(path), err=str(exc))
            return False
        return True

    def _remember(self, key: str, entry: ContainerConfigCacheEntry) -> None:
        # Caller holds the lock
        self._memory[key] = entry
        self._memory.move_to_end(key)
        while len(self._memory) > self._max:
            evicted, _ = self._memory.popitem(last=False)
            logger.debug("Config cache evicted", key=evicted)

    def get(self, language: str, packages: Iterable[str]) -> ContainerConfig | None:
        key = cache_key(language, packages)
        path = self._file(key)
        with self._lock:
            entry = self._memory.get(key)
            if entry is not None:
                if not path.exists():
                    del self._memory[key]
                    return None
                entry.hit_count += 1
                entry.last_accessed = utc_now()
                self._memory.move_to_end(key)
                self._write(key, entry)
                return entry.config

            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return None
            except (OSError, ValueError) as exc:
                logger.warning("Config cache read failed", path=str(path), err=str(exc))
                return None
            try:
                entry = ContainerConfigCacheEntry.from_dict(raw)
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Config cache entry malformed", path=str(path), err=str(exc))
                return None

            entry.hit_count += 1
            entry.last_accessed = utc_now()
            self._write(key, entry)
            self._remember(key, entry)
            return entry.config

    def set(self, language: str, packages: Iterable[str], config: ContainerConfig) -> bool:
        """Persist *config*; returns False (and leaves memory untouched) on disk failure."""
        pkgs = sorted(packages)
        key = cache_key(language, pkgs)
        entry = ContainerConfigCacheEntry(config=config, language=language, packages=pkgs)
        with self._lock:
            if not self._write(key, entry):
                return False
            self._remember(key, entry)
        return True

    def clear(self) -> None:
        with self._lock:
            self._memory.clear()
            try:
                files = list(self._dir.glob("*.json"))
            except OSError as exc:
                logger.warning("Config cache clear failed", err=str(exc))
                return
            for file in files:
                try:
                    file.unlink()
                except OSError as exc:
                    logger.warning("Config cache clear failed", path=str(file), err=str(exc))

    def stats(self) -> CacheStats:
        with self._lock:
            memory_size = len(self._memory)
        try:
            disk_size = sum(1 for _ in self._dir.glob("*.json")) if self._dir.is_dir() else 0
        except OSError:
            disk_size = 0
        return CacheStats(memory_size=memory_size, disk_size=disk_size, cache_dir=str(self._dir))
