"""
Disk cache helpers.

``BaseDiskCache`` wraps a diskcache (SQLite-backed) store and turns its
failures into ``CacheError``; ``hash_inputs`` builds stable keys from
mixed arguments. The LLM response cache is the only subclass today.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import diskcache

from devtrends.common.exceptions import CacheError


def hash_inputs(*args: Any, separator: str = "|") -> str:
    """
    SHA-256 hex digest of the non-None arguments.

    Containers are dumped as JSON with sorted keys, so two dicts with the
    same items give the same key whatever their insertion order.
    """
    parts = [
        json.dumps(arg, sort_keys=True, default=str)
        if isinstance(arg, (dict, list, tuple))
        else str(arg)
        for arg in args
        if arg is not None
    ]
    return hashlib.sha256(separator.join(parts).encode()).hexdigest()


class BaseDiskCache:
    """
    Shared on-disk key/value store.

    diskcache handles its own locking, so API workers in separate processes
    can point at one directory.
    """

    SIZE_LIMIT_BYTES = 256 * 1024 * 1024

    def __init__(self, cache_dir: str | Path, size_limit: int | None = None):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._cache = diskcache.Cache(
            str(self.cache_dir), size_limit=size_limit or self.SIZE_LIMIT_BYTES
        )

    def get(self, cache_key: str) -> dict[str, Any] | None:
        """
        Raises:
            CacheError: If the store cannot be read
        """
        try:
            return self._cache.get(cache_key)
        except Exception as e:
            raise CacheError("Cache read failed", context={"key": cache_key}) from e

    def set(self, cache_key: str, data: dict[str, Any], expire: float | None = None) -> None:
        """
        Store ``data`` under ``cache_key``; ``expire`` is a TTL in seconds.

        Raises:
            CacheError: If the store cannot be written
        """
        try:
            self._cache.set(cache_key, data, expire=expire)
        except Exception as e:
            raise CacheError("Cache write failed", context={"key": cache_key}) from e

    def __len__(self) -> int:
        return len(self._cache)

    def close(self) -> None:
        self._cache.close()


__all__ = ["BaseDiskCache", "hash_inputs"]
