"""File-backed query result cache with per-entry TTL."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# KQL string literals, including multi-line ``` blocks
_STRING_LITERAL = re.compile(r'```.*?```|"(?:[^"\\\n]|\\.)*"|\'(?:[^\'\\\n]|\\.)*\'', re.DOTALL)
_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """
    Collapse whitespace runs outside string literals.

    Formatting-only edits share a cache entry, while ``"disk  full"`` and
    ``"disk full"`` remain different queries.
    """
    parts: list[str] = []
    pos = 0
    for match in _STRING_LITERAL.finditer(query):
        parts.append(_WHITESPACE.sub(" ", query[pos:match.start()]))
        parts.append(match.group(0))
        pos = match.end()
    parts.append(_WHITESPACE.sub(" ", query[pos:]))
    return "".join(parts).strip()


def fingerprint(profile_identity: str, query: str, limit: int | None = None) -> str:
    """Stable cache key for (profile, normalized query, row limit)."""
    key = json.dumps([profile_identity, normalize_query(query), limit])
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """A cached result and when it was stored."""
    data: Any
    created_at: float
    ttl_seconds: float

    def age(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.created_at

    def is_expired(self, now: float | None = None) -> bool:
        return self.age(now) >= self.ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data, "created_at": self.created_at, "ttl_seconds": self.ttl_seconds}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            data=data["data"],
            created_at=float(data["created_at"]),
            ttl_seconds=float(data["ttl_seconds"]),
        )


@dataclass
class CacheStats:
    total_entries: int
    expired_entries: int
    total_size_bytes: int
    cache_path: str


class QueryCache:
    """
    One JSON file per fingerprint under ``cache_dir``.

    The directory is created on the first ``set`` only, so workspaces that
    never cache never get cache files. Expired entries count as a miss and
    are removed when looked up; nothing sweeps in the background.
    Writes are atomic (temp file + rename); concurrent writers of one key
    leave whichever result landed last.
    """

    def __init__(self, cache_dir: str | Path):
        self.cache_dir = Path(cache_dir)

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def _read(self, path: Path) -> CacheEntry | None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return CacheEntry.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cache file {path.name}: {e}")
            return None

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key``, or None if absent or expired."""
        path = self._path(key)
        entry = self._read(path)
        if entry is None:
            logger.debug(f"Cache miss for key: {key[:12]}")
            return None

        if entry.is_expired():
            logger.debug(
                f"Cache expired for key: {key[:12]} "
                f"(age: {entry.age():.0f}s, ttl: {entry.ttl_seconds:.0f}s)"
            )
            self.delete(key)
            return None

        logger.debug(f"Cache hit for key: {key[:12]} (age: {entry.age():.0f}s)")
        return entry

    def set(self, key: str, data: Any, ttl_seconds: float) -> None:
        """Store ``data`` under ``key``, creating the cache directory if needed."""
        if not self.cache_dir.exists():
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created cache directory: {self.cache_dir}")

        entry = CacheEntry(data=data, created_at=time.time(), ttl_seconds=float(ttl_seconds))
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Cached data for key: {key[:12]} (ttl: {entry.ttl_seconds:.0f}s)")

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def _entry_files(self) -> list[Path]:
        if not self.cache_dir.is_dir():
            return []
        return [p for p in self.cache_dir.glob("*.json") if not p.name.startswith(".tmp-")]

    def clear(self) -> int:
        """Remove every cache entry. Returns how many were removed."""
        files = self._entry_files()
        for path in files:
            path.unlink(missing_ok=True)
        logger.info(f"Cleared {len(files)} cache entries")
        return len(files)

    def cleanup_expired(self) -> int:
        """Remove expired entries. Only runs when a caller asks for it."""
        now = time.time()
        cleaned = 0
        for path in self._entry_files():
            entry = self._read(path)
            if entry is None or entry.is_expired(now):
                path.unlink(missing_ok=True)
                cleaned += 1
        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired cache entries")
        return cleaned

    def stats(self) -> CacheStats:
        now = time.time()
        total = expired = size = 0
        for path in self._entry_files():
            total += 1
            try:
                size += path.stat().st_size
            except OSError:
                continue
            entry = self._read(path)
            if entry is None or entry.is_expired(now):
                expired += 1
        return CacheStats(
            total_entries=total,
            expired_entries=expired,
            total_size_bytes=size,
            cache_path=str(self.cache_dir),
        )
