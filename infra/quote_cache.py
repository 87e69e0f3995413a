"""
holdwatch Infrastructure: Quote/Sentiment Cache

TTL cache for point-in-time readings keyed by ``"{kind}:{symbol}"``.
Several screens may share one backing store; every value is an idempotent
reading, so writes are last-write-wins with no cross-process locking.
"""

import json
import os
import sqlite3
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from core.exceptions import CacheError

logger = logging.getLogger(__name__)


PRICE_TTL_SECONDS = 300


class CacheKind(Enum):
    PRICE = "price"
    SENTIMENT = "sentiment"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


def cache_key(kind: CacheKind, symbol: str) -> str:
    return f"{kind.value}:{symbol}"


class MemoryCacheBackend:
    """In-process backend. Not shared across processes."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[float, float]] = {}

    def describe(self) -> str:
        return "memory"

    def read(self, key: str) -> Optional[Tuple[float, float]]:
        return self._entries.get(key)

    def write(self, key: str, value: float, expires_at: float) -> None:
        self._entries[key] = (value, expires_at)

    def purge(self, now: float) -> int:
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


class JsonFileCacheBackend:
    """
    Single JSON file shared by every screen.

    Writes go to a temp file first and are swapped in with ``os.replace`` so
    readers never see a half-written document.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def describe(self) -> str:
        return f"json:{self.path}"

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Invalid cache file format in {self.path}")
        return data

    def _store(self, data: Dict[str, Any]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".cache_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def read(self, key: str) -> Optional[Tuple[float, float]]:
        entry = self._load().get(key)
        if entry is None:
            return None
        return float(entry["value"]), float(entry["expires_at"])

    def write(self, key: str, value: float, expires_at: float) -> None:
        data = self._load()
        data[key] = {"value": value, "expires_at": expires_at}
        self._store(data)

    def purge(self, now: float) -> int:
        data = self._load()
        expired = [k for k, entry in data.items() if float(entry.get("expires_at", 0)) <= now]
        if expired:
            for key in expired:
                del data[key]
            self._store(data)
        return len(expired)


class SQLiteCacheBackend:
    """SQLite table shared by every screen."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path))
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS quote_cache (
                    key TEXT PRIMARY KEY,
                    value REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def describe(self) -> str:
        return f"sqlite:{self.path}"

    def read(self, key: str) -> Optional[Tuple[float, float]]:
        conn = sqlite3.connect(str(self.path))
        try:
            row = conn.execute(
                "SELECT value, expires_at FROM quote_cache WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return float(row[0]), float(row[1])

    def write(self, key: str, value: float, expires_at: float) -> None:
        conn = sqlite3.connect(str(self.path))
        try:
            conn.execute(
                "INSERT OR REPLACE INTO quote_cache (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, expires_at),
            )
            conn.commit()
        finally:
            conn.close()

    def purge(self, now: float) -> int:
        conn = sqlite3.connect(str(self.path))
        try:
            cursor = conn.execute("DELETE FROM quote_cache WHERE expires_at <= ?", (now,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


class QuoteCache:
    """
    Cache-aside store for prices and sentiment scores.

    ``get`` returns a value only while ``now < expires_at``; any backend
    failure is raised as CacheError so callers never mistake an outage for a
    miss.
    """

    def __init__(self, backend=None, clock: Optional[Callable[[], float]] = None):
        self._backend = backend or MemoryCacheBackend()
        self._clock = clock or time.time
        logger.info(f"Initialized QuoteCache ({self._backend.describe()})")

    def describe(self) -> str:
        return self._backend.describe()

    def get(self, kind: CacheKind, symbol: str) -> Optional[float]:
        key = cache_key(kind, symbol)
        try:
            entry = self._backend.read(key)
        except Exception as e:
            raise CacheError("get", key, e) from e
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            return None
        return value

    def set(self, kind: CacheKind, symbol: str, value: float, ttl_seconds: float) -> None:
        key = cache_key(kind, symbol)
        expires_at = self._clock() + float(ttl_seconds)
        try:
            self._backend.write(key, float(value), expires_at)
        except Exception as e:
            raise CacheError("set", key, e) from e

    def ttl_remaining(self, kind: CacheKind, symbol: str) -> Optional[float]:
        """Seconds until the entry expires, or None when absent or already expired."""
        key = cache_key(kind, symbol)
        try:
            entry = self._backend.read(key)
        except Exception as e:
            raise CacheError("ttl", key, e) from e
        if entry is None:
            return None
        remaining = entry[1] - self._clock()
        return remaining if remaining > 0 else None

    def purge_expired(self) -> int:
        try:
            removed = self._backend.purge(self._clock())
        except Exception as e:
            raise CacheError("purge", "*", e) from e
        if removed:
            logger.debug(f"Purged {removed} expired cache entries")
        return removed


def create_quote_cache_from_config(cfg: Optional[Dict[str, Any]], clock: Optional[Callable[[], float]] = None) -> QuoteCache:
    """
    Build the cache selected by ``state.cache_backend``.

    Args:
        cfg: ``state`` section of app.yaml ({"cache_backend": "sqlite", "cache_path": "data/cache.db"})
    """
    cfg = cfg or {}
    backend_name = str(cfg.get("cache_backend", "memory")).lower()
    path = cfg.get("cache_path")

    if backend_name == "memory":
        backend = MemoryCacheBackend()
    elif backend_name == "json":
        backend = JsonFileCacheBackend(Path(path or "data/quote_cache.json"))
    elif backend_name == "sqlite":
        backend = SQLiteCacheBackend(Path(path or "data/quote_cache.db"))
    else:
        raise ValueError(f"Unsupported cache backend: {backend_name}")

    return QuoteCache(backend=backend, clock=clock)


__all__ = [
    "PRICE_TTL_SECONDS",
    "CacheKind",
    "cache_key",
    "MemoryCacheBackend",
    "JsonFileCacheBackend",
    "SQLiteCacheBackend",
    "QuoteCache",
    "create_quote_cache_from_config",
]
