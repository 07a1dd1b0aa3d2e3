"""
cache/store.py -- SQLite-backed TTL cache for identity projections.

Shortcuts the "am I authenticated" lookup: the session coordinator reads a
projection here first and only falls back to the identity store on a miss.
The cache is a derived, eventually-consistent view. It may be stale for up
to its TTL after an out-of-band mutation and is explicitly invalidated on the
mutations the core performs itself (block/unblock, password reset). It is
never read-after-write consistent with the identity store.

Any sqlite3 fault is re-raised as CacheUnavailable so callers can decide to
log and continue -- cache trouble must never fail a request.

Usage:
    cache = IdentityCache(Path("cache.db"), ttl=3600)
    # keys are "<kind>:<identity id>", see Identity.cache_key
    cache.set("user:7", {"id": 7, "is_blocked": False})
    data = cache.get("user:7")   # returns dict or None
    cache.invalidate("user:7")
    cache.purge_expired()        # called periodically by the API lifespan
"""

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Union

from core.errors import CacheUnavailable

_DEFAULT_TTL = 60 * 60  # 1 hour in seconds

_DDL = """
CREATE TABLE IF NOT EXISTS identity_cache (
    cache_key   TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class IdentityCache:
    def __init__(
        self,
        db_path: Union[Path, str],
        ttl: int = _DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        # One connection shared across FastAPI's worker threads; sqlite3
        # connections are not safe for concurrent use, so serialize access.
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(_DDL)
            self._conn.commit()
        except sqlite3.Error as e:
            raise CacheUnavailable("Identity cache could not be opened.", detail=str(e)) from e

    def get(self, key: str) -> Optional[dict]:
        """Return the cached projection for key if present and not expired."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT data, expires_at FROM identity_cache WHERE cache_key = ?",
                    (key,),
                ).fetchone()
                if row is None:
                    return None
                data, expires_at = row
                if expires_at <= self._clock():
                    self._conn.execute("DELETE FROM identity_cache WHERE cache_key = ?", (key,))
                    self._conn.commit()
                    return None
        except sqlite3.Error as e:
            raise CacheUnavailable("Identity cache read failed.", detail=str(e)) from e
        return json.loads(data)

    def set(self, key: str, data: dict, ttl: Optional[int] = None) -> None:
        """Store a projection for key, replacing any existing entry."""
        expires_at = self._clock() + (ttl if ttl is not None else self.ttl)
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO identity_cache (cache_key, data, expires_at) VALUES (?, ?, ?)",
                    (key, json.dumps(data), expires_at),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise CacheUnavailable("Identity cache write failed.", detail=str(e)) from e

    def invalidate(self, key: str) -> None:
        try:
            with self._lock:
                self._conn.execute("DELETE FROM identity_cache WHERE cache_key = ?", (key,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise CacheUnavailable("Identity cache invalidation failed.", detail=str(e)) from e

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        try:
            with self._lock:
                cursor = self._conn.execute("DELETE FROM identity_cache WHERE expires_at <= ?", (self._clock(),))
                self._conn.commit()
        except sqlite3.Error as e:
            raise CacheUnavailable("Identity cache purge failed.", detail=str(e)) from e
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
