"""Storage adapters: namespaced string keys to opaque string values.

No business logic lives here. Every adapter offers the plain
get/set/delete trio plus a few atomic helpers (``add``, ``pop``,
``update``) so that each broker operation can be a single
read-modify-write, safe under concurrent requests for the same key.
Expired entries are never returned; ``sweep`` only reclaims space.
"""

import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from loguru import logger

from .errors import Conflict, Unavailable

Updater = Callable[[str | None], str | None]


class StorageAdapter(ABC):
    """Uniform key-value contract consumed by every broker component."""

    @abstractmethod
    def get(self, key: str) -> str | None: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        """Store ``value``; ``ttl`` is in seconds, ``None`` means no expiry."""

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def add(self, key: str, value: str, ttl: float | None = None) -> bool:
        """Store only if ``key`` is absent. Returns True if stored."""

    @abstractmethod
    def pop(self, key: str) -> str | None:
        """Atomically read and delete."""

    @abstractmethod
    def update(self, key: str, fn: Updater, ttl: float | None = None) -> str | None:
        """Atomically replace the value with ``fn(old)``.

        ``fn`` returning None deletes the key. When ``ttl`` is None an
        existing expiry is preserved. Returns the new value.
        """

    @abstractmethod
    def keys(self, prefix: str) -> list[str]: ...

    def sweep(self) -> int:
        """Purge expired entries. Returns how many were removed."""
        return 0


class MemoryStorage(StorageAdapter):
    """Process-local adapter guarded by a single lock. Used in tests and dev."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.RLock()

    def _deadline(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def _live(self, key: str) -> tuple[str, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] is not None and entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        with self._lock:
            self._data[key] = (value, self._deadline(ttl))

    def delete(self, key: str) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            del self._data[key]
            return True

    def add(self, key: str, value: str, ttl: float | None = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl))
            return True

    def pop(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._data[key]
            return entry[0]

    def update(self, key: str, fn: Updater, ttl: float | None = None) -> str | None:
        with self._lock:
            entry = self._live(key)
            new = fn(entry[0] if entry else None)
            if new is None:
                self._data.pop(key, None)
                return None
            deadline = self._deadline(ttl) if ttl is not None else (entry[1] if entry else None)
            self._data[key] = (new, deadline)
            return new

    def keys(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k))

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
            for k in expired:
                del self._data[k]
            return len(expired)


class SQLiteStorage(StorageAdapter):
    """SQLite-backed adapter: one ``kv`` table, WAL journal.

    Atomic helpers run inside ``BEGIN IMMEDIATE`` so concurrent writers
    serialize on the database lock instead of interleaving.
    """

    def __init__(
        self,
        db_path: str | Path,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = str(db_path)
        self._timeout = timeout
        self._clock = clock
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self._timeout, isolation_level=None)
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as e:
            raise Unavailable(f"storage unavailable: {e}") from e
        return conn

    def _init_db(self) -> None:
        self._run(
            lambda conn: conn.executescript("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                );

                CREATE INDEX IF NOT EXISTS idx_kv_expires_at
                    ON kv(expires_at);
            """),
            transactional=False,
        )

    def _run(self, op, transactional: bool = True):
        conn = self._get_conn()
        try:
            if transactional:
                conn.execute("BEGIN IMMEDIATE")
            result = op(conn)
            if transactional:
                conn.execute("COMMIT")
            return result
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.warning(f"SQLite storage error on {self.db_path}: {e}")
            raise Unavailable(f"storage unavailable: {e}") from e
        except Exception:
            # Raised by an update callback: nothing may be committed
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _deadline(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def _read(self, conn: sqlite3.Connection, key: str) -> tuple[str, float | None] | None:
        row = conn.execute(
            "SELECT value, expires_at FROM kv WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        if row[1] is not None and row[1] <= self._clock():
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            return None
        return row

    def _write(self, conn, key: str, value: str, expires_at: float | None) -> None:
        conn.execute(
            "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
            "expires_at = excluded.expires_at",
            (key, value, expires_at),
        )

    def get(self, key: str) -> str | None:
        row = self._run(lambda conn: self._read(conn, key))
        return row[0] if row else None

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        self._run(lambda conn: self._write(conn, key, value, self._deadline(ttl)))

    def delete(self, key: str) -> bool:
        def op(conn):
            if self._read(conn, key) is None:
                return False
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            return True

        return self._run(op)

    def add(self, key: str, value: str, ttl: float | None = None) -> bool:
        def op(conn):
            if self._read(conn, key) is not None:
                return False
            self._write(conn, key, value, self._deadline(ttl))
            return True

        return self._run(op)

    def pop(self, key: str) -> str | None:
        def op(conn):
            row = self._read(conn, key)
            if row is None:
                return None
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            return row[0]

        return self._run(op)

    def update(self, key: str, fn: Updater, ttl: float | None = None) -> str | None:
        def op(conn):
            row = self._read(conn, key)
            new = fn(row[0] if row else None)
            if new is None:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                return None
            expires_at = self._deadline(ttl) if ttl is not None else (row[1] if row else None)
            self._write(conn, key, new, expires_at)
            return new

        return self._run(op)

    def keys(self, prefix: str) -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self._run(
            lambda conn: conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' "
                "AND (expires_at IS NULL OR expires_at > ?) ORDER BY key",
                (escaped + "%", self._clock()),
            ).fetchall(),
            transactional=False,
        )
        return [r[0] for r in rows]

    def sweep(self) -> int:
        return self._run(
            lambda conn: conn.execute(
                "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            ).rowcount
        )


def open_storage(
    backend: str, sqlite_path: str | None = None, timeout: float = 5.0
) -> StorageAdapter:
    if backend == "memory":
        return MemoryStorage()
    if backend == "sqlite":
        if not sqlite_path:
            raise ValueError("sqlite storage requires a database path")
        return SQLiteStorage(sqlite_path, timeout=timeout)
    raise ValueError(f"Unknown storage backend: {backend}")


# ── JSON list indexes ──────────────────────────────────────────────


def load_list(storage: StorageAdapter, key: str) -> list[str]:
    raw = storage.get(key)
    return json.loads(raw) if raw else []


def list_add(storage: StorageAdapter, key: str, item: str) -> None:
    """Append ``item`` to the JSON list at ``key`` unless already present."""

    def fn(raw):
        items = json.loads(raw) if raw else []
        if item not in items:
            items.append(item)
        return json.dumps(items)

    storage.update(key, fn)


def list_remove(storage: StorageAdapter, key: str, item: str) -> None:
    """Remove ``item``; the key is dropped once the list is empty."""

    def fn(raw):
        items = [i for i in (json.loads(raw) if raw else []) if i != item]
        return json.dumps(items) if items else None

    storage.update(key, fn)


# ── Key segments ───────────────────────────────────────────────────

KEY_SEPARATOR = ":"


def key_segment(value: str | None, what: str) -> str:
    """Check that ``value`` can sit between separators in a storage key.

    Empty values and values containing the separator are refused so that
    one caller-supplied name can never spell another record's key.
    """
    if not value or not isinstance(value, str):
        raise Conflict(f"{what} must be a non-empty string")
    if KEY_SEPARATOR in value:
        raise Conflict(f"{what} must not contain '{KEY_SEPARATOR}': {value!r}")
    return value


def purge_prefix(storage: StorageAdapter, prefix: str) -> int:
    """Delete every live key under ``prefix``. Returns how many were removed."""
    return sum(1 for key in storage.keys(prefix) if storage.delete(key))
