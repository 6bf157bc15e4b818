"""Idempotency store adapters for OnceOnly.

Every adapter provides the same four primitives over a key-value store:

- create(record): insert only if no record exists (RecordConflictError otherwise)
- get(key): strongly consistent read (RecordNotFoundError if absent)
- update(key, result): set result and status=COMPLETED on an existing record
- delete(key): remove the record; a no-op if already absent

Mutual exclusion across threads and processes rests entirely on the atomicity
of create(). Any other failure surfaces as PersistenceError.

Adapters in this module:
- InMemoryIdempotencyStore: reference implementation (single process)
- SqliteIdempotencyStore: local file-backed store (single host)
"""

from __future__ import annotations

import contextlib
import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from onceonly.idempotency.errors import (
    PersistenceError,
    RecordConflictError,
    RecordNotFoundError,
)
from onceonly.idempotency.record import (
    DEFAULT_CODEC,
    IdempotencyRecord,
    RecordStatus,
    ResultCodec,
)

logger = logging.getLogger(__name__)

ONCEONLY_SQLITE_PATH_ENV = "ONCEONLY_SQLITE_PATH"
DEFAULT_SQLITE_PATH = "./var/idempotency/onceonly.sqlite3"


@runtime_checkable
class IdempotencyStore(Protocol):
    """Contract every idempotency store adapter satisfies.

    Implementations must be safe for concurrent use by multiple threads.
    """

    def create(self, record: IdempotencyRecord) -> None:
        """Insert record only if no record exists for record.key.

        Raises:
            RecordConflictError: If a record already exists for the key.
            PersistenceError: On any other store failure.
        """
        ...

    def get(self, key: str) -> IdempotencyRecord:
        """Read the record for key with strong consistency.

        Raises:
            RecordNotFoundError: If no record exists for the key.
            PersistenceError: On any other store failure.
        """
        ...

    def update(self, key: str, result: Any) -> None:
        """Set result and status=COMPLETED for an existing record.

        Raises:
            PersistenceError: If the record is absent or the write fails.
        """
        ...

    def delete(self, key: str) -> None:
        """Remove the record for key if present.

        Raises:
            PersistenceError: If the delete fails.
        """
        ...

    def close(self) -> None:
        """Release store resources."""
        ...


class InMemoryIdempotencyStore:
    """Reference store adapter backed by a dict and a lock.

    Records are kept in their wire encoding so encoding failures and result
    round-trips behave exactly as in the persistent adapters.
    """

    backend_name = "memory"

    def __init__(self, codec: ResultCodec = DEFAULT_CODEC) -> None:
        self._codec = codec
        self._items: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, record: IdempotencyRecord) -> None:
        item = self._encode(record)
        with self._lock:
            if record.key in self._items:
                raise RecordConflictError(key=record.key)
            self._items[record.key] = item

    def get(self, key: str) -> IdempotencyRecord:
        with self._lock:
            item = self._items.get(key)
        if item is None:
            raise RecordNotFoundError(key=key)
        return self._decode(key, item)

    def update(self, key: str, result: Any) -> None:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                raise PersistenceError("Cannot update missing idempotency record", key=key)
            current = self._decode(key, item)
            self._items[key] = self._encode(current.completed(result))

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def close(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _encode(self, record: IdempotencyRecord) -> dict[str, Any]:
        try:
            return record.to_item(self._codec)
        except (TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to encode idempotency record: {e}", key=record.key, cause=e
            ) from e

    def _decode(self, key: str, item: dict[str, Any]) -> IdempotencyRecord:
        try:
            return IdempotencyRecord.from_item(item, self._codec)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to decode idempotency record: {e}", key=key, cause=e
            ) from e


class SqliteIdempotencyStore:
    """SQLite-backed idempotency store with thread-safe access.

    Creates the database and parent directories on first use.
    Uses WAL mode for better concurrent read performance.

    Environment:
        ONCEONLY_SQLITE_PATH: Path to SQLite database file.
            Default: ./var/idempotency/onceonly.sqlite3
    """

    backend_name = "sqlite"

    _CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS idempotency_records (
            key TEXT NOT NULL PRIMARY KEY,
            expires_at INTEGER NOT NULL,
            status TEXT NOT NULL,
            result TEXT
        )
    """

    _INSERT_SQL = """
        INSERT INTO idempotency_records (key, expires_at, status, result)
        VALUES (?, ?, ?, ?)
    """

    _SELECT_SQL = """
        SELECT key, expires_at, status, result
        FROM idempotency_records
        WHERE key = ?
    """

    _UPDATE_SQL = """
        UPDATE idempotency_records
        SET result = ?, status = ?
        WHERE key = ?
    """

    _DELETE_SQL = "DELETE FROM idempotency_records WHERE key = ?"

    def __init__(
        self,
        db_path: str | None = None,
        codec: ResultCodec = DEFAULT_CODEC,
        busy_timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize the idempotency store.

        Args:
            db_path: Path to SQLite database file. If None, uses environment
                variable ONCEONLY_SQLITE_PATH or default path.
            codec: Result codec used to serialize operation results.
            busy_timeout_seconds: How long a writer waits on a locked database.
        """
        if db_path is None:
            db_path = os.environ.get(ONCEONLY_SQLITE_PATH_ENV, DEFAULT_SQLITE_PATH)

        self._db_path = db_path
        self._codec = codec
        self._busy_timeout = busy_timeout_seconds
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._initialized = False
        self._init_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create a thread-local database connection.

        Raises:
            PersistenceError: If connection cannot be established.
        """
        if not self._initialized:
            with self._init_lock:
                if not self._initialized:
                    self._ensure_database()
                    self._initialized = True

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    self._db_path, timeout=self._busy_timeout, check_same_thread=False
                )
                conn.row_factory = sqlite3.Row
                self._local.conn = conn
                with self._init_lock:
                    self._connections.append(conn)
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Failed to connect to idempotency store: {e}", cause=e
                ) from e

        return conn

    def _ensure_database(self) -> None:
        """Create database file and table if they don't exist.

        Raises:
            PersistenceError: If database cannot be created.
        """
        try:
            db_path = Path(self._db_path)

            if db_path.is_dir():
                raise PersistenceError(f"Idempotency store path is a directory: {self._db_path}")

            db_path.parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout)
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(self._CREATE_TABLE_SQL)
                conn.commit()
            finally:
                conn.close()

            logger.info("Initialized idempotency store at %s", self._db_path)

        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to initialize idempotency store: {e}", cause=e) from e
        except OSError as e:
            raise PersistenceError(
                f"Failed to create idempotency store directory: {e}", cause=e
            ) from e

    def create(self, record: IdempotencyRecord) -> None:
        item = self._encode(record)
        conn = self._get_connection()
        try:
            conn.execute(
                self._INSERT_SQL,
                (item["key"], item["expiresAt"], item["status"], item.get("result")),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise RecordConflictError(key=record.key) from e
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(
                f"Failed to create idempotency record: {e}", key=record.key, cause=e
            ) from e

    def get(self, key: str) -> IdempotencyRecord:
        try:
            conn = self._get_connection()
            row = conn.execute(self._SELECT_SQL, (key,)).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to lookup idempotency record: {e}", key=key, cause=e
            ) from e

        if row is None:
            raise RecordNotFoundError(key=key)

        try:
            return IdempotencyRecord.from_item(
                {
                    "key": row["key"],
                    "expiresAt": row["expires_at"],
                    "status": row["status"],
                    "result": row["result"],
                },
                self._codec,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to decode idempotency record: {e}", key=key, cause=e
            ) from e

    def update(self, key: str, result: Any) -> None:
        try:
            encoded = self._codec.encode(result)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to encode result: {e}", key=key, cause=e) from e

        conn = self._get_connection()
        try:
            cursor = conn.execute(
                self._UPDATE_SQL, (encoded, RecordStatus.COMPLETED.value, key)
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise PersistenceError("Cannot update missing idempotency record", key=key)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(
                f"Failed to update idempotency record: {e}", key=key, cause=e
            ) from e

    def delete(self, key: str) -> None:
        conn = self._get_connection()
        try:
            conn.execute(self._DELETE_SQL, (key,))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(
                f"Failed to delete idempotency record: {e}", key=key, cause=e
            ) from e

    def close(self) -> None:
        """Close every database connection opened by this store."""
        with self._init_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            with contextlib.suppress(sqlite3.Error):
                conn.close()
        self._local = threading.local()

    def _encode(self, record: IdempotencyRecord) -> dict[str, Any]:
        try:
            return record.to_item(self._codec)
        except (TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to encode idempotency record: {e}", key=record.key, cause=e
            ) from e
