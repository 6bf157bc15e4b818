"""SQLAlchemy-backed idempotency store for OnceOnly.

Targets PostgreSQL in production; any backend that understands
INSERT ... ON CONFLICT DO NOTHING (PostgreSQL, SQLite >= 3.24) works.

Conditional create:
    INSERT ... ON CONFLICT (key) DO NOTHING, where a rowcount of zero means
    another claimant already holds the key.

The engine is created once per process and shared; the store keeps no
per-call connection state.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

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

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class SqlAlchemyIdempotencyStore:
    """Idempotency store over a SQLAlchemy Engine.

    Each primitive runs in its own short transaction (engine.begin()), so every
    completed write is visible to the next read from any process.
    """

    backend_name = "sql"

    _CREATE_TABLE_SQL = text(
        """
        CREATE TABLE IF NOT EXISTS idempotency_records (
            key VARCHAR(512) NOT NULL PRIMARY KEY,
            expires_at BIGINT NOT NULL,
            status VARCHAR(16) NOT NULL,
            result TEXT
        )
        """
    )

    _INSERT_SQL = text(
        """
        INSERT INTO idempotency_records (key, expires_at, status, result)
        VALUES (:key, :expires_at, :status, :result)
        ON CONFLICT (key) DO NOTHING
        """
    )

    _SELECT_SQL = text(
        """
        SELECT key, expires_at, status, result
        FROM idempotency_records
        WHERE key = :key
        """
    )

    _UPDATE_SQL = text(
        """
        UPDATE idempotency_records
        SET result = :result, status = :status
        WHERE key = :key
        """
    )

    _DELETE_SQL = text("DELETE FROM idempotency_records WHERE key = :key")

    def __init__(self, engine: Engine, codec: ResultCodec = DEFAULT_CODEC) -> None:
        """Initialize the store.

        Args:
            engine: Shared SQLAlchemy engine.
            codec: Result codec used to serialize operation results.
        """
        self._engine = engine
        self._codec = codec

    def create_schema(self) -> None:
        """Create the idempotency_records table if it does not exist.

        Raises:
            PersistenceError: If the DDL fails.
        """
        try:
            with self._engine.begin() as conn:
                conn.execute(self._CREATE_TABLE_SQL)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create idempotency schema: {e}", cause=e) from e
        logger.info("Ensured idempotency_records table exists")

    def create(self, record: IdempotencyRecord) -> None:
        try:
            item = record.to_item(self._codec)
        except (TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to encode idempotency record: {e}", key=record.key, cause=e
            ) from e

        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    self._INSERT_SQL,
                    {
                        "key": item["key"],
                        "expires_at": item["expiresAt"],
                        "status": item["status"],
                        "result": item.get("result"),
                    },
                )
                inserted = result.rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to create idempotency record: {e}", key=record.key, cause=e
            ) from e

        if inserted == 0:
            raise RecordConflictError(key=record.key)

    def get(self, key: str) -> IdempotencyRecord:
        try:
            with self._engine.begin() as conn:
                row = conn.execute(self._SELECT_SQL, {"key": key}).fetchone()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to lookup idempotency record: {e}", key=key, cause=e
            ) from e

        if row is None:
            raise RecordNotFoundError(key=key)

        try:
            return IdempotencyRecord.from_item(
                {
                    "key": row.key,
                    "expiresAt": row.expires_at,
                    "status": row.status,
                    "result": row.result,
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

        try:
            with self._engine.begin() as conn:
                updated = conn.execute(
                    self._UPDATE_SQL,
                    {"key": key, "result": encoded, "status": RecordStatus.COMPLETED.value},
                ).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to update idempotency record: {e}", key=key, cause=e
            ) from e

        if updated == 0:
            raise PersistenceError("Cannot update missing idempotency record", key=key)

    def delete(self, key: str) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(self._DELETE_SQL, {"key": key})
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to delete idempotency record: {e}", key=key, cause=e
            ) from e

    def close(self) -> None:
        """Dispose of the engine's connection pool."""
        self._engine.dispose()
