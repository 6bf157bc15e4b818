"""OnceOnly idempotency module.

Provides the idempotency coordinator, the store adapter contract and its
in-memory and SQLite implementations. The SQLAlchemy and DynamoDB adapters
live in sql_store and dynamodb_store.
"""

from onceonly.idempotency.coordinator import (
    DEFAULT_CLAIM_WINDOW_SECONDS,
    IdempotencyCoordinator,
    idempotent,
)
from onceonly.idempotency.errors import (
    IdempotencyError,
    OperationInProgressError,
    PersistenceError,
    RecordConflictError,
    RecordNotFoundError,
)
from onceonly.idempotency.hooks import (
    CompositeHook,
    LoggingHook,
    TracingHook,
    TransitionEvent,
    TransitionHook,
)
from onceonly.idempotency.record import (
    IdempotencyRecord,
    JsonResultCodec,
    PydanticResultCodec,
    RecordStatus,
    ResultCodec,
)
from onceonly.idempotency.store import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    SqliteIdempotencyStore,
)

__all__ = [
    "DEFAULT_CLAIM_WINDOW_SECONDS",
    "CompositeHook",
    "IdempotencyCoordinator",
    "IdempotencyError",
    "IdempotencyRecord",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "JsonResultCodec",
    "LoggingHook",
    "OperationInProgressError",
    "PersistenceError",
    "PydanticResultCodec",
    "RecordConflictError",
    "RecordNotFoundError",
    "RecordStatus",
    "ResultCodec",
    "SqliteIdempotencyStore",
    "TracingHook",
    "TransitionEvent",
    "TransitionHook",
    "idempotent",
]
