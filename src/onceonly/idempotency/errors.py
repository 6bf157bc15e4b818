"""OnceOnly idempotency error types.

The coordinator branches on store outcomes, so "already exists" and "absent"
are distinct exception types rather than flavours of PersistenceError:

- RecordConflictError: conditional create found an existing record
- RecordNotFoundError: read found no record
- PersistenceError: any other store failure (transport, encoding, condition)
- OperationInProgressError: a live claim for the key is held elsewhere
"""

from __future__ import annotations


class IdempotencyError(Exception):
    """Base exception for idempotency coordination.

    Attributes:
        message: Human-readable error message.
        key: Idempotency key associated with the failure (if applicable).
    """

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.key = key

    def __str__(self) -> str:
        if self.key:
            return f"{self.message} key={self.key}"
        return self.message


class PersistenceError(IdempotencyError):
    """Raised when the backing store cannot complete an operation.

    Always surfaced to the caller of execute(); never retried internally.
    """

    def __init__(
        self,
        message: str = "Idempotency store error",
        *,
        key: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, key=key)
        self.cause = cause


class RecordConflictError(IdempotencyError):
    """Raised by a store when create() finds an existing record for the key."""

    def __init__(self, message: str = "Record already exists", *, key: str | None = None) -> None:
        super().__init__(message, key=key)


class RecordNotFoundError(IdempotencyError):
    """Raised by a store when get() finds no record for the key."""

    def __init__(self, message: str = "Record not found", *, key: str | None = None) -> None:
        super().__init__(message, key=key)


class OperationInProgressError(IdempotencyError):
    """Raised when an unexpired claim for the key is already held.

    Fail-fast signal; retry policy belongs to the caller.

    Attributes:
        expires_at: Epoch seconds at which the live claim becomes reclaimable.
    """

    def __init__(
        self,
        message: str = "Operation already in progress",
        *,
        key: str | None = None,
        expires_at: int | None = None,
    ) -> None:
        super().__init__(message, key=key)
        self.expires_at = expires_at
