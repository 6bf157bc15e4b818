"""Idempotency coordinator: at-most-once execution of keyed operations.

Algorithm for execute(key, operation):

1. Build an IN_PROGRESS candidate with expires_at = now + claim window.
2. store.create(candidate)
   - success: the caller holds the claim
   - RecordConflictError: resolve the existing record (step 3)
   - PersistenceError: propagate, no retry
3. store.get(key)
   - RecordNotFoundError: the record vanished mid-race, raise PersistenceError
   - COMPLETED: return the stored result without invoking the operation
   - IN_PROGRESS, unexpired: raise OperationInProgressError (fail fast)
   - IN_PROGRESS, expired: best-effort delete, then re-create the candidate
4. Run the operation once.
   - raises: delete the claim and re-raise (a failed delete wins)
   - returns: store.update(key, result) to mark the record COMPLETED
5. Return the result.

Mutual exclusion comes only from the store's conditional create; the
coordinator holds no locks and no per-key state between calls.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable
from typing import Any, ParamSpec, TypeVar

from onceonly.idempotency.errors import (
    OperationInProgressError,
    PersistenceError,
    RecordConflictError,
    RecordNotFoundError,
)
from onceonly.idempotency.hooks import TransitionEvent, TransitionHook
from onceonly.idempotency.record import IdempotencyRecord, RecordStatus
from onceonly.idempotency.store import IdempotencyStore

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_WINDOW_SECONDS = 360

T = TypeVar("T")
P = ParamSpec("P")


class IdempotencyCoordinator:
    """Run keyed operations at most once per successful claim.

    Safe to share across threads: all coordination state lives in the store.

    Args:
        store: Store adapter providing the atomic conditional create.
        claim_window_seconds: How long a claim stays live before it may be
            reclaimed by another caller.
        hook: Optional transition hook for observability.
        clock: Returns the current time in epoch seconds. Defaults to time.time.

    Raises:
        ValueError: If claim_window_seconds is not positive.
    """

    def __init__(
        self,
        store: IdempotencyStore,
        *,
        claim_window_seconds: int = DEFAULT_CLAIM_WINDOW_SECONDS,
        hook: TransitionHook | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if isinstance(claim_window_seconds, bool) or claim_window_seconds <= 0:
            raise ValueError("claim_window_seconds must be positive")
        self._store = store
        self._claim_window = int(claim_window_seconds)
        self._hook = hook
        self._clock = clock or time.time

    @property
    def store(self) -> IdempotencyStore:
        return self._store

    @property
    def claim_window_seconds(self) -> int:
        return self._claim_window

    def execute(self, key: str, operation: Callable[[], T]) -> T:
        """Run operation at most once for key and return its result.

        A key already COMPLETED returns the stored result and operation is not
        called.

        Args:
            key: Non-empty idempotency key naming one logical operation.
            operation: Zero-argument callable; it signals failure by raising.

        Returns:
            The operation's result, or the stored result on replay.

        Raises:
            ValueError: If key is empty.
            OperationInProgressError: If a live claim for key exists.
            PersistenceError: If the store fails (including cleanup after an
                operation failure, which masks the operation's exception).
            Exception: Whatever operation raised, unchanged.
        """
        if not isinstance(key, str) or not key:
            raise ValueError("Idempotency key must be a non-empty string")

        now = self._clock()
        candidate = IdempotencyRecord.in_progress(key, expires_at=int(now) + self._claim_window)

        self._emit(TransitionEvent.CLAIM_ATTEMPTED, key, expires_at=candidate.expires_at)
        try:
            self._store.create(candidate)
        except RecordConflictError:
            existing = self._resolve_conflict(candidate, now)
            if existing is not None:
                return existing.result  # type: ignore[no-any-return]
        else:
            self._emit(TransitionEvent.CLAIM_WON, key, expires_at=candidate.expires_at)

        return self._run(key, operation)

    def _resolve_conflict(
        self, candidate: IdempotencyRecord, now: float
    ) -> IdempotencyRecord | None:
        """Decide what to do about an existing record for candidate.key.

        Returns the COMPLETED record to replay, or None once the caller holds
        a fresh claim after reclaiming a stale one.
        """
        key = candidate.key
        try:
            existing = self._store.get(key)
        except RecordNotFoundError as e:
            raise PersistenceError(
                "Idempotency record vanished between conflict and read", key=key, cause=e
            ) from e

        if existing.status is RecordStatus.COMPLETED:
            self._emit(TransitionEvent.REPLAYED, key)
            return existing

        if not existing.is_expired(now):
            self._emit(TransitionEvent.CLAIM_LOST, key, expires_at=existing.expires_at)
            raise OperationInProgressError(key=key, expires_at=existing.expires_at)

        delete_error: PersistenceError | None = None
        try:
            self._store.delete(key)
        except PersistenceError as e:
            delete_error = e
            logger.warning(
                "Failed to delete stale idempotency claim: %s",
                e.message,
                extra={"idempotency_key": key},
            )

        try:
            self._store.create(candidate)
        except RecordConflictError as e:
            if delete_error is not None:
                raise PersistenceError(
                    "Stale idempotency claim could not be removed", key=key, cause=delete_error
                ) from e
            # Another caller reclaimed the stale record first; its claim expires
            # no later than ours would have.
            self._emit(TransitionEvent.CLAIM_LOST, key, expires_at=candidate.expires_at)
            raise OperationInProgressError(key=key, expires_at=candidate.expires_at) from e

        self._emit(
            TransitionEvent.STALE_CLAIM_RECLAIMED,
            key,
            stale_expires_at=existing.expires_at,
            expires_at=candidate.expires_at,
        )
        return None

    def _run(self, key: str, operation: Callable[[], T]) -> T:
        """Invoke operation under a held claim and finalize the record."""
        self._emit(TransitionEvent.OPERATION_STARTED, key)
        try:
            result = operation()
        except Exception as op_error:
            self._emit(TransitionEvent.OPERATION_FAILED, key, error_type=type(op_error).__name__)
            try:
                self._store.delete(key)
            except PersistenceError as delete_error:
                self._emit(TransitionEvent.CLEANUP_FAILED, key)
                raise delete_error from op_error
            raise

        self._emit(TransitionEvent.OPERATION_SUCCEEDED, key)
        try:
            self._store.update(key, result)
        except PersistenceError:
            self._emit(TransitionEvent.FINALIZE_FAILED, key)
            raise

        self._emit(TransitionEvent.FINALIZE_SUCCEEDED, key)
        return result

    def _emit(self, event: TransitionEvent, key: str, **detail: Any) -> None:
        if self._hook is None:
            return
        try:
            self._hook(event, key, detail)
        except Exception as e:
            logger.debug("Transition hook failed for %s: %s", event.value, e)


def idempotent(
    coordinator: IdempotencyCoordinator,
    key_func: Callable[P, str],
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator routing every call of a function through coordinator.execute.

    Args:
        coordinator: Coordinator to run calls through.
        key_func: Builds the idempotency key from the call's arguments.

    Returns:
        Decorator producing the idempotent wrapper.
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            key = key_func(*args, **kwargs)
            return coordinator.execute(key, lambda: func(*args, **kwargs))

        return wrapper

    return decorator
