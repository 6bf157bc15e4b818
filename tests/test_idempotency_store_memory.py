"""Tests for InMemoryIdempotencyStore.

Tests cover:
- Conditional create and conflict detection
- get / update / delete semantics
- Atomicity of create under concurrent callers
- Encoding failures surfaced as PersistenceError
"""

from __future__ import annotations

import threading

import pytest

from onceonly.idempotency.errors import (
    PersistenceError,
    RecordConflictError,
    RecordNotFoundError,
)
from onceonly.idempotency.record import IdempotencyRecord, RecordStatus
from onceonly.idempotency.store import IdempotencyStore, InMemoryIdempotencyStore


class TestInMemoryStore:
    """Tests for the reference store adapter."""

    def test_satisfies_store_protocol(self, memory_store: InMemoryIdempotencyStore) -> None:
        assert isinstance(memory_store, IdempotencyStore)
        assert memory_store.backend_name == "memory"

    def test_create_then_get(self, memory_store: InMemoryIdempotencyStore) -> None:
        memory_store.create(IdempotencyRecord.in_progress("k", expires_at=10))

        record = memory_store.get("k")

        assert record == IdempotencyRecord.in_progress("k", expires_at=10)

    def test_create_conflicts_on_existing_key(self, memory_store: InMemoryIdempotencyStore) -> None:
        memory_store.create(IdempotencyRecord.in_progress("k", expires_at=10))

        with pytest.raises(RecordConflictError) as exc_info:
            memory_store.create(IdempotencyRecord.in_progress("k", expires_at=99))

        assert exc_info.value.key == "k"
        assert memory_store.get("k").expires_at == 10

    def test_get_missing_raises_not_found(self, memory_store: InMemoryIdempotencyStore) -> None:
        with pytest.raises(RecordNotFoundError):
            memory_store.get("missing")

    def test_update_completes_record(self, memory_store: InMemoryIdempotencyStore) -> None:
        memory_store.create(IdempotencyRecord.in_progress("k", expires_at=10))

        memory_store.update("k", {"id": 1})

        record = memory_store.get("k")
        assert record.status is RecordStatus.COMPLETED
        assert record.result == {"id": 1}
        assert record.expires_at == 10

    def test_update_missing_raises_persistence_error(
        self, memory_store: InMemoryIdempotencyStore
    ) -> None:
        with pytest.raises(PersistenceError):
            memory_store.update("missing", "x")

    def test_delete_is_idempotent(self, memory_store: InMemoryIdempotencyStore) -> None:
        memory_store.create(IdempotencyRecord.in_progress("k", expires_at=10))

        memory_store.delete("k")
        memory_store.delete("k")

        assert len(memory_store) == 0

    def test_unencodable_result_raises_persistence_error(
        self, memory_store: InMemoryIdempotencyStore
    ) -> None:
        memory_store.create(IdempotencyRecord.in_progress("k", expires_at=10))

        with pytest.raises(PersistenceError):
            memory_store.update("k", object())

        assert memory_store.get("k").status is RecordStatus.IN_PROGRESS

    def test_exactly_one_concurrent_create_wins(
        self, memory_store: InMemoryIdempotencyStore
    ) -> None:
        callers = 20
        barrier = threading.Barrier(callers)
        wins: list[int] = []
        conflicts: list[int] = []
        lock = threading.Lock()

        def worker(i: int) -> None:
            barrier.wait()
            try:
                memory_store.create(IdempotencyRecord.in_progress("shared", expires_at=i + 1))
            except RecordConflictError:
                with lock:
                    conflicts.append(i)
            else:
                with lock:
                    wins.append(i)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(wins) == 1
        assert len(conflicts) == callers - 1
        assert memory_store.get("shared").expires_at == wins[0] + 1
