"""Pytest configuration and fixtures for OnceOnly tests.

This module provides common fixtures and configuration for all tests.
"""

from __future__ import annotations

import os

import pytest

from onceonly.idempotency.coordinator import IdempotencyCoordinator
from onceonly.idempotency.store import InMemoryIdempotencyStore

START_TIME = 1_700_000_000


class FakeClock:
    """Deterministic epoch-seconds clock for coordinator tests."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def isolate_onceonly_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strip OnceOnly configuration from the environment for every test.

    Tests that need a setting set it explicitly with monkeypatch.
    """
    for name in list(os.environ):
        if name.startswith("ONCEONLY_") or name == "TABLE_NAME":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore()


@pytest.fixture
def coordinator(memory_store: InMemoryIdempotencyStore, clock: FakeClock) -> IdempotencyCoordinator:
    """Coordinator with a 360s claim window over the in-memory store."""
    return IdempotencyCoordinator(memory_store, claim_window_seconds=360, clock=clock)
