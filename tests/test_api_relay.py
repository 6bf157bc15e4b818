"""Tests for the OnceOnly HTTP entry point.

Tests cover:
A) POST /relay forwards once per name and replays duplicates
B) Coordinator outcomes mapped to the error envelope (409 / 500 / 502)
C) Request validation and missing webhook configuration
D) Health endpoint and lifespan-built coordinator
E) Request ID correlation on coordinator log records
"""

from __future__ import annotations

import json
import logging
from typing import Any

import pytest
from fastapi.testclient import TestClient

from onceonly.api.main import create_app
from onceonly.config import OnceOnlySettings
from onceonly.idempotency.coordinator import IdempotencyCoordinator
from onceonly.idempotency.errors import PersistenceError
from onceonly.idempotency.hooks import LoggingHook
from onceonly.idempotency.record import IdempotencyRecord
from onceonly.idempotency.store import InMemoryIdempotencyStore
from onceonly.observability.context import get_request_id
from onceonly.webhooks.delivery import WebhookDeliveryError

WEBHOOK_URL = "https://hooks.example.com/in"


class FakeDeliver:
    """Records webhook deliveries; optionally raises instead."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, bytes, float]] = []
        self.error: Exception | None = None

    def __call__(self, url: str, body: bytes, *, timeout_seconds: float) -> None:
        self.calls.append((url, body, timeout_seconds))
        if self.error is not None:
            raise self.error


class UnavailableStore(InMemoryIdempotencyStore):
    def create(self, record: IdempotencyRecord) -> None:
        raise PersistenceError("connection refused", key=record.key)


@pytest.fixture
def settings() -> OnceOnlySettings:
    return OnceOnlySettings(
        store_backend="memory", webhook_url=WEBHOOK_URL, webhook_timeout_seconds=5.0
    )


@pytest.fixture
def deliver() -> FakeDeliver:
    return FakeDeliver()


@pytest.fixture
def client(
    settings: OnceOnlySettings, coordinator: IdempotencyCoordinator, deliver: FakeDeliver
):
    """Test client over an app sharing the in-memory coordinator fixture."""
    app = create_app(settings=settings, coordinator=coordinator, deliver=deliver)
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


class TestRelay:
    """Tests for the happy path and replay."""

    def test_first_request_forwards_and_returns_name(
        self, client: TestClient, deliver: FakeDeliver
    ) -> None:
        response = client.post("/relay", json={"name": "order-42", "amount": 1999})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "result": "order-42"}
        assert response.headers.get("X-Request-Id")
        assert len(deliver.calls) == 1
        url, body, timeout = deliver.calls[0]
        assert url == WEBHOOK_URL
        assert json.loads(body) == {"name": "order-42", "amount": 1999}
        assert timeout == 5.0

    def test_duplicate_request_replays_without_forwarding(
        self, client: TestClient, deliver: FakeDeliver
    ) -> None:
        client.post("/relay", json={"name": "order-42"})

        response = client.post("/relay", json={"name": "order-42", "amount": 1})

        assert response.status_code == 200
        assert response.json()["result"] == "order-42"
        assert len(deliver.calls) == 1

    def test_distinct_names_forward_separately(
        self, client: TestClient, deliver: FakeDeliver
    ) -> None:
        client.post("/relay", json={"name": "a"})
        client.post("/relay", json={"name": "b"})

        assert len(deliver.calls) == 2


class TestRelayErrors:
    """Tests for the error envelope."""

    def test_in_flight_claim_returns_409(
        self,
        client: TestClient,
        memory_store: InMemoryIdempotencyStore,
        clock: Any,
        deliver: FakeDeliver,
    ) -> None:
        memory_store.create(IdempotencyRecord.in_progress("order-42", int(clock.now) + 100))

        response = client.post(
            "/relay", json={"name": "order-42"}, headers={"X-Request-Id": "req-123"}
        )

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "OPERATION_IN_PROGRESS"
        assert body["details"] == {"expires_at": int(clock.now) + 100}
        assert body["request_id"] == "req-123"
        assert response.headers["X-Request-Id"] == "req-123"
        assert deliver.calls == []

    def test_webhook_failure_returns_502_and_releases_claim(
        self,
        client: TestClient,
        memory_store: InMemoryIdempotencyStore,
        deliver: FakeDeliver,
    ) -> None:
        deliver.error = WebhookDeliveryError("Webhook target returned HTTP 500", status_code=500)

        response = client.post("/relay", json={"name": "order-42"})

        assert response.status_code == 502
        assert response.json()["code"] == "WEBHOOK_DELIVERY_FAILED"
        assert response.json()["details"] == {"upstream_status": 500}
        assert len(memory_store) == 0

        deliver.error = None
        retry = client.post("/relay", json={"name": "order-42"})
        assert retry.status_code == 200
        assert len(deliver.calls) == 2

    def test_unexpected_error_returns_500(
        self,
        client: TestClient,
        memory_store: InMemoryIdempotencyStore,
        deliver: FakeDeliver,
    ) -> None:
        deliver.error = RuntimeError("boom")

        response = client.post("/relay", json={"name": "order-42"})

        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        assert "boom" not in response.text
        assert len(memory_store) == 0

    def test_store_failure_returns_500(self, settings: OnceOnlySettings) -> None:
        deliver = FakeDeliver()
        app = create_app(
            settings=settings,
            coordinator=IdempotencyCoordinator(UnavailableStore()),
            deliver=deliver,
        )

        with TestClient(app) as test_client:
            response = test_client.post("/relay", json={"name": "order-42"})

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "IDEMPOTENCY_STORE_FAILED"
        assert "connection refused" not in body["message"]
        assert deliver.calls == []

    @pytest.mark.parametrize("payload", [{}, {"name": ""}, {"name": 42}])
    def test_invalid_body_returns_422(self, client: TestClient, payload: dict) -> None:
        response = client.post("/relay", json=payload)

        assert response.status_code == 422
        assert response.json()["code"] == "REQUEST_VALIDATION_FAILED"

    def test_missing_webhook_url_returns_500(
        self, coordinator: IdempotencyCoordinator, deliver: FakeDeliver
    ) -> None:
        app = create_app(
            settings=OnceOnlySettings(store_backend="memory"),
            coordinator=coordinator,
            deliver=deliver,
        )

        with TestClient(app) as test_client:
            response = test_client.post("/relay", json={"name": "order-42"})

        assert response.status_code == 500
        assert response.json()["code"] == "WEBHOOK_NOT_CONFIGURED"
        assert deliver.calls == []


class TestRequestCorrelation:
    """The inbound request ID follows the request into coordinator hooks."""

    def test_hook_records_carry_request_id(
        self,
        settings: OnceOnlySettings,
        memory_store: InMemoryIdempotencyStore,
        clock: Any,
        deliver: FakeDeliver,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        coordinator = IdempotencyCoordinator(memory_store, hook=LoggingHook(), clock=clock)
        app = create_app(settings=settings, coordinator=coordinator, deliver=deliver)

        with caplog.at_level(logging.DEBUG, logger="onceonly.idempotency.hooks"):
            with TestClient(app) as test_client:
                response = test_client.post(
                    "/relay", json={"name": "order-42"}, headers={"X-Request-Id": "req-7"}
                )

        assert response.status_code == 200
        events = [r for r in caplog.records if hasattr(r, "idempotency_event")]
        assert events
        assert {r.request_id for r in events} == {"req-7"}

    def test_oversized_request_id_is_replaced(self, client: TestClient) -> None:
        response = client.post(
            "/relay", json={"name": "order-42"}, headers={"X-Request-Id": "x" * 129}
        )

        echoed = response.headers["X-Request-Id"]
        assert echoed
        assert echoed != "x" * 129

    def test_binding_is_cleared_after_the_request(self, client: TestClient) -> None:
        client.post("/relay", json={"name": "order-42"}, headers={"X-Request-Id": "req-8"})

        assert get_request_id() is None


class TestHealth:
    def test_reports_store_backend(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["store_backend"] == "memory"

    def test_lifespan_builds_and_closes_store(self, tmp_path: Any) -> None:
        settings = OnceOnlySettings(store_backend="sqlite", sqlite_path=str(tmp_path / "api.db"))
        app = create_app(settings=settings, deliver=FakeDeliver())

        with TestClient(app) as test_client:
            assert test_client.get("/health").json()["store_backend"] == "sqlite"
            assert app.state.coordinator is not None

        assert app.state.coordinator is None
