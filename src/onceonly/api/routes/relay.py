"""Idempotent webhook relay endpoint.

POST /relay forwards the request body to the configured webhook at most once
per idempotency key. The key is the body's "name" field, so a retried or
duplicated request with the same name replays the first successful result
instead of calling the webhook again.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict, Field

from onceonly.api.errors import OnceOnlyHttpError
from onceonly.idempotency.coordinator import IdempotencyCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Relay"])


class RelayRequest(BaseModel):
    """Relay payload; unknown fields are kept and forwarded."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1, max_length=512)


class RelayResponse(BaseModel):
    status: str
    result: Any


def _get_coordinator(request: Request) -> IdempotencyCoordinator:
    coordinator: IdempotencyCoordinator | None = getattr(
        request.app.state, "coordinator", None
    )
    if coordinator is None:
        raise OnceOnlyHttpError(
            status_code=503,
            code="SERVICE_UNAVAILABLE",
            message="Idempotency coordinator is not initialized",
        )
    return coordinator


@router.post("/relay", response_model=RelayResponse)
def relay(request: Request, body: RelayRequest) -> RelayResponse:
    """Forward body to the webhook once per body.name.

    Runs synchronously in the threadpool: execute() blocks for the store
    round-trips and the webhook call.

    Raises:
        OnceOnlyHttpError: 500 if no webhook URL is configured.
        OperationInProgressError: Mapped to 409 by the error handlers.
        PersistenceError: Mapped to 500.
        WebhookDeliveryError: Mapped to 502.
    """
    settings = request.app.state.settings
    if not settings.webhook_url:
        raise OnceOnlyHttpError(
            status_code=500,
            code="WEBHOOK_NOT_CONFIGURED",
            message="ONCEONLY_WEBHOOK_URL environment variable not set",
        )

    coordinator = _get_coordinator(request)
    deliver = request.app.state.deliver
    payload = body.model_dump_json().encode("utf-8")

    def forward() -> str:
        deliver(settings.webhook_url, payload, timeout_seconds=settings.webhook_timeout_seconds)
        return body.name

    result = coordinator.execute(body.name, forward)

    logger.debug(
        "Relay completed",
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return RelayResponse(status="ok", result=result)
