"""Transition hooks for the idempotency coordinator.

The coordinator reports each state transition to a single optional hook
instead of logging inline. A hook is any callable taking
(event, key, detail); hooks must not affect control flow, so exceptions they
raise are swallowed by the coordinator after a DEBUG log.

Both built-in hooks tag transitions with the request ID bound in
onceonly.observability.context, when there is one.

Security:
    - TracingHook never exports raw keys; it attaches a SHA-256 digest instead
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, Protocol

from onceonly.observability.context import get_request_id
from onceonly.observability.tracing import is_tracing_enabled

logger = logging.getLogger(__name__)


class TransitionEvent(str, Enum):
    """Well-defined points in the coordinator's state machine."""

    CLAIM_ATTEMPTED = "claim_attempted"
    CLAIM_WON = "claim_won"
    CLAIM_LOST = "claim_lost"
    STALE_CLAIM_RECLAIMED = "stale_claim_reclaimed"
    REPLAYED = "replayed"
    OPERATION_STARTED = "operation_started"
    OPERATION_SUCCEEDED = "operation_succeeded"
    OPERATION_FAILED = "operation_failed"
    FINALIZE_SUCCEEDED = "finalize_succeeded"
    FINALIZE_FAILED = "finalize_failed"
    CLEANUP_FAILED = "cleanup_failed"


class TransitionHook(Protocol):
    def __call__(
        self, event: TransitionEvent, key: str, detail: Mapping[str, Any]
    ) -> None: ...


def key_digest(key: str) -> str:
    """Return the SHA-256 hex digest of an idempotency key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class LoggingHook:
    """Log every transition through the standard logging module.

    Args:
        logger: Logger to write to. Defaults to this module's logger.
        level: Level for normal transitions. Failure transitions
            (OPERATION_FAILED, FINALIZE_FAILED, CLEANUP_FAILED) log at WARNING.
    """

    _FAILURE_EVENTS = frozenset(
        {
            TransitionEvent.OPERATION_FAILED,
            TransitionEvent.FINALIZE_FAILED,
            TransitionEvent.CLEANUP_FAILED,
        }
    )

    def __init__(self, logger: logging.Logger | None = None, level: int = logging.DEBUG) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._level = level

    def __call__(self, event: TransitionEvent, key: str, detail: Mapping[str, Any]) -> None:
        level = logging.WARNING if event in self._FAILURE_EVENTS else self._level
        self._logger.log(
            level,
            "Idempotency transition %s for key=%s",
            event.value,
            key,
            extra={
                "idempotency_event": event.value,
                "idempotency_detail": dict(detail),
                "request_id": get_request_id(),
            },
        )


class TracingHook:
    """Record transitions as events on the current OpenTelemetry span.

    A no-op unless ONCEONLY_OTEL_ENABLED=1 and a span is recording.
    """

    def __call__(self, event: TransitionEvent, key: str, detail: Mapping[str, Any]) -> None:
        if not is_tracing_enabled():
            return

        from opentelemetry import trace

        span = trace.get_current_span()
        if not span.is_recording():
            return

        attributes: dict[str, Any] = {"onceonly.key_sha256": key_digest(key)}
        request_id = get_request_id()
        if request_id is not None:
            attributes["onceonly.request_id"] = request_id
        for name, value in detail.items():
            if isinstance(value, bool | int | float | str):
                attributes[f"onceonly.{name}"] = value
            elif value is not None:
                attributes[f"onceonly.{name}"] = str(value)
        span.add_event(f"onceonly.{event.value}", attributes=attributes)


class CompositeHook:
    """Fan a transition out to several hooks in order.

    A hook that raises is logged at DEBUG and skipped; the rest still run.
    """

    def __init__(self, *hooks: TransitionHook) -> None:
        self._hooks = hooks

    def __call__(self, event: TransitionEvent, key: str, detail: Mapping[str, Any]) -> None:
        for hook in self._hooks:
            try:
                hook(event, key, detail)
            except Exception as e:
                logger.debug("Transition hook %r failed for %s: %s", hook, event.value, e)
