"""OnceOnly observability module.

Provides the OpenTelemetry setup and the per-request correlation context.
"""

from onceonly.observability.context import bind_request_id, get_request_id, reset_request_id
from onceonly.observability.tracing import configure_tracing, instrument_app, is_tracing_enabled

__all__ = [
    "bind_request_id",
    "configure_tracing",
    "get_request_id",
    "instrument_app",
    "is_tracing_enabled",
    "reset_request_id",
]
