"""OnceOnly FastAPI application factory.

The store handle is built once in the application lifespan and shared by every
request; it is closed when the application shuts down.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from onceonly import __version__
from onceonly.api.errors import register_exception_handlers
from onceonly.api.middleware.request_id import RequestIdMiddleware
from onceonly.api.routes.health import router as health_router
from onceonly.api.routes.relay import router as relay_router
from onceonly.config import OnceOnlySettings, create_coordinator, load_settings
from onceonly.idempotency.coordinator import IdempotencyCoordinator
from onceonly.idempotency.hooks import CompositeHook, LoggingHook, TracingHook
from onceonly.observability.tracing import configure_tracing, instrument_app
from onceonly.webhooks.delivery import deliver_webhook


def create_app(
    settings: OnceOnlySettings | None = None,
    coordinator: IdempotencyCoordinator | None = None,
    deliver: Callable[..., Any] | None = None,
) -> FastAPI:
    """Create and configure the OnceOnly FastAPI application.

    Args:
        settings: Settings to use. Loaded from the environment if None.
        coordinator: Pre-built coordinator. If None, one is built from
            settings at startup and its store closed at shutdown.
        deliver: Webhook delivery callable (url, body, timeout_seconds=...).
            Defaults to deliver_webhook.

    Returns:
        Configured FastAPI application.
    """
    resolved_settings = settings or load_settings()
    owns_store = coordinator is None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.coordinator is None:
            app.state.coordinator = create_coordinator(
                resolved_settings,
                hook=CompositeHook(LoggingHook(), TracingHook()),
            )
        try:
            yield
        finally:
            if owns_store and app.state.coordinator is not None:
                app.state.coordinator.store.close()
                app.state.coordinator = None

    configure_tracing()

    app = FastAPI(
        title="OnceOnly",
        version=__version__,
        description="At-most-once webhook relay",
        lifespan=lifespan,
    )
    app.state.settings = resolved_settings
    app.state.coordinator = coordinator
    app.state.deliver = deliver or deliver_webhook

    app.add_middleware(RequestIdMiddleware)
    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(relay_router)

    instrument_app(app)

    return app
