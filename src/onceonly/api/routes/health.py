"""Health check endpoint for OnceOnly API."""

from datetime import UTC, datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from onceonly import __version__

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    status: str
    time: str
    version: str
    store_backend: str


@router.get("/health", response_model=HealthResponse)
def get_health(request: Request) -> HealthResponse:
    """Report liveness and the configured store backend.

    Does not touch the store, so it stays cheap under load.
    """
    coordinator = getattr(request.app.state, "coordinator", None)
    backend = getattr(coordinator.store, "backend_name", "unknown") if coordinator else "none"
    return HealthResponse(
        status="ok",
        time=datetime.now(UTC).isoformat(),
        version=__version__,
        store_backend=backend,
    )
