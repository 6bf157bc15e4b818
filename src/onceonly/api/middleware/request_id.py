"""Request correlation for the relay API.

Each request gets one ID, taken from X-Request-Id when the caller supplies a
usable one and generated otherwise. The ID is:

- stored on request.state for the error handlers
- bound in onceonly.observability.context for the duration of the request,
  so LoggingHook and TracingHook tag coordinator transitions with it
- echoed back in the X-Request-Id response header
"""

from __future__ import annotations

import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from onceonly.observability.context import bind_request_id, reset_request_id

REQUEST_ID_HEADER = "X-Request-Id"
MAX_REQUEST_ID_LENGTH = 128


def resolve_request_id(incoming: str | None) -> str:
    """Reuse a caller-supplied ID if it is non-blank and reasonably short."""
    candidate = (incoming or "").strip()
    if candidate and len(candidate) <= MAX_REQUEST_ID_LENGTH:
        return candidate
    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id

        token = bind_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
