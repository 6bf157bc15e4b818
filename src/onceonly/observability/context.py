"""Per-request correlation context.

The HTTP entry point binds the inbound request ID here so code below it,
coordinator hooks in particular, can tag what it emits without the ID being
threaded through execute(). Starlette copies the context into the threadpool
that runs sync routes, so the binding is visible there too.
"""

from __future__ import annotations

from contextvars import ContextVar, Token

_request_id: ContextVar[str | None] = ContextVar("onceonly_request_id", default=None)


def get_request_id() -> str | None:
    """Return the request ID bound to the current context, if any."""
    return _request_id.get()


def bind_request_id(request_id: str) -> Token[str | None]:
    """Bind request_id to the current context; pass the token to reset_request_id."""
    return _request_id.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _request_id.reset(token)
