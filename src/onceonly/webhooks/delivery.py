"""Outbound webhook delivery for OnceOnly.

The HTTP entry point makes a webhook relay idempotent: the inbound request
body is forwarded once per idempotency key. Delivery raises on failure so the
coordinator can roll the claim back.

Security:
- Never log or surface webhook URL credentials, query strings or fragments
- Authorization-style headers are stripped from forwarded requests
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "OnceOnly-Webhook/0.1"

_STRIPPED_HEADERS = frozenset({"authorization", "x-api-key", "cookie"})


@dataclass(frozen=True)
class DeliveryResult:
    """Result of a successful webhook delivery.

    Attributes:
        status_code: HTTP status code returned by the target.
        duration_ms: Request duration in milliseconds.
    """

    status_code: int
    duration_ms: int


class WebhookDeliveryError(Exception):
    """Raised when a webhook cannot be delivered.

    Attributes:
        message: Human-readable error message (URL already sanitized).
        status_code: HTTP status code from target, or None if no response.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def sanitize_url(url: str) -> str:
    """Strip userinfo, querystring and fragment from a URL.

    Args:
        url: Raw URL potentially containing credentials/query/fragment.

    Returns:
        scheme://host[:port]/path, or "unknown" if malformed.
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname or ""
        if not host:
            return "unknown"
        port = f":{parts.port}" if parts.port else ""
        safe_url = urlunsplit((parts.scheme, f"{host}{port}", parts.path, "", ""))
        return safe_url if safe_url else "unknown"
    except ValueError:
        return "unknown"


def deliver_webhook(
    url: str,
    body: bytes,
    *,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    client: httpx.Client | None = None,
) -> DeliveryResult:
    """POST body to url and require a 2xx response.

    Args:
        url: Target webhook URL.
        body: Raw JSON payload to forward.
        headers: Extra headers; credential headers are dropped.
        timeout_seconds: Request timeout in seconds.
        client: Optional shared httpx client. A short-lived one is used if None.

    Returns:
        DeliveryResult with status and timing.

    Raises:
        WebhookDeliveryError: On timeout, connection failure or non-2xx status.
    """
    safe_url = sanitize_url(url)
    request_headers = {
        k: v for k, v in (headers or {}).items() if k.lower() not in _STRIPPED_HEADERS
    }
    request_headers["User-Agent"] = DEFAULT_USER_AGENT
    request_headers["Content-Type"] = "application/json"

    start_time = time.monotonic()
    try:
        if client is not None:
            response = client.post(
                url, content=body, headers=request_headers, timeout=timeout_seconds
            )
        else:
            with httpx.Client(timeout=timeout_seconds) as owned_client:
                response = owned_client.post(url, content=body, headers=request_headers)
    except httpx.TimeoutException as e:
        raise WebhookDeliveryError(f"Timeout delivering webhook to {safe_url}") from e
    except httpx.HTTPError as e:
        raise WebhookDeliveryError(
            f"Connection error delivering webhook to {safe_url}: {type(e).__name__}"
        ) from e

    duration_ms = int((time.monotonic() - start_time) * 1000)

    if not 200 <= response.status_code < 300:
        logger.warning(
            "Webhook delivery to %s failed with HTTP %s",
            safe_url,
            response.status_code,
        )
        raise WebhookDeliveryError(
            f"Webhook target {safe_url} returned HTTP {response.status_code}",
            status_code=response.status_code,
        )

    logger.debug("Delivered webhook to %s in %sms", safe_url, duration_ms)
    return DeliveryResult(status_code=response.status_code, duration_ms=duration_ms)
