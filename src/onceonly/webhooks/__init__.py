"""OnceOnly webhook delivery."""

from onceonly.webhooks.delivery import (
    DeliveryResult,
    WebhookDeliveryError,
    deliver_webhook,
    sanitize_url,
)

__all__ = ["DeliveryResult", "WebhookDeliveryError", "deliver_webhook", "sanitize_url"]
