"""
Webhook System

Push channel lifecycle per resource and the FastAPI endpoint vendors call.
"""

from mirrorsync.connectors.webhooks.router import build_webhook_router
from mirrorsync.connectors.webhooks.subscriptions import (
    NotificationOutcome,
    WebhookNotification,
    WebhookSubscriptionManager,
)

__all__ = [
    "build_webhook_router",
    "NotificationOutcome",
    "WebhookNotification",
    "WebhookSubscriptionManager",
]
