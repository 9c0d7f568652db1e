"""
Webhook Router

FastAPI router receiving push notifications from vendors. Verification and
sync scheduling are delegated to the engine; this layer only maps headers and body in
and outcomes to status codes out.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, HTTPException, Request, status

from mirrorsync.connectors.webhooks.subscriptions import NotificationOutcome, WebhookNotification

if TYPE_CHECKING:
    from mirrorsync.connectors.engine import SyncEngine

logger = structlog.get_logger()


def build_webhook_router(engines: Mapping[str, SyncEngine]) -> APIRouter:
    """Router for `POST /webhooks/{connector_type}/{resource_id}` over the given engines."""
    router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

    @router.post("/{connector_type}/{resource_id}", status_code=status.HTTP_202_ACCEPTED)
    async def receive_notification(connector_type: str, resource_id: str, request: Request):
        engine = engines.get(connector_type)
        if engine is None:
            logger.warning("Webhook for unknown connector", connector_type=connector_type)
            raise HTTPException(status_code=404, detail="Unknown connector")

        credentials = engine.connector.extract_channel_credentials(request.headers)
        notification = WebhookNotification(
            channel_id=credentials.channel_id,
            secret_token=credentials.secret_token,
            resource_state=request.headers.get("x-resource-state"),
            body=await request.body(),
        )

        outcome = await engine.handle_notification(resource_id, notification)
        if outcome == NotificationOutcome.REJECTED:
            raise HTTPException(status_code=401, detail="Invalid channel credentials")

        return {"status": outcome.value}

    return router
