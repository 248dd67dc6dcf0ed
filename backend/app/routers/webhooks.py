"""
Fitbit Subscriber Webhook
=========================
GET  /api/v1/webhooks/fitbit?verify=<code> — Fitbit's endpoint verification
POST /api/v1/webhooks/fitbit               — Data-change notifications

Notifications only enqueue a sync_queue row; the sync itself happens
downstream. Fitbit expects a 204 within a few seconds, so nothing here
calls back into the Fitbit API.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response, status

from app.config import get_settings
from app.db.store import FitbitStore
from app.db.supabase import get_supabase_client
from app.services.errors import PersistenceError
from app.services.fitbit_subscriptions import parse_subscription_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.get("/fitbit", status_code=status.HTTP_204_NO_CONTENT)
async def verify_subscriber(verify: Optional[str] = Query(default=None)) -> Response:
    """Fitbit sends the correct code (expects 204) and a wrong one (expects 404)."""
    expected = get_settings().fitbit_verification_code
    if expected and verify and hmac.compare_digest(verify, expected):
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")


@router.post("/fitbit", status_code=status.HTTP_204_NO_CONTENT)
async def receive_notifications(request: Request) -> Response:
    """Queue a sync for every notification whose participant still exists."""
    payload: Any = await request.json()
    # Fitbit posts a bare array; older tooling wrapped it in {"notifications": [...]}
    notifications = payload.get("notifications", []) if isinstance(payload, dict) else payload

    store = FitbitStore(get_supabase_client())
    queued = 0
    if not isinstance(notifications, list):
        logger.warning("Ignoring Fitbit notification body of type %s", type(notifications).__name__)
        notifications = []

    for notification in notifications:
        if not isinstance(notification, dict):
            logger.warning("Ignoring Fitbit notification that is not an object: %r", notification)
            continue
        try:
            user_id, _ = parse_subscription_id(str(notification.get("subscriptionId") or ""))
        except ValueError as exc:
            logger.warning("Ignoring Fitbit notification: %s", exc)
            continue

        try:
            if store.get_profile(user_id) is None:
                logger.warning("Notification for unknown user %s", user_id)
                continue
            store.enqueue_sync(user_id, notification.get("date"), notification.get("collectionType"))
            queued += 1
        except PersistenceError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"message": "Failed to queue sync", "code": "db_error"},
            ) from exc

    logger.info("Queued %d Fitbit sync requests", queued)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
