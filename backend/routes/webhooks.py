"""Webhook Routes - chat platform callbacks.

POST /api/webhooks/zalo  - Zalo OA events (delivery status, follow/unfollow, LINK-<code> messages);
                           validated by x-zalo-signature when ZALO_APP_SECRET is set.
POST /api/webhooks/viber - Viber bot events (delivered/seen/failed, subscribed/unsubscribed).

Both always answer 200 so the platform does not retry-storm the endpoint; failures
are logged and reported as {"ok": true, "error": "logged"}.
"""
from fastapi import APIRouter, Request
from services.webhook_ingest import (
    verify_zalo_signature,
    viber_webhook_ingestor,
    zalo_webhook_ingestor,
)
import logging
import json
import os

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _parse_json(raw: bytes) -> dict:
    body = json.loads(raw or b"{}")
    return body if isinstance(body, dict) else {}


@router.post("/zalo")
async def zalo_webhook(request: Request):
    try:
        raw = await request.body()
        if not verify_zalo_signature(raw, request.headers.get("x-zalo-signature"), os.getenv("ZALO_APP_SECRET", "")):
            logger.warning("Zalo webhook: invalid signature, event dropped")
            return {"ok": True, "handled": "invalid_signature"}
        return await zalo_webhook_ingestor.ingest(_parse_json(raw))
    except Exception as e:
        logger.error(f"Zalo webhook error: {e}")
        return {"ok": True, "error": "logged"}


@router.post("/viber")
async def viber_webhook(request: Request):
    try:
        raw = await request.body()
        return await viber_webhook_ingestor.ingest(_parse_json(raw))
    except Exception as e:
        logger.error(f"Viber webhook error: {e}")
        return {"ok": True, "error": "logged"}
