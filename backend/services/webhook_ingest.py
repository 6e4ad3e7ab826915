"""
Chat platform webhook ingestion (Zalo OA, Viber bot).

Delivery status callbacks are matched to a delivery row by providerMessageId and
mapped to the canonical status vocabulary. Callbacks without a matching row are
logged and dropped. Subscription events maintain the external identity records
(zalo_oa_users, viber_users); Zalo "LINK-<code>" messages redeem link codes.

Ingestors return a small result dict; the webhook routes always answer 200.
"""
import base64
import hashlib
import hmac
import logging
import re
from typing import Any, Dict, Optional

from database import database
from models import AuditAction
from services.delivery_ledger import DeliveryLedger, map_provider_status
from services.link_codes import LinkCodeService, LinkIngestError
from utils.audit import create_audit_log
from utils.dates import utcnow

logger = logging.getLogger(__name__)

LINK_CODE_RE = re.compile(r"\bLINK-([A-Z0-9\-._]{4,64})\b", re.IGNORECASE)
# Zalo status events that carry no explicit status field
ZALO_EVENT_STATUS = {
    "user_received_message": "delivered",
    "user_seen_message": "seen",
}


def verify_zalo_signature(raw_body: bytes, signature: Optional[str], app_secret: str) -> bool:
    """HMAC-SHA256(raw body, app secret), sent as hex or base64. No secret -> accept."""
    if not app_secret:
        return True
    signature = (signature or "").strip()
    if not signature:
        return False
    digest = hmac.new(app_secret.encode(), raw_body, hashlib.sha256).digest()
    return hmac.compare_digest(signature.lower(), digest.hex()) or hmac.compare_digest(
        signature, base64.b64encode(digest).decode()
    )


def parse_link_code(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = LINK_CODE_RE.search(text)
    return match.group(1) if match else None


class WebhookIngestor:
    source: str = None

    def __init__(self, db=None, ledger: Optional[DeliveryLedger] = None):
        self.db = db
        self.ledger = ledger or DeliveryLedger(db)

    def _db(self):
        return self.db if self.db is not None else database.get_db()

    async def apply_status(self, message_id: Any, raw_status: str, event_name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        message_id = str(message_id)
        status = map_provider_status(raw_status)
        delivery = await self.ledger.find_by_provider_message_id(message_id)
        if not delivery:
            logger.warning(f"{self.source} webhook: no delivery for message {message_id} (event={event_name})")
            await create_audit_log(
                action=AuditAction.DELIVERY_STATUS_WEBHOOK_UNMATCHED,
                resource_type="delivery",
                resource_id=message_id,
                metadata={"source": self.source, "event": event_name, "status": raw_status},
            )
            return {"ok": True, "handled": "status", "matched": False, "messageId": message_id}

        await self.ledger.apply_status_event(delivery, status, self.source, event_name, body)
        return {"ok": True, "handled": "status", "matched": True, "messageId": message_id, "status": status.value}


class ZaloWebhookIngestor(WebhookIngestor):
    source = "zalo"

    def __init__(self, db=None, ledger: Optional[DeliveryLedger] = None, link_codes: Optional[LinkCodeService] = None):
        super().__init__(db=db, ledger=ledger)
        self.link_codes = link_codes or LinkCodeService(db)

    @staticmethod
    def sender_id(body: Dict[str, Any]) -> Optional[str]:
        for key in ("sender", "follower", "user"):
            value = body.get(key)
            if isinstance(value, dict) and value.get("id"):
                return str(value["id"])
        return str(body["user_id"]) if body.get("user_id") else None

    async def ingest(self, body: Dict[str, Any]) -> Dict[str, Any]:
        event = str(body.get("event_name") or body.get("event") or "").lower()
        zalo_user_id = self.sender_id(body)

        if event == "user_send_text":
            return await self._handle_text(body, zalo_user_id)
        if event in ("user_follow", "follow"):
            if zalo_user_id:
                await self.link_codes.set_followed(zalo_user_id, True)
            return {"ok": True, "handled": "follow", "zaloUserId": zalo_user_id}
        if event in ("user_unfollow", "unfollow"):
            if zalo_user_id:
                await self.link_codes.set_followed(zalo_user_id, False)
            return {"ok": True, "handled": "unfollow", "zaloUserId": zalo_user_id}

        message = body.get("message") if isinstance(body.get("message"), dict) else {}
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        message_id = message.get("msg_id") or body.get("message_id") or data.get("message_id")
        if message_id:
            raw_status = str(body.get("status") or data.get("status") or ZALO_EVENT_STATUS.get(event, event))
            return await self.apply_status(message_id, raw_status, event or "message_status", body)

        logger.info(f"Unhandled Zalo event {event!r}")
        return {"ok": True, "handled": "unknown"}

    async def _handle_text(self, body: Dict[str, Any], zalo_user_id: Optional[str]) -> Dict[str, Any]:
        text = (body.get("message") or {}).get("text")
        if zalo_user_id:
            await self._db().zalo_oa_users.update_one(
                {"externalId": zalo_user_id},
                {"$set": {"lastSeenAt": utcnow(), "lastMessage": text}},
                upsert=True,
            )
        code = parse_link_code(text)
        if not code or not zalo_user_id:
            return {"ok": True, "handled": "user_send_text", "linked": False}
        try:
            result = await self.link_codes.redeem_code(zalo_user_id, code)
        except LinkIngestError as e:
            logger.info(f"Zalo link attempt by {zalo_user_id} rejected: {e.code}")
            return {"ok": True, "handled": "link", "linked": False, "error": e.code}
        return {"ok": True, "handled": "link", "linked": True, "uid": result["uid"], "zaloUserId": zalo_user_id}


class ViberWebhookIngestor(WebhookIngestor):
    source = "viber"

    STATUS_EVENTS = ("delivered", "seen", "failed")

    async def ingest(self, body: Dict[str, Any]) -> Dict[str, Any]:
        event = str(body.get("event") or "").lower()

        if event in self.STATUS_EVENTS:
            message_token = body.get("message_token")
            if not message_token:
                return {"ok": True, "handled": "status", "matched": False}
            return await self.apply_status(message_token, event, event, body)

        if event in ("subscribed", "unsubscribed"):
            user = body.get("user") if isinstance(body.get("user"), dict) else {}
            viber_user_id = user.get("id") or body.get("user_id")
            if viber_user_id:
                now = utcnow()
                await self._db().viber_users.update_one(
                    {"externalId": str(viber_user_id)},
                    {"$set": {"followed": event == "subscribed", "name": user.get("name"), "lastSeenAt": now, "updatedAt": now}},
                    upsert=True,
                )
            return {"ok": True, "handled": event, "viberUserId": viber_user_id}

        logger.info(f"Unhandled Viber event {event!r}")
        return {"ok": True, "handled": "unknown"}


zalo_webhook_ingestor = ZaloWebhookIngestor()
viber_webhook_ingestor = ViberWebhookIngestor()
