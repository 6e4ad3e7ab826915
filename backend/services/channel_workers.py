"""
Channel workers - one independently invocable unit per channel.

Request:  {jobId, uid?, payload: {title, body, actionUrl?}, target?, topic?}
Response: WorkerResponse(status_code, body) where body is
          {ok, result, retryable?, deliveryId} | {ok: false, error}

Every accepted request writes exactly one delivery row. Errors never escape
handle(): unexpected exceptions become a 500 body.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from database import database
from models import Channel
from services.delivery_ledger import DeliveryLedger
from services.providers.base import ProviderAdapter, ProviderContext
from services.providers.email import EmailProvider
from services.providers.push import PushProvider
from services.providers.sms import SMSProvider
from services.providers.viber import ViberProvider
from services.providers.zalo import ZaloProvider
from utils.dates import utcnow

logger = logging.getLogger(__name__)

DEFAULT_INAPP_TOPIC = "system"

# Target field identifying the recipient when no uid is given
TARGET_KEY_FIELDS = {
    Channel.PUSH: ("topic", "token"),
    Channel.EMAIL: ("to",),
    Channel.SMS: ("to",),
    Channel.ZALO: ("zaloUserId",),
    Channel.VIBER: ("viberUserId",),
}


@dataclass
class WorkerResponse:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code == 200 and bool(self.body.get("ok"))


class ChannelWorker:
    channel: Channel = None
    requires_uid = False

    def __init__(self, db=None, ledger: Optional[DeliveryLedger] = None):
        self.db = db
        self.ledger = ledger or DeliveryLedger(db)

    def _db(self):
        return self.db if self.db is not None else database.get_db()

    def validate(self, body: Dict[str, Any]) -> Optional[str]:
        payload = body.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}
        if not body.get("jobId") or not payload.get("title") or not payload.get("body"):
            return "Missing jobId|uid|payload" if self.requires_uid else "Missing jobId|payload"
        if self.requires_uid and not body.get("uid"):
            return "Missing jobId|uid|payload"
        return None

    async def handle(self, body: Dict[str, Any]) -> WorkerResponse:
        try:
            if not isinstance(body, dict):
                return WorkerResponse(400, {"ok": False, "error": "Body must be a JSON object"})
            error = self.validate(body)
            if error:
                return WorkerResponse(400, {"ok": False, "error": error})
            return await self.deliver(
                job_id=str(body["jobId"]),
                uid=body.get("uid"),
                payload=body["payload"],
                target=body.get("target") or {},
                topic=body.get("topic"),
            )
        except Exception as e:
            logger.exception(f"{self.channel.value} worker error job={body.get('jobId') if isinstance(body, dict) else None}: {e}")
            return WorkerResponse(500, {"ok": False, "error": str(e) or type(e).__name__})

    async def deliver(self, job_id, uid, payload, target, topic) -> WorkerResponse:
        raise NotImplementedError


class InAppWorker(ChannelWorker):
    """Writes the user-facing inbox item and a delivered ledger row. No provider involved."""

    channel = Channel.INAPP
    requires_uid = True

    async def deliver(self, job_id, uid, payload, target, topic) -> WorkerResponse:
        normalized_topic = (topic or "").strip() or DEFAULT_INAPP_TOPIC
        # Deterministic id so a re-invoked job does not add a second inbox item
        notification_id = f"{job_id}_{uid}"
        await self._db().user_notifications.update_one(
            {"id": notification_id},
            {
                "$set": {
                    "uid": uid,
                    "topic": normalized_topic,
                    "title": payload["title"],
                    "body": payload["body"],
                    "actionUrl": payload.get("actionUrl"),
                    "meta": {"jobId": job_id, "source": "inapp_worker"},
                },
                "$setOnInsert": {"id": notification_id, "read": False, "createdAt": utcnow()},
            },
            upsert=True,
        )
        did = await self.ledger.record_inapp(job_id, uid, notification_id, normalized_topic)
        logger.info(f"In-app notification {notification_id} created for uid={uid}")
        return WorkerResponse(200, {
            "ok": True,
            "result": {"status": "delivered", "notificationId": notification_id},
            "deliveryId": did,
            "notificationId": notification_id,
        })


class ProviderChannelWorker(ChannelWorker):
    """Hands the request to a ProviderAdapter and records its result."""

    def __init__(self, adapter: ProviderAdapter, db=None, ledger: Optional[DeliveryLedger] = None):
        super().__init__(db=db, ledger=ledger)
        self.adapter = adapter
        self.channel = adapter.channel

    def recipient_key(self, uid: Optional[str], target: Dict[str, Any]) -> Optional[str]:
        if uid:
            return uid
        for key in TARGET_KEY_FIELDS.get(self.channel, ()):
            if target.get(key):
                return str(target[key])
        if self.channel == Channel.PUSH and target.get("tokens"):
            return "multi"
        return None

    async def deliver(self, job_id, uid, payload, target, topic) -> WorkerResponse:
        if topic and self.channel == Channel.PUSH and not target.get("topic"):
            target = {**target, "topic": topic}
        result = await self.adapter.send(target, payload, ProviderContext(job_id=job_id, uid=uid))
        did = await self.ledger.record_result(job_id, self.channel, self.recipient_key(uid, target), uid, result)
        return WorkerResponse(200, {
            "ok": result.status != "failed",
            "result": result.to_dict(),
            "retryable": result.retryable,
            "deliveryId": did,
        })


def build_channel_workers(db=None, adapters: Optional[Dict[Channel, ProviderAdapter]] = None) -> Dict[Channel, ChannelWorker]:
    """Channel -> worker map. adapters overrides individual providers (tests, alternative vendors)."""
    adapters = adapters or {}
    ledger = DeliveryLedger(db)
    providers = {
        Channel.PUSH: adapters.get(Channel.PUSH) or PushProvider(),
        Channel.EMAIL: adapters.get(Channel.EMAIL) or EmailProvider(),
        Channel.SMS: adapters.get(Channel.SMS) or SMSProvider(),
        Channel.ZALO: adapters.get(Channel.ZALO) or ZaloProvider(),
        Channel.VIBER: adapters.get(Channel.VIBER) or ViberProvider(),
    }
    workers: Dict[Channel, ChannelWorker] = {Channel.INAPP: InAppWorker(db=db, ledger=ledger)}
    for channel, adapter in providers.items():
        workers[channel] = ProviderChannelWorker(adapter, db=db, ledger=ledger)
    return workers


channel_workers = build_channel_workers()
