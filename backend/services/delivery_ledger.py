"""
Delivery ledger - one row per (job, channel, recipient) in the deliveries collection.

The row id is deterministic ({jobId}_{channel}_{recipientKey}), so repeated worker
invocations for the same attempt upsert the same document: attempts is incremented
and the latest result overwrites the previous one. Rows are never deleted.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from database import database
from models import Channel, DeliveryStatus
from services.providers.base import ProviderResult
from utils.dates import utcnow

logger = logging.getLogger(__name__)


def delivery_id(job_id: str, channel: Channel, recipient_key: Optional[str]) -> str:
    return f"{job_id}_{Channel(channel).value}_{recipient_key or 'unknown'}"


def map_provider_status(raw: Optional[str]) -> DeliveryStatus:
    """Vendor status vocabulary -> canonical delivery status."""
    s = (raw or "").lower()
    if "seen" in s or "read" in s:
        return DeliveryStatus.READ
    if "deliver" in s:
        return DeliveryStatus.DELIVERED
    if "fail" in s or "error" in s:
        return DeliveryStatus.FAILED
    return DeliveryStatus.SENT


class DeliveryLedger:
    def __init__(self, db=None):
        self.db = db

    def _db(self):
        return self.db if self.db is not None else database.get_db()

    async def _upsert(self, did: str, fields: Dict[str, Any], count_attempt: bool = True, now: Optional[datetime] = None):
        now = now or utcnow()
        update = {
            "$set": {"id": did, "updatedAt": now, **fields},
            "$setOnInsert": {"createdAt": now},
        }
        if count_attempt:
            update["$inc"] = {"attempts": 1}
        else:
            update["$setOnInsert"]["attempts"] = 0
        await self._db().deliveries.update_one({"id": did}, update, upsert=True)

    async def record_result(
        self,
        job_id: str,
        channel: Channel,
        recipient_key: Optional[str],
        uid: Optional[str],
        result: ProviderResult,
    ) -> str:
        """Write the outcome of one provider attempt."""
        did = delivery_id(job_id, channel, recipient_key)
        now = utcnow()
        await self._upsert(
            did,
            {
                "jobId": job_id,
                "uid": uid,
                "channel": Channel(channel).value,
                "provider": result.provider,
                "status": result.status,
                "providerMessageId": result.provider_message_id,
                "errorCode": result.error_code,
                "errorMessage": result.error_message,
                "meta": result.meta or None,
                "sentAt": now if result.status != DeliveryStatus.FAILED.value else None,
            },
            now=now,
        )
        logger.info(f"Delivery {did} recorded status={result.status}")
        return did

    async def record_inapp(self, job_id: str, uid: str, notification_id: str, topic: str) -> str:
        did = delivery_id(job_id, Channel.INAPP, uid)
        now = utcnow()
        await self._upsert(
            did,
            {
                "jobId": job_id,
                "uid": uid,
                "channel": Channel.INAPP.value,
                "provider": "inapp",
                "status": DeliveryStatus.DELIVERED.value,
                "deliveredAt": now,
                "meta": {"notificationId": notification_id, "topic": topic},
            },
            now=now,
        )
        return did

    async def mark_pending(self, job_id: str, channel: Channel, uid: str, reason: str) -> str:
        """Deferred send (quiet hours or awaiting retry): no provider contact, not an attempt."""
        did = delivery_id(job_id, channel, uid)
        await self._upsert(
            did,
            {
                "jobId": job_id,
                "uid": uid,
                "channel": Channel(channel).value,
                "status": DeliveryStatus.PENDING.value,
                "pendingReason": reason,
            },
            count_attempt=False,
        )
        return did

    async def mark_resumed(self, did: str):
        await self._db().deliveries.update_one({"id": did}, {"$set": {"resumedAt": utcnow()}})

    async def get(self, did: str) -> Optional[Dict[str, Any]]:
        return await self._db().deliveries.find_one({"id": did}, {"_id": 0})

    async def find_by_provider_message_id(self, provider_message_id: str) -> Optional[Dict[str, Any]]:
        # First match wins; the deterministic id scheme keeps duplicates out in practice.
        return await self._db().deliveries.find_one({"providerMessageId": provider_message_id}, {"_id": 0})

    async def list_for_job(self, job_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        cursor = self._db().deliveries.find({"jobId": job_id}, {"_id": 0}).limit(limit)
        return await cursor.to_list(limit)

    async def apply_status_event(
        self,
        delivery: Dict[str, Any],
        status: DeliveryStatus,
        source: str,
        event_name: str,
        raw: Dict[str, Any],
    ) -> None:
        """Last status wins: set the matching timestamp, clear the other one, append the event."""
        now = utcnow()
        set_fields: Dict[str, Any] = {"status": status.value, "updatedAt": now}
        unset_fields: Dict[str, Any] = {}
        if status == DeliveryStatus.DELIVERED:
            set_fields["deliveredAt"] = now
        else:
            unset_fields["deliveredAt"] = ""
        if status == DeliveryStatus.READ:
            set_fields["readAt"] = now
        else:
            unset_fields["readAt"] = ""

        update = {
            "$set": set_fields,
            "$push": {"statusEvents": {"source": source, "eventName": event_name, "raw": raw, "at": now}},
        }
        if unset_fields:
            update["$unset"] = unset_fields
        await self._db().deliveries.update_one({"id": delivery["id"]}, update)
        logger.info(f"Delivery {delivery['id']} -> {status.value} via {source}:{event_name}")


delivery_ledger = DeliveryLedger()
