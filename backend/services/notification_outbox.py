"""
Notification outbox - durable work items for sends that did not complete on first pass.

Two sources feed it:
- quiet hours: the delivery stays pending until the recipient's window closes
  (not counted as an attempt)
- retryable provider failures: rescheduled with exponential backoff
  (OUTBOX_BASE_BACKOFF_SECONDS * 2^(attempt-1)) until OUTBOX_MAX_ATTEMPTS,
  then dead-lettered

Items are keyed by delivery_id and claimed atomically by the sweeper so two
overlapping sweeps never resend the same item. A CLAIMED item whose sweeper died
is reclaimable after CLAIM_STALE_SECONDS.
"""
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from database import database
from models import AuditAction, Channel, OutboxStatus
from utils.audit import create_audit_log
from utils.dates import utcnow

logger = logging.getLogger(__name__)

OUTBOX_BASE_BACKOFF_SECONDS = int(os.getenv("OUTBOX_BASE_BACKOFF_SECONDS", "60"))
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))
CLAIM_STALE_SECONDS = 600


def backoff_seconds(attempt: int) -> int:
    return OUTBOX_BASE_BACKOFF_SECONDS * (2 ** max(0, attempt - 1))


def _channel_value(channel) -> str:
    """Stored channel string; unknown values pass through so a bad item can still be dead-lettered."""
    return channel.value if isinstance(channel, Channel) else str(channel)


class NotificationOutbox:
    def __init__(self, db=None):
        self.db = db

    def _db(self):
        return self.db if self.db is not None else database.get_db()

    async def _upsert(self, delivery_id: str, fields: Dict[str, Any]):
        now = utcnow()
        await self._db().notification_outbox.update_one(
            {"delivery_id": delivery_id},
            {
                "$set": {"delivery_id": delivery_id, "updated_at": now, **fields},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )

    async def defer(self, delivery_id: str, job_id: str, uid: str, channel: Channel, until: datetime):
        """Quiet-hours deferral. Keeps any attempt count already recorded."""
        await self._upsert(
            delivery_id,
            {
                "job_id": job_id,
                "uid": uid,
                "channel": _channel_value(channel),
                "status": OutboxStatus.PENDING.value,
                "reason": "quiet_hours",
                "next_run_at": until,
            },
        )

    async def schedule_retry(
        self,
        delivery_id: str,
        job_id: str,
        uid: str,
        channel: Channel,
        attempt_count: int,
        error: Optional[str],
    ) -> bool:
        """Queue another attempt after backoff. Returns False (and dead-letters) once attempts are exhausted."""
        if attempt_count >= OUTBOX_MAX_ATTEMPTS:
            await self._upsert(
                delivery_id,
                {
                    "job_id": job_id,
                    "uid": uid,
                    "channel": _channel_value(channel),
                    "status": OutboxStatus.DEAD.value,
                    "attempt_count": attempt_count,
                    "last_error": error,
                },
            )
            await create_audit_log(
                action=AuditAction.DELIVERY_DEAD_LETTERED,
                actor_id=uid,
                resource_type="delivery",
                resource_id=delivery_id,
                metadata={"job_id": job_id, "channel": _channel_value(channel), "attempts": attempt_count, "error": error},
            )
            logger.warning(f"Delivery {delivery_id} dead-lettered after {attempt_count} attempts: {error}")
            return False

        delay = backoff_seconds(attempt_count)
        await self._upsert(
            delivery_id,
            {
                "job_id": job_id,
                "uid": uid,
                "channel": _channel_value(channel),
                "status": OutboxStatus.PENDING.value,
                "reason": "retry",
                "attempt_count": attempt_count,
                "last_error": error,
                "next_run_at": utcnow() + timedelta(seconds=delay),
            },
        )
        await create_audit_log(
            action=AuditAction.DELIVERY_RETRY_SCHEDULED,
            actor_id=uid,
            resource_type="delivery",
            resource_id=delivery_id,
            metadata={"job_id": job_id, "channel": _channel_value(channel), "attempt_count": attempt_count, "delay_seconds": delay, "error": error},
        )
        logger.info(f"Delivery {delivery_id} retry {attempt_count + 1} in {delay}s")
        return True

    async def claim_due(self, now: Optional[datetime] = None, limit: int = OUTBOX_BATCH_SIZE) -> List[Dict[str, Any]]:
        now = now or utcnow()
        stale = now - timedelta(seconds=CLAIM_STALE_SECONDS)
        claimed = []
        for _ in range(limit):
            item = await self._db().notification_outbox.find_one_and_update(
                {
                    "$or": [
                        {"status": OutboxStatus.PENDING.value, "next_run_at": {"$lte": now}},
                        {"status": OutboxStatus.CLAIMED.value, "claimed_at": {"$lte": stale}},
                    ]
                },
                {"$set": {"status": OutboxStatus.CLAIMED.value, "claimed_at": now}},
                projection={"_id": 0},
                sort=[("next_run_at", 1)],
                return_document=ReturnDocument.AFTER,
            )
            if not item:
                break
            claimed.append(item)
        return claimed

    async def reschedule(self, item: Dict[str, Any], next_run_at: datetime):
        """Put a claimed item back without counting an attempt (still in quiet hours)."""
        await self._db().notification_outbox.update_one(
            {"delivery_id": item["delivery_id"]},
            {"$set": {"status": OutboxStatus.PENDING.value, "next_run_at": next_run_at, "updated_at": utcnow()}},
        )

    async def complete(self, item: Dict[str, Any], outcome: str):
        await self._db().notification_outbox.update_one(
            {"delivery_id": item["delivery_id"]},
            {"$set": {"status": OutboxStatus.DONE.value, "outcome": outcome, "completed_at": utcnow()}},
        )


notification_outbox = NotificationOutbox()
