"""
Notification Orchestrator.
Turns a NotificationJob into per-channel worker calls:
audience -> template -> preferences -> render -> channels -> quiet hours -> workers.

In-app is always delivered immediately. Other channels inside the recipient's
quiet hours get a pending delivery row and an outbox item instead of a provider
call; the outbox sweeper (resume_outbox) sends them once the window closes and
retries retryable provider failures with backoff.
"""
from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from pymongo import ReturnDocument

from database import database
from models import (
    AuditAction,
    Channel,
    ContactInfo,
    JobStatus,
    NotificationJobCreate,
    UserPreference,
)
from services.delivery_ledger import DeliveryLedger, delivery_id
from services.notification_outbox import NotificationOutbox, OUTBOX_BATCH_SIZE
from services.providers.base import ProviderResult
from services.quiet_hours import quiet_window_end
from services.template_renderer import render_template
from services.worker_dispatch import WorkerDispatcher, worker_dispatcher
from utils.audit import create_audit_log
from utils.dates import utcnow

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = [Channel.INAPP, Channel.PUSH]
# Status written once every recipient has been dispatched. Whether a job should
# end in a distinct "done" state is undecided, so it is configurable.
JOB_TERMINAL_STATUS = os.getenv("NOTIFICATION_JOB_TERMINAL_STATUS", JobStatus.PROCESSING.value)
JOB_CLAIM_STALE_SECONDS = 600
JOB_SWEEP_MIN_AGE_SECONDS = 30


# ============================================================================
# AUDIENCE RESOLUTION
# ============================================================================

def _resolve_user_audience(audience: Dict[str, Any]) -> List[str]:
    uid = audience.get("uid")
    return [uid] if uid else []


AUDIENCE_RESOLVERS: Dict[str, Callable[[Dict[str, Any]], List[str]]] = {
    "user": _resolve_user_audience,
}


def resolve_audience(audience: Optional[Dict[str, Any]]) -> List[str]:
    audience = audience or {}
    resolver = AUDIENCE_RESOLVERS.get(audience.get("type"))
    if resolver is None:
        logger.info(f"Audience type {audience.get('type')!r} has no resolver; nothing to send")
        return []
    return resolver(audience)


# ============================================================================
# CHANNELS & TARGETS
# ============================================================================

def select_channels(job: Dict[str, Any], template: Dict[str, Any]) -> List[Channel]:
    raw = job.get("requiredChannels") or template.get("channels") or DEFAULT_CHANNELS
    channels: List[Channel] = []
    for value in raw:
        try:
            channel = Channel(value)
        except ValueError:
            logger.warning(f"Job {job.get('id')}: unknown channel {value!r} ignored")
            continue
        if channel not in channels:
            channels.append(channel)
    return channels


def build_target(channel: Channel, contact: ContactInfo) -> Dict[str, Any]:
    if channel == Channel.PUSH:
        return {"tokens": list(contact.fcm_tokens or [])}
    if channel == Channel.ZALO:
        return {"zaloUserId": contact.zalo_user_id}
    if channel == Channel.VIBER:
        return {"viberUserId": contact.viber_user_id}
    if channel == Channel.EMAIL:
        return {"to": contact.email}
    if channel == Channel.SMS:
        return {"to": contact.phone}
    return {}


def _is_retryable(response) -> bool:
    """Worker unreachable or provider marked the failure retryable."""
    if response is None or response.status_code >= 500:
        return True
    return bool(response.body.get("retryable"))


def _response_error(response) -> Optional[str]:
    if response is None:
        return "worker unreachable"
    result = response.body.get("result") or {}
    return response.body.get("error") or result.get("errorMessage")


class NotificationOrchestrator:
    def __init__(
        self,
        db=None,
        dispatcher: Optional[WorkerDispatcher] = None,
        ledger: Optional[DeliveryLedger] = None,
        outbox: Optional[NotificationOutbox] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher or worker_dispatcher
        self.ledger = ledger or DeliveryLedger(db)
        self.outbox = outbox or NotificationOutbox(db)

    def _db(self):
        return self.db if self.db is not None else database.get_db()

    # ------------------------------------------------------------------
    # Job intake
    # ------------------------------------------------------------------

    async def create_job(self, data: NotificationJobCreate) -> Dict[str, Any]:
        """Insert a job in status created. Dispatch happens in process_job."""
        job = {
            "id": data.id or str(uuid.uuid4()),
            "templateId": data.template_id,
            "audience": data.audience.model_dump(exclude_none=True),
            "data": data.data,
            "requiredChannels": [c.value for c in data.required_channels] if data.required_channels else None,
            "topic": data.topic,
            "status": JobStatus.CREATED.value,
            "created_at": utcnow(),
        }
        await self._db().notificationJobs.insert_one(dict(job))
        await create_audit_log(
            action=AuditAction.NOTIFICATION_JOB_CREATED,
            resource_type="job",
            resource_id=job["id"],
            metadata={"template_id": job["templateId"], "audience_type": data.audience.type},
        )
        logger.info(f"Notification job {job['id']} created (template={job['templateId']})")
        return job

    async def claim_job(self, job_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Atomically take a created job for dispatch; None if another run has it."""
        now = now or utcnow()
        stale = now - timedelta(seconds=JOB_CLAIM_STALE_SECONDS)
        return await self._db().notificationJobs.find_one_and_update(
            {
                "id": job_id,
                "status": JobStatus.CREATED.value,
                "dispatchedAt": {"$exists": False},
                "$or": [
                    {"dispatchClaimedAt": {"$exists": False}},
                    {"dispatchClaimedAt": {"$lte": stale}},
                ],
            },
            {"$set": {"dispatchClaimedAt": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def process_job(self, job_id: str) -> Dict[str, Any]:
        job = await self.claim_job(job_id)
        if not job:
            logger.info(f"Job {job_id} not claimable (already dispatched or in progress)")
            return {"job_id": job_id, "status": "skipped"}
        return await self.dispatch_job(job)

    async def sweep_created_jobs(self, now: Optional[datetime] = None, limit: int = 50) -> int:
        """Pick up jobs whose creation-time dispatch never ran (restart, crash)."""
        now = now or utcnow()
        cursor = self._db().notificationJobs.find(
            {
                "status": JobStatus.CREATED.value,
                "dispatchedAt": {"$exists": False},
                "created_at": {"$lte": now - timedelta(seconds=JOB_SWEEP_MIN_AGE_SECONDS)},
            },
            {"_id": 0, "id": 1},
        ).limit(limit)
        jobs = await cursor.to_list(limit)
        processed = 0
        for job in jobs:
            try:
                result = await self.process_job(job["id"])
                if result.get("status") != "skipped":
                    processed += 1
            except Exception as e:
                logger.warning(f"Sweeper dispatch for job {job.get('id')} failed: {e}")
        return processed

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch_job(self, job: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        db = self._db()
        job_id = job["id"]
        uids = resolve_audience(job.get("audience"))
        if not uids:
            await db.notificationJobs.update_one(
                {"id": job_id},
                {"$set": {"dispatchedAt": utcnow(), "dispatchNote": "no_recipients"}},
            )
            return {"job_id": job_id, "status": job.get("status"), "recipients": 0}

        template = await db.notificationTemplates.find_one({"id": job.get("templateId")}, {"_id": 0})
        if not template:
            logger.warning(f"Job {job_id}: template {job.get('templateId')} not found")
            await db.notificationJobs.update_one(
                {"id": job_id},
                {"$set": {"status": JobStatus.FAILED.value, "error": "template_not_found", "dispatchedAt": utcnow()}},
            )
            await create_audit_log(
                action=AuditAction.NOTIFICATION_JOB_FAILED,
                resource_type="job",
                resource_id=job_id,
                metadata={"reason": "template_not_found", "template_id": job.get("templateId")},
            )
            return {"job_id": job_id, "status": JobStatus.FAILED.value, "error": "template_not_found"}

        recipients = 0
        for uid in uids:
            if await self._dispatch_recipient(job, template, uid, now):
                recipients += 1

        await db.notificationJobs.update_one(
            {"id": job_id},
            {"$set": {"status": JOB_TERMINAL_STATUS, "dispatchedAt": utcnow()}},
        )
        logger.info(f"Job {job_id} dispatched to {recipients}/{len(uids)} recipient(s)")
        return {"job_id": job_id, "status": JOB_TERMINAL_STATUS, "recipients": recipients}

    async def _load_preference(self, uid: str) -> Optional[UserPreference]:
        doc = await self._db().userNotificationPreferences.find_one({"uid": uid}, {"_id": 0})
        if not doc:
            return None
        try:
            return UserPreference.model_validate({"uid": uid, **doc})
        except ValidationError as e:
            logger.warning(f"Preference for uid={uid} is malformed, skipping: {e}")
            return None

    async def _dispatch_recipient(self, job: Dict[str, Any], template: Dict[str, Any], uid: str, now) -> bool:
        pref = await self._load_preference(uid)
        if not pref:
            logger.info(f"Job {job['id']}: no preferences for uid={uid}, skipped")
            return False

        payload = render_template(template, job.get("data"), pref.language).to_dict()
        channels = select_channels(job, template)

        if Channel.INAPP in channels:
            await self.dispatcher.dispatch(
                Channel.INAPP,
                {"jobId": job["id"], "uid": uid, "payload": payload, "topic": job.get("topic")},
            )

        quiet_until = quiet_window_end(pref.quiet_hours, pref.timezone, now)
        for channel in channels:
            if channel == Channel.INAPP:
                continue
            if quiet_until:
                did = await self.ledger.mark_pending(job["id"], channel, uid, reason="quiet_hours")
                await self.outbox.defer(did, job["id"], uid, channel, quiet_until)
                await create_audit_log(
                    action=AuditAction.DELIVERY_DEFERRED_QUIET_HOURS,
                    actor_id=uid,
                    resource_type="delivery",
                    resource_id=did,
                    metadata={"job_id": job["id"], "channel": channel.value, "until": quiet_until.isoformat()},
                )
                continue
            await self._send(job["id"], uid, channel, payload, pref, attempt=1)
        return True

    async def _send(
        self,
        job_id: str,
        uid: str,
        channel: Channel,
        payload: Dict[str, Any],
        pref: UserPreference,
        attempt: int,
    ):
        response = await self.dispatcher.dispatch(
            channel,
            {"jobId": job_id, "uid": uid, "payload": payload, "target": build_target(channel, pref.contact)},
        )
        did = delivery_id(job_id, channel, uid)
        if _is_retryable(response):
            await self.outbox.schedule_retry(did, job_id, uid, channel, attempt, _response_error(response))
            return response, True
        return response, False

    # ------------------------------------------------------------------
    # Outbox sweeper
    # ------------------------------------------------------------------

    async def resume_outbox(self, now: Optional[datetime] = None, limit: int = OUTBOX_BATCH_SIZE) -> int:
        """Process due outbox items. Returns how many were sent (or definitively closed)."""
        now = now or utcnow()
        items = await self.outbox.claim_due(now, limit)
        processed = 0
        for item in items:
            try:
                if await self._resume_item(item, now):
                    processed += 1
            except Exception as e:
                logger.warning(f"Outbox item {item.get('delivery_id')} failed: {e}")
                await self.outbox.schedule_retry(
                    item["delivery_id"],
                    item.get("job_id"),
                    item.get("uid"),
                    item.get("channel"),
                    int(item.get("attempt_count") or 0) + 1,
                    str(e),
                )
        return processed

    async def _close_unsendable(self, item: Dict[str, Any], code: str, message: str) -> bool:
        result = ProviderResult(provider="orchestrator", status="skipped", error_code=code, error_message=message)
        await self.ledger.record_result(item["job_id"], item["channel"], item["uid"], item["uid"], result)
        await self.outbox.complete(item, code.lower())
        logger.info(f"Outbox item {item['delivery_id']} closed: {code}")
        return True

    async def _resume_item(self, item: Dict[str, Any], now: datetime) -> bool:
        db = self._db()
        channel = Channel(item["channel"])
        uid = item["uid"]

        job = await db.notificationJobs.find_one({"id": item["job_id"]}, {"_id": 0})
        if not job:
            return await self._close_unsendable(item, "JOB_NOT_FOUND", "Job no longer exists")
        template = await db.notificationTemplates.find_one({"id": job.get("templateId")}, {"_id": 0})
        if not template:
            return await self._close_unsendable(item, "TEMPLATE_NOT_FOUND", "Template no longer exists")
        pref = await self._load_preference(uid)
        if not pref:
            return await self._close_unsendable(item, "NO_PREFERENCES", "User preferences removed")

        quiet_until = quiet_window_end(pref.quiet_hours, pref.timezone, now)
        if quiet_until:
            await self.outbox.reschedule(item, quiet_until)
            return False

        payload = render_template(template, job.get("data"), pref.language).to_dict()
        attempt = int(item.get("attempt_count") or 0) + 1
        response, retrying = await self._send(job["id"], uid, channel, payload, pref, attempt=attempt)
        await self.ledger.mark_resumed(item["delivery_id"])
        if not retrying:
            await self.outbox.complete(item, "sent" if response and response.ok else "finished")
        return True


notification_orchestrator = NotificationOrchestrator()
