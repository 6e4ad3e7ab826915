"""
Notification outbox: exponential backoff, dead-lettering at the attempt cap,
atomic claiming of due items (no double claim), stale claim recovery.
"""
import pytest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import AuditAction, Channel, OutboxStatus
from services.notification_outbox import NotificationOutbox, backoff_seconds

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def test_backoff_doubles_per_attempt():
    with patch("services.notification_outbox.OUTBOX_BASE_BACKOFF_SECONDS", 60):
        assert [backoff_seconds(n) for n in (1, 2, 3, 4)] == [60, 120, 240, 480]


@pytest.mark.asyncio
async def test_schedule_retry_sets_next_run(fake_db):
    outbox = NotificationOutbox(fake_db)
    with patch("services.notification_outbox.utcnow", return_value=NOW):
        scheduled = await outbox.schedule_retry("j1_sms_u1", "j1", "u1", Channel.SMS, 1, "HTTP 503")
    assert scheduled is True
    item = await fake_db.notification_outbox.find_one({"delivery_id": "j1_sms_u1"})
    assert item["status"] == OutboxStatus.PENDING.value
    assert item["reason"] == "retry"
    assert item["attempt_count"] == 1
    assert item["next_run_at"] == NOW + timedelta(seconds=backoff_seconds(1))
    assert item["last_error"] == "HTTP 503"
    assert any(a["action"] == AuditAction.DELIVERY_RETRY_SCHEDULED for a in fake_db.audit_logs.docs)


@pytest.mark.asyncio
async def test_schedule_retry_dead_letters_at_cap(fake_db):
    outbox = NotificationOutbox(fake_db)
    with patch("services.notification_outbox.OUTBOX_MAX_ATTEMPTS", 3):
        scheduled = await outbox.schedule_retry("j1_sms_u1", "j1", "u1", Channel.SMS, 3, "HTTP 503")
    assert scheduled is False
    item = await fake_db.notification_outbox.find_one({"delivery_id": "j1_sms_u1"})
    assert item["status"] == OutboxStatus.DEAD.value
    assert any(a["action"] == AuditAction.DELIVERY_DEAD_LETTERED for a in fake_db.audit_logs.docs)


@pytest.mark.asyncio
async def test_claim_due_only_claims_due_items_once(fake_db):
    outbox = NotificationOutbox(fake_db)
    await outbox.defer("due", "j1", "u1", Channel.EMAIL, NOW - timedelta(minutes=1))
    await outbox.defer("later", "j1", "u2", Channel.EMAIL, NOW + timedelta(hours=1))

    first = await outbox.claim_due(NOW, limit=10)
    second = await outbox.claim_due(NOW, limit=10)

    assert [i["delivery_id"] for i in first] == ["due"]
    assert first[0]["status"] == OutboxStatus.CLAIMED.value
    assert "_id" not in first[0]
    assert second == []


@pytest.mark.asyncio
async def test_claim_due_respects_limit_and_order(fake_db):
    outbox = NotificationOutbox(fake_db)
    await outbox.defer("b", "j1", "u2", Channel.SMS, NOW - timedelta(minutes=1))
    await outbox.defer("a", "j1", "u1", Channel.SMS, NOW - timedelta(minutes=5))
    await outbox.defer("c", "j1", "u3", Channel.SMS, NOW - timedelta(seconds=5))
    claimed = await outbox.claim_due(NOW, limit=2)
    assert [i["delivery_id"] for i in claimed] == ["a", "b"]


@pytest.mark.asyncio
async def test_stale_claim_is_reclaimed(fake_db):
    outbox = NotificationOutbox(fake_db)
    await outbox.defer("d1", "j1", "u1", Channel.PUSH, NOW - timedelta(hours=1))
    await outbox.claim_due(NOW - timedelta(minutes=30), limit=1)

    assert await outbox.claim_due(NOW - timedelta(minutes=25), limit=1) == []
    reclaimed = await outbox.claim_due(NOW, limit=1)
    assert [i["delivery_id"] for i in reclaimed] == ["d1"]


@pytest.mark.asyncio
async def test_reschedule_and_complete(fake_db):
    outbox = NotificationOutbox(fake_db)
    await outbox.defer("d1", "j1", "u1", Channel.ZALO, NOW - timedelta(minutes=1))
    [item] = await outbox.claim_due(NOW)

    await outbox.reschedule(item, NOW + timedelta(hours=2))
    doc = await fake_db.notification_outbox.find_one({"delivery_id": "d1"})
    assert doc["status"] == OutboxStatus.PENDING.value
    assert doc["next_run_at"] == NOW + timedelta(hours=2)

    await outbox.complete(item, "sent")
    doc = await fake_db.notification_outbox.find_one({"delivery_id": "d1"})
    assert doc["status"] == OutboxStatus.DONE.value
    assert doc["outcome"] == "sent"


@pytest.mark.asyncio
async def test_defer_keeps_single_item_per_delivery(fake_db):
    outbox = NotificationOutbox(fake_db)
    await outbox.defer("d1", "j1", "u1", Channel.ZALO, NOW)
    await outbox.defer("d1", "j1", "u1", Channel.ZALO, NOW + timedelta(hours=1))
    assert len(fake_db.notification_outbox.docs) == 1
    assert fake_db.notification_outbox.docs[0]["next_run_at"] == NOW + timedelta(hours=1)
