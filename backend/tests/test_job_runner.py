"""
Scheduled job runners and the idempotent seed script.
"""
import pytest
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import seed
from job_runner import (
    JOB_RUNNERS,
    run_notification_job_sweeper,
    run_notification_outbox_worker,
    run_zalo_token_refresh,
)
from services.notification_orchestrator import notification_orchestrator
from services.zalo_credentials import zalo_credentials
from server import register_scheduled_jobs


def test_job_runner_registry():
    assert set(JOB_RUNNERS) == {"zalo_token_refresh", "notification_outbox_worker", "notification_job_sweeper"}


def test_scheduler_registers_every_runner():
    target = MagicMock()
    register_scheduled_jobs(target)
    registered = {c.kwargs["id"]: c.args[0] for c in target.add_job.call_args_list}
    assert registered == JOB_RUNNERS
    assert all(c.kwargs["replace_existing"] for c in target.add_job.call_args_list)


@pytest.mark.asyncio
async def test_outbox_worker_reports_count():
    with patch.object(notification_orchestrator, "resume_outbox", AsyncMock(return_value=3)):
        result = await run_notification_outbox_worker()
    assert result == {"message": "Outbox items processed: 3", "count": 3}


@pytest.mark.asyncio
async def test_job_sweeper_reports_count():
    with patch.object(notification_orchestrator, "sweep_created_jobs", AsyncMock(return_value=0)):
        result = await run_notification_job_sweeper()
    assert result["count"] == 0


@pytest.mark.asyncio
async def test_zalo_refresh_counts_only_refreshes():
    with patch.object(zalo_credentials, "refresh_if_needed", AsyncMock(return_value={"action": "refreshed"})):
        assert (await run_zalo_token_refresh())["count"] == 1
    with patch.object(zalo_credentials, "refresh_if_needed", AsyncMock(return_value={"action": "skipped", "reason": "fresh"})):
        assert (await run_zalo_token_refresh())["count"] == 0


@pytest.mark.asyncio
async def test_runner_errors_propagate_to_scheduler():
    with patch.object(notification_orchestrator, "resume_outbox", AsyncMock(side_effect=RuntimeError("db down"))):
        with pytest.raises(RuntimeError):
            await run_notification_outbox_worker()


@pytest.mark.asyncio
async def test_seed_is_idempotent(fake_db, monkeypatch):
    @asynccontextmanager
    async def fake_context():
        yield fake_db

    monkeypatch.setattr(seed, "get_db_context", fake_context)
    monkeypatch.setenv("SEED_UID", "seed-user")
    monkeypatch.setenv("SEED_EMAIL", "seed@example.vn")

    await seed.seed_database()
    await seed.seed_database()

    [template] = fake_db.notificationTemplates.docs
    assert template["id"] == seed.SAMPLE_TEMPLATE["id"]
    assert template["channels"] == ["inapp", "push", "email"]
    [pref] = fake_db.userNotificationPreferences.docs
    assert pref["uid"] == "seed-user"
    assert pref["contact"]["email"] == "seed@example.vn"
    assert pref["quietHours"] == {"start": "22:00", "end": "07:00"}
