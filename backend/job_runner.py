"""
Shared job runner for scheduled background jobs.
Used by the server scheduler; each run_* can also be awaited directly from scripts.
Each run_* returns a dict with "message" (and optionally "count").
"""
import logging

logger = logging.getLogger(__name__)


async def run_zalo_token_refresh():
    try:
        from services.zalo_credentials import zalo_credentials
        result = await zalo_credentials.refresh_if_needed()
        refreshed = 1 if result.get("action") == "refreshed" else 0
        logger.info(f"Zalo token refresh job completed: {result.get('action')} ({result.get('reason') or result.get('error') or 'ok'})")
        return {"message": f"Zalo token refresh: {result.get('action')}", "count": refreshed}
    except Exception as e:
        logger.error(f"Zalo token refresh job failed: {e}")
        raise


async def run_notification_outbox_worker():
    """Send due outbox items: quiet-hours deferrals whose window closed, and provider retries."""
    try:
        from services.notification_orchestrator import notification_orchestrator
        count = await notification_orchestrator.resume_outbox()
        if count:
            logger.info(f"Notification outbox worker: {count} item(s) processed")
        return {"message": f"Outbox items processed: {count}", "count": count}
    except Exception as e:
        logger.error(f"Notification outbox worker failed: {e}")
        raise


async def run_notification_job_sweeper():
    try:
        from services.notification_orchestrator import notification_orchestrator
        count = await notification_orchestrator.sweep_created_jobs()
        if count:
            logger.info(f"Notification job sweeper: {count} job(s) dispatched")
        return {"message": f"Jobs dispatched by sweeper: {count}", "count": count}
    except Exception as e:
        logger.error(f"Notification job sweeper failed: {e}")
        raise


JOB_RUNNERS = {
    "zalo_token_refresh": run_zalo_token_refresh,
    "notification_outbox_worker": run_notification_outbox_worker,
    "notification_job_sweeper": run_notification_job_sweeper,
}
