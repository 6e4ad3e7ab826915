"""
Notification job intake.

POST /api/notifications/jobs                   - create a job (x-internal-secret); dispatch runs
                                                 as a background task, the sweeper picks up any
                                                 job the background task never reached
GET  /api/notifications/jobs/{job_id}          - job document
GET  /api/notifications/jobs/{job_id}/deliveries - delivery ledger rows and audit trail
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from database import database
from middleware import require_internal_secret
from models import NotificationJobCreate
from services.delivery_ledger import delivery_ledger
from services.notification_orchestrator import notification_orchestrator
from utils.audit import get_job_audit_trail
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/notifications", tags=["notifications"], dependencies=[Depends(require_internal_secret)])


async def _process_job_safely(job_id: str):
    try:
        await notification_orchestrator.process_job(job_id)
    except Exception as e:
        # Job stays 'created'; the sweeper retries it
        logger.error(f"Background dispatch of job {job_id} failed: {e}")


@router.post("/jobs", status_code=status.HTTP_201_CREATED)
async def create_notification_job(data: NotificationJobCreate, background_tasks: BackgroundTasks):
    db = database.get_db()
    if data.id and await db.notificationJobs.find_one({"id": data.id}, {"_id": 1}):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job already exists")

    job = await notification_orchestrator.create_job(data)
    background_tasks.add_task(_process_job_safely, job["id"])
    return {"ok": True, "jobId": job["id"], "status": job["status"]}


@router.get("/jobs/{job_id}")
async def get_notification_job(job_id: str):
    db = database.get_db()
    job = await db.notificationJobs.find_one({"id": job_id}, {"_id": 0})
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.get("/jobs/{job_id}/deliveries")
async def list_job_deliveries(job_id: str):
    deliveries = await delivery_ledger.list_for_job(job_id)
    audit = await get_job_audit_trail(job_id)
    return {"jobId": job_id, "deliveries": deliveries, "audit": audit}
