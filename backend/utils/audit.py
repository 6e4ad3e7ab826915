from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

AUDIT_TRAIL_LIMIT = 100


async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Record an operator-relevant notification event in audit_logs.

    Args:
        action: The audit action type
        actor_id: Internal uid or external chat id that caused the event
        resource_type: 'job', 'delivery', 'link_code' or 'oauth_token'
        resource_id: ID of the specific resource
        metadata: Event details; delivery events carry job_id so they show in the job trail

    Never raises: a failed audit write must not fail the send it describes.
    """
    try:
        entry = AuditLog(
            action=action,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata or None,
        )
        doc = entry.model_dump(mode="json")
        await database.get_db().audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {entry.action.value} {resource_type}:{resource_id}")
        return entry.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log {getattr(action, 'value', action)}: {e}")
        return ""


async def get_job_audit_trail(job_id: str, limit: int = AUDIT_TRAIL_LIMIT) -> List[Dict[str, Any]]:
    """Job-level entries plus delivery entries tagged with the job, newest first."""
    try:
        cursor = database.get_db().audit_logs.find(
            {"$or": [
                {"resource_type": "job", "resource_id": job_id},
                {"metadata.job_id": job_id},
            ]},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)
        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to load audit trail for job {job_id}: {e}")
        return []
