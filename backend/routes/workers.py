"""
Channel worker endpoints: POST /api/workers/{channel}.

Used when the orchestrator runs with WORKER_DISPATCH_MODE=http, and by operators
to replay a single send. Requires the x-internal-secret header.
"""
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from middleware import require_internal_secret
from models import Channel
from services.channel_workers import channel_workers
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/workers", tags=["workers"], dependencies=[Depends(require_internal_secret)])


@router.post("/{channel}")
async def run_channel_worker(channel: str, request: Request):
    try:
        worker = channel_workers[Channel(channel)]
    except ValueError:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"ok": False, "error": f"Unknown channel: {channel}"},
        )

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": "Invalid JSON body"},
        )

    response = await worker.handle(body)
    return JSONResponse(status_code=response.status_code, content=response.body)
