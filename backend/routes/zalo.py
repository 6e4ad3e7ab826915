"""
Zalo account linking.

POST /api/zalo/link-code - signed-in user gets a short code to send as "LINK-<code>" to the OA.
POST /api/zalo/ingest    - service-to-service follow/unfollow/link events (x-internal-secret,
                           ZALO_INGEST_SECRET when set).
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from middleware import INTERNAL_SECRET_HEADER, require_auth, secret_matches
from models import LinkAction, LinkCodeRequest
from services.link_codes import LinkCodeExhaustedError, LinkIngestError, link_code_service
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
import logging
import os

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/zalo", tags=["zalo"])


class ZaloIngestBody(BaseModel):
    """POST /api/zalo/ingest. zaloUserId is accepted for older callers."""
    model_config = ConfigDict(populate_by_name=True)

    action: Optional[str] = None
    external_user_id: Optional[str] = Field(default=None, alias="externalUserId")
    zalo_user_id: Optional[str] = Field(default=None, alias="zaloUserId")
    code: Optional[str] = None


def _ingest_secret() -> str:
    return os.getenv("ZALO_INGEST_SECRET") or os.getenv("INTERNAL_WORKER_SECRET") or ""


async def require_ingest_secret(request: Request) -> None:
    if not secret_matches(request.headers.get(INTERNAL_SECRET_HEADER), _ingest_secret()):
        logger.warning("Rejected Zalo ingest call: bad or missing secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/link-code")
async def create_link_code(data: Optional[LinkCodeRequest] = None, user: dict = Depends(require_auth)):
    """Issue a 10-minute single-use link code for the caller."""
    try:
        return await link_code_service.issue_code(user["uid"], data.length if data else None)
    except LinkCodeExhaustedError as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ok": False, "error": "RESOURCE_EXHAUSTED", "message": str(e)},
        )


@router.post("/ingest", dependencies=[Depends(require_ingest_secret)])
async def zalo_ingest(data: ZaloIngestBody):
    external_id = data.external_user_id or data.zalo_user_id
    try:
        action = LinkAction(data.action)
    except ValueError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False, "error": "BAD_ACTION"})
    if not external_id:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False, "error": "MISSING_EXTERNAL_ID"})

    try:
        if action == LinkAction.FOLLOW:
            await link_code_service.set_followed(external_id, True)
            return {"ok": True}
        if action == LinkAction.UNFOLLOW:
            await link_code_service.set_followed(external_id, False)
            return {"ok": True}

        if not data.code:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False, "error": "MISSING_CODE"})
        return await link_code_service.redeem_code(external_id, data.code)
    except LinkIngestError as e:
        return JSONResponse(status_code=e.status_code, content={"ok": False, "error": e.code})
    except Exception as e:
        logger.exception(f"Zalo ingest error: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": str(e)},
        )
