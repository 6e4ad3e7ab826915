"""
Zalo OA credential refresher.

The OA access token lives in a single document (zalo_oa/config):
    {access_token, refresh_token, expires_at, updated_at}

Refresh is proactive: a scheduled job refreshes whenever expires_at is unknown or
within REFRESH_MARGIN_SECONDS of now. Send attempts only read the record; no
refresh-and-retry happens on the request path. Zalo rotates the refresh token on
every refresh, so the new one is stored alongside the access token.
"""
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from database import database
from models import AuditAction
from utils.audit import create_audit_log
from utils.dates import parse_dt, utcnow

logger = logging.getLogger(__name__)

ZALO_OAUTH_URL = os.getenv("ZALO_OAUTH_URL", "https://oauth.zaloapp.com/v4/oa/access_token")
ZALO_APP_ID = os.getenv("ZALO_APP_ID", "")
ZALO_APP_SECRET = os.getenv("ZALO_APP_SECRET", "")
ZALO_OA_TOKEN = os.getenv("ZALO_OA_TOKEN", "")
REFRESH_MARGIN_SECONDS = 600
CONFIG_DOC_ID = "config"


class ZaloCredentialRefresher:
    def __init__(self, db=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.db = db
        self._transport = transport

    def _db(self):
        return self.db if self.db is not None else database.get_db()

    async def get_record(self) -> Optional[Dict[str, Any]]:
        return await self._db().zalo_oa.find_one({"_id": CONFIG_DOC_ID})

    async def get_access_token(self) -> Optional[str]:
        """Stored OAuth token, falling back to the static ZALO_OA_TOKEN secret."""
        record = await self.get_record()
        token = (record or {}).get("access_token")
        return token or ZALO_OA_TOKEN or None

    @staticmethod
    def needs_refresh(record: Dict[str, Any], now: datetime) -> bool:
        expires_at = parse_dt(record.get("expires_at"))
        if expires_at is None:
            return True
        return expires_at - now <= timedelta(seconds=REFRESH_MARGIN_SECONDS)

    async def refresh_if_needed(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        record = await self.get_record()
        if not record or not record.get("refresh_token"):
            logger.info("Zalo token refresh skipped: no refresh_token stored")
            return {"action": "skipped", "reason": "no_refresh_token"}
        if not self.needs_refresh(record, now):
            return {"action": "skipped", "reason": "token_fresh", "expires_at": record.get("expires_at")}

        try:
            data = await self._request_refresh(record["refresh_token"])
        except Exception as e:
            logger.error(f"Zalo token refresh failed: {e}")
            await create_audit_log(
                action=AuditAction.OAUTH_TOKEN_REFRESH_FAILED,
                resource_type="oauth_token",
                resource_id="zalo_oa",
                metadata={"error": str(e)[:500]},
            )
            return {"action": "failed", "error": str(e)}

        expires_in = int(data.get("expires_in") or 0)
        update = {
            "access_token": data["access_token"],
            "expires_at": now + timedelta(seconds=expires_in) if expires_in else None,
            "updated_at": now,
        }
        if data.get("refresh_token"):
            update["refresh_token"] = data["refresh_token"]
        await self._db().zalo_oa.update_one({"_id": CONFIG_DOC_ID}, {"$set": update}, upsert=True)
        await create_audit_log(
            action=AuditAction.OAUTH_TOKEN_REFRESHED,
            resource_type="oauth_token",
            resource_id="zalo_oa",
            metadata={"expires_in": expires_in},
        )
        logger.info(f"Zalo OA token refreshed, expires in {expires_in}s")
        return {"action": "refreshed", "expires_at": update["expires_at"]}

    async def _request_refresh(self, refresh_token: str) -> Dict[str, Any]:
        if not ZALO_APP_ID or not ZALO_APP_SECRET:
            raise RuntimeError("ZALO_APP_ID / ZALO_APP_SECRET not set")
        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            response = await client.post(
                ZALO_OAUTH_URL,
                data={"refresh_token": refresh_token, "app_id": ZALO_APP_ID, "grant_type": "refresh_token"},
                headers={"secret_key": ZALO_APP_SECRET},
            )
        data = response.json() if response.content else {}
        if response.status_code >= 400 or not data.get("access_token"):
            message = data.get("error_description") or data.get("error_name") or data.get("message")
            raise RuntimeError(f"Zalo OAuth HTTP {response.status_code}: {message or data.get('error')}")
        return data


zalo_credentials = ZaloCredentialRefresher()
