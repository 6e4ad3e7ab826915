"""
Zalo link codes - bind a Zalo OA follower to an internal user.

Flow:
1. Signed-in user asks for a short code (issue_code) and sends "LINK-<code>" to the OA.
2. The OA webhook (or the ingest route) redeems it (redeem_code) for the sender's Zalo id.
3. Redemption stores contact.zaloUserId on the user's preferences and the
   reverse mapping in zalo_oa_users.

Codes are single-use. The used flag is flipped with a compare-and-swap so two
concurrent redemptions of the same code cannot both succeed.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from database import database
from models import AuditAction
from utils.audit import create_audit_log
from utils.dates import parse_dt, to_epoch_ms, utcnow

logger = logging.getLogger(__name__)

# No 0/O, 1/I/L
ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
MIN_CODE_LENGTH = 4
MAX_CODE_LENGTH = 12
DEFAULT_CODE_LENGTH = 6
CODE_TTL_MINUTES = 10
MAX_GENERATION_ATTEMPTS = 5


class LinkCodeExhaustedError(Exception):
    """Every generated candidate collided with an existing code."""


class LinkIngestError(Exception):
    def __init__(self, code: str, status_code: int):
        super().__init__(code)
        self.code = code
        self.status_code = status_code


def clamp_length(length: Optional[int]) -> int:
    if length is None:
        return DEFAULT_CODE_LENGTH
    return max(MIN_CODE_LENGTH, min(MAX_CODE_LENGTH, int(length)))


def generate_code(length: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def code_expiry(doc: Dict[str, Any]) -> Optional[datetime]:
    """Codes written by older clients carry expiresAt instead of expiresAtMs."""
    return parse_dt(doc.get("expiresAtMs")) or parse_dt(doc.get("expiresAt"))


class LinkCodeService:
    def __init__(self, db=None):
        self.db = db

    def _db(self):
        return self.db if self.db is not None else database.get_db()

    async def issue_code(self, uid: str, length: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        size = clamp_length(length)
        expires_at = now + timedelta(minutes=CODE_TTL_MINUTES)
        db = self._db()

        for _ in range(MAX_GENERATION_ATTEMPTS):
            code = generate_code(size)
            if await db.zalo_link_codes.find_one({"code": code}, {"_id": 1}):
                continue
            await db.zalo_link_codes.insert_one(
                {
                    "code": code,
                    "uid": uid,
                    "createdAt": now,
                    "expiresAt": expires_at,
                    "expiresAtMs": to_epoch_ms(expires_at),
                    "used": False,
                }
            )
            await create_audit_log(
                action=AuditAction.LINK_CODE_ISSUED,
                actor_id=uid,
                resource_type="link_code",
                resource_id=code,
                metadata={"expires_at": expires_at.isoformat()},
            )
            logger.info(f"Link code issued for uid={uid}")
            return {"code": code, "expiresAtMs": to_epoch_ms(expires_at)}

        logger.error(f"Link code generation exhausted for uid={uid} (length={size})")
        raise LinkCodeExhaustedError("Could not allocate a unique link code")

    async def _reject(self, code: str, external_id: str, reason: str, status_code: int):
        await create_audit_log(
            action=AuditAction.LINK_CODE_REJECTED,
            actor_id=external_id,
            resource_type="link_code",
            resource_id=code,
            metadata={"reason": reason},
        )
        raise LinkIngestError(reason, status_code)

    async def redeem_code(self, external_id: str, code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Bind external_id to the code's uid. Raises LinkIngestError (404/409/410/400)."""
        now = now or utcnow()
        db = self._db()
        code = (code or "").strip().upper()

        doc = await db.zalo_link_codes.find_one({"code": code}, {"_id": 0})
        if not doc:
            await self._reject(code, external_id, "CODE_NOT_FOUND", 404)
        expiry = code_expiry(doc)
        if expiry is not None and now > expiry:
            await self._reject(code, external_id, "CODE_EXPIRED", 410)
        if doc.get("used"):
            await self._reject(code, external_id, "CODE_USED", 409)
        uid = doc.get("uid")
        if not uid:
            await self._reject(code, external_id, "CODE_NO_UID", 400)

        claimed = await db.zalo_link_codes.find_one_and_update(
            {"code": code, "used": {"$ne": True}},
            {"$set": {"used": True, "usedAt": now, "usedByExternalId": external_id}},
            return_document=ReturnDocument.AFTER,
        )
        if not claimed:
            # Lost the race to a concurrent redemption
            await self._reject(code, external_id, "CODE_USED", 409)

        await db.userNotificationPreferences.update_one(
            {"uid": uid},
            {"$set": {"contact.zaloUserId": external_id, "updatedAt": now}},
            upsert=True,
        )
        await db.zalo_oa_users.update_one(
            {"externalId": external_id},
            {"$set": {"uid": uid, "followed": True, "lastSeenAt": now, "updatedAt": now}},
            upsert=True,
        )
        await create_audit_log(
            action=AuditAction.LINK_CODE_REDEEMED,
            actor_id=external_id,
            resource_type="link_code",
            resource_id=code,
            metadata={"uid": uid},
        )
        logger.info(f"Zalo user {external_id} linked to uid={uid}")
        return {"ok": True, "uid": uid, "zaloUserId": external_id}

    async def set_followed(self, external_id: str, followed: bool, now: Optional[datetime] = None):
        """Follow state is tracked per external id, linked or not."""
        now = now or utcnow()
        await self._db().zalo_oa_users.update_one(
            {"externalId": external_id},
            {
                "$set": {"followed": followed, "lastSeenAt": now, "updatedAt": now},
                "$push": {"events": {"type": "follow" if followed else "unfollow", "at": now}},
            },
            upsert=True,
        )
        logger.info(f"Zalo user {external_id} {'followed' if followed else 'unfollowed'}")


link_code_service = LinkCodeService()
