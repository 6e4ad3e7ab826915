from fastapi import Request, HTTPException, status
from typing import Optional
import hmac
import logging
import os
from auth import decode_access_token, token_uid

logger = logging.getLogger(__name__)

INTERNAL_SECRET_HEADER = "x-internal-secret"


def bearer_token(request: Request) -> Optional[str]:
    scheme, _, token = (request.headers.get("Authorization") or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(request: Request) -> Optional[dict]:
    """Verified token claims with the caller's uid under "uid", or None."""
    token = bearer_token(request)
    if not token:
        return None
    claims = decode_access_token(token)
    uid = token_uid(claims)
    if not uid:
        return None
    return {**claims, "uid": uid}


async def require_auth(request: Request) -> dict:
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user


def secret_matches(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time shared secret check. An unset secret never matches."""
    expected = (expected or "").strip()
    if not expected:
        return False
    return hmac.compare_digest((provided or "").strip(), expected)


async def require_internal_secret(request: Request) -> None:
    """Guard for service-to-service routes (workers, job intake)."""
    if not secret_matches(request.headers.get(INTERNAL_SECRET_HEADER), os.getenv("INTERNAL_WORKER_SECRET")):
        logger.warning(f"Rejected internal call to {request.url.path}: bad or missing secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
