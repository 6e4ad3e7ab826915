"""
Caller identity for user-facing routes (link code issue).

Bearer tokens are JWTs signed with JWT_SECRET. The internal uid is read from the
"uid" claim, falling back to "sub" for tokens minted by other services. When
JWT_AUDIENCE is set the "aud" claim must match it.
"""
from jose import ExpiredSignatureError, JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging
import os

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-notification-dispatch")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE") or None
USER_TOKEN_TTL_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))


def create_access_token(uid: str, expires_delta: Optional[timedelta] = None, claims: Optional[Dict[str, Any]] = None) -> str:
    """Sign a token for uid. Used by the app shell and by tests."""
    issued_at = datetime.now(timezone.utc)
    payload = dict(claims or {})
    payload.update({
        "uid": uid,
        "iat": issued_at,
        "exp": issued_at + (expires_delta or timedelta(hours=USER_TOKEN_TTL_HOURS)),
    })
    if JWT_AUDIENCE:
        payload.setdefault("aud", JWT_AUDIENCE)
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Verified claims, or None for an expired, tampered or foreign token."""
    try:
        return jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
            options={"verify_aud": JWT_AUDIENCE is not None},
        )
    except ExpiredSignatureError:
        logger.info("Rejected expired access token")
        return None
    except JWTError as e:
        logger.warning(f"Rejected access token: {e}")
        return None


def token_uid(claims: Optional[Dict[str, Any]]) -> Optional[str]:
    if not claims:
        return None
    uid = claims.get("uid") or claims.get("sub")
    return str(uid) if uid else None
