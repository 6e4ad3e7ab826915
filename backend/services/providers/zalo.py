"""Zalo OA adapter - customer-service text message to a follower (user_id)."""
import logging
from typing import Any, Dict

from models import Channel
from services.providers.base import (
    ProviderAdapter,
    ProviderContext,
    ProviderResult,
    is_retryable_status,
    plain_text,
)
from services.zalo_credentials import ZaloCredentialRefresher, zalo_credentials

logger = logging.getLogger(__name__)

ZALO_MESSAGE_URL = "https://openapi.zalo.me/v3.0/oa/message"


class ZaloProvider(ProviderAdapter):
    provider = "zalo"
    channel = Channel.ZALO

    def __init__(self, credentials: ZaloCredentialRefresher = None, transport=None):
        super().__init__(transport=transport)
        self.credentials = credentials or zalo_credentials

    async def send(self, target: Dict[str, Any], payload: Dict[str, Any], ctx: ProviderContext) -> ProviderResult:
        zalo_user_id = ((target or {}).get("zaloUserId") or "").strip()
        if not zalo_user_id:
            return self._skipped("BAD_TARGET", "Missing or invalid target.zaloUserId")

        try:
            token = await self.credentials.get_access_token()
        except Exception as e:
            logger.error(f"Zalo token lookup failed: {e}")
            return self._exception_result(e)
        if not token:
            return self._skipped("NO_TOKEN", "No Zalo OA access token (OAuth record or ZALO_OA_TOKEN)")

        try:
            response = await self._post(
                ZALO_MESSAGE_URL,
                json={
                    "recipient": {"user_id": zalo_user_id},
                    "message": {"text": plain_text(payload)},
                    "tracking_id": ctx.job_id,
                },
                headers={"access_token": token},
            )
        except Exception as e:
            return self._exception_result(e)

        try:
            data = response.json()
        except ValueError:
            data = {}
        # Zalo reports errors as a non-zero "error" field, often with HTTP 200
        error = data.get("error")
        if response.status_code >= 400 or error:
            code = error.get("code") if isinstance(error, dict) else error
            message = error.get("message") if isinstance(error, dict) else data.get("message")
            return self._failed(
                str(code if code else response.status_code),
                message or f"HTTP {response.status_code}",
                meta={"responseStatus": response.status_code, "retryable": is_retryable_status(response.status_code)},
            )

        message_id = data.get("message_id") or (data.get("data") or {}).get("message_id")
        return self._sent(
            str(message_id) if message_id else None,
            meta={"responseStatus": response.status_code},
        )
