"""Viber bot adapter - text message to a subscriber who started the bot."""
import logging
import os
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

from models import Channel
from services.providers.base import (
    ProviderAdapter,
    ProviderContext,
    ProviderResult,
    is_retryable_status,
    plain_text,
)

logger = logging.getLogger(__name__)

VIBER_SEND_URL = "https://chatapi.viber.com/pa/send_message"


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Retry-After header as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))


class ViberProvider(ProviderAdapter):
    provider = "viber"
    channel = Channel.VIBER

    def __init__(self, token: Optional[str] = None, transport=None):
        super().__init__(transport=transport)
        self.token = token if token is not None else os.getenv("VIBER_BOT_TOKEN", "")

    async def send(self, target: Dict[str, Any], payload: Dict[str, Any], ctx: ProviderContext) -> ProviderResult:
        if not self.token:
            return self._skipped("MISSING_TOKEN", "VIBER_BOT_TOKEN is not set")
        viber_user_id = ((target or {}).get("viberUserId") or "").strip()
        if not viber_user_id:
            return self._skipped("MISSING_TARGET", "viberUserId is required")
        text = plain_text(payload)
        if not text:
            return self._skipped("EMPTY_MESSAGE", "Empty message content")

        try:
            response = await self._post(
                VIBER_SEND_URL,
                json={
                    "receiver": viber_user_id,
                    "type": "text",
                    "text": text,
                    "tracking_data": ctx.job_id,
                },
                headers={"X-Viber-Auth-Token": self.token},
            )
        except Exception as e:
            return self._exception_result(e)

        try:
            data = response.json()
        except ValueError:
            data = {}
        # Viber: status == 0 means OK
        if response.status_code >= 400 or data.get("status") != 0:
            return self._failed(
                str(data.get("status", response.status_code)),
                data.get("status_message") or f"HTTP {response.status_code}",
                meta={
                    "retryAfterSec": parse_retry_after(response.headers.get("retry-after")),
                    "retryable": is_retryable_status(response.status_code),
                    "responseSnippet": response.text[:500],
                },
            )

        message_token = data.get("message_token")
        return self._sent(str(message_token) if message_token is not None else None, meta={"chatHostname": data.get("chat_hostname")})
