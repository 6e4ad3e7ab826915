"""SMS adapter - Twilio when configured, otherwise the local VN SMS gateway."""
import asyncio
import logging
import os
import re
from typing import Any, Dict

from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from models import Channel
from services.providers.base import (
    ProviderAdapter,
    ProviderContext,
    ProviderResult,
    is_retryable_status,
    plain_text,
)

logger = logging.getLogger(__name__)

E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


class SMSProvider(ProviderAdapter):
    provider = "sms"
    channel = Channel.SMS

    def __init__(self, twilio_client=None, transport=None):
        super().__init__(transport=transport)
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN")
        self.from_number = os.getenv("TWILIO_PHONE_NUMBER") or os.getenv("TWILIO_FROM")
        self.vn_endpoint = (os.getenv("VN_SMS_ENDPOINT") or "").strip()
        self.vn_token = (os.getenv("VN_SMS_TOKEN") or "").strip()

        self.client = twilio_client
        if self.client is None and self.account_sid and self.auth_token:
            try:
                self.client = Client(self.account_sid, self.auth_token)
                logger.info("Twilio client initialized")
            except Exception as e:
                logger.error(f"Failed to initialize Twilio client: {e}")

    def is_twilio_configured(self) -> bool:
        return bool(self.client and self.from_number)

    def is_vn_configured(self) -> bool:
        return bool(self.vn_endpoint and self.vn_token)

    async def send(self, target: Dict[str, Any], payload: Dict[str, Any], ctx: ProviderContext) -> ProviderResult:
        to = ((target or {}).get("to") or "").strip()
        if not to:
            return self._skipped("MISSING_TO", 'Missing SMS "to"')
        if not E164_RE.match(to):
            return self._skipped("INVALID_NUMBER", "Phone must be E.164")

        text = plain_text(payload, sep="\n\n")
        if self.is_twilio_configured():
            return await self._send_twilio(to, text)
        if self.is_vn_configured():
            return await self._send_vn(to, text, ctx)
        return self._skipped("NO_PROVIDER", "No SMS provider configured")

    async def _send_twilio(self, to: str, text: str) -> ProviderResult:
        try:
            message = await asyncio.to_thread(
                self.client.messages.create, body=text[:1600], from_=self.from_number, to=to
            )
        except TwilioRestException as e:
            return self._failed(
                str(e.code or e.status),
                e.msg or f"Twilio HTTP {e.status}",
                meta={"retryable": is_retryable_status(e.status)},
            )
        except Exception as e:
            return self._exception_result(e)
        return self._sent(message.sid, meta={"status": getattr(message, "status", None), "via": "twilio"})

    async def _send_vn(self, to: str, text: str, ctx: ProviderContext) -> ProviderResult:
        try:
            response = await self._post(
                self.vn_endpoint,
                json={"to": to, "content": text, "jobId": ctx.job_id},
                headers={"Authorization": f"Bearer {self.vn_token}"},
            )
        except Exception as e:
            return self._exception_result(e)

        try:
            data = response.json()
        except ValueError:
            data = {}
        code = data.get("code")
        if response.status_code >= 400 or str(code) != "0":
            return self._failed(
                str(code if code is not None else response.status_code),
                data.get("message") or f"VN SMS HTTP {response.status_code}",
                meta={"retryable": is_retryable_status(response.status_code), "via": "vn"},
            )
        message_id = data.get("messageId") or (data.get("data") or {}).get("messageId")
        return self._sent(str(message_id) if message_id else None, meta={"via": "vn"})
