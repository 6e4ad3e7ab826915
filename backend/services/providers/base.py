"""
Provider adapter contract shared by the push, email, SMS, Zalo and Viber adapters.

send(target, payload, ctx) -> ProviderResult with status sent | failed | skipped.
Adapters never raise for provider problems and never retry; the outbox decides
whether a failed send is retried, using ProviderResult.retryable.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from models import Channel

logger = logging.getLogger(__name__)

PROVIDER_HTTP_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_HTTP_TIMEOUT_SECONDS", "10"))

STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass
class ProviderContext:
    job_id: str
    uid: Optional[str] = None


@dataclass
class ProviderResult:
    provider: str
    status: str  # sent | failed | skipped
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.status == STATUS_FAILED and bool(self.meta.get("retryable"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "status": self.status,
            "providerMessageId": self.provider_message_id,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "meta": self.meta or None,
        }


def is_retryable_status(status_code: Optional[int]) -> bool:
    """429 and 5xx are worth another attempt; other 4xx are permanent."""
    if not isinstance(status_code, int):
        return False
    return status_code == 429 or 500 <= status_code < 600


def _is_transient_error(exc: Exception) -> bool:
    """True if error is retryable (timeout, connection, 5xx)."""
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    s = str(exc).lower()
    if "timeout" in s or "timed out" in s:
        return True
    for attr in ("status_code", "status", "code"):
        c = getattr(exc, attr, None)
        if isinstance(c, int) and is_retryable_status(c):
            return True
    return False


class ProviderAdapter:
    """Base adapter. Subclasses set provider/channel and implement send()."""

    provider: str = ""
    channel: Channel = None

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # transport is injectable so tests can use httpx.MockTransport
        self._transport = transport

    async def send(self, target: Dict[str, Any], payload: Dict[str, Any], ctx: ProviderContext) -> ProviderResult:
        raise NotImplementedError

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=PROVIDER_HTTP_TIMEOUT_SECONDS, transport=self._transport) as client:
            return await client.post(url, **kwargs)

    def _sent(self, provider_message_id: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> ProviderResult:
        return ProviderResult(
            provider=self.provider,
            status=STATUS_SENT,
            provider_message_id=provider_message_id,
            meta=meta or {},
        )

    def _skipped(self, error_code: str, error_message: str) -> ProviderResult:
        logger.info(f"{self.provider} skipped: {error_code} ({error_message})")
        return ProviderResult(
            provider=self.provider,
            status=STATUS_SKIPPED,
            error_code=error_code,
            error_message=error_message,
        )

    def _failed(
        self,
        error_code: Optional[str],
        error_message: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> ProviderResult:
        logger.warning(f"{self.provider} send failed: {error_code} {error_message}")
        return ProviderResult(
            provider=self.provider,
            status=STATUS_FAILED,
            error_code=error_code,
            error_message=(error_message or "")[:500],
            meta=meta or {},
        )

    def _exception_result(self, exc: Exception) -> ProviderResult:
        """Transport-level exception -> failed with the exception's message."""
        code = getattr(exc, "code", None)
        return self._failed(
            str(code) if code else type(exc).__name__,
            str(exc) or type(exc).__name__,
            meta={"retryable": _is_transient_error(exc)},
        )


def plain_text(payload: Dict[str, Any], sep: str = "\n") -> str:
    """Title, body and action URL as one text message, empty parts dropped."""
    parts = [payload.get("title"), payload.get("body"), payload.get("actionUrl")]
    return sep.join(str(p).strip() for p in parts if p and str(p).strip())
