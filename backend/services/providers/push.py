"""Push adapter - Firebase Cloud Messaging via firebase-admin.

Addressing modes, first match wins: multicast token list (chunks of 500),
topic, single token. Multicast is "sent" when at least one token succeeded.
"""
import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, messaging

from models import Channel
from services.providers.base import ProviderAdapter, ProviderContext, ProviderResult

logger = logging.getLogger(__name__)

FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()
FIREBASE_APP_NAME = "notifications"
MAX_MULTICAST = 500

INVALID_TOKEN_CODES = {"NOT_FOUND", "INVALID_ARGUMENT", "UNREGISTERED"}
RETRYABLE_CODES = {"INTERNAL", "UNAVAILABLE", "UNKNOWN", "RESOURCE_EXHAUSTED", "QUOTA_EXCEEDED"}


def _chunk(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _error_code(exc) -> str:
    if isinstance(exc, messaging.UnregisteredError):
        return "UNREGISTERED"
    if isinstance(exc, messaging.QuotaExceededError):
        return "QUOTA_EXCEEDED"
    return str(getattr(exc, "code", "") or "").upper()


class PushProvider(ProviderAdapter):
    provider = "fcm"
    channel = Channel.PUSH

    def __init__(self, app=None):
        super().__init__()
        self._app = app

    def _get_app(self):
        if self._app is not None:
            return self._app
        if not FIREBASE_CREDENTIALS_PATH:
            return None
        try:
            self._app = firebase_admin.get_app(FIREBASE_APP_NAME)
        except ValueError:
            self._app = firebase_admin.initialize_app(
                credentials.Certificate(FIREBASE_CREDENTIALS_PATH), name=FIREBASE_APP_NAME
            )
            logger.info("Firebase app initialized for push notifications")
        return self._app

    def _message_parts(self, payload: Dict[str, Any], ctx: ProviderContext) -> Dict[str, Any]:
        action_url = payload.get("actionUrl") or ""
        webpush = None
        if action_url.startswith("https://"):
            webpush = messaging.WebpushConfig(fcm_options=messaging.WebpushFCMOptions(link=action_url))
        return {
            "notification": messaging.Notification(title=payload.get("title"), body=payload.get("body")),
            "data": {"actionUrl": action_url, "jobId": str(ctx.job_id or ""), "uid": str(ctx.uid or "")},
            "android": messaging.AndroidConfig(
                priority="high", notification=messaging.AndroidNotification(sound="default")
            ),
            "apns": messaging.APNSConfig(
                payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", thread_id=str(ctx.job_id or "")))
            ),
            "webpush": webpush,
        }

    async def send(self, target: Dict[str, Any], payload: Dict[str, Any], ctx: ProviderContext) -> ProviderResult:
        target = target or {}
        tokens = [t for t in (target.get("tokens") or []) if t]
        topic: Optional[str] = target.get("topic")
        token: Optional[str] = target.get("token")
        if not tokens and not topic and not token:
            return self._skipped("MISSING_TARGET", "No FCM target (tokens/topic/token) provided")

        app = self._get_app()
        if app is None:
            return self._skipped("NO_PROVIDER", "FIREBASE_CREDENTIALS_PATH not set")

        try:
            parts = self._message_parts(payload, ctx)
            if tokens:
                return await self._send_multicast(app, tokens, parts)
            if topic:
                message_id = await asyncio.to_thread(messaging.send, messaging.Message(topic=topic, **parts), app=app)
                return self._sent(message_id, meta={"topic": topic})
            message_id = await asyncio.to_thread(messaging.send, messaging.Message(token=token, **parts), app=app)
            return self._sent(message_id)
        except Exception as e:
            logger.error(f"FCM send error job={ctx.job_id}: {e}")
            code = _error_code(e)
            return self._failed(code or type(e).__name__, str(e), meta={"retryable": code in RETRYABLE_CODES})

    async def _send_multicast(self, app, tokens: List[str], parts: Dict[str, Any]) -> ProviderResult:
        total_ok = 0
        total_fail = 0
        first_ok_id = None
        invalid_tokens: List[str] = []
        retryable = False

        for batch in _chunk(tokens, MAX_MULTICAST):
            response = await asyncio.to_thread(
                messaging.send_each_for_multicast, messaging.MulticastMessage(tokens=batch, **parts), app=app
            )
            total_ok += response.success_count
            total_fail += response.failure_count
            for i, r in enumerate(response.responses):
                if r.success:
                    first_ok_id = first_ok_id or r.message_id
                    continue
                code = _error_code(r.exception)
                if code in INVALID_TOKEN_CODES:
                    invalid_tokens.append(batch[i])
                if code in RETRYABLE_CODES:
                    retryable = True

        meta = {
            "successCount": total_ok,
            "failureCount": total_fail,
            "invalidTokens": invalid_tokens,
            "retryable": retryable,
        }
        if total_ok > 0:
            return self._sent(first_ok_id, meta=meta)
        return self._failed("MULTICAST_FAILED", "All tokens failed", meta=meta)
