"""Email adapter - Postmark."""
import asyncio
import html
import logging
import os
from typing import Any, Dict

from postmarker.core import PostmarkClient

from models import Channel
from services.providers.base import ProviderAdapter, ProviderContext, ProviderResult, _is_transient_error

logger = logging.getLogger(__name__)

DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "no-reply@example.com")
POSTMARK_MESSAGE_STREAM = os.getenv("POSTMARK_MESSAGE_STREAM", "outbound").strip() or "outbound"


def build_html(payload: Dict[str, Any]) -> str:
    title = html.escape(payload.get("title") or "")
    body = html.escape(payload.get("body") or "").replace("\n", "<br/>")
    action_url = payload.get("actionUrl")
    link = ""
    if action_url:
        link = f'<p><a href="{html.escape(action_url, quote=True)}" target="_blank" rel="noopener">Xem chi tiết</a></p>'
    return (
        '<div style="font-family:Arial,sans-serif;line-height:1.5">'
        f"<h2>{title}</h2><p>{body}</p>{link}</div>"
    )


class EmailProvider(ProviderAdapter):
    provider = "postmark"
    channel = Channel.EMAIL

    def __init__(self, client=None):
        super().__init__()
        self._postmark_client = client
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if client is None and postmark_token:
            try:
                self._postmark_client = PostmarkClient(server_token=postmark_token)
            except Exception as e:
                logger.warning(f"Postmark client init failed: {e}")

    async def send(self, target: Dict[str, Any], payload: Dict[str, Any], ctx: ProviderContext) -> ProviderResult:
        to = ((target or {}).get("to") or "").strip()
        if not to:
            return self._skipped("MISSING_TO", "Missing recipient email")
        if not self._postmark_client:
            return self._skipped("NO_PROVIDER", "POSTMARK_SERVER_TOKEN not set")

        text_body = payload.get("body") or ""
        if payload.get("actionUrl"):
            text_body = f"{text_body}\n\n{payload['actionUrl']}"
        try:
            response = await asyncio.to_thread(
                self._postmark_client.emails.send,
                From=DEFAULT_SENDER,
                To=to,
                Subject=payload.get("title") or "",
                HtmlBody=build_html(payload),
                TextBody=text_body,
                MessageStream=POSTMARK_MESSAGE_STREAM,
                Metadata={"jobId": str(ctx.job_id), "uid": str(ctx.uid or "")},
            )
        except Exception as e:
            # postmarker raises ClientError for non-2xx API responses
            code = getattr(e, "error_code", None)
            return self._failed(
                str(code) if code is not None else type(e).__name__,
                str(e),
                meta={"retryable": _is_transient_error(e)},
            )

        response = response or {}
        if response.get("ErrorCode"):
            return self._failed(str(response.get("ErrorCode")), response.get("Message") or "Postmark error")
        return self._sent(response.get("MessageID"), meta={"submittedAt": response.get("SubmittedAt")})
