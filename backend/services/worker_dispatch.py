"""
Orchestrator -> channel worker dispatch.

Resolution is an explicit Channel -> worker map. In "inline" mode (default) the
worker runs in-process; in "http" mode the request is POSTed to the worker route
(/api/workers/{channel}) with the internal secret, for deployments that run
workers as a separate service. Either way a failure is logged and reported as
None, never raised into the orchestrator.
"""
import logging
import os
from typing import Any, Dict, Optional

import httpx

from models import Channel
from services.channel_workers import ChannelWorker, WorkerResponse, channel_workers

logger = logging.getLogger(__name__)

WORKER_DISPATCH_MODE = os.getenv("WORKER_DISPATCH_MODE", "inline").strip().lower()
WORKER_BASE_URL = os.getenv("WORKER_BASE_URL", "http://127.0.0.1:8001").rstrip("/")
INTERNAL_WORKER_SECRET = os.getenv("INTERNAL_WORKER_SECRET", "")
WORKER_HTTP_TIMEOUT_SECONDS = float(os.getenv("WORKER_HTTP_TIMEOUT_SECONDS", "30"))


class WorkerDispatcher:
    def __init__(
        self,
        workers: Optional[Dict[Channel, ChannelWorker]] = None,
        mode: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.workers = workers if workers is not None else channel_workers
        self.mode = mode or WORKER_DISPATCH_MODE
        self._transport = transport

    async def dispatch(self, channel: Channel, request: Dict[str, Any]) -> Optional[WorkerResponse]:
        try:
            if self.mode == "http":
                response = await self._dispatch_http(channel, request)
            else:
                response = await self.workers[channel].handle(request)
        except Exception as e:
            logger.error(f"send {Channel(channel).value} error job={request.get('jobId')}: {e}")
            return None
        if response.status_code != 200:
            logger.warning(
                f"{Channel(channel).value} worker returned {response.status_code} job={request.get('jobId')}: {response.body.get('error')}"
            )
        return response

    async def _dispatch_http(self, channel: Channel, request: Dict[str, Any]) -> WorkerResponse:
        async with httpx.AsyncClient(timeout=WORKER_HTTP_TIMEOUT_SECONDS, transport=self._transport) as client:
            response = await client.post(
                f"{WORKER_BASE_URL}/api/workers/{Channel(channel).value}",
                json=request,
                headers={"x-internal-secret": INTERNAL_WORKER_SECRET},
            )
        try:
            body = response.json()
        except ValueError:
            body = {"ok": False, "error": response.text[:200]}
        return WorkerResponse(response.status_code, body if isinstance(body, dict) else {"ok": False})


worker_dispatcher = WorkerDispatcher()
