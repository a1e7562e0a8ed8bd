"""Slack incoming-webhook adapter."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, Optional

import httpx

LOGGER = logging.getLogger(__name__)

# Stub mode keeps only the most recent payloads.
STUB_HISTORY_LIMIT = 100


class SlackAdapter:
    """Posts operational notifications to a Slack channel webhook."""

    def __init__(
        self,
        *,
        webhook_url: str,
        use_stub: bool = False,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.use_stub = use_stub or not webhook_url
        self._timeout = timeout_seconds
        self._transport = transport
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=STUB_HISTORY_LIMIT)

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    async def send(self, payload: Dict[str, Any]) -> bool:
        """Deliver ``payload["text"]`` (plus optional blocks); True on 2xx."""

        LOGGER.info("Slack notification: use_stub=%s", self.use_stub)
        body = {"text": payload.get("text", "")}
        if payload.get("blocks"):
            body["blocks"] = payload["blocks"]

        if self.use_stub:
            self.sent.append(body)
            return True

        async with self._http_client() as client:
            response = await client.post(self.webhook_url, json=body)
        if response.is_error:
            LOGGER.error("Slack webhook returned %s: %s", response.status_code, response.text[:200])
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )
