"""Transactional email API adapter."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, Optional

import httpx

LOGGER = logging.getLogger(__name__)

# Stub mode keeps only the most recent payloads.
STUB_HISTORY_LIMIT = 100


class EmailAdapter:
    """Sends templated email through an HTTP email provider.

    Template rendering happens on the provider side; this adapter only ships
    the template name and its context.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        sender: str,
        use_stub: bool = False,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.sender = sender
        self.use_stub = use_stub or not api_url
        self._timeout = timeout_seconds
        self._transport = transport
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=STUB_HISTORY_LIMIT)

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    async def send(self, payload: Dict[str, Any]) -> bool:
        message = self._build_message(payload)
        LOGGER.info(
            "Email send: use_stub=%s to=%s subject=%s",
            self.use_stub,
            message["to"],
            message["subject"],
        )
        if self.use_stub:
            self.sent.append(message)
            return True

        async with self._http_client() as client:
            response = await client.post("/send", json=message)
        if response.is_error:
            LOGGER.error("Email provider returned %s: %s", response.status_code, response.text[:200])
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _build_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        recipient = payload.get("to")
        if not recipient:
            raise ValueError("email payload requires a recipient")
        return {
            "from": self.sender,
            "to": recipient,
            "subject": payload.get("subject", ""),
            "template": payload.get("template"),
            "context": payload.get("context", {}),
        }

    def _http_client(self) -> httpx.AsyncClient:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        return httpx.AsyncClient(
            base_url=self.api_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )
