"""Notion database sync adapter."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, Optional

import httpx

LOGGER = logging.getLogger(__name__)

# Stub mode keeps only the most recent payloads.
STUB_HISTORY_LIMIT = 100

NOTION_VERSION = "2022-06-28"


class NotionAdapter:
    """Mirrors appointment progress into the Notion users database."""

    def __init__(
        self,
        *,
        api_key: str,
        database_id: str,
        base_url: str = "https://api.notion.com/v1",
        use_stub: bool = False,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.database_id = database_id
        self.base_url = base_url.rstrip("/")
        self.use_stub = use_stub or not database_id
        self._timeout = timeout_seconds
        self._transport = transport
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=STUB_HISTORY_LIMIT)

    async def send(self, payload: Dict[str, Any]) -> bool:
        page = self._build_page(payload)
        LOGGER.info("Notion sync: use_stub=%s email=%s", self.use_stub, payload.get("email"))
        if self.use_stub:
            self.sent.append(page)
            return True

        async with self._http_client() as client:
            response = await client.post("/pages", json=page)
        if response.is_error:
            LOGGER.error("Notion returned %s: %s", response.status_code, response.text[:200])
            return False
        return True

    def _build_page(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "parent": {"database_id": self.database_id},
            "properties": {
                "Email": {"email": payload.get("email")},
                "Status": {"select": {"name": payload.get("status", "unknown")}},
                "Tracking Code": {
                    "rich_text": [{"text": {"content": payload.get("tracking_code") or ""}}]
                },
            },
        }

    def _http_client(self) -> httpx.AsyncClient:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )
