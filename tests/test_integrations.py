"""Tests for the outbound HTTP adapters."""

import json

import httpx
import pytest

from integrations import EmailAdapter, NotionAdapter, SlackAdapter
from integrations.slack_adapter import STUB_HISTORY_LIMIT


pytestmark = pytest.mark.anyio


def _transport(status_code: int, captured: list) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.MockTransport(handler)


async def test_stub_mode_records_without_network() -> None:
    slack = SlackAdapter(webhook_url="", use_stub=False)

    assert slack.use_stub is True
    assert await slack.send({"text": "hello"}) is True
    assert list(slack.sent) == [{"text": "hello"}]


async def test_slack_posts_to_webhook() -> None:
    captured = []
    slack = SlackAdapter(webhook_url="https://hooks.slack.test/T000/B000", transport=_transport(200, captured))

    assert await slack.send({"text": "New request", "blocks": [{"type": "section"}]}) is True
    body = json.loads(captured[0].content)
    assert str(captured[0].url) == "https://hooks.slack.test/T000/B000"
    assert body == {"text": "New request", "blocks": [{"type": "section"}]}


async def test_slack_error_status_reports_failure() -> None:
    slack = SlackAdapter(webhook_url="https://hooks.slack.test/x", transport=_transport(500, []))

    assert await slack.send({"text": "x"}) is False


async def test_email_adapter_builds_message() -> None:
    captured = []
    email = EmailAdapter(
        api_url="https://mail.test/v1",
        api_key="secret",
        sender="scheduling@example.com",
        transport=_transport(202, captured),
    )

    ok = await email.send(
        {"to": "client@example.com", "subject": "[SPL-1-2-3] Confirmed", "template": "confirmed_client"}
    )

    assert ok is True
    request = captured[0]
    assert str(request.url) == "https://mail.test/v1/send"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content)["from"] == "scheduling@example.com"


async def test_email_requires_recipient() -> None:
    email = EmailAdapter(api_url="", api_key="k", sender="s@example.com")

    with pytest.raises(ValueError):
        await email.send({"subject": "no recipient"})


async def test_notion_page_properties() -> None:
    captured = []
    notion = NotionAdapter(
        api_key="secret",
        database_id="db-123",
        base_url="https://notion.test/v1",
        transport=_transport(200, captured),
    )

    assert await notion.send({"email": "c@example.com", "status": "confirmed", "tracking_code": "SPL-1-2-3"})
    page = json.loads(captured[0].content)
    assert captured[0].headers["Notion-Version"]
    assert page["parent"] == {"database_id": "db-123"}
    assert page["properties"]["Status"] == {"select": {"name": "confirmed"}}


async def test_stub_history_keeps_recent_payloads_only() -> None:
    slack = SlackAdapter(webhook_url="")

    for n in range(STUB_HISTORY_LIMIT + 5):
        await slack.send({"text": f"message {n}"})

    assert len(slack.sent) == STUB_HISTORY_LIMIT
    assert slack.sent[0] == {"text": "message 5"}
    assert slack.sent[-1] == {"text": f"message {STUB_HISTORY_LIMIT + 4}"}
