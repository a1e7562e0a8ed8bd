"""Outbound notification and sync adapters, one ``send(payload) -> bool`` each."""

from integrations.email_adapter import EmailAdapter
from integrations.notion_adapter import NotionAdapter
from integrations.slack_adapter import SlackAdapter

__all__ = ["EmailAdapter", "NotionAdapter", "SlackAdapter"]
