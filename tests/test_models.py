"""Tests for payload validation."""

import pytest

from async_whatsapp_service.errors import ValidationError
from async_whatsapp_service.models import (
    AccountPayload,
    InboundMessageEvent,
    SendMessagePayload,
    WebhookPayload,
    WebhookReplyPayload,
    parse_payload,
)


def test_account_payload_strips_and_requires_name():
    payload = parse_payload(AccountPayload, {"name": "  Sales  "})
    assert payload.name == "Sales"
    assert payload.description == ""
    with pytest.raises(ValidationError) as exc:
        parse_payload(AccountPayload, {"name": "   "})
    assert "name" in str(exc.value)


def test_parse_payload_rejects_non_objects():
    with pytest.raises(ValidationError, match="payload must be an object"):
        parse_payload(AccountPayload, ["name"])


def test_webhook_payload_defaults():
    payload = parse_payload(WebhookPayload, {"account_id": "acc", "url": "http://hooks.local"})
    assert payload.is_active is True
    assert payload.secret == ""


def test_send_message_payload_reports_missing_fields():
    with pytest.raises(ValidationError) as exc:
        parse_payload(SendMessagePayload, {"account_id": "acc"})
    assert "message" in str(exc.value)
    assert "number" in str(exc.value)
    assert exc.value.code == "validation_error"


def test_webhook_reply_requires_secret():
    with pytest.raises(ValidationError):
        parse_payload(WebhookReplyPayload, {"account_id": "acc", "number": "1", "message": "hi"})


def test_inbound_event_uses_from_alias():
    event = parse_payload(
        InboundMessageEvent,
        {
            "id": "m1",
            "from": "15550001111@c.us",
            "body": "hi",
            "timestamp": 1700000000,
            "chat": {"id": "group@g.us", "is_group": True, "name": "Team"},
        },
    )
    assert event.from_ == "15550001111@c.us"
    assert event.chat.is_group is True
    assert event.type == "chat"
    assert event.media is None
