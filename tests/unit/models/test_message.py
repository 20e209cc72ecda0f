"""
Unit tests for models.message module.

Tests:
- conversation_id_for() symmetry
- Message validation and copy()
- Split into sensitive and metadata fields and reassembly
- OutgoingMessage dict conversion with a signed event
"""

import pytest

from obscur.models.constants import MessageStatus
from obscur.models.message import (
    Attachment,
    AttachmentKind,
    Message,
    OutgoingMessage,
    RelayResult,
    ReplyTo,
    conversation_id_for,
)

from tests.conftest import make_unsigned_event


A = "a" * 64
B = "b" * 64


def _message(**overrides):
    fields = {
        "id": "e" * 64,
        "conversation_id": conversation_id_for(A, B),
        "content": "hello",
        "timestamp": 1_700_000_000,
        "is_outgoing": True,
        "status": MessageStatus.SENDING,
        "sender_pubkey": A,
        "recipient_pubkey": B,
    }
    fields.update(overrides)
    return Message(**fields)


class TestConversationId:
    """conversation_id_for()."""

    def test_order_independent(self):
        assert conversation_id_for(A, B) == conversation_id_for(B, A)

    def test_format(self):
        assert conversation_id_for(B, A) == f"{A}:{B}"


class TestMessage:
    """Message construction and copies."""

    def test_status_coerced_from_string(self):
        assert _message(status="accepted").status is MessageStatus.ACCEPTED

    def test_unknown_status(self):
        with pytest.raises(ValueError):
            _message(status="lost")

    def test_empty_id(self):
        with pytest.raises(ValueError):
            _message(id="")

    def test_negative_timestamp(self):
        with pytest.raises(ValueError):
            _message(timestamp=-5)

    def test_copy_is_independent(self):
        original = _message(relay_results=[RelayResult("wss://a.example.com", True)])
        clone = original.copy()
        clone.relay_results.append(RelayResult("wss://b.example.com", False, "x"))
        clone.reactions["+"] = 1
        assert len(original.relay_results) == 1
        assert original.reactions == {}


class TestFieldSplit:
    """sensitive_fields(), metadata_fields(), from_parts()."""

    def test_content_is_not_in_metadata(self):
        message = _message(reply_to=ReplyTo("f" * 64, "earlier"))
        metadata = message.metadata_fields()
        assert "content" not in metadata
        assert "reply_to" not in metadata
        assert message.sensitive_fields()["content"] == "hello"

    def test_reassembly(self):
        message = _message(
            status=MessageStatus.ACCEPTED,
            relay_results=[RelayResult("wss://a.example.com", True, latency=0.2)],
            attachment=Attachment(AttachmentKind.IMAGE, "https://x/y.png", "image/png", "y.png"),
            reply_to=ReplyTo("f" * 64, "earlier"),
            reactions={"+": 2},
        )
        rebuilt = Message.from_parts(message.metadata_fields(), message.sensitive_fields())
        assert rebuilt == message


class TestAttachment:
    """Attachment validation."""

    def test_kind_coerced(self):
        assert Attachment("video", "https://x/v.mp4", "video/mp4", "v.mp4").kind is AttachmentKind.VIDEO

    def test_empty_url(self):
        with pytest.raises(ValueError):
            Attachment("image", "", "image/png", "a.png")


class TestOutgoingMessage:
    """OutgoingMessage to_dict() / from_dict()."""

    def test_with_signed_event(self):
        event = make_unsigned_event(A, 4, (("p", B),), content="cipher")
        outgoing = OutgoingMessage(
            id=event.id,
            conversation_id=conversation_id_for(A, B),
            content="hello",
            recipient_pubkey=B,
            created_at=event.created_at,
            retry_count=2,
            next_retry_at=1_700_000_060.5,
            signed_event=event,
        )
        assert OutgoingMessage.from_dict(outgoing.to_dict()) == outgoing

    def test_defaults_when_fields_missing(self):
        outgoing = OutgoingMessage.from_dict(
            {"id": "x", "conversation_id": "c", "recipient_pubkey": B, "created_at": 1}
        )
        assert outgoing.retry_count == 0
        assert outgoing.next_retry_at == 0.0
        assert outgoing.signed_event is None
