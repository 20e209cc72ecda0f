"""
Unit tests for models.event module.

Tests:
- Canonical id computation (compact JSON, unescaped UTF-8)
- Field validation on construction
- Tag helpers (tag_values, first_tag, has_tag)
- to_dict() / from_dict() conversion
"""

import hashlib
import json

import pytest

from obscur.models.event import Event, UnsignedEvent, compute_event_id


PUBKEY = "a" * 64
EVENT_ID = "b" * 64
SIG = "c" * 128


def _event(**overrides):
    fields = {
        "id": EVENT_ID,
        "pubkey": PUBKEY,
        "created_at": 1_700_000_000,
        "kind": 4,
        "tags": [["p", "d" * 64]],
        "content": "ciphertext?iv=abc",
        "sig": SIG,
    }
    fields.update(overrides)
    return Event(**fields)


# ============================================================================
# Id computation
# ============================================================================


class TestComputeEventId:
    """compute_event_id() and UnsignedEvent.compute_id()."""

    def test_matches_sha256_of_compact_array(self):
        tags = [["p", "d" * 64]]
        expected = hashlib.sha256(
            json.dumps(
                [0, PUBKEY, 1_700_000_000, 4, tags, "hi"], separators=(",", ":")
            ).encode()
        ).hexdigest()
        assert compute_event_id(PUBKEY, 1_700_000_000, 4, tags, "hi") == expected

    def test_non_ascii_is_not_escaped(self):
        serialized = json.dumps(
            [0, PUBKEY, 1, 1, [], "héllo 🌍"], separators=(",", ":"), ensure_ascii=False
        )
        expected = hashlib.sha256(serialized.encode("utf-8")).hexdigest()
        assert compute_event_id(PUBKEY, 1, 1, [], "héllo 🌍") == expected

    def test_tuple_and_list_tags_hash_the_same(self):
        as_list = compute_event_id(PUBKEY, 1, 1, [["e", "x"]], "")
        as_tuple = compute_event_id(PUBKEY, 1, 1, (("e", "x"),), "")
        assert as_list == as_tuple

    def test_any_field_change_changes_id(self):
        base = compute_event_id(PUBKEY, 1, 1, [], "a")
        assert compute_event_id(PUBKEY, 2, 1, [], "a") != base
        assert compute_event_id(PUBKEY, 1, 4, [], "a") != base
        assert compute_event_id(PUBKEY, 1, 1, [["t", "x"]], "a") != base
        assert compute_event_id(PUBKEY, 1, 1, [], "b") != base

    def test_unsigned_event_compute_id(self):
        unsigned = UnsignedEvent(pubkey=PUBKEY, created_at=5, kind=9, tags=(), content="x")
        assert unsigned.compute_id() == compute_event_id(PUBKEY, 5, 9, [], "x")

    def test_event_compute_id_ignores_id_and_sig(self):
        event = _event()
        assert event.compute_id() == compute_event_id(
            PUBKEY, 1_700_000_000, 4, [["p", "d" * 64]], "ciphertext?iv=abc"
        )


# ============================================================================
# Validation
# ============================================================================


class TestValidation:
    """Construction-time validation."""

    def test_valid_event(self):
        event = _event()
        assert event.kind == 4
        assert event.tags == (("p", "d" * 64),)

    @pytest.mark.parametrize("field", ["id", "pubkey"])
    def test_short_hex_rejected(self, field):
        with pytest.raises(ValueError, match="64 lowercase hex"):
            _event(**{field: "ab"})

    def test_uppercase_hex_rejected(self):
        with pytest.raises(ValueError):
            _event(pubkey="A" * 64)

    def test_sig_length(self):
        with pytest.raises(ValueError, match="128 lowercase hex"):
            _event(sig="c" * 64)

    def test_non_string_id(self):
        with pytest.raises(TypeError):
            _event(id=123)

    def test_negative_created_at(self):
        with pytest.raises(ValueError, match="non-negative"):
            _event(created_at=-1)

    def test_bool_created_at(self):
        with pytest.raises(TypeError):
            _event(created_at=True)

    def test_kind_out_of_range(self):
        with pytest.raises(ValueError, match="kind"):
            _event(kind=70_000)

    def test_bool_kind(self):
        with pytest.raises(TypeError):
            _event(kind=False)

    def test_null_byte_in_content(self):
        with pytest.raises(ValueError, match="null"):
            _event(content="a\x00b")

    def test_empty_tag_rejected(self):
        with pytest.raises(ValueError, match="non-empty"):
            _event(tags=[[]])

    def test_non_string_tag_value(self):
        with pytest.raises(TypeError):
            _event(tags=[["p", 1]])

    def test_frozen(self):
        event = _event()
        with pytest.raises(AttributeError):
            event.content = "changed"


# ============================================================================
# Tag helpers
# ============================================================================


class TestTagHelpers:
    """tag_values(), first_tag(), has_tag()."""

    def test_tag_values_in_order(self):
        event = _event(tags=[["e", "1"], ["p", "x"], ["e", "2"]])
        assert event.tag_values("e") == ["1", "2"]

    def test_first_tag(self):
        event = _event(tags=[["p", "x"], ["p", "y"]])
        assert event.first_tag("p") == "x"
        assert event.first_tag("e") is None

    def test_name_only_tag(self):
        event = _event(tags=[["closed"]])
        assert event.has_tag("closed")
        assert event.first_tag("closed") is None
        assert event.tag_values("closed") == []


# ============================================================================
# Conversion
# ============================================================================


class TestConversion:
    """to_dict(), to_json(), from_dict()."""

    def test_round_trip_through_dict(self):
        event = _event()
        assert Event.from_dict(event.to_dict()) == event

    def test_to_dict_tags_are_lists(self):
        assert _event().to_dict()["tags"] == [["p", "d" * 64]]

    def test_to_json_is_compact(self):
        assert ", " not in _event().to_json()

    def test_from_dict_missing_fields(self):
        data = _event().to_dict()
        del data["sig"]
        with pytest.raises(ValueError, match="sig"):
            Event.from_dict(data)

    def test_from_dict_not_a_mapping(self):
        with pytest.raises(TypeError):
            Event.from_dict(["EVENT"])
