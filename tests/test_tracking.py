"""Tests for the tracking-key codec."""

import pytest

from club_billing.errors import InvalidTrackingKey
from club_billing.reconciliation.tracking import (
    TrackingKind,
    canonical_tracking_key,
    format_tracking_key,
    parse_tracking_key,
)


class TestParseTrackingKey:
    """Tests for decoding."""

    def test_order_key(self):
        key = parse_tracking_key("link:order:ORD-42")
        assert key.kind == TrackingKind.ORDER
        assert key.order_id == "ORD-42"
        assert key.link_id is None
        assert key.malformed is False

    def test_link_key(self):
        key = parse_tracking_key("link:pl_123")
        assert key.kind == TrackingKind.LINK
        assert key.link_id == "pl_123"
        assert key.order_id is None

    def test_bare_reference_is_an_order(self):
        key = parse_tracking_key("ORD-7")
        assert key.kind == TrackingKind.ORDER
        assert key.order_id == "ORD-7"
        assert key.canonical == "link:order:ORD-7"

    def test_surrounding_whitespace_is_ignored(self):
        assert parse_tracking_key("  link:pl_9 ").link_id == "pl_9"

    @pytest.mark.parametrize("raw, expected_value", [
        ("link:order:", "order:"),
        ("link:", ""),
        ("", ""),
        (None, ""),
    ])
    def test_malformed_keys_never_raise(self, raw, expected_value):
        key = parse_tracking_key(raw)
        assert key.kind == TrackingKind.LINK
        assert key.link_id == expected_value
        assert key.malformed is True

    def test_malformed_key_is_logged(self, caplog):
        parse_tracking_key("link:order:")
        assert "Malformed tracking key" in caplog.text

    def test_malformed_canonical_keeps_raw_remainder(self):
        assert parse_tracking_key("link:order:").canonical == "link:order:"


class TestFormatTrackingKey:
    """Tests for encoding."""

    @pytest.mark.parametrize("kind, entity_id", [
        (TrackingKind.ORDER, "ORD-42"),
        (TrackingKind.ORDER, "3f0c1a2e-9b7d-4c55-8e61-2f1a9d0c7b44"),
        (TrackingKind.LINK, "pl_123"),
        (TrackingKind.LINK, "renewal:abc"),
        ("order", "ORD-1"),
        ("link", "x"),
    ])
    def test_round_trip(self, kind, entity_id):
        key = parse_tracking_key(format_tracking_key(kind, entity_id))
        assert key.kind == TrackingKind(kind)
        assert key.value == entity_id
        assert key.malformed is False

    def test_order_format(self):
        assert format_tracking_key("order", "ORD-42") == "link:order:ORD-42"

    def test_unknown_kind_rejected(self):
        with pytest.raises(InvalidTrackingKey):
            format_tracking_key("invoice", "INV-1")

    @pytest.mark.parametrize("entity_id", ["", " ORD-1", "ORD-1 "])
    def test_invalid_ids_rejected(self, entity_id):
        with pytest.raises(InvalidTrackingKey):
            format_tracking_key(TrackingKind.ORDER, entity_id)

    def test_link_id_that_would_decode_as_order_rejected(self):
        with pytest.raises(InvalidTrackingKey):
            format_tracking_key(TrackingKind.LINK, "order:ORD-1")

    def test_invalid_tracking_key_is_a_value_error(self):
        with pytest.raises(ValueError):
            format_tracking_key("bogus", "1")


def test_canonical_tracking_key_matches_order_and_bare_forms():
    assert canonical_tracking_key("ORD-42") == canonical_tracking_key("link:order:ORD-42")
    assert canonical_tracking_key("link:pl_1") == "link:pl_1"
