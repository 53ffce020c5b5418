"""Tests for domain models: lifecycle invariants, parsing, backfill predicate."""

from __future__ import annotations

import pytest

from papertrader.errors import InvalidTransition, ValidationError
from papertrader.storage.models import (
    Explanation,
    Position,
    PositionStatus,
    needs_beginner_text,
    parse_document,
    to_document,
)

from conftest import make_position


class TestPositionLifecycle:
    def test_new_position_is_open(self):
        pos = make_position()
        assert pos.is_open
        assert pos.exit_ts is None and pos.pnl_gbp is None

    def test_close_sets_all_exit_fields(self):
        pos = make_position(id="p1")
        closed = pos.close(exit_price=1.11, pnl_gbp=10.0, r_multiple=2.0)
        assert closed.status == PositionStatus.CLOSED
        assert closed.exit_price == 1.11
        assert closed.pnl_gbp == 10.0
        assert closed.R_multiple == 2.0
        assert closed.exit_ts
        # original untouched
        assert pos.is_open

    def test_close_twice_raises(self):
        closed = make_position(id="p1").close(1.11, 10.0, 2.0)
        with pytest.raises(InvalidTransition) as exc:
            closed.close(1.12, 12.0, 2.4)
        assert exc.value.reason == "ALREADY_CLOSED"

    def test_lifecycle_fields(self):
        closed = make_position().close(1.09, -10.0, -2.0, exit_ts="2024-05-02T00:00:00+00:00")
        assert closed.lifecycle_fields() == {
            "status": "closed",
            "exit_ts": "2024-05-02T00:00:00+00:00",
            "exit_price": 1.09,
            "pnl_gbp": -10.0,
            "R_multiple": -2.0,
        }

    def test_open_with_exit_fields_rejected(self):
        doc = to_document(make_position()) | {"exit_price": 1.2}
        with pytest.raises(ValidationError):
            parse_document(Position, doc)

    def test_closed_without_exit_fields_rejected(self):
        doc = to_document(make_position()) | {"status": "closed"}
        with pytest.raises(ValidationError):
            parse_document(Position, doc)


class TestParseDocument:
    def test_unknown_status_rejected(self):
        doc = to_document(make_position()) | {"status": "pending"}
        with pytest.raises(ValidationError) as exc:
            parse_document(Position, doc)
        assert exc.value.reason == "MALFORMED_DOCUMENT"

    def test_negative_fee_rejected(self):
        doc = to_document(make_position()) | {"fee_bps": -1}
        with pytest.raises(ValidationError):
            parse_document(Position, doc)

    def test_round_trip_keeps_values(self):
        pos = make_position(method_name="Swing", slippage_bps=2)
        parsed = parse_document(Position, {**to_document(pos), "id": "abc"})
        assert parsed.id == "abc"
        assert parsed.method_name == "Swing"
        assert parsed.slippage_bps == 2

    def test_explanation_requires_position_id(self):
        with pytest.raises(ValidationError):
            parse_document(Explanation, {"id": "e1", "position_id": ""})

    def test_to_document_excludes_id(self):
        assert "id" not in to_document(make_position(id="p1"))


class TestBackfillPredicate:
    @pytest.mark.parametrize("value", [None, "", "   ", "\n\t", 42])
    def test_needs_text(self, value):
        assert needs_beginner_text(value)

    def test_present_text(self):
        assert not needs_beginner_text("We bought euros.")

    def test_explanation_property(self):
        assert Explanation(position_id="p1").needs_backfill
        assert not Explanation(position_id="p1", beginner_friendly_entry="ok").needs_backfill
