"""Tests for demo seeding, demo removal and collection reset."""

from __future__ import annotations

from papertrader.storage.database import EXPLANATIONS, LEDGER, POSITIONS, SIGNALS
from papertrader.storage.demo import (
    DEMO_MODEL_NOTES,
    remove_demo_trade,
    reset_collections,
    seed_demo_explanation,
    seed_demo_position,
)
from papertrader.storage.models import Explanation

from conftest import make_position


class TestSeed:
    def test_demo_position(self, db):
        pos = seed_demo_position(db)
        stored = db.get_position(pos.id)
        assert stored.symbol == "FX:EURUSD"
        assert stored.entry_price == 1.0923
        assert stored.stop_price == 1.0880
        assert stored.tp_price == 1.1000
        assert stored.qty == 10000
        assert stored.strategy_id == "ai-generated"
        assert stored.method_name == "Demo Seed"
        assert stored.is_open

    def test_demo_explanation_targets_latest_position(self, db):
        db.add_position(make_position(entry_ts="2020-01-01T00:00:00+00:00"))
        latest = seed_demo_position(db)
        expl = seed_demo_explanation(db)
        assert expl.position_id == latest.id
        assert expl.model_notes == DEMO_MODEL_NOTES
        assert expl.exit_reason is None
        assert not expl.needs_backfill

    def test_demo_explanation_without_positions(self, db):
        assert seed_demo_explanation(db) is None


class TestRemove:
    def test_removes_demo_and_its_explanations(self, db):
        keep = db.add_position(make_position(entry_ts="2020-01-01T00:00:00+00:00"))
        demo = seed_demo_position(db)
        seed_demo_explanation(db)
        db.add_explanation(Explanation(position_id=demo.id, plain_english_entry="extra"))

        result = remove_demo_trade(db)

        assert result.found_demo_explanation
        assert result.position_id == demo.id
        assert result.position_deleted
        assert result.explanations_deleted == 2
        assert db.get(POSITIONS, demo.id) is None
        assert db.get(POSITIONS, keep.id) is not None

    def test_falls_back_to_latest_position(self, db):
        db.add_position(make_position(entry_ts="2020-01-01T00:00:00+00:00"))
        latest = db.add_position(make_position(entry_ts="2024-01-01T00:00:00+00:00"))
        result = remove_demo_trade(db)
        assert not result.found_demo_explanation
        assert result.position_id == latest.id
        assert len(db.query(POSITIONS)) == 1

    def test_nothing_to_remove(self, db):
        result = remove_demo_trade(db)
        assert result.position_id is None


class TestReset:
    def test_clears_default_collections(self, db):
        db.add(POSITIONS, {"a": 1})
        db.add(SIGNALS, {"a": 1})
        db.add(EXPLANATIONS, {"position_id": "p"})
        db.add(LEDGER, {"delta_gbp": 1})
        db.add("strategies", {"name": "keep"})

        counts = reset_collections(db)

        assert counts == {POSITIONS: 1, SIGNALS: 1, EXPLANATIONS: 1, LEDGER: 1}
        assert len(db.query("strategies")) == 1
