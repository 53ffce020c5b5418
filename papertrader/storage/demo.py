"""Demo data seeding and collection reset for local previews."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass

from papertrader.storage.database import (
    EXPLANATIONS,
    LEDGER,
    POSITIONS,
    SIGNALS,
    Database,
)
from papertrader.storage.models import (
    SENTINEL_STRATEGY_ID,
    Explanation,
    Position,
    PositionStatus,
    Side,
)
from papertrader.observability.logger import get_logger

log = get_logger(__name__)

DEMO_MODEL_NOTES = "Demo explanation seeded for UI preview."
RESET_COLLECTIONS = (POSITIONS, SIGNALS, EXPLANATIONS, LEDGER)


@dataclass
class DemoRemoval:
    position_id: str | None = None
    explanations_deleted: int = 0
    position_deleted: bool = False
    found_demo_explanation: bool = False


def _local(iso: str) -> str:
    try:
        return dt.datetime.fromisoformat(iso.replace("Z", "+00:00")).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return iso


def seed_demo_position(db: Database) -> Position:
    """Open EURUSD long entered a few minutes ago."""
    entry = dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=5)
    position = db.add_position(Position(
        status=PositionStatus.OPEN,
        side=Side.LONG,
        symbol="FX:EURUSD",
        entry_ts=entry.isoformat(),
        entry_price=1.0923,
        qty=10000,
        stop_price=1.0880,
        tp_price=1.1000,
        strategy_id=SENTINEL_STRATEGY_ID,
        signal_id="demo-signal",
        slippage_bps=2,
        fee_bps=1,
        method_name="Demo Seed",
    ))
    log.info("demo.position_seeded", position_id=position.id)
    return position


def seed_demo_explanation(db: Database) -> Explanation | None:
    """Attach a demo explanation to the latest position, if there is one."""
    doc = db.latest_position_doc()
    if doc is None:
        return None
    pos_id = doc["id"]
    symbol, side = doc.get("symbol"), doc.get("side")
    entry_ts, exit_ts = doc.get("entry_ts", ""), doc.get("exit_ts")
    stop, tp = doc.get("stop_price"), doc.get("tp_price")

    explanation = db.add_explanation(Explanation(
        position_id=pos_id,
        plain_english_entry=(
            f"Entered {symbol} {side} at {doc.get('entry_price')} on {_local(entry_ts)}. "
            f"Stop at {stop}, target at {tp}."
        ),
        beginner_friendly_entry=(
            f"We entered {symbol} because we expected the price to move in our favor. "
            f"If the price falls to {stop}, we will exit to limit loss. If it rises to {tp}, "
            f"we will take profit. Entry was on {_local(entry_ts)}."
        ),
        exit_reason=f"Exited at {doc.get('exit_price')} on {_local(exit_ts)}." if exit_ts else None,
        model_notes=DEMO_MODEL_NOTES,
    ))
    log.info("demo.explanation_seeded", position_id=pos_id, explanation_id=explanation.id)
    return explanation


def _delete_explanations_for(db: Database, position_id: str) -> int:
    deleted = 0
    for doc in db.query(EXPLANATIONS, where={"position_id": position_id}):
        deleted += db.delete(EXPLANATIONS, doc["id"])
    return deleted


def remove_demo_trade(db: Database) -> DemoRemoval:
    """Delete the seeded demo explanation and its position.

    Without a demo explanation, the latest position (and its explanations)
    is assumed to be the demo and removed instead.
    """
    demo = db.query(EXPLANATIONS, where={"model_notes": DEMO_MODEL_NOTES}, limit=1)
    if demo:
        result = DemoRemoval(position_id=demo[0].get("position_id"), found_demo_explanation=True)
        result.explanations_deleted = int(db.delete(EXPLANATIONS, demo[0]["id"]))
    else:
        latest = db.latest_position_doc()
        if latest is None:
            return DemoRemoval()
        result = DemoRemoval(position_id=latest["id"])

    if result.position_id:
        result.explanations_deleted += _delete_explanations_for(db, result.position_id)
        result.position_deleted = db.delete(POSITIONS, result.position_id)
    log.info(
        "demo.removed",
        position_id=result.position_id,
        explanations_deleted=result.explanations_deleted,
        position_deleted=result.position_deleted,
    )
    return result


def reset_collections(db: Database, names: tuple[str, ...] = RESET_COLLECTIONS) -> dict[str, int]:
    """Delete every document of the named collections."""
    counts: dict[str, int] = {}
    for name in names:
        counts[name] = db.delete_all(name)
        log.info("demo.collection_reset", collection=name, deleted=counts[name])
    return counts
