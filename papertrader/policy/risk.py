"""Risk calculator — per-trade risk, stop-logic inference, strategy synthesis.

Pure functions. Used when a position has no persisted strategy (its
``strategy_id`` is the ``"ai-generated"`` sentinel or the document is gone)
and when a position is closed.
"""

from __future__ import annotations

import math

from papertrader.storage.models import (
    Position,
    Side,
    StopLogic,
    Strategy,
    StrategyDocument,
)

FALLBACK_RISK_GBP = 5.0
DEFAULT_STRATEGY_NAME = "AI Generated"
DEFAULT_TIMEFRAME = "1H"
DEFAULT_ATR_MULT = 1.5
DEFAULT_TAKE_PROFIT_R = 2.0


def compute_risk_gbp(position: Position) -> float:
    """Capital at risk: |entry - stop| x qty, rounded to 2dp.

    Falls back to ``FALLBACK_RISK_GBP`` when a price is missing or the result
    is not finite, so a synthesised strategy never carries NaN/inf risk.
    """
    try:
        risk = abs(position.entry_price - position.stop_price) * position.qty
    except TypeError:
        return FALLBACK_RISK_GBP
    if not math.isfinite(risk):
        return FALLBACK_RISK_GBP
    return round(risk, 2)


def infer_stop_logic(method_name: str | None) -> StopLogic:
    """SWING if the method label mentions it (any case), else ATR."""
    if "SWING" in (method_name or "").upper():
        return StopLogic.SWING
    return StopLogic.ATR


def _prefer(value, default):
    return default if value is None else value


def build_strategy(
    position: Position,
    strategy_doc: StrategyDocument | None = None,
) -> Strategy:
    """Complete Strategy for a position, preferring persisted document fields."""
    doc = strategy_doc or StrategyDocument()
    return Strategy(
        id=position.strategy_id,
        name=doc.name or position.method_name or DEFAULT_STRATEGY_NAME,
        symbol=position.symbol,
        timeframe=doc.timeframe or DEFAULT_TIMEFRAME,
        risk_per_trade_gbp=_prefer(doc.risk_per_trade_gbp, compute_risk_gbp(position)),
        stop_logic=_prefer(doc.stop_logic, infer_stop_logic(position.method_name)),
        atr_mult=_prefer(doc.atr_mult, DEFAULT_ATR_MULT),
        take_profit_R=_prefer(doc.take_profit_R, DEFAULT_TAKE_PROFIT_R),
        slippage_bps=_prefer(doc.slippage_bps, position.slippage_bps),
        fee_bps=_prefer(doc.fee_bps, position.fee_bps),
        enabled=True,
    )


# ── Close-out economics ──────────────────────────────────────────────

def _move_per_unit(position: Position, exit_price: float) -> float:
    if position.side == Side.LONG:
        return exit_price - position.entry_price
    return position.entry_price - exit_price


def realized_pnl_gbp(position: Position, exit_price: float) -> float:
    """Profit or loss of closing the whole position at ``exit_price``."""
    return round(_move_per_unit(position, exit_price) * position.qty, 2)


def r_multiple(position: Position, exit_price: float) -> float:
    """Result expressed in multiples of the initial per-unit risk.

    Returns 0.0 when the initial risk is zero or not finite.
    """
    if position.side == Side.LONG:
        risk_per_unit = position.entry_price - position.stop_price
    else:
        risk_per_unit = position.stop_price - position.entry_price
    if risk_per_unit == 0 or not math.isfinite(risk_per_unit):
        return 0.0
    r = _move_per_unit(position, exit_price) / risk_per_unit
    return round(r, 2) if math.isfinite(r) else 0.0
