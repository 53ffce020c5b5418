"""Order flow — opens and closes positions, simulated or on the broker.

In dry-run mode (the default) fills are simulated at the current mid price.
Live broker orders require ``execution.dry_run: false`` AND the
ENABLE_LIVE_TRADING env var.

Orders are never re-submitted blindly: when placement ends in NetworkError
the broker is asked for an open trade carrying our client tag, and only a
match is adopted as the fill.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from papertrader.config import ExecutionConfig, is_live_trading_enabled
from papertrader.connectors.oanda import ClosedStatus, OandaClient, OrderFill
from papertrader.connectors.symbols import map_symbol
from papertrader.errors import (
    ExternalServiceError,
    NetworkError,
    NotFoundError,
    PaperTraderError,
    PersistenceError,
    PriceUnavailable,
    TradeNotRecorded,
    ValidationError,
)
from papertrader.explain.llm_explainer import LLMExplainer, plain_english_entry
from papertrader.policy.risk import build_strategy, r_multiple, realized_pnl_gbp
from papertrader.storage.database import EXPLANATIONS, LEDGER, POSITIONS, Database
from papertrader.storage.models import (
    SENTINEL_STRATEGY_ID,
    Explanation,
    Position,
    Side,
    Strategy,
    utc_now_iso,
)
from papertrader.observability.logger import get_logger
from papertrader.observability.metrics import metrics

log = get_logger(__name__)


def new_client_tag(prefix: str) -> str:
    """Tag unique to one order; never reused across orders or runs."""
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


@dataclass
class OrderRequest:
    """What to open."""
    symbol: str
    side: Side
    qty: float
    stop_price: float
    tp_price: float
    strategy_id: str = SENTINEL_STRATEGY_ID
    signal_id: str = ""
    method_name: str | None = None
    slippage_bps: float = 0.0
    fee_bps: float = 0.0


@dataclass
class OpenResult:
    position: Position
    explanation: Explanation | None
    simulated: bool
    client_tag: str = ""
    reconciled: bool = False  # fill recovered by tag after a NetworkError


@dataclass
class CloseResult:
    position: Position
    already_closed: bool = False
    broker_status: ClosedStatus | None = None
    failure_analysis: str | None = None


class OrderFlow:
    """Open and close positions, writing them to the store."""

    def __init__(
        self,
        db: Database,
        broker: OandaClient,
        config: ExecutionConfig,
        explainer: LLMExplainer | None = None,
    ):
        self._db = db
        self._broker = broker
        self._config = config
        self._explainer = explainer

    @property
    def live(self) -> bool:
        return not self._config.dry_run and is_live_trading_enabled()

    def new_client_tag(self) -> str:
        return new_client_tag(self._config.tag_prefix)

    async def mid_price(self, instrument: str) -> float:
        """Mid price, retried on PriceUnavailable / NetworkError (read-only)."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(self._config.price_retry_attempts, 1)),
            wait=wait_exponential(multiplier=self._config.retry_backoff_secs, max=10),
            retry=retry_if_exception_type((PriceUnavailable, NetworkError)),
            reraise=True,
        ):
            with attempt:
                return await self._broker.get_mid_price(instrument)
        raise PriceUnavailable(f"no price for {instrument}", reason="NO_PRICE")  # pragma: no cover

    # ── Open ─────────────────────────────────────────────────────────

    async def open_position(self, req: OrderRequest) -> OpenResult:
        instrument = map_symbol(req.symbol)
        mid = await self.mid_price(instrument)

        client_tag = ""
        broker_trade_id: str | None = None
        entry_price = mid
        reconciled = False

        if self.live:
            client_tag = self.new_client_tag()
            units = req.qty if req.side == Side.LONG else -req.qty
            fill, reconciled = await self._place(instrument, units, req, client_tag)
            broker_trade_id = fill.trade_id
            entry_price = fill.fill_price
        else:
            metrics.incr("orders.simulated")
            log.info(
                "order_flow.dry_run",
                symbol=req.symbol,
                instrument=instrument,
                side=req.side.value,
                qty=req.qty,
                price=mid,
            )

        position = Position(
            side=req.side,
            symbol=req.symbol,
            entry_ts=utc_now_iso(),
            entry_price=entry_price,
            qty=req.qty,
            stop_price=req.stop_price,
            tp_price=req.tp_price,
            strategy_id=req.strategy_id,
            signal_id=req.signal_id,
            slippage_bps=req.slippage_bps,
            fee_bps=req.fee_bps,
            method_name=req.method_name,
            broker_trade_id=broker_trade_id,
        )
        try:
            position = self._db.add_position(position)
        except PersistenceError as e:
            if broker_trade_id is None:
                raise
            metrics.incr("orders.unrecorded")
            log.error(
                "order_flow.fill_not_recorded",
                broker_trade_id=broker_trade_id,
                client_tag=client_tag,
                error=str(e),
            )
            raise TradeNotRecorded(
                f"trade {broker_trade_id} (tag {client_tag}) is open on the broker "
                f"but was not recorded: {e}",
                broker_trade_id=broker_trade_id,
                client_tag=client_tag,
            ) from e
        explanation = await self._write_entry_explanation(position)

        log.info(
            "order_flow.opened",
            position_id=position.id,
            symbol=position.symbol,
            side=position.side.value,
            entry_price=position.entry_price,
            broker_trade_id=broker_trade_id,
            simulated=not self.live,
        )
        return OpenResult(
            position=position,
            explanation=explanation,
            simulated=not self.live,
            client_tag=client_tag,
            reconciled=reconciled,
        )

    async def _place(
        self, instrument: str, units: float, req: OrderRequest, client_tag: str,
    ) -> tuple[OrderFill, bool]:
        try:
            return await self._broker.place_market_order(
                instrument, units, req.stop_price, req.tp_price, client_tag,
            ), False
        except NetworkError as e:
            log.warning("order_flow.status_unknown", client_tag=client_tag, reason=e.reason)
            trade = await self._broker.find_trade_by_tag(client_tag)
            if trade is None:
                raise
            metrics.incr("orders.reconciled")
            log.info("order_flow.reconciled", client_tag=client_tag, trade_id=trade.trade_id)
            return OrderFill(
                trade_id=trade.trade_id,
                fill_price=trade.price,
                units=int(trade.units),
                client_tag=client_tag,
            ), True

    def _strategy_for(self, position: Position) -> Strategy:
        doc = None
        if position.has_custom_strategy:
            try:
                doc = self._db.get_strategy_document(position.strategy_id)
            except (PersistenceError, ValidationError) as e:
                log.warning("order_flow.strategy_unavailable", strategy_id=position.strategy_id, error=str(e))
        return build_strategy(position, doc)

    async def _write_entry_explanation(self, position: Position) -> Explanation | None:
        strategy = self._strategy_for(position)
        beginner = ""
        if self._explainer is not None:
            try:
                beginner = await self._explainer.beginner_entry(position, strategy)
            except ExternalServiceError as e:
                # Left blank; the backfill pass fills it in later
                log.warning("order_flow.explanation_deferred", position_id=position.id, reason=e.reason)
        try:
            return self._db.add_explanation(Explanation(
                position_id=position.id,
                plain_english_entry=plain_english_entry(position, strategy),
                beginner_friendly_entry=beginner,
            ))
        except PersistenceError as e:
            # The position is already recorded; only its explanation is missing
            metrics.incr("explanations.unrecorded")
            log.error("order_flow.explanation_not_recorded", position_id=position.id, error=str(e))
            return None

    # ── Close ────────────────────────────────────────────────────────

    async def close_position(
        self,
        position_id: str,
        reason: str,
        exit_price: float | None = None,
    ) -> CloseResult:
        position = self._db.get_position(position_id)
        if position is None:
            raise NotFoundError(f"position {position_id} not found", reason="NO_SUCH_POSITION")
        if not position.is_open:
            log.info("order_flow.already_closed", position_id=position_id)
            return CloseResult(position=position, already_closed=True)

        status: ClosedStatus | None = None
        if position.broker_trade_id:
            status = await self._broker.close_trade(position.broker_trade_id)

        try:
            closed = await self._record_close(position, status, exit_price)
        except PaperTraderError as e:
            if status is None:
                raise
            # Broker side is closed; the store still shows the position OPEN
            metrics.incr("closes.unrecorded")
            log.error(
                "order_flow.close_not_recorded",
                position_id=position.id,
                broker_trade_id=position.broker_trade_id,
                error=str(e),
            )
            raise TradeNotRecorded(
                f"trade {position.broker_trade_id} is closed on the broker but position "
                f"{position.id} was not updated: {e}",
                broker_trade_id=position.broker_trade_id or "",
            ) from e

        pnl = closed.pnl_gbp
        price = closed.exit_price
        try:
            self._db.add(LEDGER, {
                "ts": closed.exit_ts,
                "delta_gbp": pnl,
                "cash_after": 0,
                "ref_type": "EXIT",
                "ref_id": position.id,
            })
        except PersistenceError as e:
            log.error("order_flow.ledger_not_recorded", position_id=position.id, error=str(e))
        metrics.incr("positions.closed")
        log.info(
            "order_flow.closed",
            position_id=position.id,
            reason=reason,
            exit_price=price,
            pnl_gbp=pnl,
            R_multiple=closed.R_multiple,
        )

        analysis = None
        if pnl < 0:
            analysis = await self._record_failure_analysis(closed)
        return CloseResult(position=closed, broker_status=status, failure_analysis=analysis)

    async def _record_close(
        self, position: Position, status: ClosedStatus | None, exit_price: float | None,
    ) -> Position:
        """Price the exit and merge the lifecycle fields onto the stored position."""
        if status is not None and status.close_price is not None:
            price = status.close_price
        elif exit_price is not None:
            price = exit_price
        else:
            try:
                price = await self.mid_price(map_symbol(position.symbol))
            except (PriceUnavailable, NetworkError) as e:
                raise PriceUnavailable(
                    f"no exit price for {position.symbol}: {e}", reason="NO_EXIT_PRICE",
                ) from e

        closed = position.close(
            price, realized_pnl_gbp(position, price), r_multiple(position, price),
        )
        self._db.set_merge(POSITIONS, position.id, closed.lifecycle_fields())
        return closed

    async def _record_failure_analysis(self, position: Position) -> str | None:
        if self._explainer is None:
            return None
        explanations = self._db.get_explanations_for_position(position.id)
        if not explanations:
            return None
        expl = explanations[0]
        try:
            analysis = await self._explainer.failure_analysis(position, expl)
        except ExternalServiceError as e:
            log.warning("order_flow.failure_analysis_failed", position_id=position.id, reason=e.reason)
            return None
        self._db.set_merge(EXPLANATIONS, expl.id, {"exit_reason": analysis})
        return analysis
