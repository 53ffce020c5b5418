"""OANDA v20 REST connector.

Handles:
  - Mid-price lookup from the pricing endpoint
  - FOK market orders with attached stop-loss / take-profit
  - Trade closure (idempotent: an already-closed trade is not an error)
  - Open-trade listing, used to reconcile orders whose acknowledgment was lost
  - Account summary for connectivity checks

None of the calls retry. A mutating call either returns a broker-assigned
identifier or raises: ``OrderRejected`` means the order was not placed,
``NetworkError`` means the outcome is unknown.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from papertrader.config import BrokerConfig
from papertrader.connectors.rate_limiter import rate_limiter
from papertrader.connectors.symbols import format_price
from papertrader.errors import (
    BrokerError,
    NetworkError,
    OrderRejected,
    PriceUnavailable,
)
from papertrader.observability.logger import get_logger
from papertrader.observability.metrics import metrics

log = get_logger(__name__)

# Reject codes meaning the trade no longer exists at the broker
_ALREADY_CLOSED_REASONS = frozenset({"TRADE_DOESNT_EXIST", "NO_SUCH_TRADE"})


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class OrderFill:
    """Acknowledged market order fill."""
    trade_id: str
    fill_price: float
    units: int = 0
    client_tag: str = ""


class CloseState(str, Enum):
    CLOSED = "closed"
    ALREADY_CLOSED = "already_closed"


@dataclass
class ClosedStatus:
    trade_id: str
    state: CloseState
    close_price: float | None = None
    realized_pl: float | None = None

    @property
    def already_closed(self) -> bool:
        return self.state == CloseState.ALREADY_CLOSED


@dataclass
class OpenTrade:
    trade_id: str
    instrument: str
    units: float
    price: float
    client_tag: str = ""


@dataclass
class AccountSummary:
    account_id: str
    currency: str
    balance: float
    nav: float
    open_trade_count: int


def _first_price(levels: Any) -> float | None:
    if not levels:
        return None
    try:
        return float(levels[0]["price"])
    except (KeyError, TypeError, ValueError, IndexError):
        return None


def _reject_reason(data: dict[str, Any], status_code: int) -> str:
    reject = data.get("orderRejectTransaction") or {}
    return reject.get("rejectReason") or data.get("errorCode") or f"HTTP_{status_code}"


# ── Client ───────────────────────────────────────────────────────────

class OandaClient:
    """Async client for the OANDA v20 REST API."""

    def __init__(self, config: BrokerConfig):
        if not config.account_id or not config.api_token:
            raise BrokerError(
                "OANDA broker requires OANDA_ACCOUNT_ID and OANDA_API_TOKEN",
                reason="MISSING_CREDENTIALS",
            )
        self._config = config
        self._account = config.account_id
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_secs,
            headers={
                "Authorization": f"Bearer {config.api_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        log.info("oanda.init", environment=config.environment, account=self._account)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        await rate_limiter.get("oanda").acquire()
        try:
            with metrics.timer("oanda.request"):
                return await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            metrics.incr("oanda.network_errors")
            log.warning("oanda.transport_error", method=method, path=path, error=str(e))
            raise NetworkError(f"{method} {path} failed: {e}", reason="TRANSPORT") from e

    @staticmethod
    def _json(resp: httpx.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ── Pricing ──────────────────────────────────────────────────────

    async def get_mid_price(self, instrument: str) -> float:
        """Midpoint of the best bid and ask for an instrument."""
        resp = await self._request(
            "GET", f"/accounts/{self._account}/pricing",
            params={"instruments": instrument},
        )
        data = self._json(resp)
        if resp.status_code >= 500:
            raise NetworkError(f"pricing returned {resp.status_code}", reason=f"HTTP_{resp.status_code}")
        if resp.status_code in (401, 403):
            raise BrokerError("pricing unauthorized", reason=_reject_reason(data, resp.status_code))
        if resp.status_code >= 400:
            raise PriceUnavailable(
                f"no price for {instrument}: {data.get('errorMessage', '')}",
                reason=_reject_reason(data, resp.status_code),
            )

        prices = data.get("prices") or []
        if not prices:
            raise PriceUnavailable(f"no price for {instrument}", reason="NO_PRICE")
        quote = prices[0]
        if quote.get("tradeable") is False:
            raise PriceUnavailable(f"{instrument} is not tradeable", reason="NOT_TRADEABLE")
        bid = _first_price(quote.get("bids"))
        ask = _first_price(quote.get("asks"))
        if not bid or not ask:
            raise PriceUnavailable(f"{instrument} quote has no bid/ask", reason="NO_QUOTE")
        return (bid + ask) / 2

    # ── Orders ───────────────────────────────────────────────────────

    async def place_market_order(
        self,
        instrument: str,
        units: float,
        stop_loss: float,
        take_profit: float,
        client_tag: str,
    ) -> OrderFill:
        """Submit a FOK market order. Positive units buy, negative units sell."""
        signed_units = int(round(units))
        if signed_units == 0:
            raise OrderRejected("order units must be non-zero", reason="INVALID_UNITS")

        body = {
            "order": {
                "type": "MARKET",
                "instrument": instrument,
                "units": str(signed_units),
                "timeInForce": "FOK",
                "positionFill": "DEFAULT",
                "stopLossOnFill": {"price": format_price(instrument, stop_loss)},
                "takeProfitOnFill": {"price": format_price(instrument, take_profit)},
                "clientExtensions": {"tag": client_tag},
                "tradeClientExtensions": {"tag": client_tag},
            },
        }
        resp = await self._request("POST", f"/accounts/{self._account}/orders", json=body)
        data = self._json(resp)

        if resp.status_code >= 500:
            metrics.incr("orders.status_unknown")
            raise NetworkError(
                f"order endpoint returned {resp.status_code}; order state unknown",
                reason=f"HTTP_{resp.status_code}",
            )
        if resp.status_code >= 400:
            reason = _reject_reason(data, resp.status_code)
            metrics.incr("orders.rejected")
            log.warning("oanda.order_rejected", instrument=instrument, units=signed_units, reason=reason)
            raise OrderRejected(
                f"order for {instrument} rejected: {data.get('errorMessage', reason)}",
                reason=reason,
            )

        cancel = data.get("orderCancelTransaction")
        if cancel:
            reason = cancel.get("reason", "ORDER_CANCELLED")
            metrics.incr("orders.rejected")
            log.warning("oanda.order_cancelled", instrument=instrument, units=signed_units, reason=reason)
            raise OrderRejected(f"order for {instrument} cancelled: {reason}", reason=reason)

        fill = data.get("orderFillTransaction") or {}
        opened = fill.get("tradeOpened") or {}
        trade_id = opened.get("tradeID")
        if not trade_id:
            metrics.incr("orders.status_unknown")
            raise NetworkError(
                f"order for {instrument} acknowledged without an opened trade",
                reason="MISSING_FILL",
            )
        raw_price = fill.get("price") or opened.get("price")
        if not raw_price:
            metrics.incr("orders.status_unknown")
            log.warning("oanda.fill_without_price", instrument=instrument, trade_id=trade_id)
            raise NetworkError(
                f"trade {trade_id} for {instrument} filled without a price",
                reason="MISSING_FILL_PRICE",
            )
        fill_price = float(raw_price)

        metrics.incr("orders.filled")
        log.info(
            "oanda.order_filled",
            instrument=instrument,
            units=signed_units,
            trade_id=trade_id,
            fill_price=fill_price,
            client_tag=client_tag,
        )
        return OrderFill(
            trade_id=str(trade_id),
            fill_price=fill_price,
            units=signed_units,
            client_tag=client_tag,
        )

    async def close_trade(self, trade_id: str) -> ClosedStatus:
        """Close an open trade at market. Closing twice reports ALREADY_CLOSED."""
        resp = await self._request(
            "PUT", f"/accounts/{self._account}/trades/{trade_id}/close",
            json={"units": "ALL"},
        )
        data = self._json(resp)

        if resp.status_code >= 500:
            raise NetworkError(
                f"close endpoint returned {resp.status_code}; trade state unknown",
                reason=f"HTTP_{resp.status_code}",
            )
        if resp.status_code >= 400:
            reason = _reject_reason(data, resp.status_code)
            if resp.status_code == 404 or reason in _ALREADY_CLOSED_REASONS:
                log.info("oanda.trade_already_closed", trade_id=trade_id, reason=reason)
                return ClosedStatus(trade_id=trade_id, state=CloseState.ALREADY_CLOSED)
            log.warning("oanda.close_rejected", trade_id=trade_id, reason=reason)
            raise OrderRejected(f"close of trade {trade_id} rejected: {reason}", reason=reason)

        cancel = data.get("orderCancelTransaction")
        if cancel:
            reason = cancel.get("reason", "ORDER_CANCELLED")
            if reason in _ALREADY_CLOSED_REASONS:
                return ClosedStatus(trade_id=trade_id, state=CloseState.ALREADY_CLOSED)
            raise OrderRejected(f"close of trade {trade_id} cancelled: {reason}", reason=reason)

        fill = data.get("orderFillTransaction") or {}
        price = fill.get("price")
        pl = fill.get("pl")
        metrics.incr("trades.closed")
        log.info("oanda.trade_closed", trade_id=trade_id, price=price, pl=pl)
        return ClosedStatus(
            trade_id=trade_id,
            state=CloseState.CLOSED,
            close_price=float(price) if price is not None else None,
            realized_pl=float(pl) if pl is not None else None,
        )

    # ── Account state ────────────────────────────────────────────────

    async def list_open_trades(self) -> list[OpenTrade]:
        resp = await self._request("GET", f"/accounts/{self._account}/openTrades")
        data = self._json(resp)
        if resp.status_code >= 500:
            raise NetworkError(f"openTrades returned {resp.status_code}", reason=f"HTTP_{resp.status_code}")
        if resp.status_code >= 400:
            raise BrokerError("openTrades failed", reason=_reject_reason(data, resp.status_code))

        trades: list[OpenTrade] = []
        for t in data.get("trades", []):
            ext = t.get("clientExtensions") or {}
            trades.append(OpenTrade(
                trade_id=str(t.get("id", "")),
                instrument=t.get("instrument", ""),
                units=float(t.get("currentUnits", t.get("initialUnits", 0))),
                price=float(t.get("price", 0)),
                client_tag=ext.get("tag", ""),
            ))
        return trades

    async def find_trade_by_tag(self, client_tag: str) -> OpenTrade | None:
        """Look up the open trade created by an order with ``client_tag``."""
        for trade in await self.list_open_trades():
            if trade.client_tag == client_tag:
                return trade
        return None

    async def get_account_summary(self) -> AccountSummary:
        resp = await self._request("GET", f"/accounts/{self._account}/summary")
        data = self._json(resp)
        if resp.status_code >= 500:
            raise NetworkError(f"summary returned {resp.status_code}", reason=f"HTTP_{resp.status_code}")
        if resp.status_code >= 400:
            raise BrokerError("account summary failed", reason=_reject_reason(data, resp.status_code))
        acct = data.get("account") or {}
        return AccountSummary(
            account_id=str(acct.get("id", self._account)),
            currency=acct.get("currency", ""),
            balance=float(acct.get("balance", 0)),
            nav=float(acct.get("NAV", acct.get("balance", 0))),
            open_trade_count=int(acct.get("openTradeCount", 0)),
        )
