"""Tests for the OANDA v20 connector, against an httpx MockTransport."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from papertrader.config import BrokerConfig
from papertrader.connectors.oanda import CloseState, OandaClient
from papertrader.errors import (
    BrokerError,
    NetworkError,
    OrderRejected,
    PriceUnavailable,
)


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> OandaClient:
    cfg = BrokerConfig(environment="practice", account_id="001-ACC", api_token="secret-token")
    client = OandaClient(cfg)
    client._client = httpx.AsyncClient(
        base_url=cfg.base_url,
        transport=httpx.MockTransport(handler),
    )
    return client


def _json(status: int, body: dict[str, Any]) -> httpx.Response:
    return httpx.Response(status, json=body)


class TestConstruction:
    def test_missing_credentials(self):
        with pytest.raises(BrokerError) as exc:
            OandaClient(BrokerConfig(account_id="", api_token=""))
        assert exc.value.reason == "MISSING_CREDENTIALS"

    def test_base_url_by_environment(self):
        assert "fxpractice" in BrokerConfig(environment="practice").base_url
        assert "fxtrade" in BrokerConfig(environment="live").base_url


class TestMidPrice:
    @pytest.mark.asyncio
    async def test_mid_of_bid_and_ask(self):
        seen: list[httpx.Request] = []

        def handler(req: httpx.Request) -> httpx.Response:
            seen.append(req)
            return _json(200, {"prices": [{
                "instrument": "EUR_USD", "tradeable": True,
                "bids": [{"price": "1.10000"}], "asks": [{"price": "1.10020"}],
            }]})

        client = _client(handler)
        mid = await client.get_mid_price("EUR_USD")
        assert mid == pytest.approx(1.1001)
        assert seen[0].url.path.endswith("/accounts/001-ACC/pricing")
        assert seen[0].url.params["instruments"] == "EUR_USD"

    @pytest.mark.asyncio
    async def test_not_tradeable(self):
        client = _client(lambda r: _json(200, {"prices": [{
            "tradeable": False, "bids": [{"price": "1"}], "asks": [{"price": "1"}],
        }]}))
        with pytest.raises(PriceUnavailable) as exc:
            await client.get_mid_price("EUR_USD")
        assert exc.value.reason == "NOT_TRADEABLE"

    @pytest.mark.asyncio
    async def test_missing_quote(self):
        client = _client(lambda r: _json(200, {"prices": [{"tradeable": True, "bids": [], "asks": []}]}))
        with pytest.raises(PriceUnavailable):
            await client.get_mid_price("EUR_USD")

    @pytest.mark.asyncio
    async def test_no_prices(self):
        client = _client(lambda r: _json(200, {"prices": []}))
        with pytest.raises(PriceUnavailable) as exc:
            await client.get_mid_price("EUR_USD")
        assert exc.value.reason == "NO_PRICE"

    @pytest.mark.asyncio
    async def test_unknown_instrument(self):
        client = _client(lambda r: _json(400, {"errorMessage": "Invalid value specified for 'instruments'"}))
        with pytest.raises(PriceUnavailable):
            await client.get_mid_price("FOO_BAR")

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(self):
        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=req)

        client = _client(handler)
        with pytest.raises(NetworkError):
            await client.get_mid_price("EUR_USD")


class TestPlaceMarketOrder:
    @pytest.mark.asyncio
    async def test_fill(self):
        bodies: list[dict[str, Any]] = []

        def handler(req: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(req.content))
            return _json(201, {
                "orderCreateTransaction": {"id": "10"},
                "orderFillTransaction": {"id": "11", "price": "1.10010", "tradeOpened": {"tradeID": "12"}},
            })

        client = _client(handler)
        fill = await client.place_market_order("EUR_USD", -1000, 1.105, 1.09, "papertrader-abc")
        assert fill.trade_id == "12"
        assert fill.fill_price == pytest.approx(1.1001)
        order = bodies[0]["order"]
        assert order["type"] == "MARKET"
        assert order["timeInForce"] == "FOK"
        assert order["units"] == "-1000"
        assert order["stopLossOnFill"] == {"price": "1.10500"}
        assert order["takeProfitOnFill"] == {"price": "1.09000"}
        assert order["clientExtensions"]["tag"] == "papertrader-abc"
        assert order["tradeClientExtensions"]["tag"] == "papertrader-abc"

    @pytest.mark.asyncio
    async def test_zero_units_rejected_locally(self):
        client = _client(lambda r: pytest.fail("no request expected"))
        with pytest.raises(OrderRejected) as exc:
            await client.place_market_order("EUR_USD", 0, 1.0, 1.2, "t")
        assert exc.value.reason == "INVALID_UNITS"

    @pytest.mark.asyncio
    async def test_cancelled_for_margin(self):
        client = _client(lambda r: _json(201, {
            "orderCreateTransaction": {"id": "10"},
            "orderCancelTransaction": {"id": "11", "reason": "INSUFFICIENT_MARGIN"},
        }))
        with pytest.raises(OrderRejected) as exc:
            await client.place_market_order("EUR_USD", 1000, 1.0, 1.2, "t")
        assert exc.value.reason == "INSUFFICIENT_MARGIN"

    @pytest.mark.asyncio
    async def test_rejected_4xx(self):
        client = _client(lambda r: _json(400, {
            "orderRejectTransaction": {"rejectReason": "STOP_LOSS_ON_FILL_LOSS"},
            "errorMessage": "bad stop",
        }))
        with pytest.raises(OrderRejected) as exc:
            await client.place_market_order("EUR_USD", 1000, 1.2, 1.3, "t")
        assert exc.value.reason == "STOP_LOSS_ON_FILL_LOSS"

    @pytest.mark.asyncio
    async def test_server_error_is_status_unknown(self):
        client = _client(lambda r: _json(503, {}))
        with pytest.raises(NetworkError):
            await client.place_market_order("EUR_USD", 1000, 1.0, 1.2, "t")

    @pytest.mark.asyncio
    async def test_success_without_fill_is_status_unknown(self):
        client = _client(lambda r: _json(201, {"orderCreateTransaction": {"id": "10"}}))
        with pytest.raises(NetworkError) as exc:
            await client.place_market_order("EUR_USD", 1000, 1.0, 1.2, "t")
        assert exc.value.reason == "MISSING_FILL"

    @pytest.mark.asyncio
    async def test_fill_without_price_is_status_unknown(self):
        client = _client(lambda r: _json(201, {
            "orderCreateTransaction": {"id": "10"},
            "orderFillTransaction": {"id": "11", "tradeOpened": {"tradeID": "12"}},
        }))
        with pytest.raises(NetworkError) as exc:
            await client.place_market_order("EUR_USD", 1000, 1.0, 1.2, "t")
        assert exc.value.reason == "MISSING_FILL_PRICE"


class TestCloseTrade:
    @pytest.mark.asyncio
    async def test_close(self):
        def handler(req: httpx.Request) -> httpx.Response:
            assert req.method == "PUT"
            assert req.url.path.endswith("/trades/12/close")
            assert json.loads(req.content) == {"units": "ALL"}
            return _json(200, {"orderFillTransaction": {"price": "1.10100", "pl": "0.9"}})

        status = await _client(handler).close_trade("12")
        assert status.state == CloseState.CLOSED
        assert status.close_price == pytest.approx(1.101)
        assert status.realized_pl == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_close_twice_reports_already_closed(self):
        calls = {"n": 0}

        def handler(req: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return _json(200, {"orderFillTransaction": {"price": "1.1"}})
            return _json(404, {"errorCode": "TRADE_DOESNT_EXIST"})

        client = _client(handler)
        first = await client.close_trade("12")
        second = await client.close_trade("12")
        assert first.state == CloseState.CLOSED
        assert second.already_closed

    @pytest.mark.asyncio
    async def test_other_rejection(self):
        client = _client(lambda r: _json(400, {"errorCode": "MARKET_HALTED"}))
        with pytest.raises(OrderRejected) as exc:
            await client.close_trade("12")
        assert exc.value.reason == "MARKET_HALTED"

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=req)

        with pytest.raises(NetworkError):
            await _client(handler).close_trade("12")


class TestAccountState:
    @pytest.mark.asyncio
    async def test_find_trade_by_tag(self):
        client = _client(lambda r: _json(200, {"trades": [
            {"id": "7", "instrument": "EUR_USD", "currentUnits": "100", "price": "1.1",
             "clientExtensions": {"tag": "other"}},
            {"id": "8", "instrument": "EUR_USD", "currentUnits": "-100", "price": "1.2",
             "clientExtensions": {"tag": "papertrader-xyz"}},
        ]}))
        trade = await client.find_trade_by_tag("papertrader-xyz")
        assert trade is not None
        assert trade.trade_id == "8"
        assert trade.units == -100
        assert await client.find_trade_by_tag("missing") is None

    @pytest.mark.asyncio
    async def test_account_summary(self):
        client = _client(lambda r: _json(200, {"account": {
            "id": "001-ACC", "currency": "GBP", "balance": "1000.5", "NAV": "1001", "openTradeCount": 2,
        }}))
        summary = await client.get_account_summary()
        assert summary.currency == "GBP"
        assert summary.balance == 1000.5
        assert summary.open_trade_count == 2

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        client = _client(lambda r: _json(401, {"errorMessage": "Insufficient authorization"}))
        with pytest.raises(BrokerError):
            await client.get_account_summary()
