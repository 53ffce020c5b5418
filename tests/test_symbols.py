"""Tests for internal symbol → OANDA instrument mapping."""

from __future__ import annotations

import pytest

from papertrader.connectors.symbols import format_price, map_symbol, price_precision
from papertrader.errors import UnsupportedSymbol


class TestMapSymbol:
    @pytest.mark.parametrize("symbol,instrument", [
        ("FX:EURUSD", "EUR_USD"),
        ("OANDA:XAUUSD", "XAU_USD"),
        ("OANDA:XAU_USD", "XAU_USD"),
        ("eur/usd", "EUR_USD"),
        ("GBPJPY", "GBP_JPY"),
        ("FX_IDC:USDJPY", "USD_JPY"),
        ("OANDA:NAS100USD", "NAS100_USD"),
        ("  fx:audusd ", "AUD_USD"),
    ])
    def test_supported(self, symbol, instrument):
        assert map_symbol(symbol) == instrument

    def test_deterministic(self):
        assert map_symbol("FX:EURUSD") == map_symbol("FX:EURUSD")

    @pytest.mark.parametrize("symbol", ["FX:ABCXYZ", "BINANCE:EURUSD", "", "EUR", "BTCUSD"])
    def test_unsupported(self, symbol):
        with pytest.raises(UnsupportedSymbol) as exc:
            map_symbol(symbol)
        assert exc.value.reason == "UNSUPPORTED_SYMBOL"


class TestPrecision:
    def test_jpy_pairs_use_three_decimals(self):
        assert price_precision("USD_JPY") == 3
        assert format_price("USD_JPY", 151.23456) == "151.235"

    def test_majors_use_five_decimals(self):
        assert format_price("EUR_USD", 1.1) == "1.10000"

    def test_unknown_instrument(self):
        with pytest.raises(UnsupportedSymbol):
            price_precision("FOO_BAR")
