"""Internal symbol → OANDA instrument mapping.

Internal symbols use charting notation (``FX:EURUSD``, ``OANDA:XAUUSD``,
``OANDA:NAS100_USD``). The mapping is a fixed table: anything not listed is
rejected with ``UnsupportedSymbol`` instead of being guessed.
"""

from __future__ import annotations

from papertrader.errors import UnsupportedSymbol

# Venue prefixes accepted in front of a symbol
_VENUES = frozenset({"FX", "OANDA", "FX_IDC", "TVC"})

# instrument -> display precision (decimal places the broker accepts)
INSTRUMENTS: dict[str, int] = {
    # Majors
    "EUR_USD": 5, "GBP_USD": 5, "AUD_USD": 5, "NZD_USD": 5,
    "USD_JPY": 3, "USD_CHF": 5, "USD_CAD": 5,
    # Crosses
    "EUR_GBP": 5, "EUR_JPY": 3, "EUR_CHF": 5, "EUR_AUD": 5, "EUR_CAD": 5,
    "GBP_JPY": 3, "GBP_CHF": 5, "GBP_AUD": 5, "AUD_JPY": 3, "CAD_JPY": 3,
    "CHF_JPY": 3, "NZD_JPY": 3, "AUD_NZD": 5,
    # Metals
    "XAU_USD": 3, "XAG_USD": 5,
    # Indices
    "NAS100_USD": 1, "SPX500_USD": 1, "US30_USD": 1, "UK100_GBP": 1, "DE30_EUR": 1,
}

# "EURUSD" -> "EUR_USD", "NAS100USD" -> "NAS100_USD"
_BY_COMPACT: dict[str, str] = {inst.replace("_", ""): inst for inst in INSTRUMENTS}


def map_symbol(internal_symbol: str) -> str:
    """Translate an internal symbol into the broker's instrument code."""
    raw = (internal_symbol or "").strip().upper()
    body = raw
    if ":" in raw:
        venue, _, body = raw.partition(":")
        if venue not in _VENUES:
            raise UnsupportedSymbol(
                f"unknown venue in symbol {internal_symbol!r}", reason="UNSUPPORTED_SYMBOL"
            )
    compact = body.replace("_", "").replace("/", "")
    instrument = _BY_COMPACT.get(compact)
    if instrument is None:
        raise UnsupportedSymbol(
            f"no instrument mapping for {internal_symbol!r}", reason="UNSUPPORTED_SYMBOL"
        )
    return instrument


def price_precision(instrument: str) -> int:
    try:
        return INSTRUMENTS[instrument]
    except KeyError:
        raise UnsupportedSymbol(
            f"unknown instrument {instrument!r}", reason="UNSUPPORTED_SYMBOL"
        ) from None


def format_price(instrument: str, price: float) -> str:
    """Render a price with the instrument's precision, as the broker expects."""
    return f"{price:.{price_precision(instrument)}f}"
