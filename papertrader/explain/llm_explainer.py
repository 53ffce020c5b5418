"""LLM explainer — turns a position and its strategy into readable prose.

Produces:
  - beginner-friendly entry explanations (backfilled by the reconciler)
  - post-mortems for losing trades

Any failure, including an empty completion, surfaces as
``ExternalServiceError``; callers decide whether to skip or abort.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

from openai import AsyncOpenAI

from papertrader.config import ExplanationsConfig
from papertrader.connectors.rate_limiter import rate_limiter
from papertrader.errors import ExternalServiceError
from papertrader.storage.models import Explanation, Position, Strategy
from papertrader.observability.logger import get_logger
from papertrader.observability.metrics import metrics

log = get_logger(__name__)


def _fmt_price(price: float) -> str:
    return f"{price:.4f}"


def _fmt_ts(iso: str) -> str:
    try:
        return dt.datetime.fromisoformat(iso.replace("Z", "+00:00")).strftime("%a, %d %b %Y %H:%M UTC")
    except ValueError:
        return iso


def plain_english_entry(position: Position, strategy: Strategy) -> str:
    """Deterministic one-paragraph summary of why and how a trade was entered."""
    return (
        f"Entered {position.side.value} on {position.symbol} based on the {strategy.name} "
        f"strategy at {_fmt_ts(position.entry_ts)}. Entry price: {_fmt_price(position.entry_price)}. "
        f"Stop-loss was set using the {strategy.stop_logic.value} method "
        f"(ATR multiplier: {strategy.atr_mult}) at {_fmt_price(position.stop_price)}. "
        f"The take-profit target was set at a {strategy.take_profit_R}R multiple, targeting a "
        f"price of {_fmt_price(position.tp_price)}. The total amount at risk for this trade "
        f"was £{strategy.risk_per_trade_gbp:.2f}."
    )


_BEGINNER_PROMPT = """\
Explain this trade to someone who has never traded before.

TRADE:
- Instrument: {symbol}
- Direction: {side} ({direction_hint})
- Entry time: {entry_ts}
- Entry price: {entry_price}
- Stop-loss price: {stop_price}
- Take-profit price: {tp_price}
- Position size: {qty} units

STRATEGY:
- Name: {strategy_name}
- Timeframe: {timeframe}
- Stop placement method: {stop_logic} ({stop_hint})
- Profit target: {take_profit_R}x the amount risked
- Money at risk: £{risk_gbp:.2f}

TASK:
Write 3-5 short sentences in plain, friendly language. Say what we bought or
sold and why we expected the price to move, what happens if the price reaches
the stop-loss and what happens if it reaches the take-profit. Avoid jargon; if
you must use a term such as "stop-loss", explain it in a few words.

Return only the explanation text, no headings or markdown.
"""

_FAILURE_PROMPT = """\
You are a senior trading analyst reviewing a losing trade. Give a concise,
educational post-mortem.

TRADE:
- Instrument: {symbol}
- Direction: {side}
- Original entry rationale: "{rationale}"
- Entry price: {entry_price}
- Stop-loss price: {stop_price}
- Exit price: {exit_price}
- Loss: £{loss:.2f} ({r_multiple}R)

TASK:
In 2-3 sentences give the most likely reason the trade failed: a reversal
of the higher-timeframe trend, an entry at a poor location, a volatility or
news spike, or a liquidity grab that ran the stop before reversing.

Return only the analysis text.
"""


class LLMExplainer:
    """Generate trade explanations with an OpenAI chat model."""

    def __init__(self, config: ExplanationsConfig, client: AsyncOpenAI | None = None):
        self._config = config
        self._llm = client or AsyncOpenAI()

    async def _complete(self, system: str, prompt: str, subject: str) -> str:
        try:
            await rate_limiter.get("openai").acquire()
            with metrics.timer("llm.completion"):
                resp = await self._llm.chat.completions.create(
                    model=self._config.llm_model,
                    temperature=self._config.llm_temperature,
                    max_tokens=self._config.llm_max_tokens,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": prompt},
                    ],
                )
            text = (resp.choices[0].message.content or "").strip()
        except Exception as e:
            metrics.incr("llm.failures")
            log.error("llm_explainer.failed", subject=subject, error=str(e))
            raise ExternalServiceError(f"explanation generation failed: {e}", reason="LLM_FAILED") from e

        if not text:
            metrics.incr("llm.failures")
            raise ExternalServiceError("explanation generation returned no text", reason="LLM_EMPTY")
        metrics.incr("llm.completions")
        return text

    async def beginner_entry(self, position: Position, strategy: Strategy) -> str:
        """Beginner-oriented explanation of a position's entry."""
        is_long = position.side.value == "LONG"
        prompt = _BEGINNER_PROMPT.format(
            symbol=position.symbol,
            side=position.side.value,
            direction_hint="profits if the price rises" if is_long else "profits if the price falls",
            entry_ts=_fmt_ts(position.entry_ts),
            entry_price=_fmt_price(position.entry_price),
            stop_price=_fmt_price(position.stop_price),
            tp_price=_fmt_price(position.tp_price),
            qty=f"{position.qty:g}",
            strategy_name=strategy.name,
            timeframe=strategy.timeframe,
            stop_logic=strategy.stop_logic.value,
            stop_hint=(
                "based on recent swing highs/lows" if strategy.stop_logic.value == "SWING"
                else f"{strategy.atr_mult}x the average true range"
            ),
            take_profit_R=f"{strategy.take_profit_R:g}",
            risk_gbp=strategy.risk_per_trade_gbp,
        )
        return await self._complete(
            "You are a patient trading mentor who explains trades to complete beginners.",
            prompt,
            subject=f"position:{position.id}",
        )

    async def failure_analysis(self, position: Position, explanation: Explanation) -> str:
        """Post-mortem for a closed losing position."""
        data: dict[str, Any] = {
            "symbol": position.symbol,
            "side": position.side.value,
            "rationale": explanation.plain_english_entry or "not recorded",
            "entry_price": _fmt_price(position.entry_price),
            "stop_price": _fmt_price(position.stop_price),
            "exit_price": _fmt_price(position.exit_price or 0.0),
            "loss": abs(position.pnl_gbp or 0.0),
            "r_multiple": position.R_multiple if position.R_multiple is not None else "n/a",
        }
        return await self._complete(
            "You review losing trades and explain the likely cause briefly and honestly.",
            _FAILURE_PROMPT.format(**data),
            subject=f"position:{position.id}",
        )
