"""Tests for the LLM explainer and the deterministic entry summary."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from papertrader.config import ExplanationsConfig
from papertrader.errors import ExternalServiceError
from papertrader.explain.llm_explainer import LLMExplainer, plain_english_entry
from papertrader.policy.risk import build_strategy
from papertrader.storage.models import Explanation

from conftest import make_position


def _completion(text: str | None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def _explainer(create: AsyncMock) -> LLMExplainer:
    client = MagicMock()
    client.chat.completions.create = create
    return LLMExplainer(ExplanationsConfig(llm_model="test-model"), client=client)


class TestPlainEnglishEntry:
    def test_mentions_key_levels(self):
        pos = make_position(method_name="Swing Reversal")
        text = plain_english_entry(pos, build_strategy(pos))
        assert "Entered LONG on FX:EURUSD" in text
        assert "Swing Reversal" in text
        assert "SWING method" in text
        assert "1.1000" in text and "1.0950" in text and "1.1100" in text
        assert "£5.00" in text


class TestBeginnerEntry:
    @pytest.mark.asyncio
    async def test_returns_stripped_text(self):
        create = AsyncMock(return_value=_completion("  We bought euros.  "))
        pos = make_position(id="p1")
        text = await _explainer(create).beginner_entry(pos, build_strategy(pos))
        assert text == "We bought euros."
        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        prompt = kwargs["messages"][1]["content"]
        assert "FX:EURUSD" in prompt
        assert "profits if the price rises" in prompt

    @pytest.mark.asyncio
    async def test_empty_output_is_failure(self):
        pos = make_position()
        with pytest.raises(ExternalServiceError) as exc:
            await _explainer(AsyncMock(return_value=_completion("   "))).beginner_entry(pos, build_strategy(pos))
        assert exc.value.reason == "LLM_EMPTY"

    @pytest.mark.asyncio
    async def test_none_content_is_failure(self):
        pos = make_position()
        with pytest.raises(ExternalServiceError):
            await _explainer(AsyncMock(return_value=_completion(None))).beginner_entry(pos, build_strategy(pos))

    @pytest.mark.asyncio
    async def test_client_error_is_wrapped(self):
        pos = make_position()
        create = AsyncMock(side_effect=RuntimeError("rate limited"))
        with pytest.raises(ExternalServiceError) as exc:
            await _explainer(create).beginner_entry(pos, build_strategy(pos))
        assert exc.value.reason == "LLM_FAILED"
        assert isinstance(exc.value.__cause__, RuntimeError)


class TestFailureAnalysis:
    @pytest.mark.asyncio
    async def test_prompt_carries_loss(self):
        create = AsyncMock(return_value=_completion("Entered into resistance."))
        pos = make_position(id="p1").close(1.0950, -5.0, -1.0)
        expl = Explanation(position_id="p1", plain_english_entry="Breakout long.")
        text = await _explainer(create).failure_analysis(pos, expl)
        assert text == "Entered into resistance."
        prompt = create.call_args.kwargs["messages"][1]["content"]
        assert "Breakout long." in prompt
        assert "£5.00" in prompt
        assert "-1.0R" in prompt
