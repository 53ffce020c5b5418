"""Backfill reconciler — repairs explanations missing beginner-friendly text.

One pass:
  1. Read every explanation from the store (the only fatal step)
  2. Keep those whose ``beginner_friendly_entry`` is missing or blank
  3. For each candidate, strictly one at a time:
     resolve position → optional strategy → build_strategy →
     generate text → merge-write the single field → pacing delay

Re-running is safe: the candidate predicate only ever selects items that
still have no text, and the write touches nothing but that one field.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from papertrader.config import BackfillConfig
from papertrader.errors import ExternalServiceError, PersistenceError, ValidationError
from papertrader.explain.llm_explainer import LLMExplainer
from papertrader.policy.risk import build_strategy
from papertrader.storage.database import POSITIONS, Database
from papertrader.storage.models import (
    Explanation,
    Position,
    StrategyDocument,
    needs_beginner_text,
    parse_document,
)
from papertrader.observability.logger import get_logger
from papertrader.observability.metrics import metrics

log = get_logger(__name__)


class ItemOutcome(str, Enum):
    UPDATED = "updated"
    MISSING_POSITION = "missing_position"
    INVALID_DOCUMENT = "invalid_document"
    GENERATION_FAILED = "generation_failed"
    WRITE_FAILED = "write_failed"


@dataclass
class BackfillReport:
    """Summary of one reconciler pass."""
    total_explanations: int = 0
    candidates: int = 0
    updated: int = 0
    outcomes: dict[str, ItemOutcome] = field(default_factory=dict)
    dry_run: bool = False
    started_at: float = field(default_factory=time.time)
    duration_secs: float = 0.0

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes.values() if o != ItemOutcome.UPDATED)

    def record(self, explanation_id: str, outcome: ItemOutcome) -> None:
        self.outcomes[explanation_id] = outcome
        if outcome == ItemOutcome.UPDATED:
            self.updated += 1

    def counts(self) -> dict[str, int]:
        out: dict[str, int] = {o.value: 0 for o in ItemOutcome}
        for o in self.outcomes.values():
            out[o.value] += 1
        return out


class BackfillReconciler:
    """Sequential, paced backfill of ``beginner_friendly_entry``."""

    def __init__(self, db: Database, explainer: LLMExplainer | None, config: BackfillConfig):
        self._db = db
        self._explainer = explainer
        self._config = config

    async def run(self, dry_run: bool = False, limit: int | None = None) -> BackfillReport:
        """Run one pass. Raises PersistenceError if the initial read fails."""
        if not dry_run and self._explainer is None:
            raise ValueError("an explainer is required unless dry_run is set")
        report = BackfillReport(dry_run=dry_run)

        docs = self._db.query(self._config.collection)
        report.total_explanations = len(docs)
        candidates = [d for d in docs if needs_beginner_text(d.get("beginner_friendly_entry"))]
        if limit is not None:
            candidates = candidates[:max(limit, 0)]
        report.candidates = len(candidates)
        log.info(
            "backfill.start",
            total=report.total_explanations,
            candidates=report.candidates,
            dry_run=dry_run,
        )

        if dry_run:
            for doc in candidates:
                log.info("backfill.candidate", explanation_id=doc["id"], position_id=doc.get("position_id"))
            report.duration_secs = round(time.time() - report.started_at, 2)
            return report

        for doc in candidates:
            outcome = await self._process(doc)
            report.record(doc["id"], outcome)
            metrics.incr(f"backfill.{outcome.value}")
            await asyncio.sleep(self._config.pacing_secs)

        report.duration_secs = round(time.time() - report.started_at, 2)
        log.info(
            "backfill.complete",
            candidates=report.candidates,
            updated=report.updated,
            skipped=report.skipped,
            duration_secs=report.duration_secs,
        )
        return report

    async def _process(self, doc: dict[str, Any]) -> ItemOutcome:
        exp_id = doc["id"]
        try:
            explanation: Explanation = parse_document(Explanation, doc)
        except ValidationError as e:
            log.warning("backfill.invalid_explanation", explanation_id=exp_id, error=str(e))
            return ItemOutcome.INVALID_DOCUMENT

        try:
            pos_doc = self._db.get(POSITIONS, explanation.position_id)
        except PersistenceError as e:
            log.warning(
                "backfill.position_unreadable",
                explanation_id=exp_id,
                position_id=explanation.position_id,
                error=str(e),
            )
            return ItemOutcome.MISSING_POSITION
        if pos_doc is None:
            log.warning("backfill.missing_position", explanation_id=exp_id, position_id=explanation.position_id)
            return ItemOutcome.MISSING_POSITION
        try:
            position: Position = parse_document(Position, pos_doc)
        except ValidationError as e:
            log.warning("backfill.invalid_position", explanation_id=exp_id, position_id=pos_doc["id"], error=str(e))
            return ItemOutcome.INVALID_DOCUMENT

        strategy = build_strategy(position, self._fetch_strategy(position))

        try:
            text = await self._explainer.beginner_entry(position, strategy)
        except ExternalServiceError as e:
            log.warning("backfill.generation_failed", explanation_id=exp_id, reason=e.reason, error=str(e))
            return ItemOutcome.GENERATION_FAILED

        try:
            self._db.set_merge(self._config.collection, exp_id, {"beginner_friendly_entry": text})
        except PersistenceError as e:
            log.error("backfill.write_failed", explanation_id=exp_id, error=str(e))
            return ItemOutcome.WRITE_FAILED

        log.info("backfill.updated", explanation_id=exp_id, position_id=position.id)
        return ItemOutcome.UPDATED

    def _fetch_strategy(self, position: Position) -> StrategyDocument | None:
        if not position.has_custom_strategy:
            return None
        try:
            return self._db.get_strategy_document(position.strategy_id)
        except (PersistenceError, ValidationError) as e:
            log.warning("backfill.strategy_unavailable", strategy_id=position.strategy_id, error=str(e))
            return None
