"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure papertrader is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from papertrader.config import StorageConfig  # noqa: E402
from papertrader.observability.metrics import metrics  # noqa: E402
from papertrader.storage.database import Database  # noqa: E402
from papertrader.storage.models import Position, Side  # noqa: E402


def make_position(**overrides: Any) -> Position:
    fields: dict[str, Any] = dict(
        side=Side.LONG,
        symbol="FX:EURUSD",
        entry_ts="2024-05-01T10:00:00+00:00",
        entry_price=1.1000,
        qty=1000,
        stop_price=1.0950,
        tp_price=1.1100,
    )
    fields.update(overrides)
    return Position(**fields)


@pytest.fixture()
def db(tmp_path):
    database = Database(StorageConfig(sqlite_path=str(tmp_path / "test.db")))
    database.connect()
    yield database
    database.close()


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
