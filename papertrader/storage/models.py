"""Domain models — Pydantic models for persisted documents.

Positions, strategies and explanations live as JSON documents in the store.
Parsing a document through these models is the boundary where malformed
values (unknown status, negative costs, missing references) are rejected.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from papertrader.errors import InvalidTransition, ValidationError

SENTINEL_STRATEGY_ID = "ai-generated"


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class StopLogic(str, Enum):
    ATR = "ATR"
    SWING = "SWING"


_EXIT_FIELDS = ("exit_ts", "exit_price", "pnl_gbp", "R_multiple")


class Position(BaseModel):
    """One trading position, open or closed."""
    id: str = ""
    status: PositionStatus = PositionStatus.OPEN
    side: Side
    symbol: str
    entry_ts: str
    entry_price: float
    qty: float = Field(gt=0)
    stop_price: float
    tp_price: float
    exit_ts: str | None = None
    exit_price: float | None = None
    pnl_gbp: float | None = None
    R_multiple: float | None = None
    strategy_id: str = SENTINEL_STRATEGY_ID
    signal_id: str = ""
    slippage_bps: float = Field(default=0.0, ge=0)
    fee_bps: float = Field(default=0.0, ge=0)
    method_name: str | None = None
    broker_trade_id: str | None = None

    @model_validator(mode="after")
    def _exit_fields_match_status(self) -> Position:
        present = [getattr(self, f) is not None for f in _EXIT_FIELDS]
        if self.status == PositionStatus.OPEN and any(present):
            raise ValueError("open position must not carry exit fields")
        if self.status == PositionStatus.CLOSED and not all(present):
            raise ValueError("closed position must carry all exit fields")
        return self

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def has_custom_strategy(self) -> bool:
        return bool(self.strategy_id) and self.strategy_id != SENTINEL_STRATEGY_ID

    def close(
        self,
        exit_price: float,
        pnl_gbp: float,
        r_multiple: float,
        exit_ts: str | None = None,
    ) -> Position:
        """Return the CLOSED copy of this position. Allowed exactly once."""
        if not self.is_open:
            raise InvalidTransition(
                f"position {self.id} is already closed", reason="ALREADY_CLOSED"
            )
        return self.model_copy(update={
            "status": PositionStatus.CLOSED,
            "exit_ts": exit_ts or utc_now_iso(),
            "exit_price": exit_price,
            "pnl_gbp": pnl_gbp,
            "R_multiple": r_multiple,
        })

    def lifecycle_fields(self) -> dict[str, Any]:
        """Fields written when the position closes."""
        return {
            "status": self.status.value,
            "exit_ts": self.exit_ts,
            "exit_price": self.exit_price,
            "pnl_gbp": self.pnl_gbp,
            "R_multiple": self.R_multiple,
        }


class Strategy(BaseModel):
    """Risk/stop/target policy governing a position."""
    id: str
    name: str
    symbol: str
    timeframe: str = "1H"
    risk_per_trade_gbp: float = Field(ge=0)
    stop_logic: StopLogic = StopLogic.ATR
    atr_mult: float = Field(gt=0)
    take_profit_R: float = Field(gt=0)
    slippage_bps: float = Field(default=0.0, ge=0)
    fee_bps: float = Field(default=0.0, ge=0)
    enabled: bool = True


class StrategyDocument(BaseModel):
    """A persisted strategy document; any field may be missing."""
    id: str | None = None
    name: str | None = None
    symbol: str | None = None
    timeframe: str | None = None
    risk_per_trade_gbp: float | None = Field(default=None, ge=0)
    stop_logic: StopLogic | None = None
    atr_mult: float | None = Field(default=None, gt=0)
    take_profit_R: float | None = Field(default=None, gt=0)
    slippage_bps: float | None = Field(default=None, ge=0)
    fee_bps: float | None = Field(default=None, ge=0)
    enabled: bool | None = None


class Explanation(BaseModel):
    """Narrative record attached to exactly one position."""
    model_config = ConfigDict(protected_namespaces=())

    id: str = ""
    position_id: str = Field(min_length=1)
    created_ts: str = Field(default_factory=utc_now_iso)
    plain_english_entry: str = ""
    beginner_friendly_entry: str | None = None
    exit_reason: str | None = None
    model_notes: str = ""

    @property
    def needs_backfill(self) -> bool:
        return needs_beginner_text(self.beginner_friendly_entry)


def needs_beginner_text(value: Any) -> bool:
    """True when the beginner-friendly text is missing or blank."""
    return not isinstance(value, str) or value.strip() == ""


def parse_document(model: type[BaseModel], doc: dict[str, Any]) -> Any:
    """Validate a raw store document, raising the domain ValidationError."""
    try:
        return model.model_validate(doc)
    except PydanticValidationError as e:
        raise ValidationError(
            f"{model.__name__} document {doc.get('id', '?')} is malformed: "
            f"{e.error_count()} error(s)",
            reason="MALFORMED_DOCUMENT",
        ) from e


def to_document(model: BaseModel) -> dict[str, Any]:
    """Serialise a model for storage (the id is the document key, not a field)."""
    return model.model_dump(mode="json", exclude={"id"})
