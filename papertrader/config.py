"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading (config.yaml at the project root by default)
  - Broker credentials from OANDA_* environment variables
  - Sections for broker, explanations, backfill, execution, storage
    and observability
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class BrokerConfig(BaseModel):
    environment: str = Field(
        default_factory=lambda: os.environ.get("OANDA_ENV", "practice").lower()
    )  # practice | live
    account_id: str = Field(default_factory=lambda: os.environ.get("OANDA_ACCOUNT_ID", ""))
    api_token: str = Field(default_factory=lambda: os.environ.get("OANDA_API_TOKEN", ""))
    timeout_secs: float = 15.0

    @property
    def base_url(self) -> str:
        if self.environment == "live":
            return "https://api-fxtrade.oanda.com/v3"
        return "https://api-fxpractice.oanda.com/v3"


class ExplanationsConfig(BaseModel):
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.4
    llm_max_tokens: int = 600


class BackfillConfig(BaseModel):
    collection: str = "explanations"
    pacing_secs: float = 0.4  # fixed delay after every candidate


class ExecutionConfig(BaseModel):
    dry_run: bool = True
    price_retry_attempts: int = 3
    retry_backoff_secs: float = 1.0
    tag_prefix: str = "papertrader"


class StorageConfig(BaseModel):
    sqlite_path: str = "data/papertrader.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/papertrader.log"


class AppConfig(BaseModel):
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    explanations: ExplanationsConfig = Field(default_factory=ExplanationsConfig)
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return AppConfig(**raw)
    return AppConfig()


def is_live_trading_enabled() -> bool:
    """Check if live broker orders are explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_TRADING", "").lower() == "true"
