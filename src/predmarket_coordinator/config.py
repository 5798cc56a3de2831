from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from deepmerge import Merger
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "PMC__"


class PollingSettings(BaseModel):
    balances_interval_sec: float = 3.0
    order_book_interval_sec: float = 5.0
    orders_enabled: bool = False
    orders_interval_sec: float = 10.0

    @field_validator("balances_interval_sec", "order_book_interval_sec", "orders_interval_sec")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("polling intervals must be positive")
        return value


class LoggingSettings(BaseModel):
    level: str = "INFO"
    style: str = "plain"
    console: bool = True
    file_path: str | None = None


class DashboardSettings(BaseModel):
    enabled: bool = False
    refresh_hz: float = 2.0
    max_levels: int = 10
    max_orders: int = 20


class MarketServiceSettings(BaseModel):
    base_url: str = "http://localhost:8080/api"
    timeout_sec: float = 10.0
    request_interval_ms: int = 0
    retry_max_attempts: int = 3
    market_cache_sec: int = 30
    identity_header: str = "X-Wallet-Address"


class LedgerSettings(BaseModel):
    rpc_url: str = "http://localhost:8545"
    token_address: str = ""
    platform_address: str = ""
    receipt_timeout_sec: float = 180.0
    receipt_poll_sec: float = 1.0


class WalletSettings(BaseModel):
    address: str | None = None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    polling: PollingSettings = Field(default_factory=PollingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    dashboard: DashboardSettings = Field(default_factory=DashboardSettings)
    market_service: MarketServiceSettings = Field(default_factory=MarketServiceSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    wallet: WalletSettings = Field(default_factory=WalletSettings)


_MERGER = Merger([(dict, ["merge"]), (list, ["override"])], ["override"], ["override"])


def _merge_settings(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    return _MERGER.merge(dict(base), override)


def load_settings(path: Path | None) -> Settings:
    """File values first, then ``PMC__`` environment overrides on top."""
    file_data: dict[str, Any] = {}
    if path is not None:
        raw = path.read_text(encoding="utf-8")
        if path.suffix in {".yaml", ".yml"}:
            file_data = yaml.safe_load(raw) or {}
        elif path.suffix == ".json":
            file_data = json.loads(raw)
        else:
            raise ValueError(f"Unsupported config format: {path}")

    _sanitize_env_overrides()
    env_settings = Settings()
    overrides = env_settings.model_dump(exclude_unset=True)
    merged = _merge_settings(file_data, overrides)
    return Settings.model_validate(merged)


def _sanitize_env_overrides(prefix: str = ENV_PREFIX) -> None:
    for key in list(os.environ.keys()):
        if not key.startswith(prefix):
            continue
        value = os.environ.get(key)
        if value is None:
            continue
        if not value.strip():
            os.environ.pop(key, None)
            continue
        # a whole section must be JSON; drop anything else instead of failing validation
        suffix = key[len(prefix) :]
        if "__" not in suffix:
            try:
                json.loads(value)
            except ValueError:
                os.environ.pop(key, None)
