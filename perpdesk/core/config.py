"""perpdesk.core.config

Three config surfaces only:
1) `config/default.yaml` + `config/presets/*.yaml`
2) Environment variables (``PERPDESK_`` prefix, ``__`` nesting)
3) Explicit keyword overrides from the caller

The core never reads ambient storage. Whoever builds a component hands it the
slice of config it needs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from perpdesk.core.exceptions import ConfigError
from perpdesk.core.types import MarketPosture


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class RiskPolicy(BaseModel):
    """Risk per trade in percent of equity, by posture."""

    ok: float = 0.5
    caution: float = 0.25
    no_trade: float = 0.0

    def for_posture(self, posture: MarketPosture) -> float:
        if posture == MarketPosture.OK:
            return float(self.ok)
        if posture == MarketPosture.CAUTION:
            return float(self.caution)
        return float(self.no_trade)


class PolicyConfig(BaseModel):
    risk_policy: RiskPolicy = Field(default_factory=RiskPolicy)
    side_policy: Literal["long_only", "both"] = "both"
    max_picks: int = 3
    expiry_minutes: tuple[int, int] = (60, 90)
    tp_r_momentum: tuple[float, float] = (1.2, 2.5)
    tp_r_reclaim: tuple[float, float] = (1.0, 2.0)
    max_leverage: float = 20.0

    # post-validation of picker output
    rrr_min_tp1: float = 1.0
    rrr_min_tp2: float = 2.0
    entry_price_atr_mult_ok: float = 0.6
    entry_price_atr_mult_notrade: float = 0.5
    limit_reclaim_vwap_atr_mult: float = 0.25

    # NO-TRADE handling
    allow_picks_in_no_trade: bool = False
    max_picks_no_trade: int = 3
    confidence_floor_no_trade: float = 0.65
    override_no_trade_execution: bool = False
    override_no_trade_risk_pct: float = 0.0

    # candidate selection
    max_setups: int = 3
    preview_limit: int = 5
    preview_when_no_trade: bool = True

    @field_validator("max_leverage")
    @classmethod
    def leverage_cap_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("max_leverage must be > 0")
        return v

    @model_validator(mode="after")
    def expiry_window_ordered(self) -> PolicyConfig:
        lo, hi = self.expiry_minutes
        if lo > hi:
            raise ValueError(f"expiry_minutes window is inverted: [{lo}, {hi}]")
        return self

    def implied_risk_pct(self, posture: MarketPosture) -> float:
        return self.risk_policy.for_posture(posture)


class TransportConfig(BaseModel):
    timeout_s: float = 30.0
    max_attempts: int = 3
    retry_statuses: tuple[int, ...] = (502, 503, 504)
    backoff_base_s: float = 0.4
    backoff_step_s: float = 0.3
    backoff_jitter_s: float = 0.2

    @field_validator("max_attempts")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be >= 1")
        return v


class ReconciliationConfig(BaseModel):
    poll_interval_s: float = 5.0
    default_ban_s: float = 60.0
    weight_limit_1m: float = 1200.0


class AccountConfig(BaseModel):
    equity_usdt: float = 10_000.0
    default_strategy: Literal["conservative", "aggressive"] = "conservative"
    default_tp_level: Literal["tp1", "tp2", "tp3"] = "tp2"
    default_amount: float = 20.0
    default_leverage: int = 15


class BoundaryConfig(BaseModel):
    base_url: str = "http://127.0.0.1:8788"
    universe: Literal["volume", "gainers"] = "gainers"
    top_n: int = 50


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    config_dir: Path = Path("config")

    preset: Literal["conservative", "balanced", "custom"] = "balanced"

    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    account: AccountConfig = Field(default_factory=AccountConfig)
    boundary: BoundaryConfig = Field(default_factory=BoundaryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"env_prefix": "PERPDESK_", "env_nested_delimiter": "__"}

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file is not valid YAML: {path}: {e}") from e

        preset_name = raw.get("preset", "balanced")
        preset_path = path.parent / "presets" / f"{preset_name}.yaml"
        if preset_path.exists():
            preset_data = yaml.safe_load(preset_path.read_text()) or {}
            raw = _deep_merge(preset_data, raw)

        raw = _deep_merge(raw, overrides)
        raw.setdefault("config_dir", path.parent)
        try:
            return cls(**raw)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml")
