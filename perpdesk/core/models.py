"""perpdesk.core.models

Wire models for the decision and exchange boundaries.

Everything that arrives over HTTP is parsed here first. A body that does not
fit these shapes is a ``schema`` error; runtime code only ever sees the
dataclasses in ``perpdesk.core.types``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from perpdesk.core.types import (
    Candidate,
    ConsoleState,
    EntryStrategy,
    FinalPick,
    MarketPosture,
    OpenOrder,
    Position,
    RateLimitState,
    Side,
    StrategyPlan,
    WaitingOrder,
)


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


# -----------------
# Decision boundary
# -----------------


class MarketSnapshot(_Wire):
    """Opaque to the core apart from the universe list and timestamp."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    timestamp: str | None = None
    universe: list[dict[str, Any]] = Field(default_factory=list)
    duration_ms: float | None = None


class RiskCap(_Wire):
    max_concurrent: int = 0
    risk_per_trade_max: float = 0.0


class MarketDecision(_Wire):
    flag: str
    posture: str = "NEUTRAL"
    market_health: float = 0.0
    expiry_minutes: int = 30
    reasons: list[str] = Field(default_factory=list)
    risk_cap: RiskCap = Field(default_factory=RiskCap)

    @property
    def market_posture(self) -> MarketPosture:
        return MarketPosture.parse(self.flag)

    @classmethod
    def fail_closed(cls, reason: str = "gpt_error:http") -> MarketDecision:
        return cls(
            flag=MarketPosture.NO_TRADE.value,
            posture="RISK-OFF",
            market_health=0,
            expiry_minutes=30,
            reasons=[reason],
            risk_cap=RiskCap(max_concurrent=0, risk_per_trade_max=0),
        )


class CandidatePayload(_Wire):
    symbol: str
    tier: str = ""
    score: float = 0.0
    atr_pct_h1: float | None = Field(default=None, alias="atrPctH1")
    volume24h_usd: float | None = None
    price: float | None = None
    vwap_m15: float | None = None

    def to_candidate(self) -> Candidate:
        return Candidate(
            symbol=self.symbol,
            tier=self.tier,
            score=float(self.score),
            atr_pct_h1=self.atr_pct_h1,
            volume24h_usd=self.volume24h_usd,
            price=self.price,
            vwap_m15=self.vwap_m15,
        )


class FinalPickPayload(_Wire):
    """A pick as the picker sent it. Level ordering is checked by the gate, not here."""

    symbol: str
    side: Side
    entry: float
    sl: float
    tp1: float
    tp2: float
    expiry_minutes: int | None = None
    risk_pct: float | None = None
    leverage_hint: float | None = None
    confidence: float = 0.0
    label: str = ""
    setup_type: str = ""
    entry_type: str = ""
    advisory: bool = False
    posture_context: str | None = None
    reasons: list[str] = Field(default_factory=list)

    def to_pick(self, *, default_risk_pct: float) -> FinalPick:
        return FinalPick(
            symbol=self.symbol,
            side=self.side,
            entry=self.entry,
            sl=self.sl,
            tp1=self.tp1,
            tp2=self.tp2,
            expiry_minutes=int(self.expiry_minutes if self.expiry_minutes is not None else 60),
            risk_pct=float(self.risk_pct if self.risk_pct is not None else default_risk_pct),
            leverage_hint=float(self.leverage_hint if self.leverage_hint is not None else 1.0),
            confidence=float(self.confidence),
            label=self.label,
            setup_type=self.setup_type,
            reasons=tuple(self.reasons),
        )


class FinalPickSet(_Wire):
    picks: list[FinalPickPayload] = Field(default_factory=list)


class FinalPickerResponse(_Wire):
    ok: bool
    code: str | None = None
    latency_ms: float = Field(default=0.0, alias="latencyMs")
    data: FinalPickSet = Field(default_factory=FinalPickSet)
    meta: dict[str, Any] = Field(default_factory=dict)


# -----------------
# Exchange boundary
# -----------------


class OrderEcho(_Wire):
    price: float | None = None
    stop_price: float | None = Field(default=None, alias="stopPrice")

    @field_validator("price", "stop_price", mode="before")
    @classmethod
    def _numeric_or_none(cls, v: Any) -> float | None:
        if v is None or v == "":
            return None
        try:
            return float(v)
        except (TypeError, ValueError):
            return None


class PlacedOrder(_Wire):
    symbol: str
    status: str = ""
    entry_order: OrderEcho | None = None
    sl_order: OrderEcho | None = None
    tp_order: OrderEcho | None = None
    error: str | None = None

    @property
    def accepted(self) -> bool:
        return self.error is None and self.status.lower() not in {"error", "rejected"}


class PlaceOrdersResponse(_Wire):
    success: bool = False
    error: str | None = None
    orders: list[PlacedOrder] = Field(default_factory=list)


class OpenOrderPayload(_Wire):
    order_id: int = Field(alias="orderId")
    symbol: str
    side: str = ""
    type: str = ""
    qty: float | None = None
    price: float | None = None
    stop_price: float | None = Field(default=None, alias="stopPrice")
    time_in_force: str | None = Field(default=None, alias="timeInForce")
    reduce_only: bool = Field(default=False, alias="reduceOnly")
    close_position: bool = Field(default=False, alias="closePosition")
    position_side: str | None = Field(default=None, alias="positionSide")
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")

    def to_runtime(self) -> OpenOrder:
        return OpenOrder(**self.model_dump())


class PositionPayload(_Wire):
    symbol: str
    size: float = 0.0
    position_side: str | None = Field(default=None, alias="positionSide")
    entry_price: float | None = Field(default=None, alias="entryPrice")
    mark_price: float | None = Field(default=None, alias="markPrice")
    unrealized_pnl: float | None = Field(default=None, alias="unrealizedPnl")
    leverage: float | None = None
    updated_at: str | None = Field(default=None, alias="updatedAt")

    def to_runtime(self) -> Position:
        return Position(**self.model_dump())


class WaitingOrderPayload(_Wire):
    symbol: str
    tp: float
    since: str
    qty_planned: str | None = Field(default=None, alias="qtyPlanned")
    last_check: str | None = Field(default=None, alias="lastCheck")
    checks: int = 0
    position_size: float | None = Field(default=None, alias="positionSize")
    status: str = "waiting"
    position_side: str | None = Field(default=None, alias="positionSide")
    working_type: str | None = Field(default=None, alias="workingType")
    last_error: str | None = Field(default=None, alias="lastError")

    def to_runtime(self) -> WaitingOrder:
        return WaitingOrder(**self.model_dump())


class ExchangeUsage(_Wire):
    weight1m_used: float | None = None
    weight1m_limit: float | None = None
    percent: float | None = None
    risk: str | None = None
    backoff_active: bool = False
    backoff_remaining_sec: float | None = None


class OrdersConsolePayload(_Wire):
    open_orders: list[OpenOrderPayload] = Field(default_factory=list)
    positions: list[PositionPayload] = Field(default_factory=list)
    waiting: list[WaitingOrderPayload] = Field(default_factory=list)
    marks: dict[str, float] = Field(default_factory=dict)
    binance_usage: ExchangeUsage | None = None
    aux: dict[str, Any] = Field(default_factory=dict)
    updated_at: dict[str, str | None] = Field(default_factory=dict)

    def to_state(self, *, rate_limit: RateLimitState, fetched_at: float) -> ConsoleState:
        return ConsoleState(
            open_orders=tuple(o.to_runtime() for o in self.open_orders),
            positions=tuple(p.to_runtime() for p in self.positions),
            waiting=tuple(w.to_runtime() for w in self.waiting),
            marks=dict(self.marks),
            rate_limit=rate_limit,
            aux=dict(self.aux),
            updated_at=dict(self.updated_at),
            fetched_at=fetched_at,
        )


class StrategyPlanPayload(_Wire):
    entry: float
    sl: float
    tp1: float
    tp2: float
    tp3: float
    risk: str = ""
    reasoning: str = ""


class EntryStrategyPayload(_Wire):
    symbol: str
    conservative: StrategyPlanPayload
    aggressive: StrategyPlanPayload

    def to_runtime(self) -> EntryStrategy:
        return EntryStrategy(
            symbol=self.symbol,
            conservative=StrategyPlan(**self.conservative.model_dump()),
            aggressive=StrategyPlan(**self.aggressive.model_dump()),
        )

