"""perpdesk.core.types

Lightweight dataclasses for hot-path objects.

Pydantic models own IO boundaries (see ``perpdesk.core.models``); dataclasses
keep runtime lean and immutable.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

StrategyVariant = Literal["conservative", "aggressive"]
TpLevel = Literal["tp1", "tp2", "tp3"]
OrderType = Literal["market", "limit", "stop", "stop_limit"]


class MarketPosture(StrEnum):
    OK = "OK"
    CAUTION = "CAUTION"
    NO_TRADE = "NO-TRADE"

    @classmethod
    def parse(cls, value: object) -> MarketPosture:
        v = str(value or "").strip().upper().replace("_", "-")
        for p in cls:
            if p.value == v:
                return p
        # unknown posture is treated as the most restrictive one
        return cls.NO_TRADE


class Side(StrEnum):
    LONG = "LONG"
    SHORT = "SHORT"


def side_ordering_ok(side: Side | str, *, entry: float, sl: float, tp1: float, tp2: float) -> bool:
    """LONG: sl < entry < tp1 <= tp2. SHORT: tp1 <= tp2 < entry < sl."""

    if str(side) == Side.LONG:
        return sl < entry < tp1 <= tp2
    if str(side) == Side.SHORT:
        return tp1 <= tp2 < entry < sl
    return False


@dataclass(frozen=True, slots=True)
class Candidate:
    symbol: str
    tier: str = ""
    score: float = 0.0
    atr_pct_h1: float | None = None
    volume24h_usd: float | None = None
    price: float | None = None
    vwap_m15: float | None = None


@dataclass(frozen=True, slots=True)
class FinalPick:
    symbol: str
    side: Side
    entry: float
    sl: float
    tp1: float
    tp2: float
    expiry_minutes: int
    risk_pct: float
    leverage_hint: float = 1.0
    confidence: float = 0.0
    label: str = ""
    setup_type: str = ""
    reasons: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not side_ordering_ok(self.side, entry=self.entry, sl=self.sl, tp1=self.tp1, tp2=self.tp2):
            raise ValueError(
                f"{self.symbol}: {self.side} levels out of order "
                f"(entry={self.entry} sl={self.sl} tp1={self.tp1} tp2={self.tp2})"
            )


@dataclass(frozen=True, slots=True)
class StrategyPlan:
    entry: float
    sl: float
    tp1: float
    tp2: float
    tp3: float
    risk: str = ""
    reasoning: str = ""

    def level(self, tp_level: TpLevel) -> float:
        return float(getattr(self, tp_level, math.nan))


@dataclass(frozen=True, slots=True)
class EntryStrategy:
    symbol: str
    conservative: StrategyPlan
    aggressive: StrategyPlan

    def plan(self, variant: StrategyVariant) -> StrategyPlan:
        return self.conservative if variant == "conservative" else self.aggressive

    @classmethod
    def from_pick(cls, pick: FinalPick) -> EntryStrategy:
        plan = StrategyPlan(
            entry=pick.entry,
            sl=pick.sl,
            tp1=pick.tp1,
            tp2=pick.tp2,
            tp3=pick.tp2,
            reasoning="; ".join(pick.reasons),
        )
        return cls(symbol=pick.symbol, conservative=plan, aggressive=plan)


@dataclass(frozen=True, slots=True)
class ExchangeFilters:
    tick_size: float
    step_size: float
    min_qty: float
    min_notional: float

    def is_complete(self) -> bool:
        finite = all(
            math.isfinite(float(v)) for v in (self.tick_size, self.step_size, self.min_qty, self.min_notional)
        )
        return finite and self.tick_size > 0 and self.step_size > 0

    @classmethod
    def from_exchange_info(cls, symbol_info: dict) -> ExchangeFilters | None:
        """Parse one symbol entry of exchange info.

        Returns None when PRICE_FILTER, LOT_SIZE or MIN_NOTIONAL is absent or zero.
        """

        def num(v: object) -> float:
            try:
                return float(v)  # type: ignore[arg-type]
            except (TypeError, ValueError):
                return 0.0

        by_type = {str(f.get("filterType")): f for f in symbol_info.get("filters", []) if isinstance(f, dict)}
        lot = by_type.get("LOT_SIZE", {})
        mn = by_type.get("MIN_NOTIONAL", {})
        tick = num(by_type.get("PRICE_FILTER", {}).get("tickSize"))
        step = num(lot.get("stepSize"))
        min_qty = num(lot.get("minQty"))
        min_notional = num(mn.get("notional", mn.get("minNotional")))
        if not (tick and step and min_qty and min_notional):
            return None
        return cls(tick_size=tick, step_size=step, min_qty=min_qty, min_notional=min_notional)


@dataclass(frozen=True, slots=True)
class CoinControl:
    """Operator selection for one symbol. Never changes the pick itself."""

    symbol: str
    include: bool = True
    side: Side = Side.LONG
    strategy: StrategyVariant = "conservative"
    tp_level: TpLevel = "tp2"
    order_type: OrderType | None = None
    amount: float = 20.0
    leverage: int = 15

    def resolved_order_type(self) -> OrderType:
        if self.order_type is not None:
            return self.order_type
        return "limit" if self.strategy == "conservative" else "stop_limit"


@dataclass(frozen=True, slots=True)
class OrderIntent:
    symbol: str
    side: Side
    strategy: StrategyVariant
    tp_level: TpLevel
    order_type: OrderType
    entry: float
    sl: float
    tp: float
    qty: float
    notional: float
    amount: float
    leverage: int

    def to_payload(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": str(self.side),
            "strategy": self.strategy,
            "tpLevel": self.tp_level,
            "orderType": self.order_type,
            "amount": self.amount,
            "leverage": self.leverage,
            "qty": self.qty,
            "entry": self.entry,
            "sl": self.sl,
            "tp": self.tp,
        }


@dataclass(frozen=True, slots=True)
class OpenOrder:
    order_id: int
    symbol: str
    side: str
    type: str
    qty: float | None = None
    price: float | None = None
    stop_price: float | None = None
    time_in_force: str | None = None
    reduce_only: bool = False
    close_position: bool = False
    position_side: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True, slots=True)
class Position:
    symbol: str
    size: float
    position_side: str | None = None
    entry_price: float | None = None
    mark_price: float | None = None
    unrealized_pnl: float | None = None
    leverage: float | None = None
    updated_at: str | None = None


@dataclass(frozen=True, slots=True)
class WaitingOrder:
    symbol: str
    tp: float
    since: str
    qty_planned: str | None = None
    last_check: str | None = None
    checks: int = 0
    position_size: float | None = None
    status: str = "waiting"
    position_side: str | None = None
    working_type: str | None = None
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class RateLimitState:
    used_weight_1m: float | None = None
    weight_limit_1m: float = 1200.0
    ban_until: float | None = None  # epoch seconds
    last_429_at: float | None = None
    last_1003_at: float | None = None

    def banned(self, now: float) -> bool:
        return self.ban_until is not None and self.ban_until > now

    def remaining_s(self, now: float) -> int:
        if not self.banned(now):
            return 0
        return int(math.ceil(float(self.ban_until) - now))  # type: ignore[arg-type]

    def usage_pct(self) -> float | None:
        if self.used_weight_1m is None or self.weight_limit_1m <= 0:
            return None
        return 100.0 * float(self.used_weight_1m) / float(self.weight_limit_1m)

    def risk(self, now: float) -> str:
        recent_429 = self.last_429_at is not None and (now - self.last_429_at) < 60
        recent_1003 = self.last_1003_at is not None and (now - self.last_1003_at) < 300
        if recent_429 or recent_1003 or self.banned(now):
            return "critical"
        if (self.used_weight_1m or 0) > 0.9 * self.weight_limit_1m:
            return "elevated"
        return "normal"


@dataclass(frozen=True, slots=True)
class ConsoleState:
    """One consistent point-in-time view of the exchange. Replaced, never patched."""

    open_orders: tuple[OpenOrder, ...] = ()
    positions: tuple[Position, ...] = ()
    waiting: tuple[WaitingOrder, ...] = ()
    marks: dict[str, float] = field(default_factory=dict)
    rate_limit: RateLimitState = field(default_factory=RateLimitState)
    aux: dict = field(default_factory=dict)
    updated_at: dict[str, str | None] = field(default_factory=dict)
    fetched_at: float | None = None

    def blocked_symbols(self) -> frozenset[str]:
        """Symbols with open exposure: entry orders still working or a live position."""

        blocked: set[str] = set()
        for o in self.open_orders:
            if not (o.reduce_only or o.close_position):
                blocked.add(normalize_symbol(o.symbol))
        for p in self.positions:
            if math.isfinite(p.size) and abs(p.size) > 0:
                blocked.add(normalize_symbol(p.symbol))
        blocked.discard("")
        return frozenset(blocked)


def normalize_symbol(symbol: str) -> str:
    return str(symbol or "").upper().replace("/", "").strip()
