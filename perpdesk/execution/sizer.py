"""perpdesk.execution.sizer

Risk-based order sizing against exchange filters.

Given a plan (entry, sl, tp1, tp2), an equity figure and a risk fraction:
- R = |entry - sl|
- qty is the risk budget divided by R, floored to ``step_size``
- notional is qty times the tick-rounded entry

A plan is only valid if every filter check passes. Invalid plans are
reported, never clamped into validity.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Protocol

from perpdesk.core.config import PolicyConfig
from perpdesk.core.numeric import is_finite, round_down, round_to_tick
from perpdesk.core.types import ExchangeFilters, MarketPosture

# R must span at least this many ticks
MIN_R_TICKS = 5

VIOLATION_MISSING_FILTERS = "Missing exchange filters"
VIOLATION_R_TOO_TIGHT = "R too tight"
VIOLATION_QTY_ZERO = "Qty is zero"
VIOLATION_BELOW_MIN_QTY = "Below minQty"
VIOLATION_BELOW_MIN_NOTIONAL = "Below minNotional"


class PricedPlan(Protocol):
    entry: float
    sl: float
    tp1: float
    tp2: float


@dataclass(frozen=True, slots=True)
class OrderPlan:
    r: float
    risk_fraction: float
    risk_usd: float
    raw_qty: float
    qty: float
    notional: float
    est_loss: float
    pl_tp1: float
    pl_tp2: float
    violations: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations


def risk_fraction_for(posture: MarketPosture, policy: PolicyConfig, risk_pct: float | None = None) -> float:
    """Risk per trade as a fraction of equity.

    ``risk_pct`` (percent units) wins when given. NO-TRADE uses the operator
    override only when override execution is switched on.
    """

    if risk_pct is not None and is_finite(risk_pct):
        return max(0.0, float(risk_pct)) / 100.0
    if posture == MarketPosture.NO_TRADE and policy.override_no_trade_execution:
        return max(0.0, float(policy.override_no_trade_risk_pct)) / 100.0
    return max(0.0, policy.implied_risk_pct(posture)) / 100.0


class OrderSizer:
    def __init__(self, *, min_r_ticks: int = MIN_R_TICKS) -> None:
        self.min_r_ticks = int(min_r_ticks)

    def plan(
        self,
        plan: PricedPlan,
        *,
        risk_fraction: float,
        equity: float,
        filters: ExchangeFilters | None,
    ) -> OrderPlan:
        entry = float(plan.entry)
        r = abs(entry - float(plan.sl))
        risk_usd = float(equity) * float(risk_fraction)
        raw_qty = risk_usd / r if r > 0 and math.isfinite(r) else 0.0

        if filters is None or not filters.is_complete():
            return OrderPlan(
                r=r,
                risk_fraction=float(risk_fraction),
                risk_usd=risk_usd,
                raw_qty=raw_qty,
                qty=0.0,
                notional=0.0,
                est_loss=0.0,
                pl_tp1=0.0,
                pl_tp2=0.0,
                violations=[VIOLATION_MISSING_FILTERS],
            )

        tick = float(filters.tick_size)
        qty = round_down(raw_qty, float(filters.step_size))
        if not math.isfinite(qty):
            qty = 0.0
        entry_t = round_to_tick(entry, tick)
        notional = qty * entry_t

        violations: list[str] = []
        if r < self.min_r_ticks * tick:
            violations.append(VIOLATION_R_TOO_TIGHT)
        if qty <= 0:
            violations.append(VIOLATION_QTY_ZERO)
        if qty < float(filters.min_qty):
            violations.append(VIOLATION_BELOW_MIN_QTY)
        if notional < float(filters.min_notional):
            violations.append(VIOLATION_BELOW_MIN_NOTIONAL)

        return OrderPlan(
            r=r,
            risk_fraction=float(risk_fraction),
            risk_usd=risk_usd,
            raw_qty=raw_qty,
            qty=qty,
            notional=notional,
            est_loss=qty * r,
            pl_tp1=qty * abs(round_to_tick(float(plan.tp1), tick) - entry_t),
            pl_tp2=qty * abs(round_to_tick(float(plan.tp2), tick) - entry_t),
            violations=violations,
        )
