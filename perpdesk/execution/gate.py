"""perpdesk.execution.gate

Validation gates between a plan and the exchange.

Three gates, all deterministic:
- policy: picker output vs posture policy, fail-closed for the whole batch
- strict: outgoing intents vs the currently selected plan, before sending
- echo: what the exchange accepted vs what was sent, after sending

The policy gate reports. The strict and numeric gates raise: nothing is sent
when they fail.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from perpdesk.core.config import PolicyConfig
from perpdesk.core.exceptions import (
    FieldMismatch,
    MissingNumericError,
    MissingPlanError,
    StrictMismatchError,
)
from perpdesk.core.models import FinalPickPayload, PlaceOrdersResponse
from perpdesk.core.numeric import close, is_finite, positive_finite
from perpdesk.core.types import (
    Candidate,
    CoinControl,
    EntryStrategy,
    MarketPosture,
    OrderIntent,
    Side,
    side_ordering_ok,
)

RISK_PCT_TOLERANCE = 1e-6
STRICT_TOLERANCE = 1e-12
ECHO_TOLERANCE = 1e-9


@dataclass(frozen=True, slots=True)
class PolicyViolation:
    symbol: str
    rule: str
    message: str


@dataclass(frozen=True, slots=True)
class PolicyCheckResult:
    approved: bool
    violations: list[PolicyViolation] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def rules(self) -> list[str]:
        return sorted({v.rule for v in self.violations})


def _reward_ratios(p: FinalPickPayload) -> tuple[float, float]:
    r = abs(p.entry - p.sl)
    if not (is_finite(p.entry, p.sl, p.tp1, p.tp2) and r > 0):
        return math.nan, math.nan
    return abs(p.tp1 - p.entry) / r, abs(p.tp2 - p.entry) / r


def check_policy(
    picks: Sequence[FinalPickPayload],
    posture: MarketPosture,
    policy: PolicyConfig,
    candidates: Iterable[Candidate] = (),
) -> PolicyCheckResult:
    """Check a picker batch against posture policy.

    One bad pick rejects the batch. Every violation is still listed so the
    operator can see all of them at once. Price sanity rules run only for
    picks whose candidate carries a finite price and ATR.
    """

    implied = policy.implied_risk_pct(posture)
    lo, hi = policy.expiry_minutes
    no_trade = posture == MarketPosture.NO_TRADE
    by_symbol = {c.symbol: c for c in candidates}
    entry_mult = policy.entry_price_atr_mult_notrade if no_trade else policy.entry_price_atr_mult_ok
    vwap_mult = policy.limit_reclaim_vwap_atr_mult
    violations: list[PolicyViolation] = []

    max_picks = policy.max_picks_no_trade if no_trade else policy.max_picks
    if len(picks) > max_picks:
        violations.append(PolicyViolation("*", "max_picks", f"{len(picks)} picks > max {max_picks}"))

    seen: set[str] = set()
    for p in picks:
        sym = p.symbol
        if sym in seen:
            violations.append(PolicyViolation(sym, "unique", "duplicate symbol in batch"))
        seen.add(sym)

        if not side_ordering_ok(p.side, entry=p.entry, sl=p.sl, tp1=p.tp1, tp2=p.tp2):
            violations.append(
                PolicyViolation(
                    sym,
                    "side_ordering",
                    f"{p.side} levels out of order (entry={p.entry} sl={p.sl} tp1={p.tp1} tp2={p.tp2})",
                )
            )

        if policy.side_policy == "long_only" and p.side == Side.SHORT:
            violations.append(PolicyViolation(sym, "side_policy", "SHORT not allowed by long_only policy"))

        if p.risk_pct is None:
            violations.append(PolicyViolation(sym, "risk_pct", f"risk_pct missing, posture risk is {implied}"))
        elif not (is_finite(p.risk_pct) and abs(float(p.risk_pct) - implied) < RISK_PCT_TOLERANCE):
            violations.append(PolicyViolation(sym, "risk_pct", f"risk_pct {p.risk_pct} != posture risk {implied}"))

        lev = p.leverage_hint if p.leverage_hint is not None else 1.0
        if not (is_finite(lev) and float(lev) <= policy.max_leverage):
            violations.append(PolicyViolation(sym, "leverage_cap", f"leverage_hint {lev} > max {policy.max_leverage}"))

        exp = p.expiry_minutes if p.expiry_minutes is not None else 0
        if not (lo <= exp <= hi):
            violations.append(PolicyViolation(sym, "expiry_window", f"expiry_minutes {exp} outside [{lo}, {hi}]"))

        rr1, rr2 = _reward_ratios(p)
        if not (is_finite(rr1, rr2) and rr1 >= policy.rrr_min_tp1 and rr2 >= policy.rrr_min_tp2):
            violations.append(
                PolicyViolation(
                    sym,
                    "rrr",
                    f"reward/risk {rr1:.2f}/{rr2:.2f} below {policy.rrr_min_tp1}/{policy.rrr_min_tp2}",
                )
            )

        c = by_symbol.get(sym)
        if c is not None and is_finite(c.atr_pct_h1, c.price):
            price = float(c.price)  # type: ignore[arg-type]
            atr_move = float(c.atr_pct_h1) / 100.0 * price  # type: ignore[arg-type]
            if abs(p.entry - price) > entry_mult * atr_move:
                violations.append(
                    PolicyViolation(
                        sym,
                        "entry_price",
                        f"entry {p.entry} more than {entry_mult} ATR from price {c.price}",
                    )
                )
            if (
                p.entry_type.upper() == "LIMIT"
                and p.setup_type.upper() == "RECLAIM"
                and is_finite(c.vwap_m15)
                and abs(p.entry - float(c.vwap_m15)) > vwap_mult * atr_move  # type: ignore[arg-type]
            ):
                violations.append(
                    PolicyViolation(
                        sym,
                        "vwap_limit",
                        f"LIMIT reclaim entry {p.entry} more than {vwap_mult} ATR from vwap {c.vwap_m15}",
                    )
                )

        if no_trade:
            context = str(p.posture_context or "").strip().upper().replace("_", "-")
            if not (p.advisory and context == MarketPosture.NO_TRADE.value):
                violations.append(
                    PolicyViolation(sym, "advisory_flags", "NO-TRADE picks must be advisory with NO-TRADE context")
                )
            if not (is_finite(p.confidence) and p.confidence >= policy.confidence_floor_no_trade):
                violations.append(
                    PolicyViolation(
                        sym,
                        "confidence_floor",
                        f"confidence {p.confidence} < {policy.confidence_floor_no_trade} in NO-TRADE",
                    )
                )

    return PolicyCheckResult(
        approved=not violations,
        violations=violations,
        details={"posture": str(posture), "implied_risk_pct": implied, "picks": len(picks)},
    )


def select_plan_levels(
    control: CoinControl, strategies: Mapping[str, EntryStrategy]
) -> tuple[float, float, float]:
    """(entry, sl, tp) of the plan the operator currently has selected."""

    strat = strategies.get(control.symbol)
    if strat is None:
        raise MissingPlanError(f"Missing strategy plan for {control.symbol}")
    plan = strat.plan(control.strategy)
    return float(plan.entry), float(plan.sl), plan.level(control.tp_level)


def check_numeric(intents: Iterable[OrderIntent]) -> None:
    problems: list[str] = []
    for o in intents:
        missing = [
            name
            for name, v in (("ENTRY", o.entry), ("SL", o.sl), ("TP", o.tp))
            if not positive_finite(v)
        ]
        if missing:
            problems.append(f"{o.symbol}: missing {', '.join(missing)}")
    if problems:
        raise MissingNumericError(problems)


def check_strict(
    intents: Iterable[OrderIntent],
    controls: Mapping[str, CoinControl],
    strategies: Mapping[str, EntryStrategy],
) -> None:
    """Re-derive every intent from the selected plan; any drift blocks the batch."""

    mismatches: list[FieldMismatch] = []
    for o in intents:
        control = controls.get(o.symbol)
        if control is None:
            raise MissingPlanError(f"No control selected for {o.symbol}")
        entry, sl, tp = select_plan_levels(control, strategies)
        for label, expected, actual in (
            ("ENTRY", entry, o.entry),
            ("SL", sl, o.sl),
            (control.tp_level.upper(), tp, o.tp),
        ):
            if not (math.isfinite(expected) and math.isfinite(actual)):
                mismatches.append(FieldMismatch(o.symbol, label, expected, actual))
            elif not close(expected, actual, STRICT_TOLERANCE):
                mismatches.append(FieldMismatch(o.symbol, label, expected, actual))
    if mismatches:
        raise StrictMismatchError(mismatches)


def check_echo(intents: Iterable[OrderIntent], response: PlaceOrdersResponse) -> list[FieldMismatch]:
    """Compare accepted prices with what was sent.

    Entry and SL echoes that are absent compare as 0. A TP echo that is absent
    is not compared: the server may defer the TP order.
    """

    echoed: dict[str, tuple[float, float, float]] = {}
    for r in response.orders:
        if not r.symbol:
            continue
        entry = r.entry_order.price if r.entry_order is not None else None
        sl = None
        if r.sl_order is not None:
            sl = r.sl_order.stop_price if r.sl_order.stop_price is not None else r.sl_order.price
        tp = None
        if r.tp_order is not None:
            tp = r.tp_order.stop_price if r.tp_order.stop_price is not None else r.tp_order.price
        echoed[r.symbol] = (
            float(entry) if is_finite(entry) else 0.0,
            float(sl) if is_finite(sl) else 0.0,
            float(tp) if is_finite(tp) else math.nan,
        )

    mismatches: list[FieldMismatch] = []
    for o in intents:
        got = echoed.get(o.symbol)
        if got is None:
            continue
        e_entry, e_sl, e_tp = got
        if not close(o.entry, e_entry, ECHO_TOLERANCE):
            mismatches.append(FieldMismatch(o.symbol, "ENTRY", o.entry, e_entry))
        if not close(o.sl, e_sl, ECHO_TOLERANCE):
            mismatches.append(FieldMismatch(o.symbol, "SL", o.sl, e_sl))
        if math.isfinite(e_tp) and not close(o.tp, e_tp, ECHO_TOLERANCE):
            mismatches.append(FieldMismatch(o.symbol, "TP", o.tp, e_tp))
    return mismatches
