"""perpdesk.execution.submitter

Turn operator selections into exchange orders.

Pipeline for one batch:
1) dedup controls by symbol (last one wins)
2) map each control to an OrderIntent from the selected plan + sizer
3) numeric, strict 1:1 and sizing gates (fail-closed for the whole batch)
4) mark-price guard (warnings only; the server enforces it)
5) one batch request, per-order outcomes
6) echo check on accepted orders (reported, never retried)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from perpdesk.core.config import PolicyConfig
from perpdesk.core.exceptions import FieldMismatch, PerpdeskError, SizingRejectedError
from perpdesk.core.metrics import REGISTRY, MetricsRegistry
from perpdesk.core.numeric import is_finite
from perpdesk.core.types import (
    CoinControl,
    EntryStrategy,
    ExchangeFilters,
    MarketPosture,
    OrderIntent,
    Side,
)
from perpdesk.execution.exchange import ExchangeApi
from perpdesk.execution.gate import check_echo, check_numeric, check_strict, select_plan_levels
from perpdesk.execution.sizer import OrderPlan, OrderSizer, risk_fraction_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OrderOutcome:
    symbol: str
    accepted: bool
    status: str = ""
    error: str | None = None


@dataclass(frozen=True, slots=True)
class SubmissionReport:
    intents: list[OrderIntent]
    warnings: list[str] = field(default_factory=list)
    outcomes: list[OrderOutcome] = field(default_factory=list)
    echo_mismatches: list[FieldMismatch] = field(default_factory=list)
    success: bool = False
    error: str | None = None

    @property
    def accepted_symbols(self) -> list[str]:
        return [o.symbol for o in self.outcomes if o.accepted]


def dedup_controls(controls: Iterable[CoinControl]) -> dict[str, CoinControl]:
    """Included controls keyed by symbol. A later control replaces an earlier one."""

    out: dict[str, CoinControl] = {}
    for c in controls:
        if c.include:
            out[c.symbol] = c
    return out


def mark_guard(intent: OrderIntent, mark: float | None) -> list[str]:
    """TP and SL must sit on the right side of the mark. Unknown mark: no opinion."""

    if not is_finite(mark):
        return []
    m = float(mark)  # type: ignore[arg-type]
    issues: list[str] = []
    if intent.side == Side.LONG:
        if not intent.tp > m:
            issues.append(f"{intent.symbol}: TP {intent.tp} <= MARK {m:.6f}")
        if not intent.sl < m:
            issues.append(f"{intent.symbol}: SL {intent.sl} >= MARK {m:.6f}")
    else:
        if not intent.tp < m:
            issues.append(f"{intent.symbol}: TP {intent.tp} >= MARK {m:.6f}")
        if not intent.sl > m:
            issues.append(f"{intent.symbol}: SL {intent.sl} <= MARK {m:.6f}")
    return issues


class OrderSubmitter:
    def __init__(
        self,
        *,
        api: ExchangeApi,
        policy: PolicyConfig,
        equity: float,
        sizer: OrderSizer | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.api = api
        self.policy = policy
        self.equity = float(equity)
        self.sizer = sizer or OrderSizer()
        self.metrics = metrics or REGISTRY
        self._lock = asyncio.Lock()

    def build_intents(
        self,
        controls: Mapping[str, CoinControl],
        strategies: Mapping[str, EntryStrategy],
        filters: Mapping[str, ExchangeFilters | None],
        *,
        posture: MarketPosture,
        risk_pct: Mapping[str, float] | None = None,
    ) -> tuple[list[OrderIntent], dict[str, OrderPlan]]:
        intents: list[OrderIntent] = []
        plans: dict[str, OrderPlan] = {}
        for symbol, c in controls.items():
            entry, sl, tp = select_plan_levels(c, strategies)
            strat = strategies[symbol].plan(c.strategy)
            fraction = risk_fraction_for(posture, self.policy, (risk_pct or {}).get(symbol))
            sized = self.sizer.plan(strat, risk_fraction=fraction, equity=self.equity, filters=filters.get(symbol))
            plans[symbol] = sized
            intents.append(
                OrderIntent(
                    symbol=symbol,
                    side=c.side,
                    strategy=c.strategy,
                    tp_level=c.tp_level,
                    order_type=c.resolved_order_type(),
                    entry=entry,
                    sl=sl,
                    tp=tp,
                    qty=sized.qty,
                    notional=sized.notional,
                    amount=float(c.amount),
                    leverage=int(c.leverage),
                )
            )
        return intents, plans

    async def mark_warnings(self, intents: Iterable[OrderIntent]) -> list[str]:
        """Mark-price warnings. A failed mark lookup counts as an unknown mark."""

        warnings: list[str] = []
        for o in intents:
            try:
                mark = await self.api.mark(o.symbol)
            except PerpdeskError as e:
                logger.warning("mark_unavailable", extra={"symbol": o.symbol, "error": str(e)})
                self.metrics.counter("mark_unavailable").inc()
                mark = None
            warnings.extend(mark_guard(o, mark))
        return warnings

    async def submit(
        self,
        controls: Iterable[CoinControl],
        strategies: Mapping[str, EntryStrategy],
        filters: Mapping[str, ExchangeFilters | None],
        *,
        posture: MarketPosture,
        risk_pct: Mapping[str, float] | None = None,
    ) -> SubmissionReport:
        """Validate and send one batch.

        Raises:
            MissingPlanError, MissingNumericError, StrictMismatchError,
            SizingRejectedError: nothing was sent.
            TransportError: the batch request itself failed.
        """

        async with self._lock:
            selected = dedup_controls(controls)
            if not selected:
                return SubmissionReport(intents=[], success=False, error="no included controls")

            intents, plans = self.build_intents(selected, strategies, filters, posture=posture, risk_pct=risk_pct)
            check_numeric(intents)
            check_strict(intents, selected, strategies)
            rejected = {sym: p.violations for sym, p in plans.items() if not p.valid}
            if rejected:
                self.metrics.counter("submissions_rejected").inc()
                raise SizingRejectedError(rejected)

            warnings = await self.mark_warnings(intents)
            if warnings:
                logger.warning("mark_guard_warnings", extra={"warnings": warnings})

            logger.info("orders_submitting", extra={"symbols": [o.symbol for o in intents]})
            response = await self.api.place_orders(intents)
            self.metrics.counter("orders_submitted").inc(len(intents))

            by_symbol = {r.symbol: r for r in response.orders}
            outcomes: list[OrderOutcome] = []
            for o in intents:
                r = by_symbol.get(o.symbol)
                if r is None:
                    outcomes.append(OrderOutcome(o.symbol, accepted=False, status="missing", error="no result returned"))
                else:
                    outcomes.append(OrderOutcome(o.symbol, accepted=r.accepted, status=r.status, error=r.error))
            accepted = {x.symbol for x in outcomes if x.accepted}
            self.metrics.counter("orders_accepted").inc(len(accepted))
            self.metrics.counter("orders_rejected").inc(len(outcomes) - len(accepted))

            echoed = response.model_copy(update={"orders": [r for r in response.orders if r.symbol in accepted]})
            mismatches = check_echo([o for o in intents if o.symbol in accepted], echoed)
            if mismatches:
                self.metrics.counter("echo_mismatch").inc(len(mismatches))
                logger.error("order_echo_mismatch", extra={"mismatches": [str(m) for m in mismatches]})

            success = bool(response.success) and len(accepted) == len(intents)
            error = None
            if not success:
                first = next((x for x in outcomes if not x.accepted), None)
                error = response.error or (first.error or first.status if first else None) or "submit failed"
                logger.warning("orders_partially_rejected", extra={"error": error, "accepted": sorted(accepted)})

            return SubmissionReport(
                intents=intents,
                warnings=warnings,
                outcomes=outcomes,
                echo_mismatches=mismatches,
                success=success,
                error=error,
            )
