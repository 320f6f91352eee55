"""perpdesk.execution.reconciliation

Reconciliation poller: keeps a local view of orders and positions in line with
the exchange.

- one consolidated fetch per tick, on a fixed interval
- while a ban window is active, no calls at all
- state is replaced wholesale on success and kept as-is on failure
- cancel / flatten fan out with all-settled semantics, then poll once

There is no "live" view, only a recent one.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from perpdesk.core.config import ReconciliationConfig
from perpdesk.core.exceptions import MissingCredentialsError, PerpdeskError, RateLimitedError
from perpdesk.core.metrics import REGISTRY, MetricsRegistry
from perpdesk.core.models import OrdersConsolePayload
from perpdesk.core.time import sort_key_ts
from perpdesk.core.types import ConsoleState, normalize_symbol
from perpdesk.execution.exchange import ExchangeApi
from perpdesk.execution.rate_limit import RateLimitTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TickResult:
    status: str
    polled: bool
    remaining_s: int = 0
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    action: str
    symbol: str
    target: str
    ok: bool
    error: str | None = None


class ReconciliationPoller:
    def __init__(
        self,
        *,
        api: ExchangeApi,
        tracker: RateLimitTracker | None = None,
        interval_s: float = 5.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.api = api
        self.clock = clock
        self.tracker = tracker or RateLimitTracker(clock=clock)
        self.interval_s = float(interval_s)
        self.metrics = metrics or REGISTRY
        self._sleep = sleep
        self._state = ConsoleState()
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self.last_error: PerpdeskError | None = None
        self.last_status: str = "idle"

    @classmethod
    def from_config(
        cls,
        cfg: ReconciliationConfig,
        *,
        api: ExchangeApi,
        clock: Callable[[], float] = time.time,
        metrics: MetricsRegistry | None = None,
    ) -> ReconciliationPoller:
        tracker = RateLimitTracker(
            weight_limit_1m=cfg.weight_limit_1m,
            default_ban_s=cfg.default_ban_s,
            clock=clock,
        )
        return cls(api=api, tracker=tracker, interval_s=cfg.poll_interval_s, clock=clock, metrics=metrics)

    @property
    def state(self) -> ConsoleState:
        return self._state

    def blocked_symbols(self) -> frozenset[str]:
        return self._state.blocked_symbols()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -----------
    # Polling
    # -----------

    async def tick(self) -> TickResult:
        async with self._lock:
            return await self._tick()

    async def _tick(self) -> TickResult:
        now = self.clock()
        if self.tracker.banned(now=now):
            remaining = self.tracker.remaining_s(now=now)
            self.metrics.counter("poll_skipped_backoff").inc()
            self.metrics.gauge("backoff_remaining_s").set(remaining)
            return self._finish(TickResult(status=f"backoff {remaining}s", polled=False, remaining_s=remaining))

        started = time.perf_counter()
        try:
            payload = await self.api.orders_console()
        except RateLimitedError as e:
            self.tracker.note_rate_limited(e)
            return self._failed(e)
        except MissingCredentialsError as e:
            return self._failed(e)
        except PerpdeskError as e:
            self.tracker.note_error(str(e))
            return self._failed(e)

        fetched_at = self.clock()
        self.metrics.summary("poll_ms").observe((time.perf_counter() - started) * 1000)
        self.tracker.clear()
        self.tracker.note_usage(payload.binance_usage, now=fetched_at)
        self._state = self._build_state(payload, fetched_at)
        self.last_error = None
        self.metrics.counter("poll_success").inc()
        if self._state.rate_limit.used_weight_1m is not None:
            self.metrics.gauge("used_weight_1m").set(self._state.rate_limit.used_weight_1m)

        remaining = self.tracker.remaining_s(now=fetched_at)
        self.metrics.gauge("backoff_remaining_s").set(remaining)
        status = f"backoff {remaining}s" if remaining > 0 else "ok"
        return self._finish(TickResult(status=status, polled=True, remaining_s=remaining))

    def _build_state(self, payload: OrdersConsolePayload, fetched_at: float) -> ConsoleState:
        state = payload.to_state(rate_limit=self.tracker.state, fetched_at=fetched_at)
        return dataclasses.replace(
            state,
            open_orders=tuple(sorted(state.open_orders, key=lambda o: (sort_key_ts(o.created_at), int(o.order_id)))),
            waiting=tuple(sorted(state.waiting, key=lambda w: w.symbol)),
        )

    def _failed(self, err: PerpdeskError) -> TickResult:
        self.last_error = err
        self.metrics.counter("poll_failure").inc()
        now = self.clock()
        remaining = self.tracker.remaining_s(now=now)
        self.metrics.gauge("backoff_remaining_s").set(remaining)
        logger.warning(
            "reconciliation_poll_failed",
            extra={"error": str(err), "error_type": type(err).__name__, "backoff_s": remaining},
        )
        status = f"backoff {remaining}s" if remaining > 0 else f"error: {err}"
        return self._finish(TickResult(status=status, polled=True, remaining_s=remaining, error=str(err)))

    def _finish(self, result: TickResult) -> TickResult:
        self.last_status = result.status
        return result

    async def run_forever(self) -> None:
        """Poll on a fixed interval until cancelled. Never raises on a bad tick."""

        while True:
            try:
                await self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("reconciliation_tick_crashed")
            await self._sleep(self.interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self.run_forever())
        logger.info("reconciliation_started", extra={"interval_s": self.interval_s})

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("reconciliation_stopped")

    # -----------
    # Actions
    # -----------

    async def _settle(self, action: str, jobs: list[tuple[str, str, Awaitable[None]]]) -> list[ActionOutcome]:
        results = await asyncio.gather(*(job for _, _, job in jobs), return_exceptions=True)
        outcomes: list[ActionOutcome] = []
        for (symbol, target, _), res in zip(jobs, results, strict=True):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                outcomes.append(ActionOutcome(action, symbol, target, ok=False, error=f"{type(res).__name__}: {res}"))
                logger.warning(
                    "reconciliation_action_failed",
                    extra={"action": action, "symbol": symbol, "target": target, "error": str(res)},
                )
            else:
                outcomes.append(ActionOutcome(action, symbol, target, ok=True))
        self.metrics.counter(f"{action}_ok").inc(sum(1 for o in outcomes if o.ok))
        self.metrics.counter(f"{action}_failed").inc(sum(1 for o in outcomes if not o.ok))
        await self.tick()
        return outcomes

    async def cancel_order(self, symbol: str, order_id: int) -> ActionOutcome:
        [outcome] = await self._settle(
            "cancel", [(symbol, str(order_id), self.api.cancel_order(symbol=symbol, order_id=order_id))]
        )
        return outcome

    async def cancel_all(self, symbol: str | None = None) -> list[ActionOutcome]:
        want = normalize_symbol(symbol) if symbol else None
        jobs = [
            (o.symbol, str(o.order_id), self.api.cancel_order(symbol=o.symbol, order_id=o.order_id))
            for o in self._state.open_orders
            if want is None or normalize_symbol(o.symbol) == want
        ]
        return await self._settle("cancel", jobs)

    async def flatten(self, symbol: str, side: str | None = None) -> ActionOutcome:
        [outcome] = await self._settle("flatten", [(symbol, side or "", self.api.flatten(symbol=symbol, side=side))])
        return outcome

    async def flatten_all(self) -> list[ActionOutcome]:
        jobs = []
        for p in self._state.positions:
            if abs(p.size) <= 0:
                continue
            side = p.position_side or "LONG"
            jobs.append((p.symbol, side, self.api.flatten(symbol=p.symbol, side=side)))
        return await self._settle("flatten", jobs)
