"""perpdesk.pipeline.orchestrator

The pipeline orchestrator.

It coordinates a single run and delegates every stage:
1) snapshot (DecisionApi)
2) market decision (DecisionApi; non-2xx is a NO-TRADE decision)
3) candidate selection (SignalService, minus symbols with open exposure)
4) final picker (DecisionApi), only when posture allows it
5) post-validation (ValidationGate, fail-closed for the whole batch)

One run at a time. Every network stage has a deadline. An aborted run ends in
ERROR(timeout) immediately and whatever its stages return later is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from pydantic import ValidationError

from perpdesk.core.config import Config, PolicyConfig
from perpdesk.core.exceptions import (
    ErrorKind,
    PipelineBusyError,
    PipelineError,
    TransportError,
)
from perpdesk.core.metrics import REGISTRY, MetricsRegistry
from perpdesk.core.models import FinalPickerResponse, MarketDecision, MarketSnapshot
from perpdesk.core.time import utc_now
from perpdesk.core.types import Candidate, FinalPick, MarketPosture, normalize_symbol
from perpdesk.execution.gate import PolicyCheckResult, check_policy
from perpdesk.pipeline.services import DecisionApi, SignalService
from perpdesk.pipeline.state import PipelineEvent, PipelineState, transition

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_CANDIDATES = 1
MAX_CANDIDATES = 12

ExposureProvider = Callable[[], Iterable[str]]


@dataclass(slots=True)
class PipelineRun:
    run_id: str
    started_at: datetime
    state: PipelineState = PipelineState.IDLE
    error: PipelineError | None = None
    stage_latency_ms: dict[str, int] = field(default_factory=dict)
    snapshot: MarketSnapshot | None = None
    decision: MarketDecision | None = None
    candidates: list[Candidate] = field(default_factory=list)
    picks: list[FinalPick] = field(default_factory=list)
    policy_check: PolicyCheckResult | None = None
    skipped_reason: str | None = None
    picker_meta: dict[str, Any] = field(default_factory=dict)
    latency_ms: int = 0

    @property
    def posture(self) -> MarketPosture | None:
        return self.decision.market_posture if self.decision is not None else None

    def telemetry(self) -> dict[str, Any]:
        return {
            "ts": self.started_at.isoformat(),
            "posture": str(self.posture) if self.posture else None,
            "status": str(self.state),
            "candidates_count": len(self.candidates),
            "picks_count": len(self.picks),
            "error_code": str(self.error.kind) if self.error else None,
            "error_stage": self.error.stage if self.error else None,
            "latency_ms": self.latency_ms,
            "stage_latency_ms": dict(self.stage_latency_ms),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": str(self.state),
            "error": (
                {"kind": str(self.error.kind), "stage": self.error.stage, "message": self.error.message}
                if self.error
                else None
            ),
            "decision": self.decision.model_dump(mode="json") if self.decision else None,
            "candidates": [c.symbol for c in self.candidates],
            "picks": [
                {
                    "symbol": p.symbol,
                    "side": str(p.side),
                    "entry": p.entry,
                    "sl": p.sl,
                    "tp1": p.tp1,
                    "tp2": p.tp2,
                    "risk_pct": p.risk_pct,
                    "leverage_hint": p.leverage_hint,
                    "expiry_minutes": p.expiry_minutes,
                }
                for p in self.picks
            ],
            "skipped_reason": self.skipped_reason,
            "violations": (
                [{"symbol": v.symbol, "rule": v.rule, "message": v.message} for v in self.policy_check.violations]
                if self.policy_check
                else []
            ),
            "telemetry": self.telemetry(),
        }


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        decisions: DecisionApi,
        signals: SignalService,
        policy: PolicyConfig,
        universe: str = "gainers",
        top_n: int = 50,
        stage_timeout_s: float = 30.0,
        exposure: ExposureProvider | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.decisions = decisions
        self.signals = signals
        self.policy = policy
        self.universe = universe
        self.top_n = int(top_n)
        self.stage_timeout_s = float(stage_timeout_s)
        self.exposure = exposure
        self.metrics = metrics or REGISTRY

        self._task: asyncio.Task[None] | None = None
        self._current: PipelineRun | None = None
        self._aborting = False
        self.last_run: PipelineRun | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        decisions: DecisionApi,
        signals: SignalService,
        exposure: ExposureProvider | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> PipelineOrchestrator:
        return cls(
            decisions=decisions,
            signals=signals,
            policy=config.policy,
            universe=config.boundary.universe,
            top_n=config.boundary.top_n,
            stage_timeout_s=config.transport.timeout_s,
            exposure=exposure,
            metrics=metrics,
        )

    @property
    def busy(self) -> bool:
        return self._current is not None

    async def run(self) -> PipelineRun:
        if self._current is not None:
            raise PipelineBusyError(f"pipeline run {self._current.run_id} is still in flight")

        run = PipelineRun(run_id=str(uuid.uuid4()), started_at=utc_now())
        self._current = run
        self._aborting = False
        started = time.perf_counter()
        logger.info("pipeline_run_started", extra={"run_id": run.run_id})
        try:
            self._task = asyncio.ensure_future(self._execute(run))
            try:
                await self._task
            except PipelineError as e:
                self._fail(run, e)
            except Exception as e:  # noqa: BLE001
                stage = self._stage_name(run)
                logger.exception("pipeline_step_crashed", extra={"run_id": run.run_id, "stage": stage})
                self._fail(run, PipelineError(ErrorKind.UNKNOWN, f"{type(e).__name__}: {e}", stage=stage))
            except asyncio.CancelledError:
                if not self._aborting:
                    raise
                self._fail(run, PipelineError(ErrorKind.TIMEOUT, "aborted", stage=self._stage_name(run)))
        finally:
            run.latency_ms = int((time.perf_counter() - started) * 1000)
            self._task = None
            self._current = None
            self.last_run = run

        self.metrics.counter(f"pipeline_{run.state}").inc()
        self.metrics.gauge("pipeline_last_latency_ms").set(run.latency_ms)
        logger.info("pipeline_run_finished", extra=run.telemetry() | {"run_id": run.run_id})
        return run

    def abort(self) -> bool:
        """Abort the in-flight run. Returns False when there is nothing to abort."""

        if self._task is None or self._task.done():
            return False
        self._aborting = True
        self._task.cancel()
        return True

    # -----------
    # Stages
    # -----------

    async def _execute(self, run: PipelineRun) -> None:
        self._advance(run, PipelineEvent.START)
        snapshot = await self._stage(
            run, "snapshot", self.decisions.snapshot(universe=self.universe, top_n=self.top_n)
        )
        run.snapshot = snapshot
        self._advance(run, PipelineEvent.SNAPSHOT_READY)

        decision = await self._stage(run, "decide", self.decisions.decide(self.signals.compact(snapshot)))
        run.decision = decision
        self._advance(run, PipelineEvent.DECIDED)
        posture = decision.market_posture

        run.candidates = self._select_candidates(snapshot, decision)
        skipped = self._skip_reason(posture, run.candidates)
        if skipped is not None:
            run.skipped_reason = skipped
            self._advance(run, PipelineEvent.PICKER_SKIPPED)
            return
        self._advance(run, PipelineEvent.CANDIDATES_READY)

        request = self.picker_request(posture, run.candidates)
        resp: FinalPickerResponse = await self._stage(run, "final_picker", self.decisions.final_picker(request))
        run.picker_meta = {"code": resp.code, "latency_ms": resp.latency_ms, **resp.meta}
        if not resp.ok:
            raise PipelineError(
                ErrorKind.parse(resp.code or ErrorKind.UNKNOWN),
                f"final picker failed: {resp.code or 'unknown'}",
                stage="final_picker",
            )
        self._advance(run, PipelineEvent.PICKS_RECEIVED)

        check = check_policy(resp.data.picks, posture, self.policy, run.candidates)
        run.policy_check = check
        if not check.approved:
            logger.warning(
                "pipeline_post_validation_failed",
                extra={"run_id": run.run_id, "rules": check.rules, "picks": len(resp.data.picks)},
            )
            raise PipelineError(
                ErrorKind.POST_VALIDATION,
                "; ".join(f"{v.symbol}: {v.message}" for v in check.violations),
                stage="validate",
            )

        implied = self.policy.implied_risk_pct(posture)
        run.picks = [p.to_pick(default_risk_pct=implied) for p in resp.data.picks]
        self._advance(run, PipelineEvent.VALIDATED if run.picks else PipelineEvent.VALIDATED_EMPTY)

    async def _stage(self, run: PipelineRun, name: str, aw: Awaitable[T]) -> T:
        started = time.perf_counter()
        try:
            async with asyncio.timeout(self.stage_timeout_s):
                return await aw
        except TimeoutError as e:
            raise PipelineError(ErrorKind.TIMEOUT, f"no response within {self.stage_timeout_s:.0f}s", stage=name) from e
        except TransportError as e:
            raise PipelineError(e.kind, str(e), stage=name) from e
        except ValidationError as e:
            raise PipelineError(ErrorKind.SCHEMA, f"{e.error_count()} validation error(s)", stage=name) from e
        except PipelineError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.exception("pipeline_stage_crashed", extra={"run_id": run.run_id, "stage": name})
            raise PipelineError(ErrorKind.UNKNOWN, f"{type(e).__name__}: {e}", stage=name) from e
        finally:
            ms = int((time.perf_counter() - started) * 1000)
            run.stage_latency_ms[name] = ms
            self.metrics.summary(f"stage_ms.{name}").observe(ms)

    def _select_candidates(self, snapshot: MarketSnapshot, decision: MarketDecision) -> list[Candidate]:
        posture = decision.market_posture
        allow_preview = posture == MarketPosture.NO_TRADE and self.policy.preview_when_no_trade
        raw_limit = self.policy.preview_limit if allow_preview else self.policy.max_setups
        limit = max(MIN_CANDIDATES, min(int(raw_limit), MAX_CANDIDATES))
        exclude = frozenset(normalize_symbol(s) for s in (self.exposure() if self.exposure else ()))
        selected = self.signals.select_candidates(
            snapshot, decision, limit=limit, allow_when_no_trade=allow_preview, exclude=exclude
        )
        return [c for c in selected if normalize_symbol(c.symbol) not in exclude][:limit]

    def _skip_reason(self, posture: MarketPosture, candidates: list[Candidate]) -> str | None:
        if not candidates:
            return "no_candidates"
        if posture == MarketPosture.NO_TRADE and not self.policy.allow_picks_in_no_trade:
            return "no_trade_posture"
        return None

    def picker_request(self, posture: MarketPosture, candidates: list[Candidate]) -> dict[str, Any]:
        p = self.policy
        return {
            "now_ts": int(time.time() * 1000),
            "posture": str(posture),
            "risk_policy": p.risk_policy.model_dump(),
            "side_policy": p.side_policy,
            "settings": {
                "max_picks": max(1, min(6, p.max_picks)),
                "expiry_minutes": list(p.expiry_minutes),
                "tp_r_momentum": list(p.tp_r_momentum),
                "tp_r_reclaim": list(p.tp_r_reclaim),
                "max_leverage": p.max_leverage,
                "max_picks_no_trade": p.max_picks_no_trade,
                "confidence_floor_no_trade": p.confidence_floor_no_trade,
                "risk_pct_no_trade_default": p.risk_policy.no_trade,
                "rrr_min_tp1": p.rrr_min_tp1,
                "rrr_min_tp2": p.rrr_min_tp2,
            },
            "candidates": [
                {
                    "symbol": c.symbol,
                    "price": c.price,
                    "atr_pct_h1": c.atr_pct_h1,
                    "vwap_m15": c.vwap_m15,
                    "quoteVolumeUSDT": c.volume24h_usd,
                }
                for c in sorted(candidates, key=lambda c: c.symbol)
            ],
        }

    # -----------
    # State
    # -----------

    def _advance(self, run: PipelineRun, event: PipelineEvent) -> None:
        prev = run.state
        run.state = transition(prev, event)
        logger.debug("pipeline_transition", extra={"run_id": run.run_id, "from": str(prev), "to": str(run.state)})

    def _fail(self, run: PipelineRun, err: PipelineError) -> None:
        run.error = err
        if not run.state.terminal:
            run.state = transition(run.state, PipelineEvent.FAIL)
        logger.warning(
            "pipeline_run_failed",
            extra={"run_id": run.run_id, "kind": str(err.kind), "stage": err.stage, "error": err.message},
        )

    @staticmethod
    def _stage_name(run: PipelineRun) -> str:
        return {
            PipelineState.FETCHING: "snapshot",
            PipelineState.DECIDING: "decide",
            PipelineState.SELECTING_CANDIDATES: "select",
            PipelineState.INVOKING_PICKER: "final_picker",
            PipelineState.VALIDATING: "validate",
        }.get(run.state, "pipeline")
