"""perpdesk.pipeline.services

Collaborators of a pipeline run.

- ``DecisionApi``: snapshot, market decision and final picker over HTTP
- ``SignalService``: compact view + candidate selection (local, synchronous)

Both are Protocols so the orchestrator can be driven by in-memory doubles.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any, Protocol

from pydantic import ValidationError

from perpdesk.core.client import BoundaryClient
from perpdesk.core.exceptions import ErrorKind, PayloadError
from perpdesk.core.models import (
    CandidatePayload,
    FinalPickerResponse,
    MarketDecision,
    MarketSnapshot,
)
from perpdesk.core.types import Candidate, MarketPosture, normalize_symbol

logger = logging.getLogger(__name__)


class DecisionApi(Protocol):
    async def snapshot(self, *, universe: str, top_n: int) -> MarketSnapshot: ...

    async def decide(self, compact: dict[str, Any]) -> MarketDecision: ...

    async def final_picker(self, request: dict[str, Any]) -> FinalPickerResponse: ...


class SignalService(Protocol):
    def compact(self, snapshot: MarketSnapshot) -> dict[str, Any]: ...

    def select_candidates(
        self,
        snapshot: MarketSnapshot,
        decision: MarketDecision,
        *,
        limit: int,
        allow_when_no_trade: bool,
        exclude: frozenset[str],
    ) -> list[Candidate]: ...


def _parse(model: type, body: Any, what: str) -> Any:
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise PayloadError(ErrorKind.SCHEMA, f"{what}: {e.error_count()} validation error(s)") from e


class HttpDecisionApi:
    def __init__(self, *, client: BoundaryClient) -> None:
        self._client = client

    async def snapshot(self, *, universe: str, top_n: int) -> MarketSnapshot:
        params: dict[str, Any] = {"topN": int(top_n)}
        if universe == "gainers":
            params["universe"] = "gainers"
        body = await self._client.request_json("GET", "/api/snapshot", params=params, expected=dict)
        return _parse(MarketSnapshot, body, "snapshot")

    async def decide(self, compact: dict[str, Any]) -> MarketDecision:
        """A non-2xx decide response is a NO-TRADE decision, not an error."""

        resp = await self._client.request("POST", "/api/decide", json=compact)
        if not resp.ok:
            logger.warning("decide_http_error", extra={"status": resp.status})
            return MarketDecision.fail_closed("gpt_error:http")
        body = resp.json_or_raise()
        if not isinstance(body, dict):
            raise PayloadError(ErrorKind.SCHEMA, "decide: body is not an object")
        return _parse(MarketDecision, body, "decide")

    async def final_picker(self, request: dict[str, Any]) -> FinalPickerResponse:
        body = await self._client.request_json("POST", "/api/final_picker", json=request, expected=dict)
        return _parse(FinalPickerResponse, body, "final_picker")


class UniverseSignalService:
    """Candidates straight from the snapshot universe, in snapshot order.

    The backend ranks the universe; this service only applies posture gating,
    exposure exclusion and the limit.
    """

    def compact(self, snapshot: MarketSnapshot) -> dict[str, Any]:
        return snapshot.model_dump(mode="json")

    def select_candidates(
        self,
        snapshot: MarketSnapshot,
        decision: MarketDecision,
        *,
        limit: int,
        allow_when_no_trade: bool,
        exclude: frozenset[str],
    ) -> list[Candidate]:
        if decision.market_posture == MarketPosture.NO_TRADE and not allow_when_no_trade:
            return []
        out: list[Candidate] = []
        for row in snapshot.universe:
            try:
                c = CandidatePayload.model_validate(row).to_candidate()
            except ValidationError:
                continue
            if normalize_symbol(c.symbol) in exclude:
                continue
            out.append(c)
            if len(out) >= limit:
                break
        return out


class InMemoryDecisionApi:
    """Test double. Responses are fixed; ``hold`` blocks a stage until released."""

    def __init__(
        self,
        *,
        snapshot: MarketSnapshot | None = None,
        decision: MarketDecision | None = None,
        picker: FinalPickerResponse | None = None,
    ) -> None:
        self.snapshot_response = snapshot or MarketSnapshot(timestamp="2026-01-01T00:00:00Z")
        self.decision_response = decision or MarketDecision(flag="OK", posture="RISK-ON")
        self.picker_response = picker or FinalPickerResponse(ok=True)
        self.calls: list[str] = []
        self.picker_requests: list[dict[str, Any]] = []
        self.errors: dict[str, Exception] = {}
        self.holds: dict[str, asyncio.Event] = {}

    def hold(self, stage: str) -> asyncio.Event:
        ev = asyncio.Event()
        self.holds[stage] = ev
        return ev

    async def _enter(self, stage: str) -> None:
        self.calls.append(stage)
        if stage in self.holds:
            await self.holds[stage].wait()
        if stage in self.errors:
            raise self.errors[stage]

    async def snapshot(self, *, universe: str, top_n: int) -> MarketSnapshot:
        await self._enter("snapshot")
        return self.snapshot_response

    async def decide(self, compact: dict[str, Any]) -> MarketDecision:
        await self._enter("decide")
        return self.decision_response

    async def final_picker(self, request: dict[str, Any]) -> FinalPickerResponse:
        self.picker_requests.append(request)
        await self._enter("final_picker")
        return self.picker_response


class StaticSignalService:
    """Test double returning a fixed candidate list."""

    def __init__(self, candidates: Iterable[Candidate] = ()) -> None:
        self.candidates = list(candidates)
        self.last_exclude: frozenset[str] = frozenset()
        self.last_limit: int | None = None

    def compact(self, snapshot: MarketSnapshot) -> dict[str, Any]:
        return {"timestamp": snapshot.timestamp}

    def select_candidates(
        self,
        snapshot: MarketSnapshot,
        decision: MarketDecision,
        *,
        limit: int,
        allow_when_no_trade: bool,
        exclude: frozenset[str],
    ) -> list[Candidate]:
        self.last_exclude = exclude
        self.last_limit = limit
        if decision.market_posture == MarketPosture.NO_TRADE and not allow_when_no_trade:
            return []
        return [c for c in self.candidates if normalize_symbol(c.symbol) not in exclude][:limit]
