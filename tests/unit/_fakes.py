"""Shared test doubles that are not fixtures."""

from __future__ import annotations

from perpdesk.core.models import EntryStrategyPayload
from perpdesk.core.types import EntryStrategy


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = float(start)

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += float(seconds)


async def no_sleep(_: float) -> None:
    return None


def make_strategy(
    symbol: str,
    *,
    entry: float = 100.0,
    sl: float = 98.0,
    tp1: float = 103.0,
    tp2: float = 106.0,
    tp3: float = 110.0,
) -> EntryStrategy:
    plan = {"entry": entry, "sl": sl, "tp1": tp1, "tp2": tp2, "tp3": tp3}
    return EntryStrategyPayload.model_validate(
        {"symbol": symbol, "conservative": plan, "aggressive": dict(plan, entry=entry + 0.5)}
    ).to_runtime()
