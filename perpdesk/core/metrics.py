"""perpdesk.core.metrics

In-process metrics: counters, gauges and latency summaries keyed by name.

Nothing is exported. ``snapshot()`` is what ``perpdesk status`` prints and what
tests assert on. Components take a registry in their constructor and fall back
to the module-level ``REGISTRY``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import TypeVar


@dataclass
class Counter:
    name: str
    _value: float = 0.0
    _lock: Lock = field(default_factory=Lock, repr=False)

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"counter {self.name} cannot decrease")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        return float(self._value)


@dataclass
class Gauge:
    name: str
    _value: float = 0.0
    _lock: Lock = field(default_factory=Lock, repr=False)

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    @property
    def value(self) -> float:
        return float(self._value)


@dataclass
class Summary:
    """Count, total and max of observed values. Used for latencies in ms."""

    name: str
    count: int = 0
    total: float = 0.0
    max: float = 0.0
    _lock: Lock = field(default_factory=Lock, repr=False)

    def observe(self, value: float) -> None:
        v = float(value)
        with self._lock:
            self.count += 1
            self.total += v
            self.max = v if self.count == 1 else max(self.max, v)

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0


M = TypeVar("M", Counter, Gauge, Summary)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._summaries: dict[str, Summary] = {}

    @staticmethod
    def _get(table: dict[str, M], name: str, make: Callable[[str], M], lock: Lock) -> M:
        with lock:
            metric = table.get(name)
            if metric is None:
                metric = table[name] = make(name)
            return metric

    def counter(self, name: str) -> Counter:
        return self._get(self._counters, name, Counter, self._lock)

    def gauge(self, name: str) -> Gauge:
        return self._get(self._gauges, name, Gauge, self._lock)

    def summary(self, name: str) -> Summary:
        return self._get(self._summaries, name, Summary, self._lock)

    def snapshot(self) -> dict[str, float]:
        """Flat view: ``counter.<name>``, ``gauge.<name>``, ``summary.<name>.{count,mean,max}``."""

        with self._lock:
            data = {f"counter.{k}": c.value for k, c in self._counters.items()}
            data.update({f"gauge.{k}": g.value for k, g in self._gauges.items()})
            for k, s in self._summaries.items():
                data[f"summary.{k}.count"] = float(s.count)
                data[f"summary.{k}.mean"] = s.mean
                data[f"summary.{k}.max"] = s.max
            return data

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._summaries.clear()


REGISTRY = MetricsRegistry()
