from __future__ import annotations

import pytest

from perpdesk.core.metrics import MetricsRegistry


def test_snapshot_flattens_all_metric_kinds() -> None:
    m = MetricsRegistry()
    m.counter("orders_submitted").inc(2)
    m.gauge("backoff_remaining_s").set(55)
    m.summary("stage_ms.decide").observe(10)
    m.summary("stage_ms.decide").observe(30)

    snap = m.snapshot()
    assert snap["counter.orders_submitted"] == 2
    assert snap["gauge.backoff_remaining_s"] == 55
    assert snap["summary.stage_ms.decide.count"] == 2
    assert snap["summary.stage_ms.decide.mean"] == 20
    assert snap["summary.stage_ms.decide.max"] == 30


def test_same_name_returns_same_metric() -> None:
    m = MetricsRegistry()
    assert m.counter("x") is m.counter("x")
    m.counter("x").inc()
    m.counter("x").inc()
    assert m.counter("x").value == 2


def test_counters_only_go_up() -> None:
    with pytest.raises(ValueError):
        MetricsRegistry().counter("x").inc(-1)


def test_reset_and_empty_summary() -> None:
    m = MetricsRegistry()
    assert m.summary("poll_ms").mean == 0.0
    m.counter("x").inc()
    m.reset()
    assert m.snapshot() == {}
