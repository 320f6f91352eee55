from __future__ import annotations

import json

import httpx
import pytest

from perpdesk.core.client import BoundaryClient
from perpdesk.core.config import PolicyConfig
from perpdesk.core.exceptions import (
    ErrorKind,
    MissingNumericError,
    MissingPlanError,
    SizingRejectedError,
    TransportError,
)
from perpdesk.core.types import CoinControl, ExchangeFilters, MarketPosture, OrderIntent, Side
from perpdesk.execution.exchange import HttpExchangeApi, InMemoryExchangeApi
from perpdesk.execution.sizer import VIOLATION_MISSING_FILTERS, VIOLATION_QTY_ZERO
from perpdesk.execution.submitter import OrderSubmitter, dedup_controls, mark_guard
from tests.unit._fakes import make_strategy, no_sleep

STRATEGIES = {
    "BTCUSDT": make_strategy("BTCUSDT"),
    "ETHUSDT": make_strategy("ETHUSDT", entry=2000.0, sl=1960.0, tp1=2060.0, tp2=2120.0, tp3=2200.0),
}


@pytest.fixture()
def api() -> InMemoryExchangeApi:
    return InMemoryExchangeApi()


@pytest.fixture()
def all_filters(filters: ExchangeFilters) -> dict[str, ExchangeFilters]:
    return {"BTCUSDT": filters, "ETHUSDT": filters}


@pytest.fixture()
def submitter(api, metrics) -> OrderSubmitter:
    return OrderSubmitter(api=api, policy=PolicyConfig(), equity=10_000, metrics=metrics)


def _controls(*symbols: str, **kw) -> list[CoinControl]:
    return [CoinControl(symbol=s, **kw) for s in symbols]


@pytest.mark.anyio
async def test_batch_is_sized_and_sent_once(submitter, api, all_filters) -> None:
    report = await submitter.submit(
        _controls("BTCUSDT", "ETHUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK
    )

    assert report.success
    assert report.error is None
    assert report.accepted_symbols == ["BTCUSDT", "ETHUSDT"]
    assert report.echo_mismatches == []
    assert len(api.placed) == 1
    btc, eth = report.intents
    assert (btc.entry, btc.sl, btc.tp, btc.qty) == (100.0, 98.0, 106.0, 25.0)
    assert btc.order_type == "limit"
    assert eth.qty == pytest.approx(1.25)
    assert len(api.open_orders) == 2


def test_dedup_keeps_last_included_control() -> None:
    controls = [
        CoinControl(symbol="BTCUSDT", tp_level="tp2"),
        CoinControl(symbol="ETHUSDT", include=False),
        CoinControl(symbol="BTCUSDT", tp_level="tp1"),
    ]
    out = dedup_controls(controls)
    assert list(out) == ["BTCUSDT"]
    assert out["BTCUSDT"].tp_level == "tp1"


@pytest.mark.anyio
async def test_duplicate_controls_send_one_order(submitter, api, all_filters) -> None:
    controls = [CoinControl(symbol="BTCUSDT"), CoinControl(symbol="BTCUSDT", tp_level="tp1")]
    report = await submitter.submit(controls, STRATEGIES, all_filters, posture=MarketPosture.OK)
    [intent] = report.intents
    assert intent.tp == 103.0
    assert [o.symbol for o in api.placed[0]] == ["BTCUSDT"]


@pytest.mark.anyio
async def test_aggressive_variant_uses_its_own_plan(submitter, all_filters) -> None:
    report = await submitter.submit(
        _controls("BTCUSDT", strategy="aggressive"), STRATEGIES, all_filters, posture=MarketPosture.OK
    )
    [intent] = report.intents
    assert intent.entry == 100.5
    assert intent.order_type == "stop_limit"


@pytest.mark.anyio
async def test_nothing_selected(submitter, api, all_filters) -> None:
    report = await submitter.submit(
        _controls("BTCUSDT", include=False), STRATEGIES, all_filters, posture=MarketPosture.OK
    )
    assert not report.success
    assert report.error == "no included controls"
    assert api.placed == []


@pytest.mark.anyio
async def test_missing_plan_blocks_batch(submitter, api, all_filters) -> None:
    with pytest.raises(MissingPlanError):
        await submitter.submit(_controls("BTCUSDT", "DOGEUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK)
    assert api.placed == []


@pytest.mark.anyio
async def test_missing_numeric_level_blocks_batch(submitter, api, all_filters) -> None:
    strategies = {"BTCUSDT": make_strategy("BTCUSDT", tp3=0.0)}
    with pytest.raises(MissingNumericError) as ei:
        await submitter.submit(_controls("BTCUSDT", tp_level="tp3"), strategies, all_filters, posture=MarketPosture.OK)
    assert ei.value.problems == ["BTCUSDT: missing TP"]
    assert api.placed == []


@pytest.mark.anyio
async def test_invalid_sizing_blocks_whole_batch(submitter, api, filters, metrics) -> None:
    with pytest.raises(SizingRejectedError) as ei:
        await submitter.submit(
            _controls("BTCUSDT", "ETHUSDT"), STRATEGIES, {"BTCUSDT": filters}, posture=MarketPosture.OK
        )
    assert ei.value.violations == {"ETHUSDT": [VIOLATION_MISSING_FILTERS]}
    assert api.placed == []
    assert metrics.snapshot()["counter.submissions_rejected"] == 1


@pytest.mark.anyio
async def test_no_trade_without_override_sizes_to_zero(submitter, api, all_filters) -> None:
    with pytest.raises(SizingRejectedError) as ei:
        await submitter.submit(_controls("BTCUSDT"), STRATEGIES, all_filters, posture=MarketPosture.NO_TRADE)
    assert VIOLATION_QTY_ZERO in ei.value.violations["BTCUSDT"]
    assert api.placed == []


@pytest.mark.anyio
async def test_no_trade_override_execution(api, all_filters, metrics) -> None:
    policy = PolicyConfig(override_no_trade_execution=True, override_no_trade_risk_pct=0.1)
    submitter = OrderSubmitter(api=api, policy=policy, equity=10_000, metrics=metrics)
    report = await submitter.submit(_controls("BTCUSDT"), STRATEGIES, all_filters, posture=MarketPosture.NO_TRADE)
    assert report.success
    assert report.intents[0].qty == 5.0


@pytest.mark.anyio
async def test_per_symbol_risk_pct(submitter, all_filters) -> None:
    report = await submitter.submit(
        _controls("BTCUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK, risk_pct={"BTCUSDT": 1.0}
    )
    assert report.intents[0].qty == 50.0


@pytest.mark.anyio
async def test_mark_guard_warns_but_still_sends(submitter, api, all_filters) -> None:
    api.marks["BTCUSDT"] = 107.0
    report = await submitter.submit(_controls("BTCUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK)
    assert report.warnings == ["BTCUSDT: TP 106.0 <= MARK 107.000000"]
    assert len(api.placed) == 1


@pytest.mark.anyio
async def test_mark_lookup_failure_does_not_block_batch(submitter, api, all_filters, metrics) -> None:
    api.fail_next("mark", TransportError(ErrorKind.HTTP, "GET /api/mark: connection failed"))
    report = await submitter.submit(
        _controls("BTCUSDT", "ETHUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK
    )

    assert report.success
    assert report.warnings == []
    assert [o.symbol for o in api.placed[0]] == ["BTCUSDT", "ETHUSDT"]
    assert metrics.snapshot()["counter.mark_unavailable"] == 1


@pytest.mark.anyio
async def test_mark_endpoint_down_over_http_still_places(all_filters, metrics) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/mark":
            raise httpx.ConnectError("mark service down", request=request)
        sent = json.loads(request.content)["orders"]
        return httpx.Response(
            200,
            json={
                "success": True,
                "orders": [
                    {
                        "symbol": o["symbol"],
                        "status": "NEW",
                        "entry_order": {"price": o["entry"]},
                        "sl_order": {"stopPrice": o["sl"]},
                    }
                    for o in sent
                ],
            },
        )

    client = BoundaryClient(base_url="http://exchange.test", transport=httpx.MockTransport(handler), sleep=no_sleep)
    api = HttpExchangeApi(client=client)
    submitter = OrderSubmitter(api=api, policy=PolicyConfig(), equity=10_000, metrics=metrics)
    try:
        report = await submitter.submit(_controls("BTCUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK)
    finally:
        await client.aclose()

    assert report.success
    assert report.accepted_symbols == ["BTCUSDT"]
    assert report.warnings == []


def test_mark_guard_short_side() -> None:
    o = OrderIntent(
        symbol="ETHUSDT",
        side=Side.SHORT,
        strategy="conservative",
        tp_level="tp1",
        order_type="limit",
        entry=100.0,
        sl=102.0,
        tp=96.0,
        qty=1.0,
        notional=100.0,
        amount=20.0,
        leverage=10,
    )
    assert mark_guard(o, None) == []
    assert mark_guard(o, 99.0) == []
    assert mark_guard(o, 95.0) == ["ETHUSDT: TP 96.0 >= MARK 95.000000"]
    assert mark_guard(o, 103.0) == ["ETHUSDT: SL 102.0 <= MARK 103.000000"]


@pytest.mark.anyio
async def test_partial_rejection_is_reported_per_order(submitter, api, all_filters, metrics) -> None:
    api.rejects["ETHUSDT"] = "Margin is insufficient."
    report = await submitter.submit(
        _controls("BTCUSDT", "ETHUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK
    )

    assert not report.success
    assert report.error == "Margin is insufficient."
    assert report.accepted_symbols == ["BTCUSDT"]
    eth = [o for o in report.outcomes if o.symbol == "ETHUSDT"][0]
    assert (eth.accepted, eth.error) == (False, "Margin is insufficient.")
    snap = metrics.snapshot()
    assert snap["counter.orders_accepted"] == 1
    assert snap["counter.orders_rejected"] == 1


@pytest.mark.anyio
async def test_echo_mismatch_is_reported_not_retried(submitter, api, all_filters, metrics) -> None:
    api.echo_overrides["BTCUSDT"] = {"entry": 100.5}
    report = await submitter.submit(_controls("BTCUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK)

    [m] = report.echo_mismatches
    assert (m.field, m.expected, m.actual) == ("ENTRY", 100.0, 100.5)
    assert len(api.placed) == 1
    assert metrics.snapshot()["counter.echo_mismatch"] == 1


@pytest.mark.anyio
async def test_deferred_tp_is_not_a_mismatch(submitter, api, all_filters) -> None:
    api.defer_tp.add("BTCUSDT")
    report = await submitter.submit(_controls("BTCUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK)
    assert report.success
    assert report.echo_mismatches == []


@pytest.mark.anyio
async def test_transport_failure_propagates(submitter, api, all_filters) -> None:
    api.fail_next("place_orders", TransportError(ErrorKind.TIMEOUT, "POST /api/place_orders: timeout after 30s"))
    with pytest.raises(TransportError) as ei:
        await submitter.submit(_controls("BTCUSDT"), STRATEGIES, all_filters, posture=MarketPosture.OK)
    assert ei.value.kind == ErrorKind.TIMEOUT
