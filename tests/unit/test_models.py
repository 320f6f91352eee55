from __future__ import annotations

import pytest

from perpdesk.core.exceptions import ErrorKind
from perpdesk.core.models import FinalPickPayload, MarketDecision, OrdersConsolePayload
from perpdesk.core.types import (
    ExchangeFilters,
    FinalPick,
    MarketPosture,
    RateLimitState,
    Side,
    side_ordering_ok,
)


def _symbol_info(**over) -> dict:
    filters = {
        "PRICE_FILTER": {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
        "LOT_SIZE": {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
        "MIN_NOTIONAL": {"filterType": "MIN_NOTIONAL", "notional": "100"},
    }
    filters.update(over)
    return {"symbol": "BTCUSDT", "filters": [f for f in filters.values() if f is not None]}


def test_filters_from_exchange_info() -> None:
    f = ExchangeFilters.from_exchange_info(_symbol_info())
    assert f == ExchangeFilters(tick_size=0.1, step_size=0.001, min_qty=0.001, min_notional=100.0)
    assert f.is_complete()


def test_filters_accept_legacy_min_notional_key() -> None:
    f = ExchangeFilters.from_exchange_info(
        _symbol_info(MIN_NOTIONAL={"filterType": "MIN_NOTIONAL", "minNotional": "5"})
    )
    assert f is not None
    assert f.min_notional == 5.0


@pytest.mark.parametrize(
    "override",
    [
        {"PRICE_FILTER": None},
        {"LOT_SIZE": {"filterType": "LOT_SIZE", "stepSize": "0", "minQty": "0.001"}},
        {"MIN_NOTIONAL": {"filterType": "MIN_NOTIONAL", "notional": "abc"}},
    ],
)
def test_filters_missing_or_zero_is_none(override: dict) -> None:
    assert ExchangeFilters.from_exchange_info(_symbol_info(**override)) is None


def test_incomplete_filters() -> None:
    assert not ExchangeFilters(tick_size=0.0, step_size=0.1, min_qty=0, min_notional=0).is_complete()
    assert not ExchangeFilters(tick_size=0.1, step_size=float("nan"), min_qty=0, min_notional=0).is_complete()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("OK", MarketPosture.OK),
        ("caution", MarketPosture.CAUTION),
        ("NO_TRADE", MarketPosture.NO_TRADE),
        ("NO-TRADE", MarketPosture.NO_TRADE),
        ("", MarketPosture.NO_TRADE),
        ("bullish", MarketPosture.NO_TRADE),
    ],
)
def test_posture_parse_is_fail_closed(raw: str, expected: MarketPosture) -> None:
    assert MarketPosture.parse(raw) == expected


def test_side_ordering() -> None:
    assert side_ordering_ok(Side.LONG, entry=100, sl=98, tp1=103, tp2=103)
    assert not side_ordering_ok(Side.LONG, entry=100, sl=100, tp1=103, tp2=106)
    assert side_ordering_ok(Side.SHORT, entry=100, sl=102, tp1=95, tp2=97)
    assert not side_ordering_ok(Side.SHORT, entry=100, sl=102, tp1=98, tp2=97)
    assert not side_ordering_ok("FLAT", entry=100, sl=98, tp1=103, tp2=106)


def test_final_pick_refuses_bad_ordering() -> None:
    with pytest.raises(ValueError, match="out of order"):
        FinalPick(
            symbol="BTCUSDT",
            side=Side.LONG,
            entry=100,
            sl=101,
            tp1=103,
            tp2=106,
            expiry_minutes=60,
            risk_pct=0.5,
        )


def test_pick_payload_defaults_on_conversion() -> None:
    p = FinalPickPayload.model_validate(
        {"symbol": "ETHUSDT", "side": "SHORT", "entry": 100, "sl": 102, "tp1": 96, "tp2": 97}
    )
    pick = p.to_pick(default_risk_pct=0.25)
    assert pick.risk_pct == 0.25
    assert pick.leverage_hint == 1.0
    assert pick.expiry_minutes == 60


def test_fail_closed_decision() -> None:
    d = MarketDecision.fail_closed()
    assert d.market_posture == MarketPosture.NO_TRADE
    assert d.posture == "RISK-OFF"
    assert d.reasons == ["gpt_error:http"]
    assert d.risk_cap.risk_per_trade_max == 0


def test_console_payload_aliases_and_state() -> None:
    payload = OrdersConsolePayload.model_validate(
        {
            "open_orders": [
                {"orderId": 5, "symbol": "BTCUSDT", "side": "SELL", "type": "STOP_MARKET", "stopPrice": "97.5", "closePosition": True}
            ],
            "positions": [{"symbol": "BTCUSDT", "size": 0.5, "entryPrice": 100, "unrealizedPnl": -1.5}],
            "waiting": [{"symbol": "BTCUSDT", "tp": 106, "since": "2026-01-01T00:00:00Z", "qtyPlanned": "0.5"}],
            "binance_usage": {"weight1m_used": 120, "weight1m_limit": 1200},
            "unknown_block": {"ignored": True},
        }
    )
    state = payload.to_state(rate_limit=RateLimitState(), fetched_at=1.0)

    [o] = state.open_orders
    assert (o.order_id, o.stop_price, o.close_position) == (5, 97.5, True)
    [p] = state.positions
    assert (p.entry_price, p.unrealized_pnl) == (100.0, -1.5)
    assert state.waiting[0].qty_planned == "0.5"
    assert payload.binance_usage is not None
    assert payload.binance_usage.weight1m_used == 120
    # close-position stop does not block, the position does
    assert state.blocked_symbols() == frozenset({"BTCUSDT"})


def test_error_kind_parse() -> None:
    assert ErrorKind.parse("post_validation") == ErrorKind.POST_VALIDATION
    assert ErrorKind.parse("nope") == ErrorKind.UNKNOWN
    assert ErrorKind.parse(None) == ErrorKind.UNKNOWN
