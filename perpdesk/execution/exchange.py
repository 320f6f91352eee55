"""perpdesk.execution.exchange

Exchange boundary.

The core talks to the exchange through a small HTTP backend that owns the
credentials and signing. This module provides a small, testable boundary for
it: a Protocol, the httpx implementation, and an in-memory double.
"""

from __future__ import annotations

import itertools
from collections.abc import Sequence
from typing import Any, Protocol

from pydantic import ValidationError

from perpdesk.core.client import BoundaryClient, BoundaryResponse, RetryPolicy
from perpdesk.core.exceptions import (
    ErrorKind,
    MissingCredentialsError,
    PayloadError,
    RateLimitedError,
    TransportError,
)
from perpdesk.core.models import (
    OrderEcho,
    OrdersConsolePayload,
    PlacedOrder,
    PlaceOrdersResponse,
)
from perpdesk.core.numeric import positive_finite
from perpdesk.core.types import OrderIntent, normalize_symbol
from perpdesk.execution.rate_limit import looks_rate_limited, parse_banned_until


class ExchangeApi(Protocol):
    async def place_orders(self, intents: Sequence[OrderIntent]) -> PlaceOrdersResponse: ...

    async def orders_console(self) -> OrdersConsolePayload: ...

    async def cancel_order(self, *, symbol: str, order_id: int) -> None: ...

    async def flatten(self, *, symbol: str, side: str | None = None) -> None: ...

    async def mark(self, symbol: str) -> float | None: ...


def _error_text(resp: BoundaryResponse) -> str:
    if isinstance(resp.body, dict):
        for key in ("error", "msg", "message"):
            if resp.body.get(key):
                return str(resp.body[key])
    return resp.text[:200] or f"HTTP {resp.status}"


def raise_for_exchange(resp: BoundaryResponse) -> None:
    """Map a non-2xx exchange response onto the error hierarchy."""

    if resp.ok:
        return
    msg = _error_text(resp)
    if resp.status == 401 and msg == "missing_binance_keys":
        raise MissingCredentialsError("orders_console:missing_binance_keys")
    code = resp.body.get("code") if isinstance(resp.body, dict) else None
    if resp.status in (418, 429) or str(code) == "-1003" or looks_rate_limited(msg):
        raise RateLimitedError(f"{resp.path}: HTTP {resp.status}: {msg}", ban_until=parse_banned_until(msg))
    raise TransportError(ErrorKind.HTTP, f"{resp.method} {resp.path}: HTTP {resp.status}: {msg}", status=resp.status)


class HttpExchangeApi:
    def __init__(self, *, client: BoundaryClient) -> None:
        self._client = client

    async def place_orders(self, intents: Sequence[OrderIntent]) -> PlaceOrdersResponse:
        # order placement is never retried at the transport level
        resp = await self._client.request(
            "POST",
            "/api/place_orders",
            json={"orders": [o.to_payload() for o in intents]},
            retry=RetryPolicy.never(),
        )
        if not resp.ok and not resp.json_ok:
            raise_for_exchange(resp)
        body = resp.json_or_raise()
        try:
            parsed = PlaceOrdersResponse.model_validate(body)
        except ValidationError as e:
            raise PayloadError(ErrorKind.SCHEMA, f"place_orders: {e}", status=resp.status) from e
        if not resp.ok and parsed.success:
            return parsed.model_copy(update={"success": False, "error": parsed.error or f"HTTP {resp.status}"})
        return parsed

    async def orders_console(self) -> OrdersConsolePayload:
        resp = await self._client.request("GET", "/api/orders_console")
        raise_for_exchange(resp)
        body = resp.json_or_raise()
        try:
            return OrdersConsolePayload.model_validate(body)
        except ValidationError as e:
            raise PayloadError(ErrorKind.SCHEMA, f"orders_console: {e}", status=resp.status) from e

    async def cancel_order(self, *, symbol: str, order_id: int) -> None:
        resp = await self._client.request(
            "DELETE", "/api/order", params={"symbol": symbol, "orderId": str(order_id)}
        )
        raise_for_exchange(resp)

    async def flatten(self, *, symbol: str, side: str | None = None) -> None:
        params = {"symbol": symbol}
        if side:
            params["side"] = side
        resp = await self._client.request("POST", "/api/flatten", params=params)
        raise_for_exchange(resp)

    async def mark(self, symbol: str) -> float | None:
        resp = await self._client.request("GET", "/api/mark", params={"symbol": symbol})
        if not resp.ok or not resp.json_ok or not isinstance(resp.body, dict):
            return None
        try:
            v = float(resp.body.get("mark"))
        except (TypeError, ValueError):
            return None
        return v if positive_finite(v) else None


class InMemoryExchangeApi:
    """Test-double exchange backend.

    Accepts every order at the sent prices unless told otherwise. Failures can
    be queued per call with ``fail_next``.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1000)
        self.open_orders: list[dict[str, Any]] = []
        self.positions: list[dict[str, Any]] = []
        self.waiting: list[dict[str, Any]] = []
        self.marks: dict[str, float] = {}
        self.usage: dict[str, Any] | None = None
        self.placed: list[list[OrderIntent]] = []
        self.cancelled: list[tuple[str, int]] = []
        self.flattened: list[tuple[str, str | None]] = []
        self.console_calls = 0
        self.rejects: dict[str, str] = {}
        self.echo_overrides: dict[str, dict[str, Any]] = {}
        self.defer_tp: set[str] = set()
        self._failures: dict[str, list[Exception]] = {}

    def fail_next(self, call: str, exc: Exception) -> None:
        self._failures.setdefault(call, []).append(exc)

    def _maybe_fail(self, call: str) -> None:
        queue = self._failures.get(call)
        if queue:
            raise queue.pop(0)

    async def place_orders(self, intents: Sequence[OrderIntent]) -> PlaceOrdersResponse:
        self._maybe_fail("place_orders")
        self.placed.append(list(intents))
        results: list[PlacedOrder] = []
        for o in intents:
            if o.symbol in self.rejects:
                results.append(PlacedOrder(symbol=o.symbol, status="error", error=self.rejects[o.symbol]))
                continue
            echo = {"entry": o.entry, "sl": o.sl, "tp": o.tp, **self.echo_overrides.get(o.symbol, {})}
            tp_order = None if o.symbol in self.defer_tp else OrderEcho(stop_price=echo["tp"])
            results.append(
                PlacedOrder(
                    symbol=o.symbol,
                    status="NEW",
                    entry_order=OrderEcho(price=echo["entry"]),
                    sl_order=OrderEcho(stop_price=echo["sl"]),
                    tp_order=tp_order,
                )
            )
            self.open_orders.append(
                {
                    "orderId": next(self._ids),
                    "symbol": o.symbol,
                    "side": "BUY" if str(o.side) == "LONG" else "SELL",
                    "type": "LIMIT",
                    "qty": o.qty,
                    "price": o.entry,
                }
            )
        success = all(r.accepted for r in results)
        first_err = next((r.error for r in results if not r.accepted), None)
        return PlaceOrdersResponse(success=success, error=first_err, orders=results)

    async def orders_console(self) -> OrdersConsolePayload:
        self.console_calls += 1
        self._maybe_fail("orders_console")
        return OrdersConsolePayload.model_validate(
            {
                "open_orders": list(self.open_orders),
                "positions": list(self.positions),
                "waiting": list(self.waiting),
                "marks": dict(self.marks),
                "binance_usage": self.usage,
            }
        )

    async def cancel_order(self, *, symbol: str, order_id: int) -> None:
        self._maybe_fail("cancel_order")
        self.cancelled.append((symbol, int(order_id)))
        self.open_orders = [o for o in self.open_orders if int(o["orderId"]) != int(order_id)]

    async def flatten(self, *, symbol: str, side: str | None = None) -> None:
        self._maybe_fail("flatten")
        self.flattened.append((symbol, side))
        sym = normalize_symbol(symbol)
        self.positions = [p for p in self.positions if normalize_symbol(p["symbol"]) != sym]

    async def mark(self, symbol: str) -> float | None:
        self._maybe_fail("mark")
        return self.marks.get(symbol)
