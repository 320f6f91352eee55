"""perpdesk.execution.rate_limit

Exchange rate-limit tracking and ban windows.

Signals we understand:
- ``x-mbx-used-weight-1m`` header (request weight used this minute)
- HTTP 429 with ``retry-after``
- HTTP 418 / error code ``-1003`` (IP ban), optionally ``banned until <epoch ms>``
- the ``binance_usage`` block of the orders console

Ban windows only ever grow while active. A ban without an explicit deadline
lasts ``default_ban_s``.
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from perpdesk.core.client import BoundaryResponse
from perpdesk.core.exceptions import RateLimitedError
from perpdesk.core.models import ExchangeUsage
from perpdesk.core.time import from_epoch_ms
from perpdesk.core.types import RateLimitState

logger = logging.getLogger(__name__)

WEIGHT_HEADER = "x-mbx-used-weight-1m"
RETRY_AFTER_HEADER = "retry-after"

_BANNED_UNTIL = re.compile(r"banned\s+until\s+(\d{10,})", re.IGNORECASE)
_RATE_LIMITED = re.compile(r"code\"?\s*:\s*-?1003|too\s+many\s+requests|status:?\s*418", re.IGNORECASE)


def parse_banned_until(message: str) -> float | None:
    """Epoch seconds from a ``banned until <epoch ms>`` message, if present."""

    m = _BANNED_UNTIL.search(str(message or ""))
    if not m:
        return None
    return from_epoch_ms(float(m.group(1)))


def looks_rate_limited(message: str) -> bool:
    msg = str(message or "")
    return bool(_BANNED_UNTIL.search(msg) or _RATE_LIMITED.search(msg))


def _num(v: object) -> float | None:
    try:
        n = float(v)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


@dataclass(slots=True)
class RateLimitTracker:
    weight_limit_1m: float = 1200.0
    default_ban_s: float = 60.0
    clock: Callable[[], float] = field(default=time.time, repr=False)

    used_weight_1m: float | None = None
    ban_until: float | None = None
    last_429_at: float | None = None
    last_1003_at: float | None = None

    def now(self) -> float:
        return float(self.clock())

    @property
    def state(self) -> RateLimitState:
        return RateLimitState(
            used_weight_1m=self.used_weight_1m,
            weight_limit_1m=self.weight_limit_1m,
            ban_until=self.ban_until,
            last_429_at=self.last_429_at,
            last_1003_at=self.last_1003_at,
        )

    def banned(self, *, now: float | None = None) -> bool:
        return self.state.banned(self.now() if now is None else float(now))

    def remaining_s(self, *, now: float | None = None) -> int:
        return self.state.remaining_s(self.now() if now is None else float(now))

    def extend_ban(self, until: float, *, now: float | None = None) -> None:
        n = self.now() if now is None else float(now)
        if until <= n:
            return
        if self.ban_until is None or self.ban_until <= n or until > self.ban_until:
            self.ban_until = float(until)
            logger.warning("rate_limit_ban", extra={"ban_until": self.ban_until, "remaining_s": math.ceil(until - n)})

    def start_default_ban(self, *, now: float | None = None) -> None:
        n = self.now() if now is None else float(now)
        if self.ban_until is not None and self.ban_until > n:
            return
        self.extend_ban(n + self.default_ban_s, now=n)

    def clear(self) -> None:
        self.ban_until = None

    def observe(self, resp: BoundaryResponse) -> None:
        """Response hook for ``BoundaryClient``."""

        n = self.now()
        weight = _num(resp.headers.get(WEIGHT_HEADER))
        if weight is not None:
            self.used_weight_1m = weight

        if resp.status == 429:
            self.last_429_at = n
            retry_after = _num(resp.headers.get(RETRY_AFTER_HEADER))
            if retry_after is not None:
                self.extend_ban(n + max(1.0, retry_after), now=n)
            else:
                self.start_default_ban(now=n)
        elif resp.status == 418:
            self.start_default_ban(now=n)

        if isinstance(resp.body, dict):
            code = _num(resp.body.get("code"))
            if code == -1003:
                self.note_error(str(resp.body.get("msg") or resp.body.get("error") or "code:-1003"), now=n)

    def note_error(self, message: str, *, now: float | None = None) -> None:
        n = self.now() if now is None else float(now)
        msg = str(message or "")
        until = parse_banned_until(msg)
        if until is not None:
            self.last_1003_at = n
            self.extend_ban(until, now=n)
        elif _RATE_LIMITED.search(msg):
            if "1003" in msg:
                self.last_1003_at = n
            self.start_default_ban(now=n)

    def note_rate_limited(self, err: RateLimitedError, *, now: float | None = None) -> None:
        n = self.now() if now is None else float(now)
        if err.ban_until is not None:
            self.last_1003_at = n
            self.extend_ban(err.ban_until, now=n)
        else:
            self.note_error(str(err), now=n)
            if not self.banned(now=n):
                self.start_default_ban(now=n)

    def note_usage(self, usage: ExchangeUsage | None, *, now: float | None = None) -> None:
        if usage is None:
            return
        n = self.now() if now is None else float(now)
        if usage.weight1m_used is not None:
            self.used_weight_1m = float(usage.weight1m_used)
        if usage.weight1m_limit is not None and usage.weight1m_limit > 0:
            self.weight_limit_1m = float(usage.weight1m_limit)
        if usage.backoff_active and usage.backoff_remaining_sec:
            self.extend_ban(n + float(usage.backoff_remaining_sec), now=n)
