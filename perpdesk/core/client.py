"""perpdesk.core.client

Shared HTTP transport for every boundary call:
- one deadline per call (covers all attempts)
- explicit retry policy (attempts, retryable statuses, backoff)
- error kinds instead of raw httpx exceptions

Business code never retries on its own. If a call should be retried, the
policy passed here says so.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from perpdesk.core.config import TransportConfig
from perpdesk.core.exceptions import ErrorKind, PayloadError, TransportError

logger = logging.getLogger(__name__)

ResponseObserver = Callable[["BoundaryResponse"], None]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry transient failures only.

    Delay before attempt ``n + 1`` is ``base + n * step + uniform(0, jitter)``.
    """

    max_attempts: int = 3
    retry_statuses: frozenset[int] = frozenset({502, 503, 504})
    base_s: float = 0.4
    step_s: float = 0.3
    jitter_s: float = 0.2

    def delay_s(self, attempt: int, rng: random.Random | None = None) -> float:
        r = rng or random
        return self.base_s + attempt * self.step_s + r.uniform(0.0, self.jitter_s)

    def should_retry_status(self, status: int, attempt: int) -> bool:
        return status in self.retry_statuses and attempt + 1 < self.max_attempts

    @classmethod
    def from_config(cls, cfg: TransportConfig) -> RetryPolicy:
        return cls(
            max_attempts=int(cfg.max_attempts),
            retry_statuses=frozenset(int(s) for s in cfg.retry_statuses),
            base_s=float(cfg.backoff_base_s),
            step_s=float(cfg.backoff_step_s),
            jitter_s=float(cfg.backoff_jitter_s),
        )

    @classmethod
    def never(cls) -> RetryPolicy:
        return cls(max_attempts=1)


@dataclass(frozen=True, slots=True)
class BoundaryResponse:
    method: str
    path: str
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    text: str = ""
    json_ok: bool = False
    latency_ms: int = 0
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json_or_raise(self) -> Any:
        if not self.json_ok:
            raise PayloadError(ErrorKind.INVALID_JSON, f"{self.method} {self.path}: body is not JSON", status=self.status)
        return self.body


class BoundaryClient:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float = 30.0,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        observers: list[ResponseObserver] | None = None,
    ) -> None:
        self.timeout_s = float(timeout_s)
        self.retry = retry or RetryPolicy()
        self._sleep = sleep
        self._rng = rng
        self._observers = list(observers or [])
        self._client = httpx.AsyncClient(base_url=base_url, timeout=self.timeout_s, transport=transport)

    @classmethod
    def from_config(
        cls, base_url: str, cfg: TransportConfig, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> BoundaryClient:
        return cls(
            base_url=base_url,
            timeout_s=cfg.timeout_s,
            retry=RetryPolicy.from_config(cfg),
            transport=transport,
        )

    def add_observer(self, observer: ResponseObserver) -> None:
        self._observers.append(observer)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        timeout_s: float | None = None,
        retry: RetryPolicy | None = None,
        **kwargs: Any,
    ) -> BoundaryResponse:
        """Send one logical request. Non-2xx responses are returned, not raised.

        Raises:
            TransportError: ``timeout`` when the deadline passes, ``http`` when
                connection failures exhaust the retry policy.
        """

        deadline = float(timeout_s) if timeout_s is not None else self.timeout_s
        policy = retry or self.retry
        started = time.perf_counter()
        try:
            async with asyncio.timeout(deadline):
                resp = await self._attempts(method, path, policy, started, **kwargs)
        except TimeoutError as e:
            raise TransportError(ErrorKind.TIMEOUT, f"{method} {path}: timeout after {deadline:.0f}s") from e

        for observe in self._observers:
            observe(resp)
        return resp

    async def _attempts(
        self, method: str, path: str, policy: RetryPolicy, started: float, **kwargs: Any
    ) -> BoundaryResponse:
        last_exc: Exception | None = None
        for attempt in range(policy.max_attempts):
            try:
                raw = await self._client.request(method, path, **kwargs)
            except httpx.TimeoutException:
                # deadline semantics belong to the caller's timeout, not to retries
                raise TimeoutError from None
            except httpx.TransportError as e:
                last_exc = e
                logger.warning(
                    "boundary_connection_failed",
                    extra={"method": method, "path": path, "attempt": attempt + 1, "error": str(e)},
                )
            else:
                if policy.should_retry_status(raw.status_code, attempt):
                    logger.warning(
                        "boundary_transient_status",
                        extra={"method": method, "path": path, "attempt": attempt + 1, "status": raw.status_code},
                    )
                else:
                    return self._wrap(method, path, raw, started, attempt + 1)

            if attempt + 1 < policy.max_attempts:
                await self._sleep(policy.delay_s(attempt, self._rng))

        # only a connection failure on the last attempt gets here
        raise TransportError(ErrorKind.HTTP, f"{method} {path}: connection failed: {last_exc}")

    @staticmethod
    def _wrap(method: str, path: str, raw: httpx.Response, started: float, attempts: int) -> BoundaryResponse:
        body: Any = None
        json_ok = False
        try:
            body = raw.json()
            json_ok = True
        except ValueError:
            pass
        return BoundaryResponse(
            method=method.upper(),
            path=path,
            status=raw.status_code,
            headers={k.lower(): v for k, v in raw.headers.items()},
            body=body,
            text=raw.text,
            json_ok=json_ok,
            latency_ms=int((time.perf_counter() - started) * 1000),
            attempts=attempts,
        )

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        expected: type | tuple[type, ...] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Request, require 2xx, parse JSON.

        - non-2xx -> ``http``
        - unparsable body -> ``invalid_json``
        - JSON of the wrong top-level type -> ``schema``
        """

        resp = await self.request(method, path, **kwargs)
        if not resp.ok:
            raise TransportError(ErrorKind.HTTP, f"{method} {path}: HTTP {resp.status}", status=resp.status)
        data = resp.json_or_raise()
        if expected is not None and not isinstance(data, expected):
            raise PayloadError(ErrorKind.SCHEMA, f"{method} {path}: unexpected body type {type(data).__name__}")
        return data
