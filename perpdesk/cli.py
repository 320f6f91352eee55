"""perpdesk.cli

Command line interface entry point for perpdesk.

Design constraints:
- argparse-based.
- Lazy imports: do not import httpx/pydantic at parse time.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from perpdesk.core.config import Config

EPILOG = "Size from risk, never from hope."


@dataclass(frozen=True)
class CliContext:
    repo_root: Path
    config_path: Path | None


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record; ``extra`` fields are carried through."""

    _STD = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k not in self._STD:
                out[k] = v
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return json.dumps(out, default=str)


def configure_logging(level: str = "INFO", *, json_output: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="perpdesk",
        description="Futures trading desk: pipeline, sizing, validation, reconciliation.",
        epilog=EPILOG,
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to a config YAML file.")

    sub = parser.add_subparsers(dest="command")

    p_run = sub.add_parser("run", help="Run one pipeline pass and print the run record")
    p_run.add_argument(
        "--no-exposure",
        action="store_true",
        help="Do not poll the exchange for open exposure before selecting candidates.",
    )

    p_poll = sub.add_parser("poll", help="Run reconciliation ticks and print the local view")
    p_poll.add_argument("--ticks", type=int, default=1)

    p_size = sub.add_parser("size", help="Size a single plan against exchange filters")
    p_size.add_argument("--entry", type=float, required=True)
    p_size.add_argument("--sl", type=float, required=True)
    p_size.add_argument("--tp1", type=float, required=True)
    p_size.add_argument("--tp2", type=float, required=True)
    p_size.add_argument("--tick", type=float, required=True)
    p_size.add_argument("--step", type=float, required=True)
    p_size.add_argument("--min-qty", type=float, default=0.0)
    p_size.add_argument("--min-notional", type=float, default=0.0)
    p_size.add_argument("--equity", type=float, default=None, help="Defaults to account.equity_usdt.")
    p_size.add_argument("--risk-pct", type=float, default=None, help="Risk in percent of equity.")
    p_size.add_argument("--posture", choices=["OK", "CAUTION", "NO-TRADE"], default="OK")

    sub.add_parser("status", help="Print configuration and metrics")

    return parser


def _print_version() -> None:
    from perpdesk import __version__

    print(f"perpdesk v{__version__}")


def _load_config(ctx: CliContext) -> Config:
    from perpdesk.core.config import Config

    if ctx.config_path is not None:
        return Config.from_yaml(ctx.config_path)
    user = ctx.repo_root / "config" / "user.yaml"
    return Config.from_yaml(user) if user.exists() else Config.from_repo_defaults(ctx.repo_root)


def _cmd_run(ctx: CliContext, args: argparse.Namespace) -> int:
    import asyncio

    from perpdesk.core.client import BoundaryClient
    from perpdesk.execution.exchange import HttpExchangeApi
    from perpdesk.execution.reconciliation import ReconciliationPoller
    from perpdesk.pipeline.orchestrator import PipelineOrchestrator
    from perpdesk.pipeline.services import HttpDecisionApi, UniverseSignalService

    config = _load_config(ctx)
    configure_logging(config.logging.level, json_output=config.logging.json_output)

    async def go() -> dict[str, Any]:
        client = BoundaryClient.from_config(config.boundary.base_url, config.transport)
        try:
            exposure = None
            if not args.no_exposure:
                poller = ReconciliationPoller.from_config(config.reconciliation, api=HttpExchangeApi(client=client))
                client.add_observer(poller.tracker.observe)
                await poller.tick()
                exposure = poller.blocked_symbols
            orch = PipelineOrchestrator.from_config(
                config,
                decisions=HttpDecisionApi(client=client),
                signals=UniverseSignalService(),
                exposure=exposure,
            )
            run = await orch.run()
            return run.to_dict()
        finally:
            await client.aclose()

    record = asyncio.run(go())
    print(json.dumps(record, indent=2, default=str))
    return 0 if record["state"] != "error" else 1


def _cmd_poll(ctx: CliContext, args: argparse.Namespace) -> int:
    import asyncio

    from perpdesk.core.client import BoundaryClient
    from perpdesk.execution.exchange import HttpExchangeApi
    from perpdesk.execution.reconciliation import ReconciliationPoller

    config = _load_config(ctx)
    configure_logging(config.logging.level, json_output=config.logging.json_output)
    ticks = max(1, int(args.ticks))

    async def go() -> ReconciliationPoller:
        client = BoundaryClient.from_config(config.boundary.base_url, config.transport)
        poller = ReconciliationPoller.from_config(config.reconciliation, api=HttpExchangeApi(client=client))
        client.add_observer(poller.tracker.observe)
        try:
            for i in range(ticks):
                result = await poller.tick()
                print(f"tick {i + 1}: {result.status}")
                if i + 1 < ticks:
                    await asyncio.sleep(poller.interval_s)
        finally:
            await client.aclose()
        return poller

    poller = asyncio.run(go())
    state = poller.state
    print(f"open orders: {len(state.open_orders)}")
    for o in state.open_orders:
        print(f"  {o.symbol} #{o.order_id} {o.side} {o.type} qty={o.qty} price={o.price} stop={o.stop_price}")
    print(f"positions: {len(state.positions)}")
    for p in state.positions:
        print(f"  {p.symbol} size={p.size} entry={p.entry_price} mark={p.mark_price} upnl={p.unrealized_pnl}")
    print(f"waiting: {len(state.waiting)}")
    print(f"blocked symbols: {', '.join(sorted(poller.blocked_symbols())) or '-'}")
    if poller.last_error is not None:
        print(f"last error: {poller.last_error}", file=sys.stderr)
        return 1
    return 0


def _cmd_size(ctx: CliContext, args: argparse.Namespace) -> int:
    from perpdesk.core.types import ExchangeFilters, MarketPosture, StrategyPlan
    from perpdesk.execution.sizer import OrderSizer, risk_fraction_for

    config = _load_config(ctx)
    plan = StrategyPlan(entry=args.entry, sl=args.sl, tp1=args.tp1, tp2=args.tp2, tp3=args.tp2)
    filters = ExchangeFilters(
        tick_size=args.tick, step_size=args.step, min_qty=args.min_qty, min_notional=args.min_notional
    )
    fraction = risk_fraction_for(MarketPosture.parse(args.posture), config.policy, args.risk_pct)
    equity = args.equity if args.equity is not None else config.account.equity_usdt
    result = OrderSizer().plan(plan, risk_fraction=fraction, equity=equity, filters=filters)
    out = asdict(result) | {"valid": result.valid}
    print(json.dumps(out, indent=2))
    return 0 if result.valid else 1


def _cmd_status(ctx: CliContext, args: argparse.Namespace) -> int:
    from perpdesk.core.exceptions import ConfigError
    from perpdesk.core.metrics import REGISTRY

    try:
        config = _load_config(ctx)
    except ConfigError as e:
        print("perpdesk status")
        print(f"- config: error: {e}")
        return 1

    p = config.policy
    print("perpdesk status")
    print(f"- config dir: {config.config_dir}")
    print(f"- preset: {config.preset}")
    print(f"- boundary: {config.boundary.base_url} (universe={config.boundary.universe}, top_n={config.boundary.top_n})")
    print(
        f"- risk policy: ok={p.risk_policy.ok}% caution={p.risk_policy.caution}% no_trade={p.risk_policy.no_trade}%"
    )
    print(f"- side policy: {p.side_policy}, max leverage: {p.max_leverage}, expiry: {list(p.expiry_minutes)}")
    print(f"- transport: timeout={config.transport.timeout_s}s attempts={config.transport.max_attempts}")
    print(f"- poll interval: {config.reconciliation.poll_interval_s}s")
    for k, v in sorted(REGISTRY.snapshot().items()):
        print(f"- {k}: {v}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    ctx = CliContext(repo_root=_repo_root_from_cwd(), config_path=args.config)

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "run": _cmd_run,
        "poll": _cmd_poll,
        "size": _cmd_size,
        "status": _cmd_status,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    return int(fn(ctx, args))


if __name__ == "__main__":
    raise SystemExit(main())
