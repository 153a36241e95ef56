"""Entrypoint for the Solana launch sniper."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import AsyncIterator, List, Optional, TextIO

from .config.settings import get_app_config
from .datalake.schemas import DiscoveryEvent, ExecutionMethod, ExecutionResult
from .datalake.storage import SQLiteStorage
from .execution.circuit_breaker import CircuitBreaker
from .ingestion.discovery import iter_discovery_events
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .strategy.sniper import LaunchSniper
from .utils.errors import SniperError

logger = get_logger(__name__)


async def _read_events(stream: TextIO) -> AsyncIterator[DiscoveryEvent]:
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            return
        for event in iter_discovery_events([line]):
            yield event


def _describe(result: ExecutionResult) -> dict:
    return {
        "side": result.side.value,
        "mint": result.mint,
        "method": result.method.value,
        "signature": result.signature,
        "amount_in": result.amount_in,
        "expected_amount_out": result.expected_amount_out,
        "dry_run": result.dry_run,
        "attempts": [
            {
                "method": attempt.method.value,
                "success": attempt.success,
                "retries": attempt.retries,
                "error_kind": attempt.error_kind,
                "error": attempt.error,
            }
            for attempt in result.attempts
        ],
    }


async def run_async(dry_run: bool, events_path: Optional[Path], wait_positions: bool) -> None:
    sniper = LaunchSniper(dry_run=dry_run or None)
    await sniper.start()
    try:
        if events_path is None:
            async for event in _read_events(sys.stdin):
                sniper.submit(event)
        else:
            with events_path.open("r", encoding="utf-8") as handle:
                async for event in _read_events(handle):
                    sniper.submit(event)
        await sniper.process_events([])
        if wait_positions:
            await sniper.wait_for_positions()
    finally:
        await sniper.shutdown()


async def buy_async(dry_run: bool, mint: str, amount_sol: Optional[float], platform: str, method: Optional[str]) -> dict:
    sniper = LaunchSniper(dry_run=dry_run or None)
    await sniper.start(watch_config=False)
    try:
        preferred = ExecutionMethod(method) if method else None
        result = await sniper.buy(mint, amount_sol, platform=platform, preferred_method=preferred)
        return _describe(result)
    finally:
        await sniper.shutdown()


async def sell_async(dry_run: bool, mint: str, fraction: float) -> dict:
    sniper = LaunchSniper(dry_run=dry_run or None)
    try:
        result = await sniper.sell(mint, fraction)
        return _describe(result)
    finally:
        await sniper.shutdown()


async def status_async() -> dict:
    sniper = LaunchSniper(dry_run=True)
    try:
        return sniper.status()
    finally:
        await sniper.shutdown()


def reset_breaker() -> dict:
    config = get_app_config()
    breaker = CircuitBreaker(config.circuit_breaker, SQLiteStorage(config.storage.database_path))
    breaker.reset()
    return breaker.status()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Solana launch sniper")
    parser.add_argument("--dry-run", action="store_true", default=False, help="Simulate, never broadcast.")
    commands = parser.add_subparsers(dest="command", required=True)

    run_cmd = commands.add_parser("run", help="Trade launch events read as JSON lines.")
    run_cmd.add_argument("--events", type=Path, default=None, help="Event file (default: stdin).")
    run_cmd.add_argument(
        "--wait-positions",
        action="store_true",
        help="After the input ends, keep running until every position monitor finishes.",
    )

    buy_cmd = commands.add_parser("buy", help="Buy a token once, through the risk gate.")
    buy_cmd.add_argument("mint")
    buy_cmd.add_argument("--sol", type=float, default=None, help="SOL to spend (default: execution.default_buy_sol).")
    buy_cmd.add_argument("--platform", default="unknown")
    buy_cmd.add_argument("--method", choices=[method.value for method in ExecutionMethod], default=None)

    sell_cmd = commands.add_parser("sell", help="Sell part or all of an open position.")
    sell_cmd.add_argument("mint")
    sell_cmd.add_argument("--fraction", type=float, default=1.0)

    commands.add_parser("status", help="Print breaker, ledger and limiter state.")
    commands.add_parser("reset-breaker", help="Manually close the circuit breaker.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    bootstrap_observability()
    try:
        if args.command == "run":
            asyncio.run(run_async(args.dry_run, args.events, args.wait_positions))
            return 0
        if args.command == "buy":
            payload = asyncio.run(buy_async(args.dry_run, args.mint, args.sol, args.platform, args.method))
        elif args.command == "sell":
            payload = asyncio.run(sell_async(args.dry_run, args.mint, args.fraction))
        elif args.command == "status":
            payload = asyncio.run(status_async())
        else:
            payload = reset_breaker()
    except SniperError as exc:
        logger.error("%s failed: %s", args.command, exc, extra={"error_kind": type(exc).__name__})
        print(json.dumps({"error": type(exc).__name__, "message": str(exc)}), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    print(json.dumps(payload, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
