"""Tiered profit taking for open positions."""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from ..config.settings import ExecutionConfig, ProfitTakingConfig, get_app_config
from ..datalake.schemas import ExecutionResult, Position, Side, SwapRequest, TradeFill
from ..execution.dispatcher import ExecutionDispatcher
from ..ingestion.pricing import PriceFeed
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import BPS_DENOMINATOR, LAMPORTS_PER_SOL, utc_now
from ..utils.errors import ExecutionFailedError, QuoteUnavailableError
from .risk import RiskGate

BalanceReader = Callable[[str], Awaitable[Optional[int]]]


class MonitorOutcome(str, Enum):
    CONTINUE = "continue"
    TIERS_COMPLETE = "tiers_complete"
    STALE = "stale"
    CLOSED = "closed"


@dataclass(slots=True)
class _Monitor:
    task: asyncio.Task
    stop: asyncio.Event


class PositionLifecycle:
    """One polling task per mint, each with its own stop event.

    A monitor ends when both tiers have sold, when no price check has succeeded
    within the staleness window, or when it is stopped. In every case the task's
    own ``finally`` removes its handle, so the handle is released exactly once.
    Tier completion and staleness close the position; shutdown leaves it
    persisted so the next run resumes it.
    """

    def __init__(
        self,
        gate: RiskGate,
        dispatcher: ExecutionDispatcher,
        price_feed: PriceFeed,
        config: Optional[ProfitTakingConfig] = None,
        execution: Optional[ExecutionConfig] = None,
        *,
        balance_reader: Optional[BalanceReader] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._gate = gate
        self._dispatcher = dispatcher
        self._price_feed = price_feed
        self._config = config or get_app_config().profit_taking
        self._execution = execution or get_app_config().execution
        self._balance_reader = balance_reader
        self._clock = clock
        self._monitors: Dict[str, _Monitor] = {}
        self._logger = get_logger(__name__)

    @property
    def config(self) -> ProfitTakingConfig:
        return self._config

    def apply_config(self, config: ProfitTakingConfig) -> None:
        self._config = config

    def active_mints(self) -> list[str]:
        return sorted(self._monitors)

    def is_monitoring(self, mint: str) -> bool:
        return mint in self._monitors

    # -- opening ---------------------------------------------------------

    async def on_execution(self, request: SwapRequest, result: ExecutionResult) -> None:
        """Dispatcher success hook: confirmed buys become positions."""

        if result.side != Side.BUY or result.dry_run:
            return
        await self.open_position(request, result)

    async def open_position(self, request: SwapRequest, result: ExecutionResult) -> Optional[Position]:
        tokens = result.expected_amount_out
        if not tokens and self._balance_reader is not None:
            tokens = await self._balance_reader(request.mint)
        if not tokens:
            self._gate.release(request.mint)
            self._logger.error("Bought %s but could not determine the token amount; not tracking it", request.mint)
            return None
        entry_price = await self._price_feed.price(request.mint)
        if not entry_price:
            entry_price = request.amount / tokens
        position = self._gate.record_trade(
            TradeFill(
                side=Side.BUY,
                mint=request.mint,
                token_amount=tokens,
                sol_amount=request.amount / LAMPORTS_PER_SOL,
                price=entry_price,
                signature=result.signature,
                platform=request.platform,
            )
        )
        self.monitor(request.mint)
        return position

    # -- monitoring ------------------------------------------------------

    def monitor(self, mint: str) -> None:
        if mint in self._monitors:
            return
        stop = asyncio.Event()
        task = asyncio.create_task(self._run(mint, stop), name=f"position-{mint}")
        self._monitors[mint] = _Monitor(task=task, stop=stop)
        METRICS.gauge("monitored_positions", len(self._monitors))

    def resume(self) -> int:
        count = 0
        for position in self._gate.positions():
            if position.tier1_sold and position.tier2_sold:
                self._gate.close_position(position.mint)
                continue
            self.monitor(position.mint)
            count += 1
        return count

    async def _run(self, mint: str, stop: asyncio.Event) -> None:
        outcome = MonitorOutcome.CONTINUE
        try:
            with correlation_scope():
                while not stop.is_set():
                    try:
                        outcome = await self.check(mint)
                    except Exception:
                        self._logger.exception("Position check for %s failed", mint)
                        outcome = MonitorOutcome.CONTINUE
                    if outcome != MonitorOutcome.CONTINUE:
                        break
                    try:
                        await asyncio.wait_for(stop.wait(), self._config.poll_interval_seconds)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._monitors.pop(mint, None)
            METRICS.gauge("monitored_positions", len(self._monitors))
        if outcome in (MonitorOutcome.TIERS_COMPLETE, MonitorOutcome.STALE):
            self._gate.close_position(mint)
        self._logger.info("Stopped monitoring %s (%s)", mint, outcome.value)

    async def check(self, mint: str) -> MonitorOutcome:
        """Run one tick: price the mint, fire any due tier, report whether to keep going."""

        position = self._gate.get_position(mint)
        if position is None:
            return MonitorOutcome.CLOSED
        try:
            price = await self._price_feed.price(mint)
        except Exception as exc:
            # Any pricing failure is a missed check and counts toward staleness.
            self._logger.warning("Pricing %s failed: %s", mint, exc)
            price = None
        now = self._clock()
        if price is None:
            last_ok = position.last_price_check or position.entry_time
            if (now - last_ok).total_seconds() >= self._config.staleness_seconds:
                METRICS.increment("positions_stale")
                self._logger.warning("No price for %s since %s, giving up", mint, last_ok.isoformat())
                return MonitorOutcome.STALE
            return MonitorOutcome.CONTINUE

        self._gate.touch_position(mint, now)
        multiple = price / position.entry_price if position.entry_price > 0 else 0.0
        cfg = self._config
        if not position.tier1_sold and multiple >= cfg.tier1_multiplier:
            await self._sell_tier(position, 1, cfg.tier1_fraction, price)
            position = self._gate.get_position(mint)
        if position is not None and position.tier1_sold and not position.tier2_sold and multiple >= cfg.tier2_multiplier:
            await self._sell_tier(position, 2, cfg.tier2_fraction, price)
            position = self._gate.get_position(mint)
        if position is None:
            return MonitorOutcome.CLOSED
        if position.tier1_sold and position.tier2_sold:
            return MonitorOutcome.TIERS_COMPLETE
        return MonitorOutcome.CONTINUE

    async def _sell_tier(self, position: Position, tier: int, fraction: float, price: float) -> None:
        amount = math.floor(position.remaining_amount * fraction)
        if amount <= 0:
            self._logger.info("Tier %d for %s rounds to zero tokens; marking it sold", tier, position.mint)
            self._gate.mark_tier_sold(position.mint, tier)
            return
        request = SwapRequest(
            side=Side.SELL,
            mint=position.mint,
            amount=amount,
            slippage=self._execution.default_slippage_bps / BPS_DENOMINATOR,
            platform=position.platform,
            cost_basis_sol=position.cost_per_unit * amount,
        )
        self._logger.info(
            "Tier %d hit for %s at %.1fx, selling %d",
            tier,
            position.mint,
            price / position.entry_price,
            amount,
        )
        try:
            result = await self._dispatcher.execute(request)
        except (ExecutionFailedError, QuoteUnavailableError) as exc:
            # Flag stays unset so the next tick tries again.
            METRICS.increment("tier_sell_failures", tier=tier)
            self._logger.warning("Tier %d sell for %s failed: %s", tier, position.mint, exc)
            return
        if result.dry_run:
            return
        received = result.expected_amount_out
        sol_amount = received / LAMPORTS_PER_SOL if received is not None else amount * price / LAMPORTS_PER_SOL
        self._gate.record_trade(
            TradeFill(
                side=Side.SELL,
                mint=position.mint,
                token_amount=amount,
                sol_amount=sol_amount,
                price=price,
                signature=result.signature,
                tier=tier,
                platform=position.platform,
            )
        )
        METRICS.increment("tier_sells", tier=tier)

    # -- stopping --------------------------------------------------------

    async def stop(self, mint: str, *, close: bool = True) -> None:
        """Stop monitoring ``mint``; an explicit stop also closes the position."""

        monitor = self._monitors.get(mint)
        if monitor is not None:
            monitor.stop.set()
            await monitor.task
        if close:
            self._gate.close_position(mint)

    async def shutdown(self) -> None:
        monitors = list(self._monitors.values())
        for monitor in monitors:
            monitor.stop.set()
        if monitors:
            await asyncio.gather(*(monitor.task for monitor in monitors), return_exceptions=True)


__all__ = ["MonitorOutcome", "PositionLifecycle"]
