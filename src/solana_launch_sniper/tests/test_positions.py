import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from solders.pubkey import Pubkey

from solana_launch_sniper.config.settings import CircuitBreakerConfig, ExecutionConfig, ProfitTakingConfig, RiskConfig
from solana_launch_sniper.datalake.schemas import ExecutionMethod, ExecutionResult, Side, SwapRequest, TradeFill
from solana_launch_sniper.execution.circuit_breaker import CircuitBreaker
from solana_launch_sniper.strategy.positions import MonitorOutcome, PositionLifecycle
from solana_launch_sniper.strategy.risk import RiskGate
from solana_launch_sniper.utils.errors import ExecutionFailedError


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeFeed:
    def __init__(self, *prices, default=None):
        self.prices = list(prices)
        self.default = default

    async def price(self, mint):
        if self.prices:
            return self.prices.pop(0)
        return self.default


class FakeDispatcher:
    """Fills every sell at 10 lamports per token unless told to fail."""

    def __init__(self, failures=0):
        self.requests = []
        self.failures = failures

    async def execute(self, request):
        self.requests.append(request)
        if self.failures:
            self.failures -= 1
            raise ExecutionFailedError(request.side.value, request.mint, [], RuntimeError("route vanished"))
        return ExecutionResult(
            side=request.side,
            mint=request.mint,
            method=ExecutionMethod.AGGREGATOR,
            signature=f"sig{len(self.requests)}",
            amount_in=request.amount,
            expected_amount_out=request.amount * 10,
        )


def _lifecycle(feed, dispatcher=None, *, balance_reader=None, **overrides):
    clock = Clock()
    gate = RiskGate(CircuitBreaker(CircuitBreakerConfig(), clock=clock), RiskConfig(), clock=clock)
    settings = {"poll_interval_seconds": 0.01, "staleness_seconds": 600.0}
    settings.update(overrides)
    lifecycle = PositionLifecycle(
        gate,
        dispatcher or FakeDispatcher(),
        feed,
        ProfitTakingConfig(**settings),
        ExecutionConfig(),
        balance_reader=balance_reader,
        clock=clock,
    )
    return lifecycle, gate, clock


def _open(gate, tokens=1_000_000, sol=0.1, price=1.0):
    mint = str(Pubkey.new_unique())
    gate.record_trade(TradeFill(side=Side.BUY, mint=mint, token_amount=tokens, sol_amount=sol, price=price))
    return mint


def test_each_tier_fires_exactly_once():
    dispatcher = FakeDispatcher()
    lifecycle, gate, _ = _lifecycle(FakeFeed(5.0, 10.0, 50.0, 100.0, 150.0), dispatcher)
    mint = _open(gate)

    outcomes = [asyncio.run(lifecycle.check(mint)) for _ in range(4)]

    assert outcomes == [
        MonitorOutcome.CONTINUE,
        MonitorOutcome.CONTINUE,
        MonitorOutcome.CONTINUE,
        MonitorOutcome.TIERS_COMPLETE,
    ]
    assert [request.amount for request in dispatcher.requests] == [300_000, 350_000]
    assert all(request.side == Side.SELL for request in dispatcher.requests)
    assert dispatcher.requests[0].cost_basis_sol == pytest.approx(0.03)
    position = gate.get_position(mint)
    assert position.tier1_sold and position.tier2_sold
    assert position.remaining_amount == 350_000
    assert position.sold_amount == 650_000

    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.TIERS_COMPLETE
    assert len(dispatcher.requests) == 2


def test_a_jump_past_both_multiples_sells_both_tiers_in_one_tick():
    dispatcher = FakeDispatcher()
    lifecycle, gate, _ = _lifecycle(FakeFeed(250.0), dispatcher)
    mint = _open(gate)

    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.TIERS_COMPLETE
    assert [request.amount for request in dispatcher.requests] == [300_000, 350_000]


def test_failed_tier_sell_is_retried_next_tick():
    dispatcher = FakeDispatcher(failures=1)
    lifecycle, gate, _ = _lifecycle(FakeFeed(default=12.0), dispatcher)
    mint = _open(gate)

    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.CONTINUE
    assert not gate.get_position(mint).tier1_sold

    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.CONTINUE
    position = gate.get_position(mint)
    assert position.tier1_sold
    assert position.remaining_amount == 700_000
    assert len(dispatcher.requests) == 2


def test_tier_that_rounds_to_zero_is_marked_without_selling():
    dispatcher = FakeDispatcher()
    lifecycle, gate, _ = _lifecycle(FakeFeed(default=20.0), dispatcher)
    mint = _open(gate, tokens=3)

    asyncio.run(lifecycle.check(mint))

    assert gate.get_position(mint).tier1_sold
    assert dispatcher.requests == []


def test_missing_prices_go_stale_after_the_window():
    lifecycle, gate, clock = _lifecycle(FakeFeed(None, 2.0, None, None))
    mint = _open(gate)

    clock.advance(500)
    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.CONTINUE
    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.CONTINUE
    assert gate.get_position(mint).last_price_check == clock()

    clock.advance(599)
    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.CONTINUE
    clock.advance(1)
    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.STALE


class BrokenFeed:
    """Raises what a non-JSON price response raises."""

    def __init__(self):
        self.calls = 0

    async def price(self, mint):
        self.calls += 1
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_pricing_errors_count_as_missed_checks():
    feed = BrokenFeed()
    lifecycle, gate, clock = _lifecycle(feed)
    mint = _open(gate)

    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.CONTINUE
    clock.advance(3600)
    assert asyncio.run(lifecycle.check(mint)) == MonitorOutcome.STALE
    assert feed.calls == 2


def test_monitor_gives_up_on_a_feed_that_keeps_failing():
    lifecycle, gate, clock = _lifecycle(BrokenFeed())
    mint = _open(gate)
    clock.advance(601)

    async def scenario():
        lifecycle.monitor(mint)
        for _ in range(200):
            if not lifecycle.is_monitoring(mint):
                break
            await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert not lifecycle.is_monitoring(mint)
    assert gate.get_position(mint) is None


def test_monitor_closes_position_when_tiers_complete():
    lifecycle, gate, _ = _lifecycle(FakeFeed(default=100.0))
    mint = _open(gate)

    async def scenario():
        lifecycle.monitor(mint)
        for _ in range(200):
            if not lifecycle.is_monitoring(mint):
                break
            await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert not lifecycle.is_monitoring(mint)
    assert gate.get_position(mint) is None


def test_shutdown_stops_monitors_but_keeps_positions():
    lifecycle, gate, _ = _lifecycle(FakeFeed(default=2.0))
    first, second = _open(gate), _open(gate)

    async def scenario():
        lifecycle.monitor(first)
        lifecycle.monitor(second)
        lifecycle.monitor(first)
        assert lifecycle.active_mints() == sorted([first, second])
        await asyncio.sleep(0.05)
        await lifecycle.shutdown()

    asyncio.run(scenario())

    assert lifecycle.active_mints() == []
    assert gate.get_position(first) is not None
    assert gate.get_position(second) is not None


def test_explicit_stop_closes_the_position():
    lifecycle, gate, _ = _lifecycle(FakeFeed(default=2.0))
    mint = _open(gate)

    async def scenario():
        lifecycle.monitor(mint)
        await asyncio.sleep(0.02)
        await lifecycle.stop(mint)

    asyncio.run(scenario())

    assert gate.get_position(mint) is None


def test_resume_skips_finished_positions():
    lifecycle, gate, _ = _lifecycle(FakeFeed(default=2.0))
    finished, running = _open(gate), _open(gate)
    gate.mark_tier_sold(finished, 1)
    gate.mark_tier_sold(finished, 2)

    async def scenario():
        count = lifecycle.resume()
        mints = lifecycle.active_mints()
        await lifecycle.shutdown()
        return count, mints

    count, mints = asyncio.run(scenario())

    assert count == 1
    assert mints == [running]
    assert gate.get_position(finished) is None


def _buy_result(request, expected_out, dry_run=False):
    return ExecutionResult(
        side=Side.BUY,
        mint=request.mint,
        method=ExecutionMethod.BONDING_CURVE,
        signature=None if dry_run else "buy-sig",
        amount_in=request.amount,
        expected_amount_out=expected_out,
        dry_run=dry_run,
    )


def test_confirmed_buy_opens_a_monitored_position():
    lifecycle, gate, _ = _lifecycle(FakeFeed(default=100.0), FakeDispatcher())
    request = SwapRequest(side=Side.BUY, mint=str(Pubkey.new_unique()), amount=100_000_000, slippage=0.05, platform="pumpfun")

    async def scenario():
        await lifecycle.on_execution(request, _buy_result(request, 1_000_000))
        monitoring = lifecycle.is_monitoring(request.mint)
        await lifecycle.shutdown()
        return monitoring

    assert asyncio.run(scenario())
    position = gate.get_position(request.mint)
    assert position.entry_price == 100.0
    assert position.entry_amount == 1_000_000
    assert position.cost_basis_sol == pytest.approx(0.1)
    assert position.platform == "pumpfun"
    assert position.entry_signature == "buy-sig"


def test_dry_run_and_untrackable_buys_do_not_open_positions():
    async def no_balance(mint):
        return None

    lifecycle, gate, _ = _lifecycle(FakeFeed(default=1.0), balance_reader=no_balance)
    request = SwapRequest(side=Side.BUY, mint=str(Pubkey.new_unique()), amount=50_000_000, slippage=0.05)
    asyncio.run(gate.admit(request.mint, 0.05))

    asyncio.run(lifecycle.on_execution(request, _buy_result(request, 1_000, dry_run=True)))
    assert gate.get_position(request.mint) is None
    assert gate.is_reserved(request.mint)

    asyncio.run(lifecycle.on_execution(request, _buy_result(request, None)))
    assert gate.get_position(request.mint) is None
    assert not gate.is_reserved(request.mint)


def test_balance_reader_fills_in_missing_token_amount():
    async def balance(mint):
        return 2_000_000

    lifecycle, gate, _ = _lifecycle(FakeFeed(None, default=None), balance_reader=balance)
    request = SwapRequest(side=Side.BUY, mint=str(Pubkey.new_unique()), amount=100_000_000, slippage=0.05)

    async def scenario():
        position = await lifecycle.open_position(request, _buy_result(request, None))
        await lifecycle.shutdown()
        return position

    position = asyncio.run(scenario())

    assert position.entry_amount == 2_000_000
    assert position.entry_price == pytest.approx(50.0)
