import asyncio
import json
from pathlib import Path

import pytest
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.keypair import Keypair

from solana_launch_sniper.config.settings import (
    AggregatorConfig,
    BondingCurveConfig,
    CircuitBreakerConfig,
    ExecutionConfig,
    RetryConfig,
    RetryPolicy,
)
from solana_launch_sniper.datalake.schemas import ExecutionMethod, Side, SwapRequest
from solana_launch_sniper.datalake.storage import SQLiteStorage
from solana_launch_sniper.execution.circuit_breaker import CircuitBreaker
from solana_launch_sniper.execution.dispatcher import ExecutionDispatcher
from solana_launch_sniper.execution.retry import RetryExecutor
from solana_launch_sniper.execution.solana_client import SimulationResult
from solana_launch_sniper.execution.venues.aggregator import AggregatorVenue
from solana_launch_sniper.execution.venues.base import VenueQuote
from solana_launch_sniper.execution.venues.bonding_curve import BondingCurveVenue
from solana_launch_sniper.execution.wallet import Wallet
from solana_launch_sniper.utils.errors import (
    ExecutionFailedError,
    NetworkError,
    QuoteUnavailableError,
    RpcTimeoutError,
    TransactionRejectedError,
    ValidationError,
)


class FakeRpc:
    def __init__(self, simulate_errors=(), confirm_errors=()):
        self.simulate_errors = list(simulate_errors)
        self.confirm_errors = list(confirm_errors)
        self.simulated = []
        self.sent = []
        self.confirmed = []

    async def get_account_data(self, address):
        return None

    async def get_latest_blockhash(self):
        return Hash.default()

    async def simulate(self, transaction):
        self.simulated.append(transaction)
        if self.simulate_errors:
            error = self.simulate_errors.pop(0)
            if error is not None:
                raise error
        return SimulationResult(units_consumed=1_000)

    async def send_raw(self, transaction):
        self.sent.append(transaction)
        return f"sig-{transaction}"

    async def confirm(self, signature, timeout):
        self.confirmed.append(signature)
        if self.confirm_errors:
            error = self.confirm_errors.pop(0)
            if error is not None:
                raise error

    async def get_token_balance(self, owner, mint):
        return None


class FakeVenue:
    def __init__(self, method, *, eligible=True, quote_errors=(), build_errors=(), out=1_000):
        self.method = method
        self.name = method.value
        self.eligible = eligible
        self.quote_errors = list(quote_errors)
        self.build_errors = list(build_errors)
        self.out = out
        self.quotes = 0
        self.builds = 0

    def supports(self, request):
        return self.eligible

    async def quote(self, request):
        self.quotes += 1
        if self.quote_errors:
            error = self.quote_errors.pop(0)
            if error is not None:
                raise error
        return VenueQuote(method=self.method, venue=self.name, amount_in=request.amount, expected_amount_out=self.out)

    async def build(self, request, quote, wallet):
        self.builds += 1
        if self.build_errors:
            error = self.build_errors.pop(0)
            if error is not None:
                raise error
        return f"{self.name}-tx{self.builds}"


def _request(side=Side.BUY, platform="letsbonk", **kwargs):
    return SwapRequest(side=side, mint=str(Pubkey.new_unique()), amount=100_000_000, slippage=0.05, platform=platform, **kwargs)


def _dispatcher(venues, rpc=None, *, storage=None, dry_run=False, max_retries=3, simulate=True):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    retry = RetryExecutor(
        RetryConfig(default=RetryPolicy(max_retries=max_retries, base_delay=0.5, jitter=0.0), apis={}),
        sleep=fake_sleep,
    )
    breaker = CircuitBreaker(CircuitBreakerConfig(error_threshold=2))
    dispatcher = ExecutionDispatcher(
        {venue.method: venue for venue in venues},
        rpc or FakeRpc(),
        retry,
        breaker,
        Wallet(keypair=Keypair()),
        storage=storage,
        config=ExecutionConfig(simulate_before_send=simulate),
        dry_run=dry_run,
    )
    return dispatcher, breaker, sleeps


def _all_venues(bonding_eligible=True, **overrides):
    return [
        overrides.get("bonding") or FakeVenue(ExecutionMethod.BONDING_CURVE, eligible=bonding_eligible),
        overrides.get("aggregator") or FakeVenue(ExecutionMethod.AGGREGATOR),
        overrides.get("launchpad") or FakeVenue(ExecutionMethod.CONSTANT_PRODUCT),
    ]


def test_plan_follows_preference_order():
    dispatcher, _, _ = _dispatcher(_all_venues())
    assert dispatcher.plan(_request()) == [
        ExecutionMethod.BONDING_CURVE,
        ExecutionMethod.AGGREGATOR,
        ExecutionMethod.CONSTANT_PRODUCT,
    ]
    ineligible, _, _ = _dispatcher(_all_venues(bonding_eligible=False))
    assert ineligible.plan(_request()) == [ExecutionMethod.AGGREGATOR, ExecutionMethod.CONSTANT_PRODUCT]
    assert dispatcher.plan(_request(preferred_method=ExecutionMethod.CONSTANT_PRODUCT)) == [
        ExecutionMethod.CONSTANT_PRODUCT,
        ExecutionMethod.AGGREGATOR,
        ExecutionMethod.BONDING_CURVE,
    ]


def test_method_exhausts_its_retries_before_falling_back():
    aggregator = FakeVenue(ExecutionMethod.AGGREGATOR, quote_errors=[NetworkError("503")] * 3)
    rpc = FakeRpc()
    dispatcher, breaker, sleeps = _dispatcher(_all_venues(bonding_eligible=False, aggregator=aggregator), rpc)

    result = asyncio.run(dispatcher.execute(_request()))

    assert aggregator.quotes == 3
    assert sleeps == [0.5, 1.0]
    assert result.method == ExecutionMethod.CONSTANT_PRODUCT
    assert result.signature == "sig-constant_product-tx1"
    assert [attempt.method for attempt in result.attempts] == [
        ExecutionMethod.AGGREGATOR,
        ExecutionMethod.CONSTANT_PRODUCT,
    ]
    failed = result.attempts[0]
    assert not failed.success and failed.retries == 2 and failed.error_kind == "NetworkError"
    assert len(rpc.sent) == 1
    assert breaker.snapshot().daily_trades == 1


def test_rejection_is_not_retried_but_falls_back():
    rpc = FakeRpc(simulate_errors=[TransactionRejectedError("slippage exceeded")])
    dispatcher, breaker, sleeps = _dispatcher(_all_venues(bonding_eligible=False), rpc)

    result = asyncio.run(dispatcher.execute(_request()))

    assert result.method == ExecutionMethod.CONSTANT_PRODUCT
    assert sleeps == []
    assert result.attempts[0].error_kind == "TransactionRejectedError"
    assert result.attempts[0].retries == 0
    assert rpc.sent == ["constant_product-tx1"]


def test_confirm_timeout_retries_with_a_fresh_transaction():
    rpc = FakeRpc(confirm_errors=[RpcTimeoutError("not confirmed")])
    aggregator = FakeVenue(ExecutionMethod.AGGREGATOR)
    dispatcher, _, _ = _dispatcher([aggregator], rpc)

    result = asyncio.run(dispatcher.execute(_request()))

    assert result.method == ExecutionMethod.AGGREGATOR
    assert aggregator.builds == 2
    assert rpc.sent == ["aggregator-tx1", "aggregator-tx2"]
    assert result.attempts[0].retries == 1


def test_total_failure_reports_every_method_and_keeps_the_error_kind():
    venues = [
        FakeVenue(ExecutionMethod.BONDING_CURVE, quote_errors=[RpcTimeoutError("slow")] * 2),
        FakeVenue(ExecutionMethod.AGGREGATOR, quote_errors=[QuoteUnavailableError("no route")]),
        FakeVenue(ExecutionMethod.CONSTANT_PRODUCT, quote_errors=[RpcTimeoutError("slow")] * 2),
    ]
    dispatcher, breaker, _ = _dispatcher(venues, max_retries=2)

    with pytest.raises(ExecutionFailedError) as excinfo:
        asyncio.run(dispatcher.execute(_request()))

    error = excinfo.value
    assert error.error_kind == "RpcTimeoutError"
    assert [attempt.method for attempt in error.attempts] == [
        ExecutionMethod.BONDING_CURVE,
        ExecutionMethod.AGGREGATOR,
        ExecutionMethod.CONSTANT_PRODUCT,
    ]
    assert "bonding_curve (retries=1" in str(error)
    assert "constant_product (retries=1" in str(error)
    snapshot = breaker.snapshot()
    assert snapshot.consecutive_failures == 1
    assert snapshot.daily_trades == 1


def test_no_liquidity_anywhere_is_a_skip_not_a_failure():
    venues = [
        FakeVenue(ExecutionMethod.AGGREGATOR, quote_errors=[QuoteUnavailableError("no route")]),
        FakeVenue(ExecutionMethod.CONSTANT_PRODUCT, quote_errors=[QuoteUnavailableError("no pool")]),
    ]
    dispatcher, breaker, _ = _dispatcher(venues)

    with pytest.raises(QuoteUnavailableError):
        asyncio.run(dispatcher.execute(_request(platform="raydium")))
    assert breaker.snapshot().consecutive_failures == 0
    assert breaker.snapshot().daily_trades == 0


def test_validation_errors_propagate_untouched():
    aggregator = FakeVenue(ExecutionMethod.AGGREGATOR, build_errors=[ValidationError("wallet not a signer")])
    launchpad = FakeVenue(ExecutionMethod.CONSTANT_PRODUCT)
    dispatcher, breaker, _ = _dispatcher([aggregator, launchpad])

    with pytest.raises(ValidationError):
        asyncio.run(dispatcher.execute(_request()))
    assert launchpad.quotes == 0
    assert breaker.snapshot().daily_trades == 0


def test_dry_run_simulates_without_broadcasting():
    rpc = FakeRpc()
    dispatcher, breaker, _ = _dispatcher([FakeVenue(ExecutionMethod.AGGREGATOR)], rpc, dry_run=True, simulate=False)

    result = asyncio.run(dispatcher.execute(_request()))

    assert result.dry_run
    assert result.signature is None
    assert rpc.simulated == ["aggregator-tx1"]
    assert rpc.sent == []
    assert breaker.snapshot().daily_trades == 0


def test_success_listeners_and_attempt_log(tmp_path: Path):
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    aggregator = FakeVenue(ExecutionMethod.AGGREGATOR, quote_errors=[TransactionRejectedError("stale route")])
    dispatcher, _, _ = _dispatcher([aggregator, FakeVenue(ExecutionMethod.CONSTANT_PRODUCT)], storage=storage)
    seen = []

    async def listener(request, result):
        seen.append((request.mint, result.method))

    dispatcher.add_success_listener(listener)
    request = _request()
    asyncio.run(dispatcher.execute(request))

    assert seen == [(request.mint, ExecutionMethod.CONSTANT_PRODUCT)]
    logged = storage.list_attempts(mint_address=request.mint)
    assert [(attempt.method, attempt.success) for attempt in logged] == [
        (ExecutionMethod.CONSTANT_PRODUCT, True),
        (ExecutionMethod.AGGREGATOR, False),
    ]


def test_sell_profit_is_reported_to_the_breaker():
    launchpad = FakeVenue(ExecutionMethod.CONSTANT_PRODUCT, out=100_000_000)
    dispatcher, breaker, _ = _dispatcher([launchpad])
    breaker.record_failure(loss=0.3)

    asyncio.run(dispatcher.execute(_request(side=Side.SELL, cost_basis_sol=0.05)))

    # 0.1 SOL received against 0.05 cost basis offsets 0.05 of the daily loss.
    assert breaker.snapshot().daily_loss == pytest.approx(0.25)


class FakeResponse:
    def __init__(self, status_code=200, content=b""):
        self.status_code = status_code
        self.content = content
        self.text = content.decode("utf-8", "replace")

    def raise_for_status(self):
        return None

    def json(self):
        return json.loads(self.text)


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = 0

    def post(self, url, **kwargs):
        self.calls += 1
        return self.response

    def request(self, verb, url, **kwargs):
        self.calls += 1
        return self.response


def test_undecodable_bonding_curve_transaction_falls_back():
    session = FakeSession(FakeResponse(content=b"<html>rate limited</html>"))
    bonding = BondingCurveVenue(BondingCurveConfig(), ExecutionConfig(), session=session)
    aggregator = FakeVenue(ExecutionMethod.AGGREGATOR)
    dispatcher, breaker, _ = _dispatcher([bonding, aggregator, FakeVenue(ExecutionMethod.CONSTANT_PRODUCT)])

    result = asyncio.run(dispatcher.execute(_request(platform="pumpfun")))

    assert result.method == ExecutionMethod.AGGREGATOR
    assert session.calls == 1
    assert result.attempts[0].error_kind == "TransactionRejectedError"
    assert breaker.snapshot().consecutive_failures == 0


def test_non_json_aggregator_body_is_retried_then_falls_back():
    session = FakeSession(FakeResponse(content=b"<html>bad gateway</html>"))
    aggregator = AggregatorVenue(AggregatorConfig(), session=session)
    launchpad = FakeVenue(ExecutionMethod.CONSTANT_PRODUCT)
    dispatcher, _, sleeps = _dispatcher([aggregator, launchpad], max_retries=2)

    result = asyncio.run(dispatcher.execute(_request(platform="raydium")))

    assert result.method == ExecutionMethod.CONSTANT_PRODUCT
    assert session.calls == 2
    assert sleeps == [0.5]
    assert result.attempts[0].error_kind == "NetworkError"


def test_unexpected_errors_are_charged_to_the_breaker():
    aggregator = FakeVenue(ExecutionMethod.AGGREGATOR, build_errors=[RuntimeError("venue bug")])
    dispatcher, breaker, _ = _dispatcher([aggregator, FakeVenue(ExecutionMethod.CONSTANT_PRODUCT)])

    with pytest.raises(RuntimeError):
        asyncio.run(dispatcher.execute(_request()))
    snapshot = breaker.snapshot()
    assert snapshot.consecutive_failures == 1
    assert snapshot.daily_trades == 1
