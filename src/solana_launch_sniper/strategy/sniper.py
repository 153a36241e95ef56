"""Process root: builds the pipeline once and drives it from discovery events."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..config.settings import AppConfig, get_app_config
from ..config.watcher import ConfigWatcher
from ..datalake.schemas import DiscoveryEvent, ExecutionMethod, ExecutionResult, Side, SwapRequest, TradeFill
from ..datalake.storage import SQLiteStorage
from ..execution.circuit_breaker import CircuitBreaker
from ..execution.dispatcher import ExecutionDispatcher
from ..execution.rate_limiter import RateLimiter
from ..execution.retry import RetryExecutor
from ..execution.solana_client import RpcGateway, SolanaRpcGateway
from ..execution.venues import AggregatorVenue, BondingCurveVenue, LaunchpadVenue, VenueAdapter
from ..execution.wallet import Wallet, load_wallet
from ..ingestion.pricing import PriceFeed
from ..ingestion.screening import TokenScreen
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import BPS_DENOMINATOR, LAMPORTS_PER_SOL, sol_to_lamports, utc_now
from ..utils.errors import RetryExhaustedError, SniperError, ValidationError
from .positions import PositionLifecycle
from .risk import RiskGate


class LaunchSniper:
    """Owns the process-wide limiter, breaker and ledger and injects them everywhere.

    Tests pass fakes for ``rpc``, ``venues`` and ``price_feed``; production builds
    the real gateway and HTTP venues from configuration.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        storage: Optional[SQLiteStorage] = None,
        rpc: Optional[RpcGateway] = None,
        wallet: Optional[Wallet] = None,
        venues: Optional[Mapping[ExecutionMethod, VenueAdapter]] = None,
        price_feed: Optional[PriceFeed] = None,
        dry_run: Optional[bool] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep=asyncio.sleep,
    ) -> None:
        self._config = config or get_app_config()
        self._dry_run = self._config.dry_run if dry_run is None else dry_run
        self._logger = get_logger(__name__)
        self._storage = storage or SQLiteStorage(self._config.storage.database_path)
        self._limiter = RateLimiter(self._config.rate_limit, sleep=sleep)
        self._retry = RetryExecutor(self._config.retry, limiter=self._limiter, sleep=sleep)
        self._breaker = CircuitBreaker(self._config.circuit_breaker, self._storage, clock=clock)
        self._gate = RiskGate(self._breaker, self._config.risk, self._storage, clock=clock)
        self._wallet = wallet or self._load_wallet()
        self._owns_rpc = rpc is None
        self._rpc: RpcGateway = rpc or SolanaRpcGateway(
            self._config.rpc, self._config.execution, limiter=self._limiter
        )
        launchpad = LaunchpadVenue(self._rpc, self._config.launchpad, self._config.execution)
        aggregator = AggregatorVenue(self._config.aggregator)
        if venues is None:
            venues = {
                ExecutionMethod.BONDING_CURVE: BondingCurveVenue(self._config.bonding_curve, self._config.execution),
                ExecutionMethod.AGGREGATOR: aggregator,
                ExecutionMethod.CONSTANT_PRODUCT: launchpad,
            }
        self._price_feed = price_feed or PriceFeed(self._rpc, launchpad, self._retry, aggregator)
        self._screen = TokenScreen(self._rpc, self._retry, self._config.screening, launchpad)
        self._dispatcher = ExecutionDispatcher(
            venues,
            self._rpc,
            self._retry,
            self._breaker,
            self._wallet,
            storage=self._storage,
            config=self._config.execution,
            dry_run=self._dry_run,
            clock=clock,
        )
        self._lifecycle = PositionLifecycle(
            self._gate,
            self._dispatcher,
            self._price_feed,
            self._config.profit_taking,
            self._config.execution,
            balance_reader=self.token_balance,
            clock=clock,
        )
        self._dispatcher.add_success_listener(self._lifecycle.on_execution)
        self._watcher: Optional[ConfigWatcher] = None
        self._event_tasks: Set[asyncio.Task] = set()
        self._started = False
        self._stopped = False

    def _load_wallet(self) -> Wallet:
        try:
            return load_wallet(self._config.wallet)
        except ValidationError:
            if not self._dry_run:
                raise
            self._logger.warning("No wallet configured; dry run will sign with a throwaway key")
            return Wallet(keypair=Keypair())

    # -- accessors -------------------------------------------------------

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def gate(self) -> RiskGate:
        return self._gate

    @property
    def dispatcher(self) -> ExecutionDispatcher:
        return self._dispatcher

    @property
    def screen(self) -> TokenScreen:
        return self._screen

    @property
    def lifecycle(self) -> PositionLifecycle:
        return self._lifecycle

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def retry(self) -> RetryExecutor:
        return self._retry

    # -- lifecycle -------------------------------------------------------

    async def token_balance(self, mint: str) -> Optional[int]:
        owner = self._wallet.public_key
        return await self._retry.run(
            "solana",
            "getTokenAccountBalance",
            lambda: self._rpc.get_token_balance(owner, Pubkey.from_string(mint)),
        )

    async def audit(self) -> List[Dict[str, Any]]:
        """Compare persisted positions with wallet balances.

        Persisted state wins; disagreements are only reported.
        """

        mismatches: List[Dict[str, Any]] = []
        for position in self._gate.positions():
            try:
                balance = await self.token_balance(position.mint)
            except RetryExhaustedError as exc:
                self._logger.warning("Could not audit %s: %s", position.mint, exc)
                continue
            if balance != position.remaining_amount:
                mismatches.append(
                    {"mint": position.mint, "persisted": position.remaining_amount, "on_chain": balance}
                )
                self._logger.warning(
                    "Persisted position for %s holds %d but wallet shows %s; keeping persisted state",
                    position.mint,
                    position.remaining_amount,
                    balance,
                )
        METRICS.gauge("audit_mismatches", len(mismatches))
        return mismatches

    async def start(self, *, watch_config: bool = True) -> None:
        if self._started:
            return
        self._started = True
        await self.audit()
        resumed = self._lifecycle.resume()
        self._logger.info(
            "Launch sniper started",
            extra={"dry_run": self._dry_run, "resumed_positions": resumed, "breaker": self._breaker.state.value},
        )
        config_file = self._config.mode.config_file
        if watch_config and config_file is not None:
            self._watcher = ConfigWatcher(config_file, poll_seconds=self._config.mode.config_poll_seconds)
            self._watcher.subscribe(self.apply_config)
            self._watcher.start()

    def apply_config(self, config: AppConfig) -> None:
        """Push reloaded limits into every running component; open positions keep running."""

        self._config = config
        self._limiter.apply_config(config.rate_limit)
        self._retry.apply_config(config.retry)
        self._breaker.apply_config(config.circuit_breaker)
        self._gate.apply_config(config.risk)
        self._screen.apply_config(config.screening)
        self._dispatcher.apply_config(config.execution)
        self._lifecycle.apply_config(config.profit_taking)

    async def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._watcher is not None:
            await self._watcher.stop()
        for task in list(self._event_tasks):
            task.cancel()
        if self._event_tasks:
            await asyncio.gather(*self._event_tasks, return_exceptions=True)
        await self._lifecycle.shutdown()
        if self._owns_rpc and isinstance(self._rpc, SolanaRpcGateway):
            await self._rpc.close()
        self._logger.info("Launch sniper stopped")

    # -- trading ---------------------------------------------------------

    def _slippage(self) -> float:
        return self._config.execution.default_slippage_bps / BPS_DENOMINATOR

    async def buy(
        self,
        mint: str,
        amount_sol: Optional[float] = None,
        *,
        platform: str = "unknown",
        preferred_method: Optional[ExecutionMethod] = None,
    ) -> ExecutionResult:
        amount_sol = amount_sol or self._config.execution.default_buy_sol
        with correlation_scope() as correlation_id:
            request = SwapRequest(
                side=Side.BUY,
                mint=mint,
                amount=sol_to_lamports(amount_sol),
                slippage=self._slippage(),
                platform=platform,
                preferred_method=preferred_method,
                correlation_id=correlation_id,
            )
            await self._gate.admit(mint, amount_sol)
            try:
                result = await self._dispatcher.execute(request)
            except BaseException:
                self._gate.release(mint)
                raise
            if self._gate.get_position(mint) is None:
                # Dry runs and untrackable fills never become positions.
                self._gate.release(mint)
            return result

    async def handle_event(self, event: DiscoveryEvent) -> ExecutionResult:
        """Discovery event to screening to admission to buy to position."""

        METRICS.increment("discovery_events")
        self._logger.info("Launch detected: %s on %s", event.mint, event.platform, extra={"developer": event.developer})
        await self._screen.check(event)
        return await self.buy(event.mint, platform=event.platform)

    async def sell(self, mint: str, fraction: float = 1.0) -> ExecutionResult:
        """Manually sell ``fraction`` of an open position outside the tier schedule."""

        if not 0.0 < fraction <= 1.0:
            raise ValidationError(f"fraction {fraction} must be in (0, 1]")
        position = self._gate.get_position(mint)
        if position is None:
            raise ValidationError(f"no open position for {mint}")
        amount = position.remaining_amount if fraction == 1.0 else math.floor(position.remaining_amount * fraction)
        with correlation_scope() as correlation_id:
            request = SwapRequest(
                side=Side.SELL,
                mint=mint,
                amount=amount,
                slippage=self._slippage(),
                platform=position.platform,
                cost_basis_sol=position.cost_per_unit * amount,
                correlation_id=correlation_id,
            )
            result = await self._dispatcher.execute(request)
            if not result.dry_run:
                received = result.expected_amount_out
                self._gate.record_trade(
                    TradeFill(
                        side=Side.SELL,
                        mint=mint,
                        token_amount=amount,
                        sol_amount=(received or 0) / LAMPORTS_PER_SOL,
                        price=(received / amount) if received else position.entry_price,
                        signature=result.signature,
                        platform=position.platform,
                    )
                )
            return result

    async def _handle_safely(self, event: DiscoveryEvent) -> None:
        try:
            await self.handle_event(event)
        except SniperError as exc:
            METRICS.increment("events_skipped", reason=type(exc).__name__)
            self._logger.warning("Launch %s not traded: %s", event.mint, exc)

    def submit(self, event: DiscoveryEvent) -> asyncio.Task:
        """Handle ``event`` in its own task so slow trades do not block discovery."""

        task = asyncio.create_task(self._handle_safely(event), name=f"event-{event.mint}")
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)
        return task

    async def process_events(self, events: Iterable[DiscoveryEvent]) -> None:
        for event in events:
            self.submit(event)
        if self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)

    async def wait_for_positions(self) -> None:
        """Block until every position monitor has finished."""

        while self._lifecycle.active_mints():
            await asyncio.sleep(self._config.profit_taking.poll_interval_seconds)

    def status(self) -> Dict[str, Any]:
        return {
            "dry_run": self._dry_run,
            "circuit_breaker": self._breaker.status(),
            "risk": self._gate.status(),
            "monitored": self._lifecycle.active_mints(),
            "rate_limiter": self._limiter.stats(),
            "retry": self._retry.stats(),
            "metrics": METRICS.snapshot(),
        }


__all__ = ["LaunchSniper"]
