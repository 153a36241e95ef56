"""Multi-method swap execution with ordered fallback."""

from __future__ import annotations

import time
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from solders.transaction import VersionedTransaction

from ..config.settings import ExecutionConfig, get_app_config
from ..datalake.schemas import ExecutionAttempt, ExecutionMethod, ExecutionResult, Side, SwapRequest
from ..datalake.storage import SQLiteStorage
from ..monitoring.logger import current_correlation_id, get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import LAMPORTS_PER_SOL, utc_now
from ..utils.errors import (
    ExecutionFailedError,
    QuoteUnavailableError,
    RetryExhaustedError,
    TransactionRejectedError,
    ValidationError,
)
from .circuit_breaker import CircuitBreaker
from .retry import RetryExecutor
from .solana_client import RpcGateway
from .venues.base import VenueAdapter, VenueQuote
from .wallet import Wallet

# Next methods to try when a method is abandoned.
FALLBACKS: Dict[ExecutionMethod, Tuple[ExecutionMethod, ...]] = {
    ExecutionMethod.BONDING_CURVE: (ExecutionMethod.AGGREGATOR, ExecutionMethod.CONSTANT_PRODUCT),
    ExecutionMethod.AGGREGATOR: (ExecutionMethod.CONSTANT_PRODUCT, ExecutionMethod.BONDING_CURVE),
    ExecutionMethod.CONSTANT_PRODUCT: (ExecutionMethod.AGGREGATOR, ExecutionMethod.BONDING_CURVE),
}

# Retry policy key per method.
METHOD_APIS: Dict[ExecutionMethod, str] = {
    ExecutionMethod.BONDING_CURVE: "pumpportal",
    ExecutionMethod.AGGREGATOR: "jupiter",
    ExecutionMethod.CONSTANT_PRODUCT: "launchpad",
}

SuccessListener = Callable[[SwapRequest, ExecutionResult], Awaitable[None]]


class DispatchPhase(str, Enum):
    QUOTING = "quoting"
    BUILDING = "building"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExecutionDispatcher:
    """Routes a swap through its methods in preference order.

    Each method gets the full retry budget of its API policy; only when that is
    spent (or the chain rejects the transaction) does the next method get a turn.
    The terminal outcome of every request is reported to the circuit breaker once;
    successes are also handed to the registered listeners.
    """

    def __init__(
        self,
        venues: Mapping[ExecutionMethod, VenueAdapter],
        rpc: RpcGateway,
        retry: RetryExecutor,
        breaker: CircuitBreaker,
        wallet: Wallet,
        *,
        storage: Optional[SQLiteStorage] = None,
        config: Optional[ExecutionConfig] = None,
        dry_run: bool = False,
        clock=utc_now,
    ) -> None:
        self._venues = dict(venues)
        self._rpc = rpc
        self._retry = retry
        self._breaker = breaker
        self._wallet = wallet
        self._storage = storage
        self._config = config or get_app_config().execution
        self._dry_run = dry_run
        self._clock = clock
        self._listeners: List[SuccessListener] = []
        self._logger = get_logger(__name__)

    def apply_config(self, config: ExecutionConfig) -> None:
        self._config = config

    def add_success_listener(self, listener: SuccessListener) -> None:
        self._listeners.append(listener)

    def plan(self, request: SwapRequest) -> List[ExecutionMethod]:
        """Ordered, de-duplicated list of eligible methods for the request."""

        bonding = self._venues.get(ExecutionMethod.BONDING_CURVE)
        bonding_eligible = bonding is not None and bonding.supports(request)
        primary = request.preferred_method
        if primary is None:
            primary = ExecutionMethod.BONDING_CURVE if bonding_eligible else ExecutionMethod.AGGREGATOR
        chain: List[ExecutionMethod] = []
        for method in (primary, *FALLBACKS[primary]):
            venue = self._venues.get(method)
            if venue is None or method in chain or not venue.supports(request):
                continue
            chain.append(method)
        return chain

    def _set_phase(self, request: SwapRequest, method: ExecutionMethod, phase: DispatchPhase) -> None:
        self._logger.debug(
            "%s %s via %s: %s",
            request.side.value,
            request.mint,
            method.value,
            phase.value,
            extra={"phase": phase.value, "method": method.value},
        )

    async def _attempt(
        self,
        venue: VenueAdapter,
        request: SwapRequest,
        signer: Wallet,
    ) -> Tuple[Optional[str], VenueQuote]:
        method = venue.method
        self._set_phase(request, method, DispatchPhase.QUOTING)
        venue_quote = await venue.quote(request)
        self._set_phase(request, method, DispatchPhase.BUILDING)
        transaction: VersionedTransaction = await venue.build(request, venue_quote, signer)
        self._set_phase(request, method, DispatchPhase.SUBMITTING)
        if self._config.simulate_before_send or self._dry_run:
            await self._rpc.simulate(transaction)
        if self._dry_run:
            return None, venue_quote
        signature = await self._rpc.send_raw(transaction)
        self._set_phase(request, method, DispatchPhase.CONFIRMING)
        await self._rpc.confirm(signature, self._config.confirm_timeout_seconds)
        return signature, venue_quote

    def _finish(self, attempt: ExecutionAttempt) -> None:
        attempt.finished_at = self._clock()
        if self._storage is not None:
            self._storage.record_attempt(attempt)

    def _release_trial(self, request: SwapRequest) -> None:
        # Only buys pass admission, so only a buy can hold the half-open trial.
        if request.side == Side.BUY:
            self._breaker.release_trial()

    @staticmethod
    def _realized_pnl(request: SwapRequest, venue_quote: VenueQuote) -> Optional[float]:
        if request.side != Side.SELL or request.cost_basis_sol is None or venue_quote.expected_amount_out is None:
            return None
        return venue_quote.expected_amount_out / LAMPORTS_PER_SOL - request.cost_basis_sol

    async def execute(self, request: SwapRequest) -> ExecutionResult:
        signer = request.signer or self._wallet
        chain = self.plan(request)
        attempts: List[ExecutionAttempt] = []
        last_error: Optional[BaseException] = None
        reported = False
        started = time.perf_counter()
        try:
            for method in chain:
                venue = self._venues[method]
                attempt = ExecutionAttempt(
                    method=method,
                    side=request.side,
                    mint=request.mint,
                    started_at=self._clock(),
                    correlation_id=request.correlation_id or current_correlation_id(),
                )
                attempts.append(attempt)
                try:
                    (signature, venue_quote), tries = await self._retry.run_counted(
                        METHOD_APIS[method],
                        request.side.value,
                        lambda venue=venue: self._attempt(venue, request, signer),
                        timeout=self._config.attempt_timeout_seconds,
                    )
                except QuoteUnavailableError as exc:
                    attempt.error_kind = type(exc).__name__
                    attempt.error = str(exc)
                    self._finish(attempt)
                    self._logger.info("%s unavailable for %s: %s", method.value, request.mint, exc)
                    continue
                except RetryExhaustedError as exc:
                    attempt.retries = max(exc.attempts - 1, 0)
                    attempt.error_kind = type(exc.last_error).__name__
                    attempt.error = str(exc.last_error)
                    self._finish(attempt)
                    last_error = exc
                    self._logger.warning("%s exhausted for %s: %s", method.value, request.mint, exc)
                    continue
                except TransactionRejectedError as exc:
                    attempt.error_kind = type(exc).__name__
                    attempt.error = str(exc)
                    self._finish(attempt)
                    last_error = exc
                    self._logger.warning("%s rejected for %s: %s", method.value, request.mint, exc)
                    continue
                except Exception as exc:
                    attempt.error_kind = type(exc).__name__
                    attempt.error = str(exc)
                    self._finish(attempt)
                    if not isinstance(exc, ValidationError):
                        # Unexpected failures still count against the breaker.
                        self._breaker.record_failure(error=f"{type(exc).__name__}: {exc}")
                        reported = True
                        METRICS.increment("dispatch_failure", side=request.side.value)
                    raise

                attempt.success = True
                attempt.signature = signature
                attempt.retries = tries - 1
                self._finish(attempt)
                result = ExecutionResult(
                    side=request.side,
                    mint=request.mint,
                    method=method,
                    signature=signature,
                    amount_in=request.amount,
                    expected_amount_out=venue_quote.expected_amount_out,
                    dry_run=self._dry_run,
                    attempts=attempts,
                )
                if self._dry_run:
                    self._release_trial(request)
                else:
                    self._breaker.record_success(self._realized_pnl(request, venue_quote))
                reported = True
                METRICS.increment("dispatch_success", method=method.value, side=request.side.value)
                METRICS.observe("dispatch_latency_seconds", time.perf_counter() - started, side=request.side.value)
                self._logger.info(
                    "%s %s succeeded via %s",
                    request.side.value,
                    request.mint,
                    method.value,
                    extra={"signature": signature, "dry_run": self._dry_run, "retries": attempt.retries},
                )
                for listener in self._listeners:
                    await listener(request, result)
                return result

            if last_error is None:
                raise QuoteUnavailableError(
                    f"no execution method could price {request.mint} "
                    f"(tried: {', '.join(m.value for m in chain) or 'none eligible'})"
                )
            self._breaker.record_failure(error=str(last_error))
            reported = True
            METRICS.increment("dispatch_failure", side=request.side.value)
            raise ExecutionFailedError(request.side.value, request.mint, attempts, last_error)
        finally:
            if not reported:
                self._release_trial(request)


__all__ = ["DispatchPhase", "ExecutionDispatcher", "FALLBACKS", "METHOD_APIS"]
