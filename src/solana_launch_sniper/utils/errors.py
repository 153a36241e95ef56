"""Error taxonomy shared by the execution pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..datalake.schemas import ExecutionAttempt


class SniperError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(SniperError):
    """Malformed request. Never retried."""


class InvalidAmountError(ValidationError):
    """Amount is zero, negative, or does not fit an unsigned 64-bit field."""


class TokenRejectedError(ValidationError):
    """A launched token failed pre-trade screening. Carries every failed check."""

    def __init__(self, mint: str, reasons: Sequence[str]) -> None:
        self.mint = mint
        self.reasons: List[str] = list(reasons)
        super().__init__(f"{mint} rejected: " + "; ".join(self.reasons))


class AddressDerivationError(SniperError):
    """No bump seed produced an off-curve program address."""


class QuoteUnavailableError(SniperError):
    """The venue has no liquidity for the pair (for example the pool does not exist yet)."""


class NetworkError(SniperError):
    """Transient transport failure. Retryable."""


class RpcTimeoutError(NetworkError):
    """An RPC call or confirmation wait exceeded its deadline. Retryable."""


class TransactionRejectedError(SniperError):
    """The cluster rejected the transaction (simulation, preflight or on-chain error)."""

    def __init__(self, message: str, *, signature: Optional[str] = None, logs: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.signature = signature
        self.logs = list(logs or [])


class RiskBlockedError(SniperError):
    """Admission denied. Carries every violated condition."""

    def __init__(self, reasons: Sequence[str]) -> None:
        self.reasons: List[str] = list(reasons)
        super().__init__("; ".join(self.reasons) or "trade blocked")


class CircuitOpenError(RiskBlockedError):
    """Admission denied because the circuit breaker is not accepting trades."""


class RetryExhaustedError(SniperError):
    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts. Last error: {last_error}")


class ExecutionFailedError(SniperError):
    """Every execution method for a swap failed.

    The message names each method that was tried, how many attempts it used and
    the error it ended with; ``last_error`` keeps the final underlying exception so
    callers can still tell a timeout from an on-chain rejection.
    """

    def __init__(
        self,
        side: str,
        mint: str,
        attempts: Sequence["ExecutionAttempt"],
        last_error: BaseException,
    ) -> None:
        self.side = side
        self.mint = mint
        self.attempts = list(attempts)
        self.last_error = last_error
        tried = ", ".join(
            f"{attempt.method.value} (retries={attempt.retries}, error={attempt.error})" for attempt in self.attempts
        )
        super().__init__(f"{side} {mint} failed on every method: {tried or 'none eligible'}")

    @property
    def error_kind(self) -> str:
        cause = self.last_error
        if isinstance(cause, RetryExhaustedError):
            cause = cause.last_error
        return type(cause).__name__


RETRYABLE_ERRORS = (NetworkError,)


__all__ = [
    "SniperError",
    "ValidationError",
    "InvalidAmountError",
    "TokenRejectedError",
    "AddressDerivationError",
    "QuoteUnavailableError",
    "NetworkError",
    "RpcTimeoutError",
    "TransactionRejectedError",
    "RiskBlockedError",
    "CircuitOpenError",
    "RetryExhaustedError",
    "ExecutionFailedError",
    "RETRYABLE_ERRORS",
]
