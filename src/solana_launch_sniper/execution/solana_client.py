"""Async Solana RPC gateway: fetch, simulate, broadcast, confirm."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, TypeVar

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.instructions import get_associated_token_address

from ..config.settings import ExecutionConfig, RPCConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.errors import NetworkError, RpcTimeoutError, TransactionRejectedError
from .rate_limiter import RateLimiter

T = TypeVar("T")

_CONFIRMED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


@dataclass(slots=True)
class SimulationResult:
    units_consumed: Optional[int] = None
    logs: List[str] = field(default_factory=list)


class RpcGateway(Protocol):
    """Outbound RPC surface the engine depends on."""

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        """Raw account bytes, or ``None`` if the account does not exist."""

    async def get_latest_blockhash(self) -> Hash:
        ...

    async def simulate(self, transaction: VersionedTransaction) -> SimulationResult:
        """Raise ``TransactionRejectedError`` if the simulated transaction fails."""

    async def send_raw(self, transaction: VersionedTransaction) -> str:
        ...

    async def confirm(self, signature: str, timeout: float) -> None:
        """Return once committed; raise ``TransactionRejectedError`` or ``RpcTimeoutError``."""

    async def get_token_balance(self, owner: Pubkey, mint: Pubkey) -> Optional[int]:
        ...

    async def get_largest_token_balances(self, mint: Pubkey) -> List[int]:
        """Raw balances of the mint's largest holders (at most 20), biggest first."""


def _root_cause(exc: BaseException) -> BaseException:
    seen = exc
    while isinstance(seen, SolanaRpcException) and seen.__cause__ is not None:
        seen = seen.__cause__
    return seen


def classify_rpc_error(exc: BaseException, method: str, *, rejection: bool = False) -> Exception:
    """Map solana-py / httpx failures onto the engine's error taxonomy."""

    cause = _root_cause(exc)
    if isinstance(cause, (httpx.TimeoutException, asyncio.TimeoutError)):
        return RpcTimeoutError(f"{method} timed out: {cause}")
    if isinstance(cause, RPCException) and rejection:
        return TransactionRejectedError(f"{method} rejected: {cause}")
    return NetworkError(f"{method} failed: {cause}")


class SolanaRpcGateway:
    """``RpcGateway`` over solana-py's ``AsyncClient``.

    Each call is rate limited under the ``solana`` API key and bounded by the RPC
    request timeout. Retries are the caller's decision.
    """

    api_name = "solana"

    def __init__(
        self,
        config: Optional[RPCConfig] = None,
        execution: Optional[ExecutionConfig] = None,
        *,
        limiter: Optional[RateLimiter] = None,
        client: Optional[AsyncClient] = None,
    ) -> None:
        self._config = config or get_app_config().rpc
        self._execution = execution or get_app_config().execution
        self._commitment = Commitment(self._config.commitment)
        self._client = client or AsyncClient(
            str(self._config.primary_url),
            commitment=self._commitment,
            timeout=self._config.request_timeout,
        )
        self._limiter = limiter
        self._logger = get_logger(__name__)

    async def close(self) -> None:
        await self._client.close()

    async def _call(
        self,
        method: str,
        operation: Callable[[], Awaitable[T]],
        *,
        rejection: bool = False,
    ) -> T:
        with METRICS.timed("rpc_latency_seconds", method=method):
            try:
                if self._limiter is not None:
                    await self._limiter.acquire(self.api_name, method)
                return await asyncio.wait_for(operation(), self._config.request_timeout)
            except (SolanaRpcException, RPCException, httpx.HTTPError, asyncio.TimeoutError, OSError) as exc:
                METRICS.increment("rpc_errors", method=method)
                raise classify_rpc_error(exc, method, rejection=rejection) from exc

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        response = await self._call("getAccountInfo", lambda: self._client.get_account_info(address))
        account = response.value
        if account is None:
            return None
        return bytes(account.data)

    async def get_latest_blockhash(self) -> Hash:
        response = await self._call("getLatestBlockhash", lambda: self._client.get_latest_blockhash())
        return response.value.blockhash

    async def simulate(self, transaction: VersionedTransaction) -> SimulationResult:
        response = await self._call(
            "simulateTransaction",
            lambda: self._client.simulate_transaction(transaction, sig_verify=True),
            rejection=True,
        )
        value = response.value
        logs = list(value.logs or [])
        if value.err is not None:
            METRICS.increment("simulations", outcome="failure")
            raise TransactionRejectedError(f"simulation failed: {value.err}", logs=logs)
        METRICS.increment("simulations", outcome="success")
        return SimulationResult(units_consumed=value.units_consumed, logs=logs)

    async def send_raw(self, transaction: VersionedTransaction) -> str:
        opts = TxOpts(
            skip_preflight=self._execution.simulate_before_send,
            preflight_commitment=self._commitment,
            max_retries=0,
        )
        response = await self._call(
            "sendTransaction",
            lambda: self._client.send_raw_transaction(bytes(transaction), opts=opts),
            rejection=True,
        )
        signature = str(response.value)
        self._logger.info("Submitted transaction %s", signature)
        return signature

    async def confirm(self, signature: str, timeout: float) -> None:
        sig = Signature.from_string(signature)
        deadline = time.monotonic() + timeout
        while True:
            response = await self._call(
                "getSignatureStatuses", lambda: self._client.get_signature_statuses([sig])
            )
            status = response.value[0] if response.value else None
            if status is not None:
                if status.err is not None:
                    raise TransactionRejectedError(
                        f"transaction {signature} failed on-chain: {status.err}", signature=signature
                    )
                if status.confirmation_status in _CONFIRMED:
                    return
            if time.monotonic() >= deadline:
                raise RpcTimeoutError(f"transaction {signature} not confirmed within {timeout:.0f}s")
            await asyncio.sleep(self._execution.confirm_poll_seconds)

    async def get_token_balance(self, owner: Pubkey, mint: Pubkey) -> Optional[int]:
        account = get_associated_token_address(owner, mint)
        try:
            response = await self._call(
                "getTokenAccountBalance", lambda: self._client.get_token_account_balance(account)
            )
        except NetworkError as exc:
            # A missing token account comes back as an RPC error rather than a null value.
            if isinstance(_root_cause(exc.__cause__), RPCException):
                return None
            raise
        return int(response.value.amount)

    async def get_largest_token_balances(self, mint: Pubkey) -> List[int]:
        response = await self._call("getTokenLargestAccounts", lambda: self._client.get_token_largest_accounts(mint))
        return [int(account.amount.amount) for account in response.value]


__all__ = [
    "RpcGateway",
    "SimulationResult",
    "SolanaRpcGateway",
    "classify_rpc_error",
]
