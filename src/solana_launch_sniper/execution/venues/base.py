"""Shared dataclasses and interfaces for execution venues."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import requests
from solders.transaction import VersionedTransaction

from ...datalake.schemas import ExecutionMethod, SwapRequest
from ...utils.errors import NetworkError, RpcTimeoutError, TransactionRejectedError
from ..wallet import Wallet

DEFAULT_HEADERS = {"User-Agent": "solana-launch-sniper/1.0"}


@dataclass(slots=True)
class VenueQuote:
    """Expected outcome of a swap on one venue."""

    method: ExecutionMethod
    venue: str
    amount_in: int
    expected_amount_out: Optional[int] = None
    minimum_amount_out: Optional[int] = None
    price_impact: Optional[float] = None
    route: Dict[str, Any] = field(default_factory=dict)


class VenueAdapter(Protocol):
    """Protocol implemented by every execution method."""

    name: str
    method: ExecutionMethod

    def supports(self, request: SwapRequest) -> bool:
        """Whether this venue may be tried for the request at all."""

    async def quote(self, request: SwapRequest) -> VenueQuote:
        """Raise ``QuoteUnavailableError`` when the venue cannot price the pair."""

    async def build(self, request: SwapRequest, quote: VenueQuote, wallet: Wallet) -> VersionedTransaction:
        """Return a freshly signed transaction carrying a current blockhash."""


def translate_http_error(exc: requests.RequestException, what: str) -> Exception:
    """Map a requests failure to the retryable taxonomy."""

    if isinstance(exc, requests.Timeout):
        return RpcTimeoutError(f"{what} timed out: {exc}")
    return NetworkError(f"{what} failed: {exc}")


def decode_transaction(raw: bytes, what: str) -> VersionedTransaction:
    """Parse a serialized transaction returned by a venue API.

    Bytes that do not deserialize are treated as a rejection so the dispatcher
    moves on to the next method.
    """

    if not raw:
        raise TransactionRejectedError(f"{what} returned an empty transaction")
    try:
        return VersionedTransaction.from_bytes(raw)
    except ValueError as exc:
        raise TransactionRejectedError(f"{what} returned an undecodable transaction: {exc}") from exc


__all__ = ["DEFAULT_HEADERS", "VenueAdapter", "VenueQuote", "decode_transaction", "translate_http_error"]
