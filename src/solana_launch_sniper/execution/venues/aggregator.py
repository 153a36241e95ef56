"""Jupiter aggregator routes."""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Dict, Optional

import requests
from cachetools import TTLCache
from solders.transaction import VersionedTransaction

from ...config.settings import AggregatorConfig, get_app_config
from ...datalake.schemas import ExecutionMethod, SwapRequest
from ...monitoring.logger import get_logger
from ...utils.constants import SOL_MINT
from ...utils.errors import NetworkError, QuoteUnavailableError, TransactionRejectedError
from ..wallet import Wallet
from .base import DEFAULT_HEADERS, VenueQuote, decode_transaction, translate_http_error


class AggregatorVenue:
    """Quote and swap through Jupiter; the API returns an unsigned transaction we sign locally."""

    name = "jupiter"
    method = ExecutionMethod.AGGREGATOR

    def __init__(
        self,
        config: Optional[AggregatorConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().aggregator
        self._session = session or requests.Session()
        self._price_cache: TTLCache = TTLCache(maxsize=512, ttl=max(self._config.price_cache_ttl_seconds, 0.001))
        self._logger = get_logger(__name__)

    def supports(self, request: SwapRequest) -> bool:
        return True

    def _url(self, path: str) -> str:
        return f"{str(self._config.base_url).rstrip('/')}/{path.lstrip('/')}"

    def _request(self, verb: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._session.request(
                verb,
                self._url(path),
                headers=DEFAULT_HEADERS,
                timeout=self._config.http_timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise translate_http_error(exc, f"jupiter {path}") from exc
        if response.status_code in (400, 404):
            # Jupiter answers 400 when no route exists for the pair.
            raise QuoteUnavailableError(f"jupiter {path}: {response.text[:200]}")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise translate_http_error(exc, f"jupiter {path}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            # Gateways in front of the API answer 200 with an HTML page when throttling.
            raise NetworkError(f"jupiter {path} returned a non-JSON body: {response.text[:200]!r}") from exc
        if isinstance(payload, dict) and payload.get("error"):
            raise QuoteUnavailableError(f"jupiter {path}: {payload['error']}")
        return payload

    def fetch_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Dict[str, Any]:
        return self._request(
            "GET",
            self._config.quote_path,
            params={
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(amount),
                "slippageBps": slippage_bps,
            },
        )

    def fetch_swap_transaction(self, quote_response: Dict[str, Any], user_public_key: str) -> VersionedTransaction:
        payload = self._request(
            "POST",
            self._config.swap_path,
            json={
                "quoteResponse": quote_response,
                "userPublicKey": user_public_key,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
                "prioritizationFeeLamports": "auto",
            },
        )
        encoded = payload.get("swapTransaction")
        if not encoded:
            raise TransactionRejectedError("jupiter swap response carried no transaction")
        try:
            raw = base64.b64decode(encoded, validate=True)
        except ValueError as exc:
            raise TransactionRejectedError(f"jupiter swap transaction is not base64: {exc}") from exc
        return decode_transaction(raw, "jupiter swap")

    async def quote(self, request: SwapRequest) -> VenueQuote:
        payload = await asyncio.to_thread(
            self.fetch_quote,
            request.input_mint,
            request.output_mint,
            request.amount,
            request.slippage_bps,
        )
        out_amount = int(payload.get("outAmount", 0))
        if out_amount <= 0:
            raise QuoteUnavailableError(f"jupiter has no route for {request.mint}")
        threshold = payload.get("otherAmountThreshold")
        impact = payload.get("priceImpactPct")
        return VenueQuote(
            method=self.method,
            venue=self.name,
            amount_in=request.amount,
            expected_amount_out=out_amount,
            minimum_amount_out=int(threshold) if threshold is not None else None,
            price_impact=float(impact) if impact not in (None, "") else None,
            route={"quote_response": payload},
        )

    async def build(self, request: SwapRequest, venue_quote: VenueQuote, wallet: Wallet) -> VersionedTransaction:
        transaction = await asyncio.to_thread(
            self.fetch_swap_transaction,
            venue_quote.route["quote_response"],
            str(wallet.public_key),
        )
        return wallet.sign_transaction(transaction)

    async def price(self, mint: str) -> Optional[float]:
        """SOL lamports per base unit from a probe sell quote, cached briefly."""

        cached = self._price_cache.get(mint)
        if cached is not None:
            return cached
        probe = self._config.price_probe_amount
        try:
            payload = await asyncio.to_thread(self.fetch_quote, mint, SOL_MINT, probe, 50)
        except QuoteUnavailableError:
            return None
        out_amount = int(payload.get("outAmount", 0))
        if out_amount <= 0:
            return None
        value = out_amount / probe
        self._price_cache[mint] = value
        return value


__all__ = ["AggregatorVenue"]
