"""Bonding-curve trades via PumpPortal's local-transaction API."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import requests
from solders.transaction import VersionedTransaction

from ...config.settings import BondingCurveConfig, ExecutionConfig, get_app_config
from ...datalake.schemas import ExecutionMethod, Side, SwapRequest
from ...monitoring.logger import get_logger
from ...utils.constants import LAMPORTS_PER_SOL
from ...utils.errors import QuoteUnavailableError
from ..wallet import Wallet
from .base import DEFAULT_HEADERS, VenueQuote, decode_transaction, translate_http_error


class BondingCurveVenue:
    """Only eligible for tokens launched on a bonding-curve platform."""

    name = "pumpportal"
    method = ExecutionMethod.BONDING_CURVE

    def __init__(
        self,
        config: Optional[BondingCurveConfig] = None,
        execution: Optional[ExecutionConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().bonding_curve
        self._execution = execution or get_app_config().execution
        self._session = session or requests.Session()
        self._logger = get_logger(__name__)

    def supports(self, request: SwapRequest) -> bool:
        platforms = {platform.lower() for platform in self._execution.bonding_curve_platforms}
        return request.platform.lower() in platforms

    def trade_payload(self, request: SwapRequest, public_key: str) -> Dict[str, Any]:
        if request.side == Side.BUY:
            amount: float = request.amount / LAMPORTS_PER_SOL
            denominated_in_sol = "true"
        else:
            amount = request.amount / (10**self._config.token_decimals)
            denominated_in_sol = "false"
        return {
            "publicKey": public_key,
            "action": request.side.value,
            "mint": request.mint,
            "denominatedInSol": denominated_in_sol,
            "amount": amount,
            "slippage": request.slippage * 100,
            "priorityFee": self._config.priority_fee_sol,
            "pool": self._config.pool,
        }

    def fetch_transaction(self, payload: Dict[str, Any]) -> VersionedTransaction:
        try:
            response = self._session.post(
                str(self._config.trade_url),
                json=payload,
                headers=DEFAULT_HEADERS,
                timeout=self._config.http_timeout,
            )
        except requests.RequestException as exc:
            raise translate_http_error(exc, "pumpportal trade-local") from exc
        if response.status_code == 400:
            # Raised for mints that are not (or no longer) on the bonding curve.
            raise QuoteUnavailableError(f"pumpportal refused {payload['mint']}: {response.text[:200]}")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise translate_http_error(exc, "pumpportal trade-local") from exc
        return decode_transaction(response.content, "pumpportal trade-local")

    async def quote(self, request: SwapRequest) -> VenueQuote:
        # The curve is priced server side; there is nothing to compute locally.
        return VenueQuote(method=self.method, venue=self.name, amount_in=request.amount)

    async def build(self, request: SwapRequest, venue_quote: VenueQuote, wallet: Wallet) -> VersionedTransaction:
        payload = self.trade_payload(request, str(wallet.public_key))
        transaction = await asyncio.to_thread(self.fetch_transaction, payload)
        return wallet.sign_transaction(transaction)


__all__ = ["BondingCurveVenue"]
