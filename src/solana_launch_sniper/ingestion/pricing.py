"""Current token prices for position monitoring."""

from __future__ import annotations

from typing import Optional

from ..analysis.quote import spot_price
from ..execution.retry import RetryExecutor
from ..execution.solana_client import RpcGateway
from ..execution.venues.aggregator import AggregatorVenue
from ..execution.venues.launchpad import LaunchpadVenue
from ..monitoring.logger import get_logger
from ..utils.errors import NetworkError, RetryExhaustedError
from .pool_state import read_pool_snapshot


class PriceFeed:
    """Prices a mint in lamports per base unit.

    The launchpad pool's spot price wins when the pool exists; otherwise a small
    probe quote through the aggregator is used. ``None`` means nobody prices the
    token right now, which the position monitor treats as a missed check.
    """

    def __init__(
        self,
        rpc: RpcGateway,
        launchpad: LaunchpadVenue,
        retry: RetryExecutor,
        aggregator: Optional[AggregatorVenue] = None,
    ) -> None:
        self._rpc = rpc
        self._launchpad = launchpad
        self._retry = retry
        self._aggregator = aggregator
        self._logger = get_logger(__name__)

    async def pool_price(self, mint: str) -> Optional[float]:
        addresses = self._launchpad.addresses_for(mint)
        try:
            snapshot = await self._retry.run(
                "solana",
                "getAccountInfo",
                lambda: read_pool_snapshot(self._rpc, addresses.pool_state, self._launchpad.config),
            )
        except RetryExhaustedError as exc:
            self._logger.warning("Pool read for %s failed: %s", mint, exc)
            return None
        return spot_price(snapshot)

    async def price(self, mint: str) -> Optional[float]:
        value = await self.pool_price(mint)
        if value is not None:
            return value
        if self._aggregator is None:
            return None
        try:
            return await self._aggregator.price(mint)
        except NetworkError as exc:
            self._logger.warning("Aggregator price for %s failed: %s", mint, exc)
            return None


__all__ = ["PriceFeed"]
