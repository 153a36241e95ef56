"""Reads launchpad pool accounts into reserve snapshots."""

from __future__ import annotations

import struct
from typing import Optional

from solders.pubkey import Pubkey

from ..config.settings import LaunchpadConfig
from ..datalake.schemas import PoolSnapshot
from ..execution.solana_client import RpcGateway
from ..monitoring.logger import get_logger

_U64 = struct.Struct("<Q")

logger = get_logger(__name__)


def parse_pool_state(data: bytes, config: LaunchpadConfig, *, address: Optional[str] = None) -> Optional[PoolSnapshot]:
    """Decode reserves from raw pool bytes. Returns ``None`` for an uninitialised or truncated account."""

    needed = max(config.base_reserve_offset, config.quote_reserve_offset) + _U64.size
    if len(data) < needed:
        logger.warning("Pool account %s too short (%d < %d bytes)", address, len(data), needed)
        return None
    (base_reserve,) = _U64.unpack_from(data, config.base_reserve_offset)
    (quote_reserve,) = _U64.unpack_from(data, config.quote_reserve_offset)
    return PoolSnapshot(
        base_reserve=base_reserve,
        quote_reserve=quote_reserve,
        base_decimals=config.base_decimals,
        quote_decimals=config.quote_decimals,
        platform_fee_bps=config.platform_fee_bps,
        protocol_fee_bps=config.protocol_fee_bps,
        address=address,
    )


async def read_pool_snapshot(rpc: RpcGateway, pool_address: Pubkey, config: LaunchpadConfig) -> Optional[PoolSnapshot]:
    """Fetch a fresh snapshot. ``None`` means the pool does not exist; RPC failures propagate."""

    data = await rpc.get_account_data(pool_address)
    if data is None:
        return None
    return parse_pool_state(data, config, address=str(pool_address))


__all__ = ["parse_pool_state", "read_pool_snapshot"]
