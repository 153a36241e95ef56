"""Pre-trade screening of freshly launched tokens."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List, Optional

from solders.pubkey import Pubkey

from ..config.settings import ScreeningConfig, get_app_config
from ..datalake.schemas import DiscoveryEvent
from ..execution.retry import RetryExecutor
from ..execution.solana_client import RpcGateway
from ..execution.venues.launchpad import LaunchpadVenue
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import LAMPORTS_PER_SOL
from ..utils.errors import TokenRejectedError, ValidationError
from .pool_state import read_pool_snapshot

# COption<Pubkey> mint authority, u64 supply, u8 decimals, bool initialized, COption<Pubkey> freeze authority.
_MINT = struct.Struct("<I32sQBBI32s")
MINT_ACCOUNT_SIZE = _MINT.size


@dataclass(slots=True)
class MintInfo:
    supply: int
    decimals: int
    is_initialized: bool
    mint_authority: Optional[str] = None
    freeze_authority: Optional[str] = None


def parse_mint_account(data: bytes) -> Optional[MintInfo]:
    """Decode the base SPL mint layout. Token-2022 extension bytes after it are ignored."""

    if len(data) < MINT_ACCOUNT_SIZE:
        return None
    mint_tag, mint_key, supply, decimals, initialized, freeze_tag, freeze_key = _MINT.unpack_from(data)
    return MintInfo(
        supply=supply,
        decimals=decimals,
        is_initialized=bool(initialized),
        mint_authority=str(Pubkey.from_bytes(mint_key)) if mint_tag else None,
        freeze_authority=str(Pubkey.from_bytes(freeze_key)) if freeze_tag else None,
    )


class TokenScreen:
    """Runs every enabled check for a launch and reports all failures at once.

    A token whose mint can still be inflated or whose accounts can be frozen is
    rejected unless the authority is listed as trusted. Liquidity and holder
    minimums are opt-in because they cost extra RPC reads on the hot path.
    """

    def __init__(
        self,
        rpc: RpcGateway,
        retry: RetryExecutor,
        config: Optional[ScreeningConfig] = None,
        launchpad: Optional[LaunchpadVenue] = None,
    ) -> None:
        self._rpc = rpc
        self._retry = retry
        self._config = config or get_app_config().screening
        self._launchpad = launchpad
        self._logger = get_logger(__name__)

    def apply_config(self, config: ScreeningConfig) -> None:
        self._config = config

    async def check(self, event: DiscoveryEvent) -> Optional[MintInfo]:
        """Return the decoded mint when the launch passes; raise ``TokenRejectedError`` otherwise."""

        cfg = self._config
        if not cfg.enabled:
            return None
        try:
            mint = Pubkey.from_string(event.mint)
        except ValueError as exc:
            raise ValidationError(f"invalid mint address {event.mint!r}") from exc

        reasons: List[str] = []
        if event.developer and event.developer in cfg.blocked_developers:
            reasons.append(f"developer {event.developer} is blocked")

        info = await self._read_mint(mint)
        if info is None:
            reasons.append("mint account missing or not an SPL mint")
        else:
            trusted = set(cfg.trusted_authorities)
            if cfg.require_mint_authority_revoked and info.mint_authority not in trusted | {None}:
                reasons.append(f"mint authority {info.mint_authority} can still mint")
            if cfg.require_freeze_authority_revoked and info.freeze_authority not in trusted | {None}:
                reasons.append(f"freeze authority {info.freeze_authority} can freeze holders")

        if cfg.min_pool_liquidity_sol > 0:
            reasons.extend(await self._liquidity_reasons(event.mint, cfg.min_pool_liquidity_sol))
        if cfg.min_holders > 0:
            balances = await self._retry.run(
                "solana",
                "getTokenLargestAccounts",
                lambda: self._rpc.get_largest_token_balances(mint),
            )
            holders = sum(1 for balance in balances if balance > 0)
            if holders < cfg.min_holders:
                reasons.append(f"{holders} holders, need {cfg.min_holders}")

        if reasons:
            METRICS.increment("tokens_rejected")
            self._logger.info("Screened out %s", event.mint, extra={"reasons": reasons, "platform": event.platform})
            raise TokenRejectedError(event.mint, reasons)
        return info

    async def _read_mint(self, mint: Pubkey) -> Optional[MintInfo]:
        data = await self._retry.run("solana", "getAccountInfo", lambda: self._rpc.get_account_data(mint))
        if data is None:
            return None
        info = parse_mint_account(data)
        if info is None or not info.is_initialized:
            return None
        return info

    async def _liquidity_reasons(self, mint: str, minimum_sol: float) -> List[str]:
        if self._launchpad is None:
            return ["no launchpad pool to measure liquidity"]
        launchpad = self._launchpad
        addresses = launchpad.addresses_for(mint)
        snapshot = await self._retry.run(
            "solana",
            "getAccountInfo",
            lambda: read_pool_snapshot(self._rpc, addresses.pool_state, launchpad.config),
        )
        if snapshot is None:
            return ["no launchpad pool to measure liquidity"]
        liquidity = snapshot.quote_reserve / LAMPORTS_PER_SOL
        if liquidity < minimum_sol:
            return [f"pool liquidity {liquidity:.3f} SOL below {minimum_sol:.3f} SOL"]
        return []


__all__ = ["MINT_ACCOUNT_SIZE", "MintInfo", "TokenScreen", "parse_mint_account"]
