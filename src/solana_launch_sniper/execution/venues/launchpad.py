"""Direct constant-product swaps against the LetsBonk launchpad program."""

from __future__ import annotations

from typing import List, Optional

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from spl.token.instructions import (
    CloseAccountParams,
    SyncNativeParams,
    close_account,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    sync_native,
)

from ...analysis.quote import minimum_amount_out, quote
from ...config.settings import ExecutionConfig, LaunchpadConfig, get_app_config
from ...datalake.schemas import DerivedAddresses, ExecutionMethod, Side, SwapRequest
from ...ingestion.pool_state import read_pool_snapshot
from ...monitoring.logger import get_logger
from ...utils.errors import QuoteUnavailableError
from ..instructions import build_buy_exact_in, build_sell_exact_in
from ..pda import PdaResolver, derive_trading_addresses
from ..solana_client import RpcGateway
from ..wallet import Wallet
from .base import VenueQuote


class LaunchpadVenue:
    """Builds the buy/sell instruction locally from derived addresses and pool reserves."""

    name = "launchpad"
    method = ExecutionMethod.CONSTANT_PRODUCT

    def __init__(
        self,
        rpc: RpcGateway,
        config: Optional[LaunchpadConfig] = None,
        execution: Optional[ExecutionConfig] = None,
    ) -> None:
        self._rpc = rpc
        self._config = config or get_app_config().launchpad
        self._execution = execution or get_app_config().execution
        self._logger = get_logger(__name__)

    @property
    def config(self) -> LaunchpadConfig:
        return self._config

    @property
    def program_id(self) -> Pubkey:
        return Pubkey.from_string(self._config.program_id)

    def supports(self, request: SwapRequest) -> bool:
        return True

    def addresses_for(self, mint: str, resolver: Optional[PdaResolver] = None) -> DerivedAddresses:
        return derive_trading_addresses(
            self.program_id,
            Pubkey.from_string(mint),
            Pubkey.from_string(self._config.quote_mint),
            Pubkey.from_string(self._config.platform_admin),
            curve_type=self._config.curve_type,
            config_index=self._config.config_index,
            resolver=resolver,
        )

    async def quote(self, request: SwapRequest) -> VenueQuote:
        addresses = self.addresses_for(request.mint, PdaResolver())
        snapshot = await read_pool_snapshot(self._rpc, addresses.pool_state, self._config)
        result = quote(snapshot, request.side, request.amount)
        if not result.available:
            raise QuoteUnavailableError(f"no launchpad pool for {request.mint}")
        if result.amount_out <= 0:
            raise QuoteUnavailableError(f"launchpad pool for {request.mint} returns nothing for {request.amount}")
        return VenueQuote(
            method=self.method,
            venue=self.name,
            amount_in=request.amount,
            expected_amount_out=result.amount_out,
            minimum_amount_out=minimum_amount_out(result.amount_out, request.slippage),
            price_impact=result.price_impact,
            route={"addresses": addresses, "pool": snapshot},
        )

    def build_instructions(self, request: SwapRequest, venue_quote: VenueQuote, owner: Pubkey) -> List[Instruction]:
        addresses: DerivedAddresses = venue_quote.route.get("addresses") or self.addresses_for(request.mint)
        token_program = Pubkey.from_string(self._config.token_program)
        base_mint = Pubkey.from_string(request.mint)
        quote_mint = Pubkey.from_string(self._config.quote_mint)
        base_account = get_associated_token_address(owner, base_mint)
        quote_account = get_associated_token_address(owner, quote_mint)

        instructions: List[Instruction] = [
            set_compute_unit_limit(self._execution.compute_unit_limit),
            set_compute_unit_price(self._execution.compute_unit_price_micro_lamports),
            create_idempotent_associated_token_account(owner, owner, base_mint),
            create_idempotent_associated_token_account(owner, owner, quote_mint),
        ]
        builder = build_buy_exact_in if request.side == Side.BUY else build_sell_exact_in
        if request.side == Side.BUY:
            # Wrap the SOL being spent.
            instructions.append(
                transfer(TransferParams(from_pubkey=owner, to_pubkey=quote_account, lamports=request.amount))
            )
            instructions.append(sync_native(SyncNativeParams(program_id=token_program, account=quote_account)))
        instructions.append(
            builder(
                self.program_id,
                owner,
                addresses,
                base_account,
                quote_account,
                base_mint,
                quote_mint,
                token_program,
                request.amount,
                venue_quote.minimum_amount_out or 0,
                self._config.share_fee_rate,
            )
        )
        instructions.append(
            close_account(
                CloseAccountParams(program_id=token_program, account=quote_account, dest=owner, owner=owner)
            )
        )
        return instructions

    async def build(self, request: SwapRequest, venue_quote: VenueQuote, wallet: Wallet) -> VersionedTransaction:
        owner = wallet.public_key
        instructions = self.build_instructions(request, venue_quote, owner)
        blockhash = await self._rpc.get_latest_blockhash()
        message = MessageV0.try_compile(owner, instructions, [], blockhash)
        return wallet.sign_message(message)


__all__ = ["LaunchpadVenue"]
