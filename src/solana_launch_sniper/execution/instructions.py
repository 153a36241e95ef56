"""Wire encoding of launchpad buy-exact-in / sell-exact-in instructions."""

from __future__ import annotations

import struct
from typing import List

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from ..datalake.schemas import DerivedAddresses
from ..utils.constants import BUY_EXACT_IN_DISCRIMINATOR, MAX_U64, SELL_EXACT_IN_DISCRIMINATOR
from ..utils.errors import InvalidAmountError

_SWAP_TAIL = struct.Struct("<QQQ")
SWAP_PAYLOAD_SIZE = 8 + _SWAP_TAIL.size


def _check_u64(name: str, value: int, *, allow_zero: bool) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(f"{name} must be an integer, got {value!r}")
    lower = 0 if allow_zero else 1
    if value < lower or value > MAX_U64:
        raise InvalidAmountError(f"{name}={value} is outside the range [{lower}, 2^64)")


def encode_swap_payload(discriminator: bytes, amount_in: int, minimum_amount_out: int, share_fee_rate: int = 0) -> bytes:
    """Discriminator followed by three little-endian u64 fields (32 bytes total)."""

    if len(discriminator) != 8:
        raise ValueError("instruction discriminator must be exactly 8 bytes")
    _check_u64("amount_in", amount_in, allow_zero=False)
    _check_u64("minimum_amount_out", minimum_amount_out, allow_zero=True)
    _check_u64("share_fee_rate", share_fee_rate, allow_zero=True)
    return discriminator + _SWAP_TAIL.pack(amount_in, minimum_amount_out, share_fee_rate)


def decode_swap_payload(data: bytes) -> tuple[bytes, int, int, int]:
    if len(data) != SWAP_PAYLOAD_SIZE:
        raise ValueError(f"swap payload must be {SWAP_PAYLOAD_SIZE} bytes, got {len(data)}")
    amount_in, minimum_amount_out, share_fee_rate = _SWAP_TAIL.unpack(data[8:])
    return data[:8], amount_in, minimum_amount_out, share_fee_rate


def _swap_accounts(
    program_id: Pubkey,
    payer: Pubkey,
    addresses: DerivedAddresses,
    user_base_account: Pubkey,
    user_quote_account: Pubkey,
    base_mint: Pubkey,
    quote_mint: Pubkey,
    token_program: Pubkey,
    *,
    base_mint_writable: bool,
) -> List[AccountMeta]:
    # Order is part of the program's wire contract.
    return [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=addresses.vault_authority, is_signer=False, is_writable=False),
        AccountMeta(pubkey=addresses.global_config, is_signer=False, is_writable=False),
        AccountMeta(pubkey=addresses.platform_config, is_signer=False, is_writable=False),
        AccountMeta(pubkey=addresses.pool_state, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_base_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_quote_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=addresses.base_vault, is_signer=False, is_writable=True),
        AccountMeta(pubkey=addresses.quote_vault, is_signer=False, is_writable=True),
        AccountMeta(pubkey=base_mint, is_signer=False, is_writable=base_mint_writable),
        AccountMeta(pubkey=quote_mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=token_program, is_signer=False, is_writable=False),
        AccountMeta(pubkey=token_program, is_signer=False, is_writable=False),
        AccountMeta(pubkey=addresses.event_authority, is_signer=False, is_writable=False),
        AccountMeta(pubkey=program_id, is_signer=False, is_writable=False),
    ]


def build_buy_exact_in(
    program_id: Pubkey,
    payer: Pubkey,
    addresses: DerivedAddresses,
    user_base_account: Pubkey,
    user_quote_account: Pubkey,
    base_mint: Pubkey,
    quote_mint: Pubkey,
    token_program: Pubkey,
    amount_in: int,
    minimum_amount_out: int,
    share_fee_rate: int = 0,
) -> Instruction:
    """Spend ``amount_in`` quote lamports for at least ``minimum_amount_out`` base units."""

    data = encode_swap_payload(BUY_EXACT_IN_DISCRIMINATOR, amount_in, minimum_amount_out, share_fee_rate)
    accounts = _swap_accounts(
        program_id,
        payer,
        addresses,
        user_base_account,
        user_quote_account,
        base_mint,
        quote_mint,
        token_program,
        base_mint_writable=True,
    )
    return Instruction(program_id, data, accounts)


def build_sell_exact_in(
    program_id: Pubkey,
    payer: Pubkey,
    addresses: DerivedAddresses,
    user_base_account: Pubkey,
    user_quote_account: Pubkey,
    base_mint: Pubkey,
    quote_mint: Pubkey,
    token_program: Pubkey,
    amount_in: int,
    minimum_amount_out: int,
    share_fee_rate: int = 0,
) -> Instruction:
    """Sell ``amount_in`` base units for at least ``minimum_amount_out`` quote lamports."""

    data = encode_swap_payload(SELL_EXACT_IN_DISCRIMINATOR, amount_in, minimum_amount_out, share_fee_rate)
    accounts = _swap_accounts(
        program_id,
        payer,
        addresses,
        user_base_account,
        user_quote_account,
        base_mint,
        quote_mint,
        token_program,
        base_mint_writable=False,
    )
    return Instruction(program_id, data, accounts)


__all__ = [
    "SWAP_PAYLOAD_SIZE",
    "build_buy_exact_in",
    "build_sell_exact_in",
    "decode_swap_payload",
    "encode_swap_payload",
]
