"""Program-derived address search and the launchpad account set."""

from __future__ import annotations

import hashlib
import struct
from typing import Sequence, Tuple, Union

from cachetools import LRUCache
from solders.pubkey import Pubkey

from ..datalake.schemas import DerivedAddresses
from ..utils.constants import (
    EVENT_AUTHORITY_SEED,
    GLOBAL_CONFIG_SEED,
    PLATFORM_CONFIG_SEED,
    POOL_SEED,
    POOL_VAULT_SEED,
    VAULT_AUTH_SEED,
)
from ..utils.errors import AddressDerivationError

MAX_SEEDS = 16
MAX_SEED_LENGTH = 32
PDA_MARKER = b"ProgramDerivedAddress"

Seed = Union[bytes, str, Pubkey]


def _seed_bytes(seed: Seed) -> bytes:
    if isinstance(seed, Pubkey):
        return bytes(seed)
    if isinstance(seed, str):
        return seed.encode("utf-8")
    return bytes(seed)


def create_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Pubkey:
    """Hash ``seeds`` with ``program_id``; raises ``ValueError`` if the result lies on the curve."""

    hasher = hashlib.sha256()
    for seed in seeds:
        hasher.update(seed)
    hasher.update(bytes(program_id))
    hasher.update(PDA_MARKER)
    candidate = Pubkey.from_bytes(hasher.digest())
    if candidate.is_on_curve():
        raise ValueError("derived address is on the ed25519 curve")
    return candidate


def find_program_address(seeds: Sequence[Seed], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Return the canonical ``(address, bump)``, searching bumps from 255 down to 0."""

    raw = [_seed_bytes(seed) for seed in seeds]
    if len(raw) + 1 > MAX_SEEDS:
        raise AddressDerivationError(f"too many seeds ({len(raw)}) for program {program_id}")
    for seed in raw:
        if len(seed) > MAX_SEED_LENGTH:
            raise AddressDerivationError(f"seed longer than {MAX_SEED_LENGTH} bytes: {seed!r}")
    for bump in range(255, -1, -1):
        try:
            return create_program_address([*raw, bytes([bump])], program_id), bump
        except ValueError:
            continue
    raise AddressDerivationError(f"no viable bump seed for program {program_id}")


class PdaResolver:
    """Read-through memo of derivations.

    Create one per trade request; instances are not shared between mints.
    """

    def __init__(self, maxsize: int = 32) -> None:
        self._cache: LRUCache = LRUCache(maxsize=maxsize)

    def find(self, seeds: Sequence[Seed], program_id: Pubkey) -> Tuple[Pubkey, int]:
        key = (bytes(program_id), tuple(_seed_bytes(seed) for seed in seeds))
        cached = self._cache.get(key)
        if cached is None:
            cached = find_program_address(seeds, program_id)
            self._cache[key] = cached
        return cached

    def __len__(self) -> int:
        return len(self._cache)


def derive_trading_addresses(
    program_id: Pubkey,
    base_mint: Pubkey,
    quote_mint: Pubkey,
    platform_admin: Pubkey,
    *,
    curve_type: int = 0,
    config_index: int = 0,
    resolver: PdaResolver | None = None,
) -> DerivedAddresses:
    resolver = resolver or PdaResolver()
    pool_state, pool_bump = resolver.find([POOL_SEED, base_mint, quote_mint], program_id)
    base_vault, base_vault_bump = resolver.find([POOL_VAULT_SEED, pool_state, base_mint], program_id)
    quote_vault, quote_vault_bump = resolver.find([POOL_VAULT_SEED, pool_state, quote_mint], program_id)
    global_config, global_bump = resolver.find(
        [GLOBAL_CONFIG_SEED, quote_mint, struct.pack("<B", curve_type), struct.pack("<H", config_index)],
        program_id,
    )
    platform_config, platform_bump = resolver.find([PLATFORM_CONFIG_SEED, platform_admin], program_id)
    vault_authority, authority_bump = resolver.find([VAULT_AUTH_SEED], program_id)
    event_authority, event_bump = resolver.find([EVENT_AUTHORITY_SEED], program_id)
    return DerivedAddresses(
        pool_state=pool_state,
        base_vault=base_vault,
        quote_vault=quote_vault,
        global_config=global_config,
        platform_config=platform_config,
        vault_authority=vault_authority,
        event_authority=event_authority,
        bumps={
            "pool_state": pool_bump,
            "base_vault": base_vault_bump,
            "quote_vault": quote_vault_bump,
            "global_config": global_bump,
            "platform_config": platform_bump,
            "vault_authority": authority_bump,
            "event_authority": event_bump,
        },
    )


__all__ = [
    "PdaResolver",
    "create_program_address",
    "derive_trading_addresses",
    "find_program_address",
]
