"""Shared constants for Solana launchpad trading."""

from datetime import datetime, timezone

# Utility function to get timezone-aware UTC datetime
def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)

LAMPORTS_PER_SOL = 1_000_000_000
BPS_DENOMINATOR = 10_000

SOL_MINT = "So11111111111111111111111111111111111111112"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

# LetsBonk launchpad (constant-product launch pools)
LAUNCHPAD_PROGRAM_ID = "LanMV9sAd7wArD4vJFi2qDdfnVhFxYSUg6eADduJ3uj"
LAUNCHPAD_PLATFORM_ADMIN = "2P56vRWDrCBGkqYXxgSWAnuZQZrJPySRQGToTJThpmkN"

BUY_EXACT_IN_DISCRIMINATOR = bytes.fromhex("faea0d7bd59c13ec")
SELL_EXACT_IN_DISCRIMINATOR = bytes.fromhex("9527de9bd37c981a")

POOL_SEED = b"pool"
POOL_VAULT_SEED = b"pool_vault"
GLOBAL_CONFIG_SEED = b"global_config"
PLATFORM_CONFIG_SEED = b"platform_config"
VAULT_AUTH_SEED = b"vault_auth_seed"
EVENT_AUTHORITY_SEED = b"__event_authority"

MAX_U64 = 2**64 - 1


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(sol: float) -> int:
    return int(round(sol * LAMPORTS_PER_SOL))


__all__ = [
    "utc_now",
    "LAMPORTS_PER_SOL",
    "BPS_DENOMINATOR",
    "SOL_MINT",
    "TOKEN_PROGRAM_ID",
    "LAUNCHPAD_PROGRAM_ID",
    "LAUNCHPAD_PLATFORM_ADMIN",
    "BUY_EXACT_IN_DISCRIMINATOR",
    "SELL_EXACT_IN_DISCRIMINATOR",
    "POOL_SEED",
    "POOL_VAULT_SEED",
    "GLOBAL_CONFIG_SEED",
    "PLATFORM_CONFIG_SEED",
    "VAULT_AUTH_SEED",
    "EVENT_AUTHORITY_SEED",
    "MAX_U64",
    "lamports_to_sol",
    "sol_to_lamports",
]
