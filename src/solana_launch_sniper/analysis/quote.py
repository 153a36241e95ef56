"""Constant-product quote engine.

All on-chain quantities are integers. ``quote`` never raises for an absent pool;
it returns a result with ``available=False`` so callers can tell "no pool yet"
apart from an RPC failure, which is raised by whoever read the pool.
"""

from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction
from typing import Optional

from ..datalake.schemas import PoolSnapshot, Side
from ..utils.constants import BPS_DENOMINATOR
from ..utils.errors import InvalidAmountError, ValidationError

MAX_PRICE_IMPACT = 0.05


@dataclass(frozen=True, slots=True)
class QuoteResult:
    available: bool
    amount_out: int = 0
    gross_amount_out: int = 0
    platform_fee: int = 0
    protocol_fee: int = 0
    price_impact: float = 0.0

    @classmethod
    def no_liquidity(cls) -> "QuoteResult":
        return cls(available=False)


def _reserves(pool: PoolSnapshot, side: Side) -> tuple[int, int]:
    # BUY credits the base reserve and pays out of the quote reserve; SELL is the mirror image.
    if side == Side.BUY:
        return pool.base_reserve, pool.quote_reserve
    return pool.quote_reserve, pool.base_reserve


def gross_output(reserve_in: int, reserve_out: int, amount_in: int) -> int:
    """x*y=k output before fees. Rounds the post-trade reserve up so output stays below ``reserve_out``."""

    k = reserve_in * reserve_out
    new_reserve_in = reserve_in + amount_in
    new_reserve_out = -(-k // new_reserve_in)
    return max(0, reserve_out - new_reserve_out)


def estimate_price_impact(pool: PoolSnapshot) -> float:
    """Advisory impact score for display and risk scoring only."""

    pool_size = min(pool.base_reserve, pool.quote_reserve)
    if pool_size <= 0:
        return 0.0
    max_trade_size = pool_size * 0.1
    return min(MAX_PRICE_IMPACT, max_trade_size / pool_size * 0.5)


def quote(pool: Optional[PoolSnapshot], side: Side, amount_in: int) -> QuoteResult:
    if isinstance(amount_in, bool) or not isinstance(amount_in, int) or amount_in <= 0:
        raise InvalidAmountError(f"amount_in must be a positive integer, got {amount_in!r}")
    if pool is None or pool.base_reserve <= 0 or pool.quote_reserve <= 0:
        return QuoteResult.no_liquidity()
    reserve_in, reserve_out = _reserves(pool, side)
    gross = gross_output(reserve_in, reserve_out, amount_in)
    platform_fee = gross * pool.platform_fee_bps // BPS_DENOMINATOR
    protocol_fee = gross * pool.protocol_fee_bps // BPS_DENOMINATOR
    return QuoteResult(
        available=True,
        amount_out=max(0, gross - platform_fee - protocol_fee),
        gross_amount_out=gross,
        platform_fee=platform_fee,
        protocol_fee=protocol_fee,
        price_impact=estimate_price_impact(pool),
    )


def minimum_amount_out(amount_out: int, slippage: float) -> int:
    """``floor(amount_out * (1 - slippage))`` using exact decimal arithmetic."""

    if not 0.0 <= slippage <= 1.0:
        raise ValidationError(f"slippage {slippage} must be between 0 and 1")
    tolerance = Fraction(str(slippage))
    return int(amount_out * (1 - tolerance))


def spot_price(pool: Optional[PoolSnapshot]) -> Optional[float]:
    """Quote units per base unit, or ``None`` when the pool holds no liquidity."""

    if pool is None or pool.base_reserve <= 0 or pool.quote_reserve <= 0:
        return None
    return float(Fraction(pool.quote_reserve, pool.base_reserve))


__all__ = [
    "QuoteResult",
    "estimate_price_impact",
    "gross_output",
    "minimum_amount_out",
    "quote",
    "spot_price",
]
