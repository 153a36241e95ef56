"""Data models shared by the execution, risk and position layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from solders.pubkey import Pubkey

from ..utils.constants import MAX_U64, SOL_MINT, utc_now
from ..utils.errors import InvalidAmountError, ValidationError


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class ExecutionMethod(str, Enum):
    """Closed set of ways a swap can reach the chain."""

    BONDING_CURVE = "bonding_curve"
    AGGREGATOR = "aggregator"
    CONSTANT_PRODUCT = "constant_product"


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class DiscoveryEvent:
    """A newly launched token reported by an external monitor."""

    mint: str
    platform: str
    developer: str
    signature: Optional[str] = None
    received_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class SwapRequest:
    """A single buy or sell of ``mint`` against SOL.

    ``amount`` is in the input asset's smallest unit: lamports for a buy, base
    token units for a sell.
    """

    side: Side
    mint: str
    amount: int
    slippage: float
    platform: str = "unknown"
    preferred_method: Optional[ExecutionMethod] = None
    signer: Optional[Any] = None
    cost_basis_sol: Optional[float] = None
    correlation_id: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise InvalidAmountError(f"amount must be an integer number of base units, got {self.amount!r}")
        if self.amount <= 0 or self.amount > MAX_U64:
            raise InvalidAmountError(f"amount {self.amount} is outside the unsigned 64-bit range (0, 2^64)")
        if not 0.0 <= self.slippage <= 1.0:
            raise ValidationError(f"slippage {self.slippage} must be between 0 and 1")
        try:
            Pubkey.from_string(self.mint)
        except ValueError as exc:
            raise ValidationError(f"invalid mint address {self.mint!r}") from exc

    @property
    def input_mint(self) -> str:
        return SOL_MINT if self.side == Side.BUY else self.mint

    @property
    def output_mint(self) -> str:
        return self.mint if self.side == Side.BUY else SOL_MINT

    @property
    def slippage_bps(self) -> int:
        return int(round(self.slippage * 10_000))


@dataclass(frozen=True, slots=True)
class PoolSnapshot:
    """Reserves of a constant-product pool as read from chain. Never mutated."""

    base_reserve: int
    quote_reserve: int
    base_decimals: int = 6
    quote_decimals: int = 9
    platform_fee_bps: int = 0
    protocol_fee_bps: int = 0
    address: Optional[str] = None


@dataclass(frozen=True, slots=True)
class DerivedAddresses:
    """Program-derived accounts needed to trade one mint on the launchpad."""

    pool_state: Pubkey
    base_vault: Pubkey
    quote_vault: Pubkey
    global_config: Pubkey
    platform_config: Pubkey
    vault_authority: Pubkey
    event_authority: Pubkey
    bumps: Dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionAttempt:
    """One method tried by the dispatcher for one swap."""

    method: ExecutionMethod
    side: Side
    mint: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    success: bool = False
    signature: Optional[str] = None
    retries: int = 0
    error_kind: Optional[str] = None
    error: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass(slots=True)
class ExecutionResult:
    """Terminal success of a dispatched swap."""

    side: Side
    mint: str
    method: ExecutionMethod
    signature: Optional[str]
    amount_in: int
    expected_amount_out: Optional[int]
    dry_run: bool = False
    attempts: List[ExecutionAttempt] = field(default_factory=list)


@dataclass(slots=True)
class CircuitBreakerState:
    state: BreakerState = BreakerState.CLOSED
    consecutive_failures: int = 0
    failure_count: int = 0
    daily_loss: float = 0.0
    daily_trades: int = 0
    next_attempt_time: Optional[datetime] = None
    last_reset_time: datetime = field(default_factory=utc_now)
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    trial_in_flight: bool = False


@dataclass(slots=True)
class Position:
    """Holding opened by a successful buy and reduced by tier sells."""

    mint: str
    entry_price: float
    entry_amount: int
    remaining_amount: int
    cost_basis_sol: float
    entry_time: datetime = field(default_factory=utc_now)
    last_price_check: Optional[datetime] = None
    sold_amount: int = 0
    tier1_sold: bool = False
    tier2_sold: bool = False
    realized_pnl_sol: float = 0.0
    platform: str = "unknown"
    entry_signature: Optional[str] = None

    @property
    def cost_per_unit(self) -> float:
        return self.cost_basis_sol / self.entry_amount if self.entry_amount else 0.0


@dataclass(slots=True)
class LedgerState:
    """Scalar part of the risk ledger that survives restarts."""

    daily_pnl: float = 0.0
    last_trade_time: Optional[datetime] = None
    day_started_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class TradeFill:
    """Fill reported to the risk gate after a confirmed swap."""

    side: Side
    mint: str
    token_amount: int
    sol_amount: float
    price: float
    signature: Optional[str] = None
    tier: Optional[int] = None
    platform: str = "unknown"


__all__ = [
    "BreakerState",
    "CircuitBreakerState",
    "DerivedAddresses",
    "DiscoveryEvent",
    "ExecutionAttempt",
    "ExecutionMethod",
    "ExecutionResult",
    "LedgerState",
    "PoolSnapshot",
    "Position",
    "Side",
    "SwapRequest",
    "TradeFill",
]
