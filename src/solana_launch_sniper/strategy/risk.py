"""Pre-trade admission and the risk ledger."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from ..config.settings import RiskConfig, get_app_config
from ..datalake.schemas import LedgerState, Position, Side, TradeFill
from ..datalake.storage import SQLiteStorage
from ..execution.circuit_breaker import CircuitBreaker
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import utc_now
from ..utils.errors import CircuitOpenError, RiskBlockedError

DAY_SECONDS = 86_400.0


@dataclass(slots=True)
class RiskCheckResult:
    """Outcome of a pre-trade risk assessment."""

    approved: bool
    reasons: List[str]
    breaker_blocked: bool = False


class RiskGate:
    """Admits buys against the configured limits and owns the position ledger.

    ``record_trade`` is the only way the ledger changes after admission; the
    dispatcher never touches it. Admission for a mint reserves that mint until the
    buy either opens a position or is released, so concurrent events for the same
    mint are rejected rather than queued.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        config: Optional[RiskConfig] = None,
        storage: Optional[SQLiteStorage] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or get_app_config().risk
        self._breaker = breaker
        self._storage = storage
        self._clock = clock
        self._lock = asyncio.Lock()
        self._reserved: Set[str] = set()
        self._logger = get_logger(__name__)
        ledger = storage.load_ledger_state() if storage else None
        self._ledger = ledger or LedgerState(day_started_at=clock())
        self._positions: Dict[str, Position] = {}
        if storage:
            self._positions = {position.mint: position for position in storage.list_positions()}
        if self._positions:
            self._logger.info("Restored %d open positions", len(self._positions))

    @property
    def config(self) -> RiskConfig:
        return self._config

    def apply_config(self, config: RiskConfig) -> None:
        self._config = config

    # -- ledger views ----------------------------------------------------

    def positions(self) -> List[Position]:
        return [replace(position) for position in self._positions.values()]

    def get_position(self, mint: str) -> Optional[Position]:
        position = self._positions.get(mint)
        return replace(position) if position else None

    def ledger(self) -> LedgerState:
        return replace(self._ledger)

    def is_reserved(self, mint: str) -> bool:
        return mint in self._reserved

    def _persist_ledger(self) -> None:
        if self._storage is not None:
            self._storage.save_ledger_state(self._ledger)

    def _persist_position(self, position: Position) -> None:
        if self._storage is not None:
            self._storage.upsert_position(position)

    def _roll_day(self, now: datetime) -> None:
        if (now - self._ledger.day_started_at).total_seconds() >= DAY_SECONDS:
            self._logger.info("Resetting daily P&L", extra={"daily_pnl": self._ledger.daily_pnl})
            self._ledger.daily_pnl = 0.0
            self._ledger.day_started_at = now

    # -- admission -------------------------------------------------------

    def evaluate(self, mint: str, amount_sol: float, now: Optional[datetime] = None) -> RiskCheckResult:
        """Collect every violated limit without changing any state."""

        now = now or self._clock()
        cfg = self._config
        reasons: List[str] = []
        daily_pnl = self._ledger.daily_pnl
        if (now - self._ledger.day_started_at).total_seconds() >= DAY_SECONDS:
            daily_pnl = 0.0
        if daily_pnl <= -cfg.max_daily_loss_sol:
            reasons.append(f"daily P&L {daily_pnl:.4f} SOL has reached the -{cfg.max_daily_loss_sol} SOL limit")
        if amount_sol > cfg.max_single_trade_sol:
            reasons.append(f"trade size {amount_sol} SOL exceeds max single trade {cfg.max_single_trade_sol} SOL")
        open_count = len(self._positions) + len(self._reserved - set(self._positions))
        if open_count >= cfg.max_positions:
            reasons.append(f"{open_count} open positions, limit is {cfg.max_positions}")
        if self._ledger.last_trade_time is not None:
            elapsed = (now - self._ledger.last_trade_time).total_seconds()
            if elapsed < cfg.cooldown_seconds:
                reasons.append(f"cooldown active: {elapsed:.1f}s since last trade, need {cfg.cooldown_seconds}s")
        if mint in self._positions:
            reasons.append(f"position already open for {mint}")
        elif mint in self._reserved:
            reasons.append(f"buy already in flight for {mint}")
        breaker_reason = self._breaker.check(now)
        if breaker_reason:
            reasons.append(breaker_reason)
        return RiskCheckResult(approved=not reasons, reasons=reasons, breaker_blocked=breaker_reason is not None)

    async def admit(self, mint: str, amount_sol: float) -> RiskCheckResult:
        """Approve and reserve ``mint`` or raise with every reason it was refused."""

        async with self._lock:
            now = self._clock()
            result = self.evaluate(mint, amount_sol, now)
            if not result.approved:
                METRICS.increment("risk_rejections")
                self._logger.warning(
                    "Trade for %s blocked: %s",
                    mint,
                    "; ".join(result.reasons),
                    extra={"reasons": result.reasons},
                )
                if result.breaker_blocked:
                    raise CircuitOpenError(result.reasons)
                raise RiskBlockedError(result.reasons)
            self._breaker.admit(now)
            self._reserved.add(mint)
            self._ledger.last_trade_time = now
            self._persist_ledger()
            METRICS.increment("risk_approved")
            return result

    def release(self, mint: str) -> None:
        """Drop the reservation of a buy that did not open a position."""

        self._reserved.discard(mint)

    # -- mutation --------------------------------------------------------

    def record_trade(self, fill: TradeFill) -> Optional[Position]:
        now = self._clock()
        self._roll_day(now)
        self._ledger.last_trade_time = now
        if fill.side == Side.BUY:
            position = Position(
                mint=fill.mint,
                entry_price=fill.price,
                entry_amount=fill.token_amount,
                remaining_amount=fill.token_amount,
                cost_basis_sol=fill.sol_amount,
                entry_time=now,
                platform=fill.platform,
                entry_signature=fill.signature,
            )
            self._positions[fill.mint] = position
            self._reserved.discard(fill.mint)
            self._persist_position(position)
            self._persist_ledger()
            METRICS.gauge("open_positions", len(self._positions))
            self._logger.info(
                "Opened position in %s",
                fill.mint,
                extra={"tokens": fill.token_amount, "cost_sol": fill.sol_amount, "entry_price": fill.price},
            )
            return replace(position)

        position = self._positions.get(fill.mint)
        if position is None:
            self._persist_ledger()
            self._logger.warning("Sell recorded for %s without an open position", fill.mint)
            return None
        sold = min(fill.token_amount, position.remaining_amount)
        pnl = fill.sol_amount - position.cost_per_unit * sold
        position.remaining_amount -= sold
        position.sold_amount += sold
        position.realized_pnl_sol += pnl
        if fill.tier == 1:
            position.tier1_sold = True
        elif fill.tier == 2:
            position.tier2_sold = True
        self._ledger.daily_pnl += pnl
        self._persist_ledger()
        if position.remaining_amount <= 0:
            self.close_position(fill.mint)
        else:
            self._persist_position(position)
        self._logger.info(
            "Sold %d of %s",
            sold,
            fill.mint,
            extra={"tier": fill.tier, "pnl_sol": pnl, "remaining": position.remaining_amount},
        )
        return replace(position)

    def mark_tier_sold(self, mint: str, tier: int) -> None:
        position = self._positions.get(mint)
        if position is None:
            return
        if tier == 1:
            position.tier1_sold = True
        else:
            position.tier2_sold = True
        self._persist_position(position)

    def touch_position(self, mint: str, checked_at: datetime) -> None:
        position = self._positions.get(mint)
        if position is None:
            return
        position.last_price_check = checked_at
        self._persist_position(position)

    def close_position(self, mint: str) -> Optional[Position]:
        position = self._positions.pop(mint, None)
        self._reserved.discard(mint)
        if position is not None:
            if self._storage is not None:
                self._storage.delete_position(mint)
            METRICS.gauge("open_positions", len(self._positions))
            self._logger.info("Closed position in %s", mint)
        return position

    def status(self) -> Dict[str, object]:
        ledger = asdict(self._ledger)
        for key, value in ledger.items():
            if isinstance(value, datetime):
                ledger[key] = value.isoformat()
        return {
            "ledger": ledger,
            "open_positions": sorted(self._positions),
            "reserved": sorted(self._reserved),
            "limits": self._config.model_dump(),
        }


__all__ = ["RiskCheckResult", "RiskGate"]
