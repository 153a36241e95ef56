"""SQLite persistence for breaker state, the risk ledger and open positions."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from .schemas import (
    BreakerState,
    CircuitBreakerState,
    ExecutionAttempt,
    ExecutionMethod,
    LedgerState,
    Position,
    Side,
)

# Token amounts are u64 and can exceed SQLite's signed INTEGER range, so they are stored as TEXT.

CREATE_BREAKER_TABLE = """
CREATE TABLE IF NOT EXISTS circuit_breaker (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    state TEXT NOT NULL,
    consecutive_failures INTEGER NOT NULL,
    failure_count INTEGER NOT NULL,
    daily_loss REAL NOT NULL,
    daily_trades INTEGER NOT NULL,
    next_attempt_time TEXT,
    last_reset_time TEXT NOT NULL,
    last_failure_time TEXT,
    last_success_time TEXT,
    trial_in_flight INTEGER NOT NULL
);
"""

CREATE_LEDGER_TABLE = """
CREATE TABLE IF NOT EXISTS risk_ledger (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    daily_pnl REAL NOT NULL,
    last_trade_time TEXT,
    day_started_at TEXT NOT NULL
);
"""

CREATE_POSITION_TABLE = """
CREATE TABLE IF NOT EXISTS positions (
    mint_address TEXT PRIMARY KEY,
    entry_price REAL NOT NULL,
    entry_amount TEXT NOT NULL,
    remaining_amount TEXT NOT NULL,
    sold_amount TEXT NOT NULL,
    cost_basis_sol REAL NOT NULL,
    tier1_sold INTEGER NOT NULL,
    tier2_sold INTEGER NOT NULL,
    entry_time TEXT NOT NULL,
    last_price_check TEXT,
    realized_pnl_sol REAL NOT NULL,
    platform TEXT NOT NULL,
    entry_signature TEXT
);
"""

CREATE_ATTEMPT_TABLE = """
CREATE TABLE IF NOT EXISTS execution_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    method TEXT NOT NULL,
    side TEXT NOT NULL,
    mint_address TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    success INTEGER NOT NULL,
    signature TEXT,
    retries INTEGER NOT NULL,
    error_kind TEXT,
    error TEXT,
    correlation_id TEXT
);
"""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStorage:
    """Every write commits immediately so a crash never loses an acknowledged mutation."""

    def __init__(self, database_path: Path) -> None:
        self._database_path = Path(database_path).expanduser().resolve()
        self._initialize()

    @property
    def path(self) -> Path:
        return self._database_path

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_BREAKER_TABLE)
            con.execute(CREATE_LEDGER_TABLE)
            con.execute(CREATE_POSITION_TABLE)
            con.execute(CREATE_ATTEMPT_TABLE)
            con.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path)
        try:
            yield con
        finally:
            con.close()

    # -- circuit breaker -------------------------------------------------

    def save_breaker_state(self, state: CircuitBreakerState) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO circuit_breaker (
                    id, state, consecutive_failures, failure_count, daily_loss, daily_trades,
                    next_attempt_time, last_reset_time, last_failure_time, last_success_time, trial_in_flight
                ) VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    state = excluded.state,
                    consecutive_failures = excluded.consecutive_failures,
                    failure_count = excluded.failure_count,
                    daily_loss = excluded.daily_loss,
                    daily_trades = excluded.daily_trades,
                    next_attempt_time = excluded.next_attempt_time,
                    last_reset_time = excluded.last_reset_time,
                    last_failure_time = excluded.last_failure_time,
                    last_success_time = excluded.last_success_time,
                    trial_in_flight = excluded.trial_in_flight
                """,
                (
                    state.state.value,
                    state.consecutive_failures,
                    state.failure_count,
                    state.daily_loss,
                    state.daily_trades,
                    _iso(state.next_attempt_time),
                    state.last_reset_time.isoformat(),
                    _iso(state.last_failure_time),
                    _iso(state.last_success_time),
                    int(state.trial_in_flight),
                ),
            )
            con.commit()

    def load_breaker_state(self) -> Optional[CircuitBreakerState]:
        with self._connect() as con:
            row = con.execute(
                """
                SELECT state, consecutive_failures, failure_count, daily_loss, daily_trades,
                       next_attempt_time, last_reset_time, last_failure_time, last_success_time, trial_in_flight
                FROM circuit_breaker WHERE id = 1
                """
            ).fetchone()
        if row is None:
            return None
        return CircuitBreakerState(
            state=BreakerState(row[0]),
            consecutive_failures=row[1],
            failure_count=row[2],
            daily_loss=row[3],
            daily_trades=row[4],
            next_attempt_time=_parse(row[5]),
            last_reset_time=datetime.fromisoformat(row[6]),
            last_failure_time=_parse(row[7]),
            last_success_time=_parse(row[8]),
            trial_in_flight=bool(row[9]),
        )

    # -- risk ledger -----------------------------------------------------

    def save_ledger_state(self, ledger: LedgerState) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO risk_ledger (id, daily_pnl, last_trade_time, day_started_at)
                VALUES (1, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    daily_pnl = excluded.daily_pnl,
                    last_trade_time = excluded.last_trade_time,
                    day_started_at = excluded.day_started_at
                """,
                (ledger.daily_pnl, _iso(ledger.last_trade_time), ledger.day_started_at.isoformat()),
            )
            con.commit()

    def load_ledger_state(self) -> Optional[LedgerState]:
        with self._connect() as con:
            row = con.execute(
                "SELECT daily_pnl, last_trade_time, day_started_at FROM risk_ledger WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        return LedgerState(
            daily_pnl=row[0],
            last_trade_time=_parse(row[1]),
            day_started_at=datetime.fromisoformat(row[2]),
        )

    # -- positions -------------------------------------------------------

    def upsert_position(self, position: Position) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO positions (
                    mint_address, entry_price, entry_amount, remaining_amount, sold_amount,
                    cost_basis_sol, tier1_sold, tier2_sold, entry_time, last_price_check,
                    realized_pnl_sol, platform, entry_signature
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(mint_address) DO UPDATE SET
                    entry_price = excluded.entry_price,
                    entry_amount = excluded.entry_amount,
                    remaining_amount = excluded.remaining_amount,
                    sold_amount = excluded.sold_amount,
                    cost_basis_sol = excluded.cost_basis_sol,
                    tier1_sold = excluded.tier1_sold,
                    tier2_sold = excluded.tier2_sold,
                    entry_time = excluded.entry_time,
                    last_price_check = excluded.last_price_check,
                    realized_pnl_sol = excluded.realized_pnl_sol,
                    platform = excluded.platform,
                    entry_signature = excluded.entry_signature
                """,
                (
                    position.mint,
                    position.entry_price,
                    str(position.entry_amount),
                    str(position.remaining_amount),
                    str(position.sold_amount),
                    position.cost_basis_sol,
                    int(position.tier1_sold),
                    int(position.tier2_sold),
                    position.entry_time.isoformat(),
                    _iso(position.last_price_check),
                    position.realized_pnl_sol,
                    position.platform,
                    position.entry_signature,
                ),
            )
            con.commit()

    def delete_position(self, mint_address: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM positions WHERE mint_address = ?", (mint_address,))
            con.commit()

    def list_positions(self) -> List[Position]:
        with self._connect() as con:
            rows = con.execute(
                """
                SELECT mint_address, entry_price, entry_amount, remaining_amount, sold_amount,
                       cost_basis_sol, tier1_sold, tier2_sold, entry_time, last_price_check,
                       realized_pnl_sol, platform, entry_signature
                FROM positions ORDER BY entry_time
                """
            ).fetchall()
        return [
            Position(
                mint=row[0],
                entry_price=row[1],
                entry_amount=int(row[2]),
                remaining_amount=int(row[3]),
                sold_amount=int(row[4]),
                cost_basis_sol=row[5],
                tier1_sold=bool(row[6]),
                tier2_sold=bool(row[7]),
                entry_time=datetime.fromisoformat(row[8]),
                last_price_check=_parse(row[9]),
                realized_pnl_sol=row[10],
                platform=row[11],
                entry_signature=row[12],
            )
            for row in rows
        ]

    # -- execution log ---------------------------------------------------

    def record_attempt(self, attempt: ExecutionAttempt) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO execution_attempts (
                    method, side, mint_address, started_at, finished_at, success,
                    signature, retries, error_kind, error, correlation_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.method.value,
                    attempt.side.value,
                    attempt.mint,
                    attempt.started_at.isoformat(),
                    _iso(attempt.finished_at),
                    int(attempt.success),
                    attempt.signature,
                    attempt.retries,
                    attempt.error_kind,
                    attempt.error,
                    attempt.correlation_id,
                ),
            )
            con.commit()

    def list_attempts(self, limit: int = 200, mint_address: Optional[str] = None) -> List[ExecutionAttempt]:
        query = """
            SELECT method, side, mint_address, started_at, finished_at, success,
                   signature, retries, error_kind, error, correlation_id
            FROM execution_attempts
        """
        params: tuple = ()
        if mint_address:
            query += " WHERE mint_address = ?"
            params = (mint_address,)
        query += " ORDER BY id DESC LIMIT ?"
        with self._connect() as con:
            rows = con.execute(query, (*params, limit)).fetchall()
        return [
            ExecutionAttempt(
                method=ExecutionMethod(row[0]),
                side=Side(row[1]),
                mint=row[2],
                started_at=datetime.fromisoformat(row[3]),
                finished_at=_parse(row[4]),
                success=bool(row[5]),
                signature=row[6],
                retries=row[7],
                error_kind=row[8],
                error=row[9],
                correlation_id=row[10],
            )
            for row in rows
        ]


__all__ = ["SQLiteStorage"]
