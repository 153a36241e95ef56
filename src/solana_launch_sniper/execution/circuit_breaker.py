"""Process-wide trading kill switch with durable state."""

from __future__ import annotations

import threading
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from ..config.settings import CircuitBreakerConfig, get_app_config
from ..datalake.schemas import BreakerState, CircuitBreakerState
from ..datalake.storage import SQLiteStorage
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import utc_now
from ..utils.errors import CircuitOpenError


class CircuitBreaker:
    """Closed / open / half-open state machine fed by trade outcomes.

    Every mutation is applied under a lock and written to storage before the call
    returns, so a restart resumes exactly where the process stopped.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        storage: Optional[SQLiteStorage] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or get_app_config().circuit_breaker
        self._storage = storage
        self._clock = clock
        self._lock = threading.RLock()
        self._logger = get_logger(__name__)
        loaded = storage.load_breaker_state() if storage else None
        if loaded is None:
            self._state = CircuitBreakerState(last_reset_time=clock())
        else:
            self._state = loaded
            if loaded.trial_in_flight:
                # The trial trade died with the previous process.
                self._state.trial_in_flight = False
                self._logger.info("Discarded half-open trial left over from previous run")
            self._logger.info("Restored circuit breaker state", extra={"breaker": self._state.state.value})
        self._persist()

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state.state

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return replace(self._state)

    def apply_config(self, config: CircuitBreakerConfig) -> None:
        with self._lock:
            self._config = config

    def _persist(self) -> None:
        if self._storage is not None:
            self._storage.save_breaker_state(self._state)

    def _roll_day(self, now: datetime) -> None:
        elapsed = (now - self._state.last_reset_time).total_seconds()
        if elapsed >= self._config.day_length_seconds:
            self._logger.info(
                "Resetting daily breaker counters",
                extra={"daily_loss": self._state.daily_loss, "daily_trades": self._state.daily_trades},
            )
            self._state.daily_loss = 0.0
            self._state.daily_trades = 0
            self._state.last_reset_time = now

    def _open(self, now: datetime, reason: str) -> None:
        self._state.state = BreakerState.OPEN
        self._state.trial_in_flight = False
        self._state.next_attempt_time = now + timedelta(seconds=self._config.recovery_window_seconds)
        METRICS.increment("breaker_opened")
        self._logger.warning(
            "Circuit breaker opened: %s",
            reason,
            extra={"next_attempt_time": self._state.next_attempt_time.isoformat()},
        )

    def _trip_reason(self, single_loss: float) -> Optional[str]:
        cfg = self._config
        if single_loss >= cfg.single_loss_threshold_sol:
            return f"single trade loss {single_loss:.4f} SOL >= {cfg.single_loss_threshold_sol}"
        if self._state.daily_loss >= cfg.daily_loss_threshold_sol:
            return f"daily loss {self._state.daily_loss:.4f} SOL >= {cfg.daily_loss_threshold_sol}"
        if self._state.consecutive_failures >= cfg.error_threshold:
            return f"{self._state.consecutive_failures} consecutive failures"
        return None

    def check(self, now: Optional[datetime] = None) -> Optional[str]:
        """Return why a trade would be refused right now, without changing state."""

        now = now or self._clock()
        with self._lock:
            if self._state.state == BreakerState.OPEN:
                if self._state.next_attempt_time and now < self._state.next_attempt_time:
                    return f"Circuit breaker open until {self._state.next_attempt_time.isoformat()}"
                return None
            if self._state.state == BreakerState.HALF_OPEN and self._state.trial_in_flight:
                return "Circuit breaker half-open trial already in flight"
            return None

    def admit(self, now: Optional[datetime] = None) -> None:
        """Claim permission for one trade; moves open to half-open once the recovery window passed."""

        now = now or self._clock()
        with self._lock:
            reason = self.check(now)
            if reason:
                raise CircuitOpenError([reason])
            if self._state.state == BreakerState.CLOSED:
                return
            if self._state.state == BreakerState.OPEN:
                self._state.state = BreakerState.HALF_OPEN
                self._logger.info("Circuit breaker half-open, admitting one trial trade")
            self._state.trial_in_flight = True
            self._persist()

    def release_trial(self) -> None:
        """Give back a half-open trial slot whose trade never reached the chain."""

        with self._lock:
            if self._state.trial_in_flight:
                self._state.trial_in_flight = False
                self._persist()

    def record_success(self, profit_loss: Optional[float] = None) -> None:
        now = self._clock()
        with self._lock:
            self._roll_day(now)
            self._state.daily_trades += 1
            self._state.consecutive_failures = 0
            self._state.last_success_time = now
            loss = 0.0
            if profit_loss is not None:
                self._state.daily_loss = max(0.0, self._state.daily_loss - profit_loss)
                loss = max(0.0, -profit_loss)
            if self._state.state == BreakerState.HALF_OPEN:
                self._state.state = BreakerState.CLOSED
                self._state.trial_in_flight = False
                self._state.next_attempt_time = None
                self._logger.info("Circuit breaker closed after successful trial")
            reason = self._trip_reason(loss) if loss else None
            if reason and self._state.state == BreakerState.CLOSED:
                self._open(now, reason)
            self._persist()

    def record_failure(self, loss: Optional[float] = None, error: Optional[str] = None) -> None:
        now = self._clock()
        with self._lock:
            self._roll_day(now)
            self._state.daily_trades += 1
            self._state.failure_count += 1
            self._state.consecutive_failures += 1
            self._state.last_failure_time = now
            single_loss = abs(loss) if loss else 0.0
            self._state.daily_loss += single_loss
            if self._state.state == BreakerState.HALF_OPEN:
                self._open(now, f"trial trade failed: {error or 'unknown error'}")
            elif self._state.state == BreakerState.CLOSED:
                reason = self._trip_reason(single_loss)
                if reason:
                    self._open(now, reason)
            self._persist()

    def reset(self) -> None:
        """Manually close the breaker and clear failure counters."""

        now = self._clock()
        with self._lock:
            self._state.state = BreakerState.CLOSED
            self._state.consecutive_failures = 0
            self._state.next_attempt_time = None
            self._state.trial_in_flight = False
            self._state.daily_loss = 0.0
            self._state.daily_trades = 0
            self._state.last_reset_time = now
            self._persist()
        self._logger.info("Circuit breaker manually reset")

    def status(self) -> Dict[str, object]:
        with self._lock:
            payload = asdict(self._state)
        payload["state"] = self._state.state.value
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        payload["thresholds"] = self._config.model_dump()
        return payload


__all__ = ["CircuitBreaker"]
