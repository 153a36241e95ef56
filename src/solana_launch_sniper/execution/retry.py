"""Bounded exponential-backoff retry for async calls, built on tenacity."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from ..config.settings import RetryConfig, RetryPolicy, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.errors import RETRYABLE_ERRORS, RetryExhaustedError, RpcTimeoutError
from .rate_limiter import RateLimiter

T = TypeVar("T")


def backoff_wait(policy: RetryPolicy):
    """``min(max_delay, base_delay * multiplier**(attempt-1)) + uniform(0, jitter)``."""

    return wait_exponential(
        multiplier=policy.base_delay,
        exp_base=policy.multiplier,
        max=policy.max_delay,
    ) + wait_random(0, policy.jitter)


class RetryExecutor:
    """Runs an operation under the rate limiter, a per-call timeout and a retry budget.

    Only ``NetworkError`` (and its ``RpcTimeoutError`` subclass) is retried; any other
    exception escapes on the first occurrence with its type intact.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or get_app_config().retry
        self._limiter = limiter
        self._sleep = sleep
        self._logger = get_logger(__name__)
        self._history: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"calls": 0, "retries": 0, "successes": 0, "exhausted": 0}
        )

    @property
    def config(self) -> RetryConfig:
        return self._config

    def apply_config(self, config: RetryConfig) -> None:
        self._config = config

    def policy_for(self, api: str, **overrides: Any) -> RetryPolicy:
        return self._config.policy_for(api, **overrides)

    async def _invoke(self, api: str, method: str, operation: Callable[[], Awaitable[T]], timeout: float) -> T:
        try:
            if self._limiter is None:
                return await asyncio.wait_for(operation(), timeout)
            async with self._limiter.limit(api, method):
                return await asyncio.wait_for(operation(), timeout)
        except asyncio.TimeoutError as exc:
            raise RpcTimeoutError(f"{api}.{method} timed out after {timeout:.1f}s") from exc

    def _before_sleep(self, api: str, method: str) -> Callable[[RetryCallState], None]:
        def _log(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            self._history[api]["retries"] += 1
            METRICS.increment("retry_attempts", api=api)
            self._logger.warning(
                "%s.%s attempt %d failed (%s), retrying in %.2fs",
                api,
                method,
                state.attempt_number,
                exc,
                delay,
            )

        return _log

    async def run_counted(
        self,
        api: str,
        method: str,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
        **overrides: Any,
    ) -> Tuple[T, int]:
        """Like :meth:`run` but also returns how many attempts were made."""

        policy = self.policy_for(api, **overrides)
        self._history[api]["calls"] += 1
        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(policy.max_retries),
            wait=backoff_wait(policy),
            retry=retry_if_exception_type(retry_on),
            before_sleep=self._before_sleep(api, method),
            reraise=False,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await self._invoke(api, method, operation, policy.timeout)
            self._history[api]["successes"] += 1
            return result, attempts
        except RetryError as exc:
            self._history[api]["exhausted"] += 1
            last_error = exc.last_attempt.exception()
            raise RetryExhaustedError(f"{api}.{method}", attempts, last_error) from last_error

    async def run(
        self,
        api: str,
        method: str,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
        **overrides: Any,
    ) -> T:
        """Execute ``operation`` with the ``api`` policy; ``overrides`` replace individual policy fields."""

        result, _ = await self.run_counted(api, method, operation, retry_on=retry_on, **overrides)
        return result

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {api: dict(values) for api, values in self._history.items()}


__all__ = ["RetryExecutor", "backoff_wait"]
