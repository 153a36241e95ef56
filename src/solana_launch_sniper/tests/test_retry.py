import asyncio

import pytest

from solana_launch_sniper.config.settings import RetryConfig, RetryPolicy
from solana_launch_sniper.execution.retry import RetryExecutor
from solana_launch_sniper.utils.errors import (
    NetworkError,
    RetryExhaustedError,
    RpcTimeoutError,
    TransactionRejectedError,
)


def _executor(sleeps, **policy):
    values = {"max_retries": 3, "base_delay": 1.0, "max_delay": 30.0, "multiplier": 2.0, "jitter": 0.0}
    values.update(policy)
    config = RetryConfig(default=RetryPolicy(**values), apis={"slow": {"max_retries": 5, "base_delay": 4.0}})

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return RetryExecutor(config, sleep=fake_sleep)


def _flaky(failures, error=NetworkError):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error(f"failure {calls['count']}")
        return "ok"

    return operation, calls


def test_retries_until_success_with_exponential_backoff():
    sleeps = []
    executor = _executor(sleeps)
    operation, calls = _flaky(2)
    result, attempts = asyncio.run(executor.run_counted("rpc", "call", operation))
    assert result == "ok"
    assert attempts == 3
    assert calls["count"] == 3
    assert sleeps == [1.0, 2.0]


def test_exhaustion_wraps_last_error():
    sleeps = []
    executor = _executor(sleeps)
    operation, calls = _flaky(10)
    with pytest.raises(RetryExhaustedError) as excinfo:
        asyncio.run(executor.run("rpc", "call", operation))
    assert calls["count"] == 3
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, NetworkError)
    assert "failure 3" in str(excinfo.value)
    assert executor.stats()["rpc"]["exhausted"] == 1


def test_backoff_is_capped_and_jittered():
    sleeps = []
    executor = _executor(sleeps, max_retries=5, max_delay=3.0, jitter=0.5)
    operation, _ = _flaky(10)
    with pytest.raises(RetryExhaustedError):
        asyncio.run(executor.run("rpc", "call", operation))
    assert len(sleeps) == 4
    for expected, actual in zip([1.0, 2.0, 3.0, 3.0], sleeps):
        assert expected <= actual <= expected + 0.5


def test_non_retryable_error_escapes_immediately():
    sleeps = []
    executor = _executor(sleeps)
    operation, calls = _flaky(1, error=TransactionRejectedError)
    with pytest.raises(TransactionRejectedError):
        asyncio.run(executor.run("rpc", "call", operation))
    assert calls["count"] == 1
    assert sleeps == []


def test_per_api_policy_and_call_site_overrides():
    sleeps = []
    executor = _executor(sleeps)
    assert executor.policy_for("slow").max_retries == 5
    assert executor.policy_for("slow", max_retries=2).max_retries == 2
    operation, calls = _flaky(10)
    with pytest.raises(RetryExhaustedError):
        asyncio.run(executor.run("slow", "call", operation, max_retries=2))
    assert calls["count"] == 2
    assert sleeps == [4.0]


def test_timeouts_become_retryable_timeout_errors():
    sleeps = []
    executor = _executor(sleeps, max_retries=2)

    async def hangs():
        await asyncio.sleep(5)

    with pytest.raises(RetryExhaustedError) as excinfo:
        asyncio.run(executor.run("rpc", "call", hangs, timeout=0.01))
    assert isinstance(excinfo.value.last_error, RpcTimeoutError)
    assert len(sleeps) == 1
