import asyncio

from solana_launch_sniper.config.settings import RateLimitConfig
from solana_launch_sniper.execution.rate_limiter import GLOBAL_KEY, RateLimiter


class FakeTime:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(fake: FakeTime, **overrides) -> RateLimiter:
    config = RateLimitConfig(window_seconds=10.0, max_per_method=3, max_global=100, buffer_seconds=0.1, **overrides)
    return RateLimiter(config, clock=fake.clock, sleep=fake.sleep)


def test_calls_under_cap_do_not_wait():
    fake = FakeTime()
    limiter = _limiter(fake)

    async def scenario():
        return [await limiter.acquire("jupiter", "quote") for _ in range(3)]

    assert asyncio.run(scenario()) == [0.0, 0.0, 0.0]
    assert fake.sleeps == []


def test_call_over_cap_waits_for_oldest_to_leave_window():
    fake = FakeTime()
    limiter = _limiter(fake)

    async def scenario():
        for _ in range(3):
            await limiter.acquire("jupiter", "quote")
            fake.now += 1.0
        return await limiter.acquire("jupiter", "quote")

    waited = asyncio.run(scenario())
    # Oldest call at t=100, now t=103: it leaves the window at t=110, plus the buffer.
    assert waited == 7.1 or abs(waited - 7.1) < 1e-9
    assert fake.now - 100.0 >= 10.0 - 0.1


def test_keys_are_independent_but_share_the_global_cap():
    fake = FakeTime()
    limiter = _limiter(fake, max_concurrent=5)
    limiter.apply_config(RateLimitConfig(window_seconds=10.0, max_per_method=3, max_global=4, buffer_seconds=0.1))

    async def scenario():
        for _ in range(3):
            await limiter.acquire("jupiter", "quote")
        first = await limiter.acquire("solana", "getAccountInfo")
        second = await limiter.acquire("solana", "getAccountInfo")
        return first, second

    first, second = asyncio.run(scenario())
    assert first == 0.0
    assert second > 0.0
    stats = limiter.stats()
    assert stats["total_waits"] == 1
    assert stats["requests_in_window"][GLOBAL_KEY] <= 4


def test_concurrent_callers_never_exceed_cap():
    fake = FakeTime()
    limiter = _limiter(fake)
    admitted = []

    async def caller(index: int):
        await limiter.acquire("pumpportal", "buy")
        admitted.append((index, fake.now))

    async def scenario():
        await asyncio.gather(*(caller(i) for i in range(7)))

    asyncio.run(scenario())
    times = sorted(moment for _, moment in admitted)
    assert len(times) == 7
    for index in range(3, len(times)):
        assert times[index] - times[index - 3] >= 10.0


def test_limit_context_holds_a_concurrency_slot():
    fake = FakeTime()
    limiter = _limiter(fake, max_concurrent=1)
    order = []

    async def worker(name: str):
        async with limiter.limit("launchpad", name):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    async def scenario():
        await asyncio.gather(worker("a"), worker("b"))

    asyncio.run(scenario())
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
