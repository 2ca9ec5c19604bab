# backend/tests/unit/test_rate_limiter.py

import pytest
from unittest.mock import AsyncMock, MagicMock

from nearbuy.utils.rate_limiter import InMemoryRateBudget, Limit, RedisRateBudget


@pytest.fixture
def budget(fake_clock):
    return InMemoryRateBudget(clock=fake_clock, sleep=fake_clock.sleep)


@pytest.mark.asyncio
async def test_calls_within_ceiling_are_granted(budget):
    limits = [Limit("api", 3, 1)]
    for _ in range(3):
        assert await budget.try_acquire(limits) == 0
    assert budget.usage("api", 1) == 3


@pytest.mark.asyncio
async def test_rejected_call_reports_wait_and_consumes_nothing(budget, fake_clock):
    limits = [Limit("api", 2, 1)]
    await budget.try_acquire(limits)
    fake_clock.advance(0.25)
    await budget.try_acquire(limits)

    assert await budget.try_acquire(limits) == pytest.approx(0.75)
    assert budget.usage("api", 1) == 2

    fake_clock.advance(0.75)
    assert await budget.try_acquire(limits) == 0


@pytest.mark.asyncio
async def test_excess_calls_are_delayed_not_dropped(budget, fake_clock):
    limits = [Limit("api", 10, 1)]
    granted_at = []
    for _ in range(35):
        assert await budget.acquire(limits, max_wait=60) == 0
        granted_at.append(fake_clock.now)

    assert granted_at == [1000.0] * 10 + [1001.0] * 10 + [1002.0] * 10 + [1003.0] * 5
    assert fake_clock.sleeps == [1.0, 1.0, 1.0]


@pytest.mark.asyncio
async def test_ceiling_holds_in_every_sliding_window(budget, fake_clock):
    limits = [Limit("api", 7, 1)]
    granted_at = []
    for i in range(60):
        await budget.acquire(limits, max_wait=60)
        granted_at.append(fake_clock.now)
        fake_clock.advance(0.05)

    for t in granted_at:
        in_window = [g for g in granted_at if t - 1 < g <= t]
        assert len(in_window) <= 7


@pytest.mark.asyncio
async def test_all_windows_are_checked_together(budget, fake_clock):
    limits = [Limit("api", 2, 1), Limit("api", 3, 60)]
    assert await budget.try_acquire(limits) == 0
    assert await budget.try_acquire(limits) == 0
    assert await budget.try_acquire(limits) == pytest.approx(1.0)

    fake_clock.advance(1)
    assert await budget.try_acquire(limits) == 0
    # The per-minute window is now full even though the per-second one is not.
    assert await budget.try_acquire(limits) == pytest.approx(59.0)
    assert budget.usage("api", 1) == 1


@pytest.mark.asyncio
async def test_acquire_gives_up_after_max_wait(budget, fake_clock):
    limits = [Limit("api", 1, 60)]
    await budget.acquire(limits)

    retry_after = await budget.acquire(limits, max_wait=5)

    assert retry_after == pytest.approx(60.0)
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_redis_budget_passes_every_window_to_one_script_call(fake_clock):
    script = AsyncMock(return_value=250)
    redis_client = MagicMock()
    redis_client.register_script.return_value = script
    budget = RedisRateBudget(redis_client, prefix="test", clock=fake_clock)

    wait = await budget.try_acquire([Limit("whatsapp-api", 70, 1), Limit("whatsapp-api", 4000, 60)])

    assert wait == pytest.approx(0.25)
    script.assert_awaited_once()
    kwargs = script.call_args.kwargs
    assert kwargs["keys"] == ["test:rate:whatsapp-api:1000", "test:rate:whatsapp-api:60000"]
    assert kwargs["args"][0] == 1000000
    assert kwargs["args"][2:] == [70, 1000, 4000, 60000]
