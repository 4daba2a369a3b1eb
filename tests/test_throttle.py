import pytest

from daylight.domain.errors import GatewayError
from daylight.services.throttle import RateLimiter, ThrottledWorker


class VirtualClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.mark.asyncio
async def test_first_slot_is_immediate_then_spaced():
    clock = VirtualClock()
    limiter = RateLimiter(0.1, clock=clock, sleep=clock.sleep)

    for _ in range(3):
        await limiter.acquire()

    assert clock.sleeps == [pytest.approx(0.1), pytest.approx(0.1)]
    assert clock.now == pytest.approx(100.2)


@pytest.mark.asyncio
async def test_no_wait_when_slot_already_passed():
    clock = VirtualClock()
    limiter = RateLimiter(0.1, clock=clock, sleep=clock.sleep)

    await limiter.acquire()
    clock.now += 5
    await limiter.acquire()

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_worker_runs_jobs_serially_and_spaced():
    clock = VirtualClock()
    limiter = RateLimiter(0.1, clock=clock, sleep=clock.sleep)
    started = []

    async def job(arg):
        started.append((arg, clock.now))

    ok, failed = await ThrottledWorker(job, limiter).run(["a", "b", "c"])

    assert (ok, failed) == (3, 0)
    assert [a for a, _ in started] == ["a", "b", "c"]
    times = [t for _, t in started]
    assert all(later - earlier >= 0.1 - 1e-9 for earlier, later in zip(times, times[1:]))


@pytest.mark.asyncio
async def test_worker_keeps_going_after_failures():
    clock = VirtualClock()
    limiter = RateLimiter(0.1, clock=clock, sleep=clock.sleep)
    done = []

    async def job(arg):
        if arg == "bad":
            raise GatewayError("boom")
        if arg == "worse":
            raise RuntimeError("unexpected")
        done.append(arg)

    ok, failed = await ThrottledWorker(job, limiter, name="push").run(["a", "bad", "worse", "b"])

    assert (ok, failed) == (2, 2)
    assert done == ["a", "b"]
