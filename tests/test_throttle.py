import asyncio

import pytest

from dispatcher.throttle import SpawnScheduler


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_try_acquire_respects_ceiling() -> None:
    scheduler = SpawnScheduler(2)

    assert scheduler.try_acquire() is True
    assert scheduler.try_acquire() is True
    assert scheduler.try_acquire() is False
    assert scheduler.active == 2
    assert scheduler.available == 0

    scheduler.release()
    assert scheduler.try_acquire() is True
    assert scheduler.peak == 2


def test_release_without_acquire_raises() -> None:
    scheduler = SpawnScheduler(1)

    with pytest.raises(RuntimeError, match="without a matching"):
        scheduler.release()


def test_invalid_ceiling_is_rejected() -> None:
    with pytest.raises(ValueError):
        SpawnScheduler(0)


def test_wait_for_turn_spaces_consecutive_spawns() -> None:
    clock = FakeClock()
    scheduler = SpawnScheduler(4, 1000, monotonic=clock.monotonic, sleep=clock.sleep)

    async def _run() -> list[float]:
        return [await scheduler.wait_for_turn() for _ in range(3)]

    waited = asyncio.run(_run())

    assert waited == [0.0, 1.0, 1.0]
    assert clock.sleeps == [1.0, 1.0]


def test_wait_for_turn_skips_sleep_after_gap_elapsed() -> None:
    clock = FakeClock()
    scheduler = SpawnScheduler(4, 500, monotonic=clock.monotonic, sleep=clock.sleep)

    async def _run() -> float:
        await scheduler.wait_for_turn()
        clock.now += 2.0
        return await scheduler.wait_for_turn()

    assert asyncio.run(_run()) == 0.0
    assert clock.sleeps == []


def test_gap_holds_across_concurrent_waiters() -> None:
    clock = FakeClock()
    scheduler = SpawnScheduler(4, 250, monotonic=clock.monotonic, sleep=clock.sleep)
    starts: list[float] = []

    async def _spawn() -> None:
        await scheduler.wait_for_turn()
        starts.append(clock.now)

    async def _run() -> None:
        await asyncio.gather(*(_spawn() for _ in range(4)))

    asyncio.run(_run())

    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert len(starts) == 4
    assert all(gap >= 0.25 for gap in gaps)


def test_zero_delay_never_sleeps() -> None:
    clock = FakeClock()
    scheduler = SpawnScheduler(2, 0, monotonic=clock.monotonic, sleep=clock.sleep)

    async def _run() -> None:
        for _ in range(3):
            await scheduler.wait_for_turn()

    asyncio.run(_run())

    assert clock.sleeps == []
