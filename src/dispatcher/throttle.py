from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable


class SpawnScheduler:
    """Owns the active-spawn count and the process-wide inter-spawn gap.

    ``try_acquire``/``release`` bound in-flight spawns by ``max_concurrent``.
    ``wait_for_turn`` enforces at least ``spawn_delay_ms`` between any two
    gateway calls; callers queue on a single lock so the gap holds across all
    tasks and workers.
    """

    def __init__(
        self,
        max_concurrent: int,
        spawn_delay_ms: int = 0,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.spawn_delay_seconds = max(0, spawn_delay_ms) / 1000.0
        self._monotonic = monotonic
        self._sleep = sleep
        self._active = 0
        self._peak = 0
        self._last_dispatch: float | None = None
        self._gate = asyncio.Lock()

    @property
    def active(self) -> int:
        return self._active

    @property
    def peak(self) -> int:
        return self._peak

    @property
    def available(self) -> int:
        return self.max_concurrent - self._active

    def try_acquire(self) -> bool:
        if self._active >= self.max_concurrent:
            return False
        self._active += 1
        self._peak = max(self._peak, self._active)
        return True

    def release(self) -> None:
        if self._active <= 0:
            raise RuntimeError("release() called without a matching try_acquire()")
        self._active -= 1

    async def wait_for_turn(self) -> float:
        """Wait until the next spawn may start; returns seconds waited."""
        async with self._gate:
            waited = 0.0
            if self._last_dispatch is not None and self.spawn_delay_seconds > 0:
                elapsed = self._monotonic() - self._last_dispatch
                remaining = self.spawn_delay_seconds - elapsed
                if remaining > 0:
                    await self._sleep(remaining)
                    waited = remaining
            self._last_dispatch = self._monotonic()
            return waited
