from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from dispatcher.brief import render_brief
from dispatcher.config import RouterConfig
from dispatcher.gateway.base import (
    BriefValidationError,
    GatewayError,
    GatewayTimeoutError,
    SpawnGatewayClient,
    SpawnSession,
)
from dispatcher.models import LANES, SpawnAttempt, StatusEntry, Task, epoch_to_iso, priority_rank
from dispatcher.state.store import StateError
from dispatcher.state.tasks import ActivityLog, TaskStore
from dispatcher.throttle import SpawnScheduler
from dispatcher.workers import WorkerDirectory

log = logging.getLogger(__name__)

RouterEventHook = Callable[[dict[str, Any]], None]
TickHook = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class PollResult:
    dispatched: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    reclaimed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "dispatched": list(self.dispatched),
            "deferred": list(self.deferred),
            "blocked": list(self.blocked),
            "reclaimed": list(self.reclaimed),
        }


def _created_epoch(task: Task) -> float:
    try:
        return datetime.fromisoformat(task.created_at).timestamp()
    except ValueError:
        return float("inf")


def dispatch_order_key(task: Task) -> tuple[int, float, str]:
    queued_at = task.queued_at if task.queued_at is not None else _created_epoch(task)
    return (priority_rank(task.priority), queued_at, task.id)


class TaskRouter:
    """Dispatches queued tasks to the spawn gateway.

    Router-owned transitions: ``queued -> claiming`` on claim, then
    ``claiming -> development`` on success, ``claiming -> queued`` for a
    retryable failure with budget left, ``claiming -> blocked`` for exhausted
    budget or a malformed brief, and ``claiming -> queued`` when a claim lease
    expires with no spawn in flight.
    """

    def __init__(
        self,
        tasks: TaskStore,
        gateway: SpawnGatewayClient,
        directory: WorkerDirectory,
        config: RouterConfig | None = None,
        *,
        scheduler: SpawnScheduler | None = None,
        clock: Callable[[], float] = time.time,
        activity: ActivityLog | None = None,
        event_hook: RouterEventHook | None = None,
        api_base_url: str | None = None,
        router_id: str | None = None,
    ) -> None:
        self.tasks = tasks
        self.gateway = gateway
        self.directory = directory
        self.config = config or RouterConfig()
        self.scheduler = scheduler or SpawnScheduler(
            self.config.max_concurrent, self.config.spawn_delay_ms
        )
        self.activity = activity
        self.event_hook = event_hook
        self.api_base_url = api_base_url
        self.router_id = router_id or f"router-{uuid4().hex[:8]}"
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[SpawnAttempt]] = {}

    @property
    def active_spawns(self) -> int:
        return self.scheduler.active

    @property
    def inflight_task_ids(self) -> list[str]:
        return sorted(self._inflight)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.activity is not None:
            self.activity.record(event)
        if self.event_hook:
            self.event_hook(event)

    def _history(self, task: Task, lane: str, note: str, now: float) -> None:
        task.status_history.append(StatusEntry(at=epoch_to_iso(now), to=lane, note=note))
        task.lane = lane

    @staticmethod
    def _clear_claim(task: Task) -> None:
        task.claimed_by = None
        task.claim_expires_at = None

    def _dependencies_done(self, task: Task, task_by_id: dict[str, Task]) -> bool:
        return all(
            task_by_id.get(dep_id) is not None and task_by_id[dep_id].lane == "done"
            for dep_id in task.depends_on
        )

    def _ready_tasks(self, tasks: list[Task], now: float) -> list[Task]:
        task_by_id = {task.id: task for task in tasks}
        ready: list[Task] = []
        for task in tasks:
            if task.lane != "queued":
                continue
            if task.next_attempt_at is not None and task.next_attempt_at > now:
                continue
            if self.directory.resolve(task.owner, task.tags) is None:
                continue
            if not self._dependencies_done(task, task_by_id):
                continue
            ready.append(task)
        ready.sort(key=dispatch_order_key)
        return ready

    def _reclaim_expired(self, now: float) -> list[str]:
        reclaimed: list[str] = []
        for task in self.tasks.list(lane="claiming"):
            if task.id in self._inflight:
                continue
            if task.claim_expires_at is not None and task.claim_expires_at > now:
                continue

            def _mutate(current: Task) -> bool:
                if current.lane != "claiming" or current.id in self._inflight:
                    return False
                if current.claim_expires_at is not None and current.claim_expires_at > now:
                    return False
                self._history(current, "queued", f"Claim lease expired ({current.claimed_by})", now)
                self._clear_claim(current)
                return True

            if self.tasks.transact(task.id, _mutate) is not None:
                reclaimed.append(task.id)
                log.warning("Reclaimed task %s after expired claim lease", task.id)
                self._emit({"event": "claim_lease_expired", "task_id": task.id})
        return reclaimed

    def _block_exhausted(self, task: Task, now: float) -> bool:
        def _mutate(current: Task) -> bool:
            if current.lane != "queued" or current.retry_count < self.config.max_retries:
                return False
            self._history(
                current,
                "blocked",
                f"Retry budget exhausted ({current.retry_count}/{self.config.max_retries}); "
                "re-queue manually to retry",
                now,
            )
            current.next_attempt_at = None
            return True

        blocked = self.tasks.transact(task.id, _mutate) is not None
        if blocked:
            self._emit({"event": "task_blocked", "task_id": task.id, "reason": "retry_budget"})
        return blocked

    def claim(self, task: Task, now: float | None = None) -> Task | None:
        """Move a still-queued task to ``claiming`` under a lease."""
        at = self._clock() if now is None else now
        owner = self.directory.resolve(task.owner, task.tags)
        if owner is None:
            return None

        def _mutate(current: Task) -> bool:
            if current.lane != "queued":
                return False
            current.lane = "claiming"
            current.owner = owner
            current.claimed_by = self.router_id
            current.claim_expires_at = at + self.config.claim_lease_seconds
            return True

        claimed = self.tasks.transact(task.id, _mutate)
        if claimed is None:
            log.info("Could not claim task %s; lane changed under the router", task.id)
            self._emit({"event": "claim_conflict", "task_id": task.id})
        return claimed

    def renew_claim(self, task_id: str, now: float | None = None) -> Task | None:
        """Push the lease of a claim this router still holds."""
        at = self._clock() if now is None else now

        def _mutate(current: Task) -> bool:
            if current.lane != "claiming" or current.claimed_by != self.router_id:
                return False
            current.claim_expires_at = at + self.config.claim_lease_seconds
            return True

        return self.tasks.transact(task_id, _mutate)

    async def _keep_claim(self, task_id: str) -> None:
        interval = self.config.claim_lease_seconds / 2
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = self.renew_claim(task_id)
            except StateError as exc:
                log.warning("Could not renew claim lease for task %s: %s", task_id, exc)
                continue
            if renewed is None:
                return
            log.debug("Renewed claim lease for task %s until %s", task_id, renewed.claim_expires_at)

    async def poll(self, now: float | None = None) -> PollResult:
        at = self._clock() if now is None else now
        result = PollResult()
        result.reclaimed = self._reclaim_expired(at)

        ready = self._ready_tasks(self.tasks.list(), at)
        for index, task in enumerate(ready):
            if task.id in self._inflight:
                continue
            if task.retry_count >= self.config.max_retries:
                if self._block_exhausted(task, at):
                    result.blocked.append(task.id)
                continue
            if not self.scheduler.try_acquire():
                result.deferred = [item.id for item in ready[index:] if item.id not in self._inflight]
                break
            claimed = self.claim(task, at)
            if claimed is None:
                self.scheduler.release()
                continue
            self._inflight[claimed.id] = asyncio.create_task(
                self._dispatch(claimed), name=f"spawn-{claimed.id}"
            )
            result.dispatched.append(claimed.id)

        if result.deferred:
            log.info(
                "Backpressure: %d active spawn(s), %d task(s) left queued",
                self.scheduler.active,
                len(result.deferred),
            )
            self._emit(
                {
                    "event": "backpressure",
                    "active": self.scheduler.active,
                    "deferred": list(result.deferred),
                }
            )
        return result

    async def _dispatch(self, task: Task) -> SpawnAttempt:
        keeper = asyncio.create_task(self._keep_claim(task.id), name=f"lease-{task.id}")
        try:
            return await self.spawn(task)
        except Exception:
            log.exception("Spawn for task %s failed before its outcome was recorded", task.id)
            raise
        finally:
            keeper.cancel()
            await asyncio.gather(keeper, return_exceptions=True)
            self.scheduler.release()
            self._inflight.pop(task.id, None)

    async def spawn(self, task: Task) -> SpawnAttempt:
        await self.scheduler.wait_for_turn()
        attempt_number = task.retry_count + 1
        started = self._clock()
        session_id = f"{task.owner}-{task.id[:8]}-{attempt_number}"
        session: SpawnSession | None = None
        error: str | None = None
        try:
            brief = render_brief(task, api_base_url=self.api_base_url)
            session = await self.gateway.spawn_session(str(task.owner), brief, session_id)
            outcome = "success"
        except BriefValidationError as exc:
            outcome, error = "validationError", str(exc)
        except GatewayTimeoutError as exc:
            outcome, error = "timeout", str(exc)
        except GatewayError as exc:
            outcome, error = "gatewayError", str(exc)
        except Exception as exc:
            log.exception("Unexpected gateway failure for task %s", task.id)
            outcome, error = "gatewayError", f"{type(exc).__name__}: {exc}"

        attempt = SpawnAttempt(
            task_id=task.id,
            attempt_number=attempt_number,
            started_at=epoch_to_iso(started),
            outcome=outcome,
            session_key=session.session_key if session else None,
            error=error,
        )
        self._apply_outcome(task, attempt)
        return attempt

    def _apply_outcome(self, task: Task, attempt: SpawnAttempt) -> None:
        now = self._clock()
        max_retries = self.config.max_retries

        def _mutate(current: Task) -> bool:
            if current.lane != "claiming" or current.claimed_by != self.router_id:
                return False
            self._clear_claim(current)
            current.next_attempt_at = None
            if attempt.outcome == "success":
                current.session_key = attempt.session_key
                self._history(
                    current,
                    "development",
                    f"Spawned session {attempt.session_key} for {current.owner}",
                    now,
                )
                return True
            if attempt.outcome == "validationError":
                self._history(current, "blocked", f"Invalid task brief: {attempt.error}", now)
                return True
            current.retry_count += 1
            if current.retry_count < max_retries:
                current.next_attempt_at = now + self.config.retry_delay_seconds
                self._history(
                    current,
                    "queued",
                    f"Spawn attempt {attempt.attempt_number} failed ({attempt.outcome}): "
                    f"{attempt.error}; retry {current.retry_count}/{max_retries} "
                    f"after {self.config.retry_delay_seconds:g}s",
                    now,
                )
            else:
                self._history(
                    current,
                    "blocked",
                    f"Spawn failed after {current.retry_count} attempts ({attempt.outcome}): "
                    f"{attempt.error}",
                    now,
                )
            return True

        updated = self.tasks.transact(task.id, _mutate)
        event: dict[str, Any] = {"event": "spawn_attempt", **attempt.to_dict()}
        if updated is None:
            log.warning(
                "Discarded %s outcome for task %s; task left the claim before spawn finished",
                attempt.outcome,
                task.id,
            )
            event["applied"] = False
            self._emit(event)
            return

        event["applied"] = True
        event["lane"] = updated.lane
        event["retry_count"] = updated.retry_count
        if attempt.outcome == "success":
            log.info("Task %s -> development (session %s)", task.id, attempt.session_key)
        elif updated.lane == "blocked":
            log.warning("Task %s blocked: %s", task.id, updated.failure_reason)
        else:
            log.info(
                "Task %s spawn failed (%s); retry %d/%d scheduled",
                task.id,
                attempt.outcome,
                updated.retry_count,
                max_retries,
            )
        self._emit(event)

    async def drain(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    def requeue(self, task_id: str, now: float | None = None) -> Task | None:
        """Operator re-queue of a blocked task with a fresh retry budget."""
        at = self._clock() if now is None else now

        def _mutate(current: Task) -> bool:
            if current.lane != "blocked":
                return False
            current.retry_count = 0
            current.next_attempt_at = None
            current.queued_at = at
            self._clear_claim(current)
            self._history(current, "queued", "Manually re-queued", at)
            return True

        task = self.tasks.transact(task_id, _mutate)
        if task is not None:
            self._emit({"event": "task_requeued", "task_id": task_id})
        return task

    async def run(
        self,
        stop_event: asyncio.Event | None = None,
        *,
        max_ticks: int | None = None,
        on_tick: TickHook | None = None,
    ) -> int:
        stop = stop_event or asyncio.Event()
        ticks = 0
        try:
            while not stop.is_set():
                now = self._clock()
                try:
                    await self.poll(now)
                    if on_tick is not None:
                        await on_tick(now)
                except StateError as exc:
                    log.error("Poll cycle failed, retrying next tick: %s", exc)
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.config.poll_interval_seconds)
                except TimeoutError:
                    pass
        finally:
            await self.drain()
        return ticks

    def status(self, recent: int = 10) -> dict[str, Any]:
        counts = {lane: 0 for lane in LANES}
        for task in self.tasks.list():
            counts[task.lane] = counts.get(task.lane, 0) + 1
        return {
            "router_id": self.router_id,
            "lanes": counts,
            "active_spawns": self.scheduler.active,
            "max_concurrent": self.scheduler.max_concurrent,
            "inflight": self.inflight_task_ids,
            "recent_activity": self.activity.recent(recent) if self.activity else [],
        }
