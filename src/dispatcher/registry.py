"""Worker instance liveness tracking.

Instances are upserted by heartbeats and never registered explicitly. Their
status is derived from heartbeat age against two thresholds: ``stale`` once
the age reaches ``stale_timeout`` and ``offline`` once it reaches
``offline_timeout``. Offline instances stay visible until ``prune`` removes
them after the longer hard expiry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from dispatcher.models import INSTANCE_STATUSES, WorkerInstance

log = logging.getLogger(__name__)


class HeartbeatValidationError(ValueError):
    """Raised when a heartbeat payload is malformed."""


_PAYLOAD_ALIASES = {
    "instanceId": "instance_id",
    "agentId": "agent_id",
    "currentTask": "current_task",
    "tailscaleIP": "address",
}


def _required_text(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise HeartbeatValidationError(f"Heartbeat field '{key}' must be a non-empty string.")
    return value.strip()


def _optional_text(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise HeartbeatValidationError(f"Heartbeat field '{key}' must be a string.")
    return value.strip() or None


def parse_heartbeat(payload: Any) -> dict[str, str | None]:
    if not isinstance(payload, Mapping):
        raise HeartbeatValidationError("Heartbeat payload must be an object.")
    normalized = {_PAYLOAD_ALIASES.get(key, key): value for key, value in payload.items()}
    return {
        "instance_id": _required_text(normalized, "instance_id"),
        "agent_id": _required_text(normalized, "agent_id"),
        "address": _optional_text(normalized, "address"),
        "status": _optional_text(normalized, "status"),
        "current_task": _optional_text(normalized, "current_task"),
    }


class InstanceRegistry:
    def __init__(
        self,
        *,
        stale_timeout: float = 300.0,
        offline_timeout: float = 600.0,
        expiry: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not 0 < stale_timeout < offline_timeout < expiry:
            raise ValueError("timeouts must satisfy 0 < stale < offline < expiry")
        self.stale_timeout = stale_timeout
        self.offline_timeout = offline_timeout
        self.expiry = expiry
        self._clock = clock
        self._instances: dict[str, WorkerInstance] = {}
        self._agent_to_instance: dict[str, str] = {}

    def _now(self, now: float | None) -> float:
        return self._clock() if now is None else now

    def heartbeat(
        self,
        instance_id: str,
        agent_id: str,
        meta: Mapping[str, Any] | None = None,
        *,
        now: float | None = None,
    ) -> WorkerInstance:
        parsed = parse_heartbeat({**(meta or {}), "instance_id": instance_id, "agent_id": agent_id})
        at = self._now(now)
        instance = self._instances.get(parsed["instance_id"])
        if instance is None:
            instance = WorkerInstance(
                instance_id=parsed["instance_id"],
                agent_id=parsed["agent_id"],
                created_at=at,
            )
            self._instances[instance.instance_id] = instance
            log.info("Registered instance %s (agent %s)", instance.instance_id, instance.agent_id)

        instance.agent_id = parsed["agent_id"]
        instance.address = parsed["address"] or instance.address
        instance.current_task = parsed["current_task"]
        instance.reported_status = parsed["status"]
        instance.last_heartbeat_at = at
        instance.status = "online"

        previous = self._agent_to_instance.get(instance.agent_id)
        if previous and previous != instance.instance_id:
            old = self._instances.get(previous)
            if old is not None:
                old.agents = [agent for agent in old.agents if agent != instance.agent_id]
            log.info("Agent %s moved from %s to %s", instance.agent_id, previous, instance.instance_id)
        self._agent_to_instance[instance.agent_id] = instance.instance_id
        if instance.agent_id not in instance.agents:
            instance.agents.append(instance.agent_id)
        return instance

    register = heartbeat

    def ingest(self, payload: Any, *, now: float | None = None) -> WorkerInstance:
        """Validate a raw heartbeat payload and apply it."""
        parsed = parse_heartbeat(payload)
        instance_id = parsed.pop("instance_id")
        agent_id = parsed.pop("agent_id")
        return self.heartbeat(instance_id, agent_id, parsed, now=now)

    def compute_health(self, instance: WorkerInstance, now: float | None = None) -> float:
        age = max(0.0, self._now(now) - instance.last_heartbeat_at)
        if age >= self.offline_timeout:
            return 0.0
        if age <= self.stale_timeout:
            return 1.0 - 0.5 * (age / self.stale_timeout) ** 2
        window = self.offline_timeout - self.stale_timeout
        return max(0.0, 0.5 * (1.0 - (age - self.stale_timeout) / window))

    def status_for(self, instance: WorkerInstance, now: float | None = None) -> str:
        age = self._now(now) - instance.last_heartbeat_at
        if age >= self.offline_timeout:
            return "offline"
        if age >= self.stale_timeout:
            return "stale"
        return "online"

    def refresh(self, now: float | None = None) -> list[tuple[str, str, str]]:
        """Apply elapsed-time status changes; returns ``(id, old, new)`` tuples."""
        at = self._now(now)
        changes: list[tuple[str, str, str]] = []
        for instance in self._instances.values():
            status = self.status_for(instance, at)
            if status != instance.status:
                changes.append((instance.instance_id, instance.status, status))
                instance.status = status
        for instance_id, old, new in changes:
            log.info("Instance %s %s -> %s", instance_id, old, new)
        return changes

    def prune(self, now: float | None = None) -> list[str]:
        at = self._now(now)
        expired = [
            instance_id
            for instance_id, instance in self._instances.items()
            if at - instance.last_heartbeat_at > self.expiry
        ]
        for instance_id in expired:
            instance = self._instances.pop(instance_id)
            for agent in instance.agents:
                if self._agent_to_instance.get(agent) == instance_id:
                    del self._agent_to_instance[agent]
            log.info("Pruned instance %s", instance_id)
        return expired

    def get(self, instance_id: str) -> WorkerInstance | None:
        return self._instances.get(instance_id)

    def all(self, now: float | None = None) -> list[WorkerInstance]:
        self.refresh(now)
        return sorted(self._instances.values(), key=lambda item: item.instance_id)

    def list_by_status(self, status: str, now: float | None = None) -> list[WorkerInstance]:
        if status not in INSTANCE_STATUSES:
            raise ValueError(f"Unknown instance status: {status}")
        return [instance for instance in self.all(now) if instance.status == status]

    def find_failover_candidates(
        self, exclude_instance_id: str | None = None, now: float | None = None
    ) -> list[WorkerInstance]:
        at = self._now(now)
        candidates = [
            instance
            for instance in self.list_by_status("online", at)
            if instance.instance_id != exclude_instance_id
        ]
        candidates.sort(key=lambda item: (-self.compute_health(item, at), item.instance_id))
        return candidates

    def instance_for_agent(self, agent_id: str) -> WorkerInstance | None:
        instance_id = self._agent_to_instance.get(agent_id)
        return self._instances.get(instance_id) if instance_id else None

    def update_task_count(self, instance_id: str, task_count: int) -> WorkerInstance | None:
        instance = self._instances.get(instance_id)
        if instance is not None:
            instance.task_count = max(0, int(task_count))
        return instance

    def stats(self, now: float | None = None) -> dict[str, Any]:
        instances = self.all(now)
        counts = {status: 0 for status in INSTANCE_STATUSES}
        for instance in instances:
            counts[instance.status] += 1
        online = counts["online"]
        total_tasks = sum(instance.task_count for instance in instances)
        return {
            "total_instances": len(instances),
            "online_instances": online,
            "stale_instances": counts["stale"],
            "offline_instances": counts["offline"],
            "total_agents": len(self._agent_to_instance),
            "total_tasks": total_tasks,
            "avg_tasks_per_online_instance": total_tasks / (online or 1),
        }

    def snapshot(self, now: float | None = None) -> list[dict[str, Any]]:
        at = self._now(now)
        rows = []
        for instance in self.all(at):
            row = instance.to_dict()
            row["health_score"] = round(self.compute_health(instance, at), 4)
            rows.append(row)
        return rows

    def to_dict(self) -> dict[str, Any]:
        return {
            "instances": [instance.to_dict() for instance in self._instances.values()],
            "agents": dict(self._agent_to_instance),
        }

    def load(self, payload: Any) -> None:
        self._instances.clear()
        self._agent_to_instance.clear()
        if not isinstance(payload, dict):
            return
        for item in payload.get("instances") or []:
            if not isinstance(item, dict):
                continue
            try:
                instance = WorkerInstance.from_dict(item)
            except (KeyError, TypeError, ValueError):
                log.warning("Skipping malformed instance record: %r", item.get("instance_id"))
                continue
            self._instances[instance.instance_id] = instance
        agents = payload.get("agents") or {}
        if isinstance(agents, dict):
            for agent_id, instance_id in agents.items():
                if instance_id in self._instances:
                    self._agent_to_instance[str(agent_id)] = str(instance_id)

    @classmethod
    def from_dict(cls, payload: Any, **kwargs: Any) -> InstanceRegistry:
        registry = cls(**kwargs)
        registry.load(payload)
        return registry
