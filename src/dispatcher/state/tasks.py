from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from dispatcher.models import Task, utcnow_iso
from dispatcher.state.store import JsonStateStore, StateError

log = logging.getLogger(__name__)

ACTIVITY_LIMIT = 200


class _SkipWrite(Exception):
    pass


def _task_queue(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    queue = payload.get("tasks", [])
    if not isinstance(queue, list):
        return []
    return [item for item in queue if isinstance(item, dict)]


def _parse_task(payload: dict[str, Any]) -> Task | None:
    try:
        return Task.from_dict(payload)
    except (KeyError, TypeError, ValueError):
        log.warning("Skipping malformed task record: %r", payload.get("id"))
        return None


class TaskStore:
    """Task Store collaborator backed by the ``tasks`` namespace."""

    def __init__(self, state: JsonStateStore) -> None:
        self.state = state

    def list(self, *, lane: str | None = None, owner: str | None = None) -> list[Task]:
        tasks: list[Task] = []
        for item in _task_queue(self.state.get_json("tasks", default={"tasks": []})):
            task = _parse_task(item)
            if task is None:
                continue
            if lane is not None and task.lane != lane:
                continue
            if owner is not None and task.owner != owner:
                continue
            tasks.append(task)
        return tasks

    def get(self, task_id: str) -> Task | None:
        for task in self.list():
            if task.id == task_id:
                return task
        return None

    def add(self, task: Task) -> Task:
        def _updater(payload: Any) -> dict[str, Any]:
            queue = _task_queue(payload)
            if any(str(item.get("id")) == task.id for item in queue):
                raise StateError(f"Task already exists: {task.id}")
            queue.append(task.to_dict())
            return {"tasks": queue}

        self.state.update_json("tasks", _updater, default={"tasks": []})
        return task

    def update(self, task_id: str, patch: dict[str, Any]) -> Task | None:
        """Merge ``patch`` into the stored task; returns the updated task."""
        return self.update_if(task_id, lambda _task: True, patch)

    def update_if(
        self, task_id: str, predicate: Callable[[Task], bool], patch: dict[str, Any]
    ) -> Task | None:
        def _mutate(task: Task) -> bool:
            if not predicate(task):
                return False
            merged = task.to_dict()
            merged.update(patch)
            merged["id"] = task.id
            replacement = Task.from_dict(merged)
            for name in Task.__slots__:
                setattr(task, name, getattr(replacement, name))
            return True

        return self.transact(task_id, _mutate)

    def transact(self, task_id: str, mutate: Callable[[Task], bool]) -> Task | None:
        """Atomically read, mutate and write a single task.

        ``mutate`` edits the task in place and returns ``False`` to abort
        without writing. Returns the written task, or ``None`` when the task is
        missing or the mutation was aborted.
        """
        result: dict[str, Task] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            queue = _task_queue(payload)
            for index, item in enumerate(queue):
                if str(item.get("id")) != task_id:
                    continue
                task = _parse_task(item)
                if task is None or not mutate(task):
                    raise _SkipWrite
                task.updated_at = utcnow_iso()
                queue[index] = task.to_dict()
                result["task"] = task
                return {"tasks": queue}
            raise _SkipWrite

        try:
            self.state.update_json("tasks", _updater, default={"tasks": []})
        except _SkipWrite:
            return None
        return result.get("task")


class ActivityLog:
    """Bounded list of router events, newest last."""

    def __init__(self, state: JsonStateStore, limit: int = ACTIVITY_LIMIT) -> None:
        self.state = state
        self.limit = limit

    def record(self, event: dict[str, Any]) -> None:
        entry = dict(event)
        entry.setdefault("at", utcnow_iso())

        def _updater(payload: Any) -> dict[str, Any]:
            events = payload.get("events", []) if isinstance(payload, dict) else []
            if not isinstance(events, list):
                events = []
            events.append(entry)
            return {"events": events[-self.limit :]}

        self.state.update_json("activity", _updater, default={"events": []})

    def recent(self, limit: int = 20) -> list[dict[str, Any]]:
        payload = self.state.get_json("activity", default={"events": []})
        events = payload.get("events", []) if isinstance(payload, dict) else []
        if not isinstance(events, list):
            return []
        return events[-limit:]
