import json
from pathlib import Path

import pytest

from dispatcher.models import Task
from dispatcher.state import ActivityLog, ConcurrentUpdateError, JsonStateStore, StateError, TaskStore


def test_store_roundtrip_local_state(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state")
    payload = {"tasks": [{"id": "t1", "title": "Build auth"}]}
    store.set_json("tasks", payload)

    assert store.get_json("tasks") == payload
    assert (tmp_path / "state" / "tasks.json").exists()


def test_state_schema_migrates_legacy_payload(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    local_path = tmp_path / "tasks.json"
    local_path.write_text(json.dumps({"tasks": [], "legacy": True}), encoding="utf-8")

    assert store.get_json("tasks") == {"tasks": [], "legacy": True}
    assert store.get_envelope("tasks")["revision"] == 1

    store.set_json("tasks", {"tasks": []})
    on_disk = json.loads(local_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == JsonStateStore.SCHEMA_VERSION
    assert on_disk["revision"] == 2
    assert on_disk["data"] == {"tasks": []}


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    store.set_json("router", {"count": 1})
    first_revision = store.get_envelope("router")["revision"]

    store.update_json("router", lambda payload: {"count": payload["count"] + 1}, default={"count": 0})
    second_revision = store.get_envelope("router")["revision"]

    assert store.get_json("router")["count"] == 2
    assert second_revision > first_revision


def test_set_json_rejects_stale_revision(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    store.set_json("router", {"count": 1})
    stale_revision = store.get_envelope("router")["revision"]
    store.set_json("router", {"count": 2})

    with pytest.raises(ConcurrentUpdateError):
        store.set_json("router", {"count": 3}, expected_revision=stale_revision)
    assert store.get_json("router") == {"count": 2}


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)

    with pytest.raises(StateError, match="Unsupported namespace"):
        store.set_json("metrics", {})


def test_task_store_add_list_and_filters(tmp_path: Path) -> None:
    tasks = TaskStore(JsonStateStore(tmp_path))
    tasks.add(Task(id="t1", title="API", lane="queued", owner="dev-1"))
    tasks.add(Task(id="t2", title="UI", lane="queued", owner="dev-2"))
    tasks.add(Task(id="t3", title="Spec", lane="proposed", owner="dev-1"))

    assert [task.id for task in tasks.list()] == ["t1", "t2", "t3"]
    assert [task.id for task in tasks.list(lane="queued")] == ["t1", "t2"]
    assert [task.id for task in tasks.list(owner="dev-1")] == ["t1", "t3"]
    assert tasks.get("t2").title == "UI"
    assert tasks.get("missing") is None

    with pytest.raises(StateError, match="already exists"):
        tasks.add(Task(id="t1", title="duplicate"))


def test_task_store_update_merges_patch_and_keeps_unknown_keys(tmp_path: Path) -> None:
    state = JsonStateStore(tmp_path)
    state.set_json(
        "tasks",
        {
            "tasks": [
                {
                    "id": "t1",
                    "title": "API",
                    "lane": "queued",
                    "dependsOn": ["t0"],
                    "retryCount": 1,
                    "projectId": "proj-7",
                }
            ]
        },
    )
    tasks = TaskStore(state)

    updated = tasks.update("t1", {"priority": "P0"})

    assert updated is not None
    assert updated.priority == "P0"
    assert updated.depends_on == ["t0"]
    assert updated.retry_count == 1
    stored = state.get_json("tasks")["tasks"][0]
    assert stored["projectId"] == "proj-7"
    assert stored["priority"] == "P0"
    assert stored["lane"] == "queued"


def test_task_store_update_if_respects_predicate(tmp_path: Path) -> None:
    tasks = TaskStore(JsonStateStore(tmp_path))
    tasks.add(Task(id="t1", title="API", lane="blocked"))

    skipped = tasks.update_if("t1", lambda task: task.lane == "queued", {"lane": "development"})
    applied = tasks.update_if("t1", lambda task: task.lane == "blocked", {"lane": "queued"})

    assert skipped is None
    assert applied is not None
    assert tasks.get("t1").lane == "queued"


def test_task_store_transact_abort_leaves_revision(tmp_path: Path) -> None:
    state = JsonStateStore(tmp_path)
    tasks = TaskStore(state)
    tasks.add(Task(id="t1", title="API", lane="queued"))
    revision = state.get_envelope("tasks")["revision"]

    assert tasks.transact("t1", lambda task: False) is None
    assert tasks.transact("missing", lambda task: True) is None
    assert state.get_envelope("tasks")["revision"] == revision


def test_activity_log_is_capped(tmp_path: Path) -> None:
    activity = ActivityLog(JsonStateStore(tmp_path), limit=3)
    for index in range(5):
        activity.record({"event": "spawn_attempt", "index": index})

    recent = activity.recent(limit=10)

    assert [event["index"] for event in recent] == [2, 3, 4]
    assert all("at" in event for event in recent)
    assert [event["index"] for event in activity.recent(limit=1)] == [4]
