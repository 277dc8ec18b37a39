from datetime import UTC, datetime

from dispatcher.blockers import compute_blockers
from dispatcher.models import WorkerInstance

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _instance(instance_id: str, status: str) -> WorkerInstance:
    return WorkerInstance(instance_id=instance_id, agent_id=f"agent-{instance_id}", status=status)


def test_down_gateway_and_offline_worker_give_two_high_blockers() -> None:
    blockers = compute_blockers("down", [_instance("node-a", "offline")], NOW)

    assert [blocker.id for blocker in blockers] == ["gateway-not-ok", "workers-offline"]
    assert [blocker.severity for blocker in blockers] == ["High", "High"]
    assert blockers[0].title == "Gateway stopped"
    assert blockers[1].title == "Workers offline: node-a"
    assert all(blocker.detected_at == "2026-03-01T12:00:00+00:00" for blocker in blockers)
    actions = [item.action for item in blockers[0].remediation if item.action]
    assert {"kind": "gateway.restart"} in actions


def test_unknown_gateway_is_medium() -> None:
    blockers = compute_blockers("unknown", [], NOW)

    assert len(blockers) == 1
    assert blockers[0].severity == "Medium"
    assert blockers[0].title == "Gateway status unknown"
    commands = [item.command for item in blockers[0].remediation]
    assert "openclaw gateway status" in commands


def test_healthy_inputs_give_no_blockers() -> None:
    assert compute_blockers("ok", [_instance("node-a", "online")], NOW) == []
    assert compute_blockers("warn", [], NOW) == []


def test_stale_workers_only_when_none_offline() -> None:
    stale_only = compute_blockers(
        "ok", [_instance("node-b", "stale"), _instance("node-a", "stale")], NOW
    )
    mixed = compute_blockers(
        "ok", [_instance("node-b", "stale"), _instance("node-c", "offline")], NOW
    )

    assert [blocker.id for blocker in stale_only] == ["workers-stale"]
    assert stale_only[0].severity == "Medium"
    assert stale_only[0].title == "Workers stale: node-a, node-b"
    assert [blocker.id for blocker in mixed] == ["workers-offline"]
    assert "stale: node-b" in mixed[0].details
    assert "offline: node-c" in mixed[0].details


def test_output_is_deterministic_for_same_inputs() -> None:
    instances = [
        _instance("node-c", "offline"),
        _instance("node-a", "offline"),
        _instance("node-b", "stale"),
    ]

    first = [blocker.to_dict() for blocker in compute_blockers("down", instances, NOW)]
    second = [
        blocker.to_dict() for blocker in compute_blockers("down", list(reversed(instances)), NOW)
    ]

    assert first == second
    assert first[1]["title"] == "Workers offline: node-a, node-c"


def test_workspace_adds_state_inspection_step() -> None:
    blockers = compute_blockers(
        "ok", [_instance("node-a", "offline")], NOW, workspace="/srv/my workspace"
    )

    commands = [item.command for item in blockers[0].remediation]
    assert commands[0] == "ls -la '/srv/my workspace/.dispatcher/state'"
    assert "dispatcher instances" in commands
