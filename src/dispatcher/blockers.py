from __future__ import annotations

import shlex
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from dispatcher.models import Blocker, Remediation, WorkerInstance


def _gateway_remediation() -> list[Remediation]:
    return [
        Remediation(label="Gateway status", command="openclaw gateway status"),
        Remediation(
            label="Restart gateway",
            command="openclaw gateway restart",
            action={"kind": "gateway.restart"},
        ),
        Remediation(
            label="Start gateway",
            command="openclaw gateway start",
            action={"kind": "gateway.start"},
        ),
    ]


def _worker_remediation(workspace: str | None) -> list[Remediation]:
    steps: list[Remediation] = []
    if workspace:
        state_dir = Path(workspace) / ".dispatcher" / "state"
        steps.append(
            Remediation(
                label="Inspect heartbeat state",
                command=f"ls -la {shlex.quote(str(state_dir))}",
            )
        )
    steps.append(Remediation(label="List instances", command="dispatcher instances"))
    steps.append(
        Remediation(
            label="Restart gateway (may restart workers)",
            command="openclaw gateway restart",
            action={"kind": "gateway.restart"},
        )
    )
    return steps


def compute_blockers(
    gateway_health: str | None,
    instances: Iterable[WorkerInstance],
    now: datetime,
    *,
    workspace: str | None = None,
) -> list[Blocker]:
    """Derive the operator blocker list; gateway issues first, then workers.

    Output depends only on the arguments. Instance ids are sorted so the same
    inputs always give the same list.
    """
    detected_at = now.astimezone(UTC).replace(microsecond=0).isoformat()
    blockers: list[Blocker] = []

    if gateway_health in {"down", "unknown"}:
        down = gateway_health == "down"
        blockers.append(
            Blocker(
                id="gateway-not-ok",
                title="Gateway stopped" if down else "Gateway status unknown",
                severity="High" if down else "Medium",
                detected_at=detected_at,
                details=(
                    "Gateway must be running for worker sessions, heartbeats and "
                    "automation to function."
                ),
                remediation=_gateway_remediation(),
            )
        )

    instance_list = list(instances)
    stale = sorted(item.instance_id for item in instance_list if item.status == "stale")
    offline = sorted(item.instance_id for item in instance_list if item.status == "offline")
    details = " · ".join(
        part
        for part in (
            f"stale: {', '.join(stale)}" if stale else "",
            f"offline: {', '.join(offline)}" if offline else "",
        )
        if part
    )
    if offline:
        blockers.append(
            Blocker(
                id="workers-offline",
                title=f"Workers offline: {', '.join(offline)}",
                severity="High",
                detected_at=detected_at,
                details=details,
                remediation=_worker_remediation(workspace),
            )
        )
    elif stale:
        blockers.append(
            Blocker(
                id="workers-stale",
                title=f"Workers stale: {', '.join(stale)}",
                severity="Medium",
                detected_at=detected_at,
                details=details,
                remediation=_worker_remediation(workspace),
            )
        )
    return blockers
