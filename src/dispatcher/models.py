from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

Lane = Literal["proposed", "queued", "claiming", "development", "review", "blocked", "done"]
Priority = Literal["P0", "P1", "P2", "P3"]
InstanceStatus = Literal["online", "stale", "offline"]
SpawnOutcome = Literal["success", "timeout", "gatewayError", "validationError"]
Severity = Literal["Low", "Medium", "High"]

LANES = ("proposed", "queued", "claiming", "development", "review", "blocked", "done")
INSTANCE_STATUSES = ("online", "stale", "offline")
PRIORITY_RANK = {"P0": 0, "P1": 1, "P2": 2, "P3": 3}
DEFAULT_PRIORITY_RANK = PRIORITY_RANK["P2"]

_TASK_FIELDS = {
    "id",
    "title",
    "lane",
    "priority",
    "owner",
    "depends_on",
    "blocks",
    "tags",
    "description",
    "metadata",
    "retry_count",
    "status_history",
    "work",
    "queued_at",
    "next_attempt_at",
    "claimed_by",
    "claim_expires_at",
    "session_key",
    "created_at",
    "updated_at",
}


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def epoch_to_iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, UTC).replace(microsecond=0).isoformat()


def priority_rank(priority: str | None) -> int:
    return PRIORITY_RANK.get(str(priority or "").upper(), DEFAULT_PRIORITY_RANK)


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True)
class StatusEntry:
    at: str
    to: str
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"at": self.at, "to": self.to, "note": self.note}


@dataclass(slots=True)
class Task:
    id: str
    title: str
    lane: str = "proposed"
    priority: str = "P2"
    owner: str | None = None
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    status_history: list[StatusEntry] = field(default_factory=list)
    work: dict[str, Any] = field(default_factory=dict)
    queued_at: float | None = None
    next_attempt_at: float | None = None
    claimed_by: str | None = None
    claim_expires_at: float | None = None
    session_key: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        """Build a task from its stored form.

        Accepts the camelCase keys written by the board UI (``dependsOn``,
        ``retryCount``, ``statusHistory``) as well as snake_case. Keys the
        router does not know about are kept in ``extra`` and written back
        unchanged.
        """
        aliases = {
            "dependsOn": "depends_on",
            "retryCount": "retry_count",
            "statusHistory": "status_history",
            "queuedAt": "queued_at",
            "nextAttemptAt": "next_attempt_at",
            "claimedBy": "claimed_by",
            "claimExpiresAt": "claim_expires_at",
            "sessionKey": "session_key",
            "createdAt": "created_at",
            "updatedAt": "updated_at",
        }
        normalized: dict[str, Any] = {}
        for key, value in payload.items():
            normalized[aliases.get(key, key)] = value

        history = []
        for entry in normalized.get("status_history") or []:
            if isinstance(entry, dict):
                history.append(
                    StatusEntry(
                        at=str(entry.get("at", "")),
                        to=str(entry.get("to", "")),
                        note=str(entry.get("note", "")),
                    )
                )

        return cls(
            id=str(normalized["id"]),
            title=str(normalized.get("title") or ""),
            lane=str(normalized.get("lane") or "proposed"),
            priority=str(normalized.get("priority") or "P2").upper(),
            owner=_optional_str(normalized.get("owner")),
            depends_on=[str(item) for item in normalized.get("depends_on") or []],
            blocks=[str(item) for item in normalized.get("blocks") or []],
            tags=[str(item) for item in normalized.get("tags") or []],
            description=str(normalized.get("description") or ""),
            metadata=dict(normalized.get("metadata") or {}),
            retry_count=int(normalized.get("retry_count") or 0),
            status_history=history,
            work=dict(normalized.get("work") or {}),
            queued_at=_optional_float(normalized.get("queued_at")),
            next_attempt_at=_optional_float(normalized.get("next_attempt_at")),
            claimed_by=_optional_str(normalized.get("claimed_by")),
            claim_expires_at=_optional_float(normalized.get("claim_expires_at")),
            session_key=_optional_str(normalized.get("session_key")),
            created_at=str(normalized.get("created_at") or utcnow_iso()),
            updated_at=str(normalized.get("updated_at") or utcnow_iso()),
            extra={key: value for key, value in normalized.items() if key not in _TASK_FIELDS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "title": self.title,
                "lane": self.lane,
                "priority": self.priority,
                "owner": self.owner,
                "depends_on": list(self.depends_on),
                "blocks": list(self.blocks),
                "tags": list(self.tags),
                "description": self.description,
                "metadata": dict(self.metadata),
                "retry_count": self.retry_count,
                "status_history": [entry.to_dict() for entry in self.status_history],
                "work": dict(self.work),
                "queued_at": self.queued_at,
                "next_attempt_at": self.next_attempt_at,
                "claimed_by": self.claimed_by,
                "claim_expires_at": self.claim_expires_at,
                "session_key": self.session_key,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
        return payload

    @property
    def failure_reason(self) -> str | None:
        for entry in reversed(self.status_history):
            if entry.to == "blocked":
                return entry.note or None
        return None


@dataclass(slots=True)
class WorkerInstance:
    instance_id: str
    agent_id: str
    address: str | None = None
    status: str = "online"
    last_heartbeat_at: float = 0.0
    current_task: str | None = None
    reported_status: str | None = None
    agents: list[str] = field(default_factory=list)
    task_count: int = 0
    created_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "agent_id": self.agent_id,
            "address": self.address,
            "status": self.status,
            "last_heartbeat_at": self.last_heartbeat_at,
            "current_task": self.current_task,
            "reported_status": self.reported_status,
            "agents": list(self.agents),
            "task_count": self.task_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkerInstance:
        return cls(
            instance_id=str(payload["instance_id"]),
            agent_id=str(payload["agent_id"]),
            address=_optional_str(payload.get("address")),
            status=str(payload.get("status") or "online"),
            last_heartbeat_at=float(payload.get("last_heartbeat_at") or 0.0),
            current_task=_optional_str(payload.get("current_task")),
            reported_status=_optional_str(payload.get("reported_status")),
            agents=[str(item) for item in payload.get("agents") or []],
            task_count=int(payload.get("task_count") or 0),
            created_at=float(payload.get("created_at") or 0.0),
        )


@dataclass(slots=True)
class SpawnAttempt:
    task_id: str
    attempt_number: int
    started_at: str
    outcome: str
    session_key: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "attempt_number": self.attempt_number,
            "started_at": self.started_at,
            "outcome": self.outcome,
            "session_key": self.session_key,
            "error": self.error,
        }


@dataclass(slots=True)
class Remediation:
    label: str
    command: str | None = None
    action: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"label": self.label}
        if self.command is not None:
            payload["command"] = self.command
        if self.action is not None:
            payload["action"] = dict(self.action)
        return payload


@dataclass(slots=True)
class Blocker:
    id: str
    title: str
    severity: str
    detected_at: str
    details: str = ""
    remediation: list[Remediation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "severity": self.severity,
            "detected_at": self.detected_at,
            "details": self.details,
            "remediation": [item.to_dict() for item in self.remediation],
        }
