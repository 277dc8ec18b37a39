from __future__ import annotations

from dispatcher.gateway.base import BriefValidationError
from dispatcher.models import Task

REQUIRED_FIELDS = ("id", "title", "owner")


def validate_brief_fields(task: Task) -> None:
    missing = [name for name in REQUIRED_FIELDS if not str(getattr(task, name) or "").strip()]
    if missing:
        raise BriefValidationError(
            f"Task {task.id or '<unknown>'} is missing required fields: {', '.join(missing)}",
            missing=missing,
        )


def render_brief(task: Task, *, api_base_url: str | None = None) -> str:
    """Render the markdown brief handed to a spawned worker session."""
    validate_brief_fields(task)
    metadata = task.metadata
    lines = [
        f"## Task Assignment: {task.title}",
        f"**Task ID:** {task.id}",
        f"**Priority:** {task.priority}",
        f"**Agent Role:** {task.owner}",
        "",
    ]
    if task.description:
        lines.extend([task.description, ""])
    problem = str(metadata.get("problem") or "").strip()
    if problem:
        lines.extend(["### Problem", problem, ""])
    scope = str(metadata.get("scope") or "").strip()
    if scope:
        lines.extend(["### Scope", scope, ""])
    criteria = metadata.get("acceptance_criteria") or metadata.get("acceptanceCriteria")
    if criteria:
        lines.append("### Acceptance Criteria")
        if isinstance(criteria, list):
            lines.extend(f"- [ ] {item}" for item in criteria)
        else:
            lines.append(str(criteria))
        lines.append("")
    if task.depends_on:
        lines.extend([f"**Depends on:** {', '.join(task.depends_on)}", ""])
    if task.tags:
        lines.extend([f"**Tags:** {', '.join(task.tags)}", ""])

    lines.extend(
        [
            "### Instructions",
            "1. Work on this task to completion.",
            "2. Commit all changes with descriptive commit messages.",
            "3. Record commits and test results as work data before requesting review.",
        ]
    )
    if api_base_url:
        base = api_base_url.rstrip("/")
        lines.extend(
            [
                f"4. Log work data: `PUT {base}/api/tasks/{task.id}/work`.",
                f'5. Move to review: `PUT {base}/api/tasks/{task.id}` with `{{"lane": "review"}}`.',
                f'6. If blocked: `PUT {base}/api/tasks/{task.id}` with `{{"lane": "blocked"}}`.',
            ]
        )
    else:
        lines.append("4. Move the task to review when done, or to blocked if you cannot proceed.")
    return "\n".join(lines).strip() + "\n"
