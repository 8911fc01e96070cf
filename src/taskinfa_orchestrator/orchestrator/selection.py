"""Task selection policy within a project."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from taskinfa_orchestrator.orchestrator.models import Task
from taskinfa_orchestrator.orchestrator.retry_policy import is_exhausted

_MISSING_CREATED_AT = datetime.max.replace(tzinfo=UTC)


def selection_key(task: Task) -> tuple[int, datetime, str]:
    """Priority rank, then creation time, then id; smaller sorts first."""

    return (task.priority.rank, task.created_at or _MISSING_CREATED_AT, task.task_id)


def eligible_tasks(tasks: Iterable[Task], *, max_retries: int) -> list[Task]:
    return [task for task in tasks if not is_exhausted(task.error_count, max_retries)]


def select_task(tasks: Iterable[Task], *, max_retries: int) -> Task | None:
    """Pick the task to dispatch next, ignoring exhausted ones."""

    candidates = eligible_tasks(tasks, max_retries=max_retries)
    if not candidates:
        return None
    return min(candidates, key=selection_key)


def group_by_project(tasks: Iterable[Task]) -> dict[str, list[Task]]:
    """Group tasks by project, keeping fetch order inside each group."""

    groups: dict[str, list[Task]] = {}
    for task in tasks:
        groups.setdefault(task.group_key, []).append(task)
    return groups
