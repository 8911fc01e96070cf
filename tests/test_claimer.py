from __future__ import annotations

import allure

from taskinfa_orchestrator.orchestrator.claimer import TaskClaimer
from taskinfa_orchestrator.orchestrator.models import ClaimResult, TaskStatus
from taskinfa_orchestrator.orchestrator.store.sqlite_store import SqliteTaskStore

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Task Claims"),
]


def test_claim_moves_ready_task_to_in_progress(store: SqliteTaskStore) -> None:
    project = store.add_project(name="Alpha")
    task = store.add_task(title="Fix login", project_id=project.project_id)

    result = TaskClaimer(store).claim(task)

    assert result == ClaimResult.CLAIMED
    assert store.get_task(task.task_id).status == TaskStatus.IN_PROGRESS


def test_second_claim_of_same_task_loses(store: SqliteTaskStore) -> None:
    task = store.add_task(title="Fix login", project_id=None)
    claimer = TaskClaimer(store)

    first = claimer.claim(task)
    second = claimer.claim(task)

    assert first == ClaimResult.CLAIMED
    assert second == ClaimResult.ALREADY_CLAIMED
    assert store.list_events() == []


def test_claim_of_task_moved_elsewhere_is_already_claimed(store: SqliteTaskStore) -> None:
    task = store.add_task(title="Write docs", project_id=None)
    store.update_task(task.task_id, status=TaskStatus.REVIEW)

    assert TaskClaimer(store).claim(task) == ClaimResult.ALREADY_CLAIMED
    assert store.get_task(task.task_id).status == TaskStatus.REVIEW
