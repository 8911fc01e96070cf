"""Conditional task claims arbitrated by the task store."""

from __future__ import annotations

import logging

from taskinfa_orchestrator.orchestrator.models import READY_STATUS, ClaimResult, Task
from taskinfa_orchestrator.orchestrator.store.base import TaskStore

logger = logging.getLogger(__name__)


class TaskClaimer:
    """Moves a ready task to in_progress unless another orchestrator got there first."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def claim(self, task: Task) -> ClaimResult:
        result = self.store.claim_task(task.task_id, expected_status=READY_STATUS)
        if result == ClaimResult.ALREADY_CLAIMED:
            logger.debug("Task %s already claimed elsewhere", task.task_id)
        else:
            logger.info("Claimed task %s (%s)", task.task_id, task.title)
        return result
