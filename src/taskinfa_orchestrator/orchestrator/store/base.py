"""Task store interface consumed by the scheduling engine."""

from __future__ import annotations

from typing import Protocol

from taskinfa_orchestrator.orchestrator.models import (
    ClaimResult,
    EventType,
    Project,
    Session,
    SessionStatus,
    Task,
    TaskStatus,
)


class StoreError(RuntimeError):
    """Task store call failed, with a hint whether retrying later may help."""

    def __init__(self, message: str, *, transient: bool, status_code: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


class TaskStore(Protocol):
    """Operations the engine needs from the authoritative task store.

    Every method raises StoreError on failure. A lost claim race is not a
    failure and is reported as ClaimResult.ALREADY_CLAIMED.
    """

    def check_connection(self) -> None:
        """Verify the store is reachable and the credentials are accepted."""

    def list_projects(self) -> list[Project]:
        """Return all projects visible to this orchestrator."""

    def list_ready_tasks(self, project_id: str | None = None) -> list[Task]:
        """Return tasks in the ready status, optionally for one project."""

    def get_task(self, task_id: str) -> Task:
        """Return one task by id."""

    def claim_task(self, task_id: str, expected_status: TaskStatus) -> ClaimResult:
        """Move a task to in_progress only if its status is still `expected_status`."""

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        error_count: int | None = None,
        completion_notes: str | None = None,
        assigned_to: str | None | _Unset = UNSET,
    ) -> None:
        """Apply a partial task update."""

    def list_active_sessions(self) -> list[Session]:
        """Return sessions currently in the active status."""

    def create_session(self, task_id: str, project_id: str) -> Session:
        """Register a new active session for a task."""

    def update_session(
        self,
        session_id: str,
        *,
        status: SessionStatus,
        summary: str | None = None,
    ) -> None:
        """Move a session to a terminal status."""

    def report_event(
        self,
        *,
        event_type: EventType,
        message: str,
        session_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        """Append one observability event."""

    def update_project(
        self,
        project_id: str,
        *,
        initialized: bool,
        working_directory: str | None = None,
    ) -> None:
        """Record the project initialization state."""

    def close(self) -> None:
        """Release transport resources."""
