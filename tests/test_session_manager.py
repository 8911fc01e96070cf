from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from taskinfa_orchestrator.config import Settings
from taskinfa_orchestrator.orchestrator.backend import CliAgentBackend
from taskinfa_orchestrator.orchestrator.events import EventReporter
from taskinfa_orchestrator.orchestrator.models import (
    EventType,
    Project,
    SessionStatus,
    Task,
    TaskStatus,
)
from taskinfa_orchestrator.orchestrator.session_manager import SessionManager
from taskinfa_orchestrator.orchestrator.store.base import StoreError
from taskinfa_orchestrator.orchestrator.store.sqlite_store import SqliteTaskStore

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Session Lifecycle"),
]


class NoSessionStore(SqliteTaskStore):
    def create_session(self, task_id: str, project_id: str):  # noqa: ANN201
        raise StoreError("sessions endpoint down", transient=True)


def _claimed_task(store: SqliteTaskStore, *, error_count: int = 0) -> tuple[Task, Project]:
    project = store.add_project(name="Alpha", project_id="tl_alpha")
    task = store.add_task(
        title="Add health check",
        description="Expose GET /health returning 200.",
        project_id=project.project_id,
        error_count=error_count,
    )
    store.claim_task(task.task_id, TaskStatus.TODO)
    return task, project


def _manager(store: SqliteTaskStore, settings: Settings) -> SessionManager:
    return SessionManager(
        store=store,
        backend=CliAgentBackend(),
        reporter=EventReporter(store, secrets=(settings.api.api_key,)),
        settings=settings,
    )


def test_success_moves_task_to_review_with_notes(
    store: SqliteTaskStore,
    settings: Settings,
) -> None:
    task, project = _claimed_task(store, error_count=1)

    outcome = _manager(store, settings).run(task, project)

    assert outcome.succeeded is True
    reloaded = store.get_task(task.task_id)
    assert reloaded.status == TaskStatus.REVIEW
    assert reloaded.error_count == 1
    [session] = store.list_sessions()
    assert session.status == SessionStatus.COMPLETED
    assert session.summary == "Completed: Add health check"
    assert [event.event_type for event in store.list_events()] == [
        EventType.SESSION_START,
        EventType.SESSION_END,
    ]
    stdout_log = settings.logging.log_dir / "sessions" / session.session_id / "stdout.log"
    assert "Expose GET /health" in stdout_log.read_text("utf-8")
    assert (settings.workspace.projects_dir / "tl_alpha").is_dir()


def test_agent_runs_with_kanban_environment(
    store: SqliteTaskStore,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASKINFA_ECHO_TOUCH", "agent_task.txt")
    task, project = _claimed_task(store)

    _manager(store, settings).run(task, project)

    marker = settings.workspace.projects_dir / "tl_alpha" / "agent_task.txt"
    assert marker.read_text("utf-8").strip() == task.task_id


def test_failure_returns_task_to_ready_and_counts_error(
    store: SqliteTaskStore,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASKINFA_ECHO_EXIT_CODE", "2")
    monkeypatch.setenv("TASKINFA_ECHO_STDERR", "tests failed: key=kbn_test_secret_key")
    task, project = _claimed_task(store)

    outcome = _manager(store, settings).run(task, project)

    assert outcome.succeeded is False
    assert outcome.error_count == 1
    assert outcome.exhausted is False
    reloaded = store.get_task(task.task_id)
    assert reloaded.status == TaskStatus.TODO
    assert reloaded.error_count == 1
    [session] = store.list_sessions()
    assert session.status == SessionStatus.ERROR
    assert session.summary is not None
    assert session.summary.startswith("Error (exit 2): tests failed")
    assert "kbn_test_secret_key" not in session.summary
    assert [event.event_type for event in store.list_events()] == [
        EventType.SESSION_START,
        EventType.SESSION_ERROR,
    ]


def test_failure_that_exhausts_budget_reports_stuck_once(
    store: SqliteTaskStore,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASKINFA_ECHO_EXIT_CODE", "1")
    task, project = _claimed_task(store, error_count=2)

    outcome = _manager(store, settings).run(task, project)

    assert outcome.exhausted is True
    assert store.get_task(task.task_id).error_count == 3
    event_types = [event.event_type for event in store.list_events()]
    assert event_types.count(EventType.STUCK) == 1
    assert event_types[-1] is EventType.STUCK


def test_timeout_is_a_failure(
    store: SqliteTaskStore,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASKINFA_ECHO_SLEEP_SECONDS", "30")
    task, project = _claimed_task(store)
    quick = replace(settings, agent=replace(settings.agent, session_timeout_seconds=1))

    outcome = _manager(store, quick).run(task, project)

    assert outcome.succeeded is False
    assert outcome.timed_out is True
    assert store.get_task(task.task_id).status == TaskStatus.TODO
    assert store.get_task(task.task_id).error_count == 1


def test_invalid_agent_command_is_a_spawn_failure(
    store: SqliteTaskStore,
    settings: Settings,
) -> None:
    task, project = _claimed_task(store)
    broken = replace(settings, agent=replace(settings.agent, command_template="agent {nope}"))

    outcome = _manager(store, broken).run(task, project)

    assert outcome.succeeded is False
    assert outcome.exit_code == 127
    assert store.get_task(task.task_id).error_count == 1


def test_session_create_failure_releases_claim(settings: Settings, tmp_path: Path) -> None:
    store = NoSessionStore(tmp_path / "nosession.db")
    store.init_schema()
    try:
        task, project = _claimed_task(store)

        outcome = _manager(store, settings).run(task, project)

        assert outcome.session_id is None
        assert outcome.claim_released is True
        reloaded = store.get_task(task.task_id)
        assert reloaded.status == TaskStatus.TODO
        assert reloaded.error_count == 0
        assert store.list_events() == []
    finally:
        store.close()
