"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from taskinfa_orchestrator.config import (
    AgentSettings,
    ApiSettings,
    LoggingSettings,
    SchedulerSettings,
    Settings,
    WorkspaceSettings,
)
from taskinfa_orchestrator.orchestrator.events import EventReporter
from taskinfa_orchestrator.orchestrator.store.sqlite_store import SqliteTaskStore

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskinfa_orchestrator.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)

_ECHO_ENV = (
    "TASKINFA_ECHO_EXIT_CODE",
    "TASKINFA_ECHO_SLEEP_SECONDS",
    "TASKINFA_ECHO_STDERR",
    "TASKINFA_ECHO_TOUCH",
)


@pytest.fixture(autouse=True)
def _clean_echo_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ECHO_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    workspace_root = tmp_path / "workspace"
    return Settings(
        store="sqlite",
        db_path=tmp_path / "tasks.db",
        api=ApiSettings(base_url="http://kanban.test", api_key="kbn_test_secret_key"),
        scheduler=SchedulerSettings(
            poll_interval_seconds=0.05,
            max_concurrent=3,
            max_retries=3,
        ),
        agent=AgentSettings(
            command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            session_timeout_seconds=30,
            graceful_shutdown_seconds=1,
        ),
        workspace=WorkspaceSettings(
            workspace_root=workspace_root,
            projects_dir=workspace_root / "projects",
        ),
        logging=LoggingSettings(log_dir=tmp_path / "logs"),
    )


@pytest.fixture()
def store(settings: Settings) -> Iterator[SqliteTaskStore]:
    repository = SqliteTaskStore(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def reporter(store: SqliteTaskStore, settings: Settings) -> EventReporter:
    return EventReporter(store, secrets=(settings.api.api_key,))
