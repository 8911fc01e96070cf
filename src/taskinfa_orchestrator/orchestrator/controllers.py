"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskinfa_orchestrator.config import ConfigurationError, Settings
from taskinfa_orchestrator.logging_config import configure_logging
from taskinfa_orchestrator.orchestrator.backend import (
    BackendRunError,
    CliAgentBackend,
    validate_command_template,
)
from taskinfa_orchestrator.orchestrator.events import EventReporter
from taskinfa_orchestrator.orchestrator.initializer import GitCloner, ProjectInitializer
from taskinfa_orchestrator.orchestrator.models import TaskPriority
from taskinfa_orchestrator.orchestrator.retry_policy import is_exhausted
from taskinfa_orchestrator.orchestrator.scheduler import CycleReport, Scheduler
from taskinfa_orchestrator.orchestrator.selection import group_by_project, select_task
from taskinfa_orchestrator.orchestrator.store import (
    HttpTaskStore,
    SqliteTaskStore,
    StoreError,
    TaskStore,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCommand:
    """CLI input for the scheduler loop."""

    store: str | None
    db_path: Path | None
    once: bool


@dataclass(slots=True)
class TasksCommand:
    """CLI input for ready-task listing."""

    store: str | None
    db_path: Path | None


@dataclass(slots=True)
class InitProjectsCommand:
    """CLI input for one initializer pass."""

    store: str | None
    db_path: Path | None


@dataclass(slots=True)
class AddProjectCommand:
    """CLI input for seeding a project into the local store."""

    db_path: Path | None
    name: str
    project_id: str | None
    repository_url: str | None
    working_directory: str | None


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for seeding a task into the local store."""

    db_path: Path | None
    title: str
    project_id: str | None
    description: str | None
    priority: str


class OrchestratorCliController:
    """Coordinates scheduler, inspection and local-store CLI operations."""

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings(store=command.store, db_path=command.db_path)
        log_file = configure_logging(
            level=settings.logging.level,
            log_dir=settings.logging.log_dir,
        )
        if log_file is not None:
            logger.info("Logging to %s", log_file)

        with _store(settings) as store:
            _startup_check(settings, store)
            reporter = _reporter(settings, store)
            scheduler = Scheduler(
                settings=settings,
                store=store,
                backend=CliAgentBackend(),
                reporter=reporter,
                initializer=_initializer(settings, store, reporter),
            )
            if not command.once:
                scheduler.run_forever()
                return ["Scheduler stopped."]
            report = scheduler.run_once(wait=True)

        lines = [_cycle_line(report)]
        if report.fetch_error:
            lines.append(f"Fetch error: {report.fetch_error}")
        lines.extend(f"Error: {error}" for error in report.errors)
        for outcome in scheduler.outcomes:
            state = "completed" if outcome.succeeded else "failed"
            lines.append(
                f"Task {outcome.task_id} {state}: session={outcome.session_id} "
                f"error_count={outcome.error_count} summary={outcome.summary}",
            )
        return lines

    def tasks(self, command: TasksCommand) -> list[str]:
        """List ready tasks per project and mark what the scheduler would pick."""

        settings = _settings(store=command.store, db_path=command.db_path)
        max_retries = settings.scheduler.max_retries
        with _store(settings) as store:
            try:
                ready = store.list_ready_tasks()
            except StoreError as error:
                raise ConfigurationError(f"Could not list ready tasks: {error}") from error

        if not ready:
            return ["No ready tasks."]

        lines: list[str] = []
        for project_id, tasks in sorted(group_by_project(ready).items()):
            selected = select_task(tasks, max_retries=max_retries)
            lines.append(f"Project {project_id}: {len(tasks)} ready")
            for task in tasks:
                if selected is not None and task.task_id == selected.task_id:
                    marker = "*"
                elif is_exhausted(task.error_count, max_retries):
                    marker = "x"
                else:
                    marker = " "
                lines.append(
                    f"  {marker} {task.task_id} [{task.priority.value}] "
                    f"errors={task.error_count} {task.title}",
                )
        return lines

    def init_projects(self, command: InitProjectsCommand) -> list[str]:
        settings = _settings(store=command.store, db_path=command.db_path)
        with _store(settings) as store:
            reporter = _reporter(settings, store)
            initializer = _initializer(settings, store, reporter)
            try:
                projects = store.list_projects()
            except StoreError as error:
                raise ConfigurationError(f"Could not list projects: {error}") from error
            results = initializer.initialize_pending(projects)

        if not results:
            return ["No projects need initialization."]
        lines = []
        for result in results:
            if result.initialized:
                how = "adopted" if result.adopted else "cloned"
                lines.append(f"Project {result.project_id}: {how} into {result.working_directory}")
            else:
                lines.append(f"Project {result.project_id}: failed: {result.error}")
        return lines

    def add_project(self, command: AddProjectCommand) -> list[str]:
        settings = _settings(store="sqlite", db_path=command.db_path)
        with _local_store(settings) as store:
            project = store.add_project(
                name=command.name,
                project_id=command.project_id,
                repository_url=command.repository_url,
                working_directory=command.working_directory,
            )
        return [f"Project added: id={project.project_id} name={project.name}"]

    def add_task(self, command: AddTaskCommand) -> list[str]:
        settings = _settings(store="sqlite", db_path=command.db_path)
        with _local_store(settings) as store:
            task = store.add_task(
                title=command.title,
                project_id=command.project_id,
                description=command.description,
                priority=TaskPriority.parse(command.priority),
            )
        return [
            f"Task added: id={task.task_id} project={task.group_key} "
            f"priority={task.priority.value} status={task.status}",
        ]


def _settings(*, store: str | None, db_path: Path | None) -> Settings:
    settings = Settings.from_env(store=store, db_path=db_path)
    settings.validate()
    return settings


def _startup_check(settings: Settings, store: TaskStore) -> None:
    try:
        validate_command_template(settings.agent.command_template)
    except BackendRunError as error:
        raise ConfigurationError(f"Invalid TASKINFA_AGENT_COMMAND: {error}") from error
    try:
        store.check_connection()
    except StoreError as error:
        raise ConfigurationError(f"Task store is not reachable: {error}") from error


def _reporter(settings: Settings, store: TaskStore) -> EventReporter:
    return EventReporter(store, secrets=(settings.api.api_key, settings.workspace.gh_token))


def _initializer(
    settings: Settings,
    store: TaskStore,
    reporter: EventReporter,
) -> ProjectInitializer:
    return ProjectInitializer(
        store=store,
        reporter=reporter,
        projects_dir=settings.workspace.projects_dir,
        cloner=GitCloner(
            gh_token=settings.workspace.gh_token,
            timeout_seconds=settings.workspace.clone_timeout_seconds,
        ),
    )


def _cycle_line(report: CycleReport) -> str:
    return (
        "Cycle summary: "
        f"dispatched={len(report.dispatched)} conflicts={len(report.claim_conflicts)} "
        f"busy={len(report.skipped_busy)} exhausted={len(report.skipped_exhausted)} "
        f"uninitialized={len(report.skipped_uninitialized)} "
        f"initialized={len(report.initialized_projects)} "
        f"init_failed={len(report.failed_initializations)} "
        f"reconciled={len(report.reconciled_sessions)}"
    )


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    if settings.store == "sqlite":
        with _local_store(settings) as local:
            yield local
        return
    store = HttpTaskStore(
        base_url=settings.api.base_url,
        api_key=settings.api.api_key,
        worker_name=settings.agent.worker_name,
        timeout_seconds=settings.api.timeout_seconds,
        max_retries=settings.api.max_retries,
        ready_task_limit=settings.scheduler.ready_task_limit,
    )
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _local_store(settings: Settings) -> Iterator[SqliteTaskStore]:
    store = SqliteTaskStore(settings.db_path, worker_name=settings.agent.worker_name)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
