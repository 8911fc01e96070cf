"""CLI entrypoint for taskinfa-orchestrator."""

from pathlib import Path

import rich_click as click

from taskinfa_orchestrator import __version__
from taskinfa_orchestrator.config import SUPPORTED_STORES, ConfigurationError
from taskinfa_orchestrator.orchestrator.controllers import (
    AddProjectCommand,
    AddTaskCommand,
    InitProjectsCommand,
    OrchestratorCliController,
    RunCommand,
    TasksCommand,
)
from taskinfa_orchestrator.orchestrator.models import TaskPriority

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_STORE_OPTION = click.option(
    "--store",
    type=click.Choice(SUPPORTED_STORES, case_sensitive=False),
    default=None,
    help="Task store backend. Defaults to `TASKINFA_STORE` (http).",
)
_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path for the local store.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskinfa-orchestrator")
def taskinfa() -> None:
    """Dispatch kanban tasks to CLI coding agents.

    Configuration comes from `TASKINFA_*` environment variables, optionally
    seeded from the `KEY=VALUE` file named by `TASKINFA_CONFIG`.
    """


@taskinfa.command("run")
@_STORE_OPTION
@_DB_PATH_OPTION
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run a single scheduling cycle and wait for its sessions.",
)
def run(store: str | None, db_path: Path | None, once: bool) -> None:
    """Start the scheduler poll loop (SIGINT/SIGTERM stop it gracefully)."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.run,
            RunCommand(store=store, db_path=db_path, once=once),
        ),
    )


@taskinfa.command("tasks")
@_STORE_OPTION
@_DB_PATH_OPTION
def tasks(store: str | None, db_path: Path | None) -> None:
    """List ready tasks per project.

    `*` marks the task the next cycle would pick, `x` marks exhausted tasks.
    """

    _emit_lines(
        _guarded(ORCHESTRATOR_CONTROLLER.tasks, TasksCommand(store=store, db_path=db_path)),
    )


@taskinfa.command("init-projects")
@_STORE_OPTION
@_DB_PATH_OPTION
def init_projects(store: str | None, db_path: Path | None) -> None:
    """Clone repositories of projects that are not initialized yet."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.init_projects,
            InitProjectsCommand(store=store, db_path=db_path),
        ),
    )


@taskinfa.group()
def local() -> None:
    """Seed the local SQLite store."""


@local.command("add-project")
@_DB_PATH_OPTION
@click.option("--name", required=True, help="Project name.")
@click.option("--id", "project_id", default=None, help="Explicit project id.")
@click.option("--repo", "repository_url", default=None, help="Git repository URL to clone.")
@click.option(
    "--workdir",
    "working_directory",
    default=None,
    help="Existing working directory for the project.",
)
def add_project(
    db_path: Path | None,
    name: str,
    project_id: str | None,
    repository_url: str | None,
    working_directory: str | None,
) -> None:
    """Add a project to the local store."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.add_project,
            AddProjectCommand(
                db_path=db_path,
                name=name,
                project_id=project_id,
                repository_url=repository_url,
                working_directory=working_directory,
            ),
        ),
    )


@local.command("add-task")
@_DB_PATH_OPTION
@click.option("--title", required=True, help="Task title.")
@click.option("--project", "project_id", default=None, help="Owning project id.")
@click.option("--description", default=None, help="Task description (the agent prompt).")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in TaskPriority], case_sensitive=False),
    default=TaskPriority.MEDIUM.value,
    show_default=True,
    help="Task priority.",
)
def add_task(
    db_path: Path | None,
    title: str,
    project_id: str | None,
    description: str | None,
    priority: str,
) -> None:
    """Add a ready task to the local store."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.add_task,
            AddTaskCommand(
                db_path=db_path,
                title=title,
                project_id=project_id,
                description=description,
                priority=priority.lower(),
            ),
        ),
    )


def _guarded(handler, command) -> list[str]:  # noqa: ANN001
    try:
        return handler(command)
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskinfa()
