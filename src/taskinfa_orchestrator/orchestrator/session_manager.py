"""One dispatch: session bookkeeping around a single agent run."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from taskinfa_orchestrator.config import Settings
from taskinfa_orchestrator.orchestrator.backend import (
    AgentBackend,
    AgentRunRequest,
    AgentRunResult,
    BackendRunError,
)
from taskinfa_orchestrator.orchestrator.backend.cli_backend import SPAWN_FAILED_EXIT_CODE
from taskinfa_orchestrator.orchestrator.events import EventReporter
from taskinfa_orchestrator.orchestrator.initializer import resolve_working_directory
from taskinfa_orchestrator.orchestrator.models import (
    READY_STATUS,
    FailureKind,
    Project,
    Session,
    SessionStatus,
    Task,
    TaskStatus,
)
from taskinfa_orchestrator.orchestrator.prompt import build_prompt
from taskinfa_orchestrator.orchestrator.retry_policy import decide_after_failure
from taskinfa_orchestrator.orchestrator.sanitization import sanitize_text
from taskinfa_orchestrator.orchestrator.store.base import StoreError, TaskStore

logger = logging.getLogger(__name__)

COMPLETION_NOTES_CHARS = 1_000
ERROR_SUMMARY_CHARS = 500


@dataclass(slots=True)
class SessionOutcome:
    """What one dispatch did to its task."""

    task_id: str
    project_id: str
    session_id: str | None
    succeeded: bool
    exit_code: int | None = None
    timed_out: bool = False
    failure_kind: FailureKind | None = None
    error_count: int = 0
    exhausted: bool = False
    summary: str = ""
    claim_released: bool = False


class SessionManager:
    """Creates the session, runs the agent and finalizes task and session state."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        backend: AgentBackend,
        reporter: EventReporter,
        settings: Settings,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.reporter = reporter
        self.settings = settings
        self.shutdown_requested = shutdown_requested
        self._secrets = tuple(
            secret for secret in (settings.api.api_key, settings.workspace.gh_token) if secret
        )

    def run(self, task: Task, project: Project) -> SessionOutcome:
        try:
            session = self.store.create_session(task.task_id, project.project_id)
        except StoreError as error:
            logger.error("Could not create session for task %s: %s", task.task_id, error)
            released = self._release_claim(task)
            return SessionOutcome(
                task_id=task.task_id,
                project_id=project.project_id,
                session_id=None,
                succeeded=False,
                error_count=task.error_count,
                summary=f"Session create failed: {error}",
                claim_released=released,
            )

        logger.info(
            "Session %s started for task %s in project %s",
            session.session_id,
            task.task_id,
            project.project_id,
        )
        self.reporter.session_started(session, task)

        result = self._execute(task=task, project=project, session=session)
        if result.succeeded:
            return self._finalize_success(
                task=task,
                project=project,
                session=session,
                result=result,
            )
        return self._finalize_failure(task=task, project=project, session=session, result=result)

    def _execute(self, *, task: Task, project: Project, session: Session) -> AgentRunResult:
        working_directory = resolve_working_directory(
            project,
            workspace_root=self.settings.workspace.workspace_root,
            projects_dir=self.settings.workspace.projects_dir,
        )
        log_dir = session_log_dir(self.settings.logging.log_dir, session.session_id)
        try:
            working_directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            logger.warning("Cannot create working directory %s: %s", working_directory, error)

        try:
            prompt = build_prompt(
                task=task,
                project=project,
                working_directory=working_directory,
                git_workflow=bool(self.settings.workspace.gh_token),
            )
            return self.backend.run(
                AgentRunRequest(
                    prompt=prompt,
                    cwd=working_directory,
                    timeout_seconds=self.settings.agent.session_timeout_seconds,
                    command_template=self.settings.agent.command_template,
                    log_dir=log_dir,
                    task_id=task.task_id,
                    session_id=session.session_id,
                    env=self._agent_env(task=task, session=session),
                    shutdown_requested=self.shutdown_requested,
                    graceful_shutdown_seconds=self.settings.agent.graceful_shutdown_seconds,
                ),
            )
        except (BackendRunError, OSError) as error:
            logger.error("Agent for task %s could not run: %s", task.task_id, error)
            return AgentRunResult(
                exit_code=SPAWN_FAILED_EXIT_CODE,
                timed_out=False,
                stdout_path=log_dir / "stdout.log",
                stderr_path=log_dir / "stderr.log",
                failure_kind=FailureKind.SPAWN_FAILED,
                error_message=str(error),
            )

    def _agent_env(self, *, task: Task, session: Session) -> dict[str, str]:
        env = {
            "KANBAN_API_URL": self.settings.api.base_url,
            "KANBAN_API_KEY": self.settings.api.api_key,
            "KANBAN_SESSION_ID": session.session_id,
            "KANBAN_TASK_ID": task.task_id,
        }
        if self.settings.workspace.gh_token:
            env["GH_TOKEN"] = self.settings.workspace.gh_token
        return env

    def _finalize_success(
        self,
        *,
        task: Task,
        project: Project,
        session: Session,
        result: AgentRunResult,
    ) -> SessionOutcome:
        summary = sanitize_text(f"Completed: {task.title}", secrets=self._secrets)
        notes = sanitize_text(
            result.stdout_tail(COMPLETION_NOTES_CHARS),
            secrets=self._secrets,
            max_chars=COMPLETION_NOTES_CHARS,
        )
        logger.info(
            "Task %s completed in %.1fs; moving to review",
            task.task_id,
            result.duration_seconds,
        )
        self._store_call(
            "update task",
            lambda: self.store.update_task(
                task.task_id,
                status=TaskStatus.REVIEW,
                completion_notes=notes,
            ),
        )
        self._store_call(
            "update session",
            lambda: self.store.update_session(
                session.session_id,
                status=SessionStatus.COMPLETED,
                summary=summary,
            ),
        )
        self.reporter.session_ended(session, task, succeeded=True, summary=summary)
        return SessionOutcome(
            task_id=task.task_id,
            project_id=project.project_id,
            session_id=session.session_id,
            succeeded=True,
            exit_code=result.exit_code,
            error_count=task.error_count,
            summary=summary,
        )

    def _finalize_failure(
        self,
        *,
        task: Task,
        project: Project,
        session: Session,
        result: AgentRunResult,
    ) -> SessionOutcome:
        decision = decide_after_failure(task.error_count + 1, self.settings.scheduler.max_retries)
        stderr_tail = result.stderr_tail(ERROR_SUMMARY_CHARS)
        headline = f"Error (exit {result.exit_code})"
        summary = sanitize_text(
            f"{headline}: {stderr_tail}" if stderr_tail else headline,
            secrets=self._secrets,
        )
        logger.warning(
            "Task %s failed (%s, exit %s); error_count=%s",
            task.task_id,
            (result.failure_kind or FailureKind.EXIT_NONZERO).value,
            result.exit_code,
            decision.error_count,
        )
        self._store_call(
            "update task",
            lambda: self.store.update_task(
                task.task_id,
                status=READY_STATUS,
                error_count=decision.error_count,
                assigned_to=None,
            ),
        )
        self._store_call(
            "update session",
            lambda: self.store.update_session(
                session.session_id,
                status=SessionStatus.ERROR,
                summary=summary,
            ),
        )
        self.reporter.session_ended(session, task, succeeded=False, summary=summary)
        if decision.exhausted:
            logger.warning(
                "Task %s exhausted its retry budget (%s/%s)",
                task.task_id,
                decision.error_count,
                self.settings.scheduler.max_retries,
            )
            self.reporter.task_exhausted(
                task,
                error_count=decision.error_count,
                max_retries=self.settings.scheduler.max_retries,
            )
        return SessionOutcome(
            task_id=task.task_id,
            project_id=project.project_id,
            session_id=session.session_id,
            succeeded=False,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            failure_kind=result.failure_kind or FailureKind.EXIT_NONZERO,
            error_count=decision.error_count,
            exhausted=decision.exhausted,
            summary=summary,
        )

    def _release_claim(self, task: Task) -> bool:
        try:
            self.store.update_task(task.task_id, status=READY_STATUS, assigned_to=None)
        except StoreError as error:
            logger.error("Could not release claim on task %s: %s", task.task_id, error)
            return False
        return True

    def _store_call(self, action: str, call: Callable[[], None]) -> None:
        try:
            call()
        except StoreError as error:
            logger.error("Failed to %s: %s", action, error)


def session_log_dir(log_dir: Path, session_id: str) -> Path:
    return log_dir / "sessions" / session_id
