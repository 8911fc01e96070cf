"""Best-effort event reporting to the task store."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from taskinfa_orchestrator.orchestrator.models import EventType, Project, Session, Task
from taskinfa_orchestrator.orchestrator.sanitization import sanitize_text
from taskinfa_orchestrator.orchestrator.store.base import StoreError, TaskStore

logger = logging.getLogger(__name__)


class EventReporter:
    """Publishes observability events; a failed publish never affects scheduling."""

    def __init__(self, store: TaskStore, *, secrets: Sequence[str] = ()) -> None:
        self.store = store
        self.secrets = tuple(secret for secret in secrets if secret)

    def report(
        self,
        event_type: EventType,
        message: str,
        *,
        session_id: str | None = None,
        task_id: str | None = None,
    ) -> bool:
        clean = sanitize_text(message, secrets=self.secrets) or event_type.value
        try:
            self.store.report_event(
                event_type=event_type,
                message=clean,
                session_id=session_id,
                task_id=task_id,
            )
        except StoreError as error:
            logger.warning("Dropped %s event (task=%s): %s", event_type.value, task_id, error)
            return False
        except Exception:
            logger.exception("Dropped %s event (task=%s)", event_type.value, task_id)
            return False
        logger.debug("Reported %s event (task=%s)", event_type.value, task_id)
        return True

    def session_started(self, session: Session, task: Task) -> bool:
        return self.report(
            EventType.SESSION_START,
            f"Started: {task.title}",
            session_id=session.session_id,
            task_id=task.task_id,
        )

    def session_ended(
        self,
        session: Session,
        task: Task,
        *,
        succeeded: bool,
        summary: str,
    ) -> bool:
        return self.report(
            EventType.SESSION_END if succeeded else EventType.SESSION_ERROR,
            summary,
            session_id=session.session_id,
            task_id=task.task_id,
        )

    def project_init_failed(self, project: Project, reason: str) -> bool:
        return self.report(
            EventType.ERROR,
            f"Project {project.name} ({project.project_id}) initialization failed: {reason}",
        )

    def task_exhausted(self, task: Task, *, error_count: int, max_retries: int) -> bool:
        return self.report(
            EventType.STUCK,
            f"Task {task.title!r} failed {error_count} time(s) "
            f"(limit {max_retries}); it will not be retried",
            task_id=task.task_id,
        )

    def orphan_reconciled(self, session: Session) -> bool:
        return self.report(
            EventType.SESSION_ERROR,
            "Session abandoned by a previous orchestrator run; marked as error",
            session_id=session.session_id,
            task_id=session.task_id,
        )
