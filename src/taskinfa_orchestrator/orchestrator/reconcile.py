"""Recovery of sessions left active by a previous orchestrator run."""

from __future__ import annotations

import logging
from collections.abc import Collection
from datetime import datetime, timedelta

from taskinfa_orchestrator.orchestrator.events import EventReporter
from taskinfa_orchestrator.orchestrator.models import (
    READY_STATUS,
    Session,
    SessionStatus,
    TaskStatus,
    utc_now,
)
from taskinfa_orchestrator.orchestrator.store.base import StoreError, TaskStore

logger = logging.getLogger(__name__)

ORPHAN_SUMMARY = "Orphaned: no orchestrator is running this session"


def find_orphans(
    sessions: list[Session],
    *,
    in_flight_project_ids: Collection[str],
    grace: timedelta,
    now: datetime | None = None,
) -> list[Session]:
    """Active sessions no local dispatch owns, older than the grace period."""

    current = now or utc_now()
    orphans: list[Session] = []
    for session in sessions:
        if session.status != SessionStatus.ACTIVE:
            continue
        if session.project_id is not None and session.project_id in in_flight_project_ids:
            continue
        if session.started_at is not None and current - session.started_at < grace:
            continue
        orphans.append(session)
    return orphans


def reconcile_orphans(
    *,
    store: TaskStore,
    reporter: EventReporter,
    sessions: list[Session],
    in_flight_project_ids: Collection[str],
    grace_seconds: int,
) -> list[str]:
    """Mark orphaned sessions as error and hand their tasks back to the ready column."""

    reconciled: list[str] = []
    for session in find_orphans(
        sessions,
        in_flight_project_ids=in_flight_project_ids,
        grace=timedelta(seconds=grace_seconds),
    ):
        try:
            store.update_session(
                session.session_id,
                status=SessionStatus.ERROR,
                summary=ORPHAN_SUMMARY,
            )
            if session.task_id is not None:
                task = store.get_task(session.task_id)
                if task.status == TaskStatus.IN_PROGRESS:
                    store.update_task(
                        task.task_id,
                        status=READY_STATUS,
                        error_count=task.error_count + 1,
                        assigned_to=None,
                    )
        except StoreError as error:
            logger.warning("Could not reconcile session %s: %s", session.session_id, error)
            continue
        logger.warning(
            "Reconciled orphaned session %s (task=%s, project=%s)",
            session.session_id,
            session.task_id,
            session.project_id,
        )
        reporter.orphan_reconciled(session)
        session.status = SessionStatus.ERROR
        reconciled.append(session.session_id)
    return reconciled
