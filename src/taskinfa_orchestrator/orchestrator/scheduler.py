"""Poll loop: decide which ready tasks to start each cycle."""

from __future__ import annotations

import logging
import signal
import threading
from collections import deque
from collections.abc import Callable, Collection, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from taskinfa_orchestrator.config import Settings
from taskinfa_orchestrator.orchestrator.backend import AgentBackend
from taskinfa_orchestrator.orchestrator.claimer import TaskClaimer
from taskinfa_orchestrator.orchestrator.events import EventReporter
from taskinfa_orchestrator.orchestrator.initializer import ProjectInitializer
from taskinfa_orchestrator.orchestrator.models import (
    DEFAULT_PROJECT_ID,
    READY_STATUS,
    ClaimResult,
    Project,
    Task,
)
from taskinfa_orchestrator.orchestrator.reconcile import reconcile_orphans
from taskinfa_orchestrator.orchestrator.selection import (
    group_by_project,
    select_task,
    selection_key,
)
from taskinfa_orchestrator.orchestrator.session_manager import SessionManager, SessionOutcome
from taskinfa_orchestrator.orchestrator.store.base import StoreError, TaskStore

logger = logging.getLogger(__name__)

LaunchFn = Callable[[Task, Project], None]

OUTCOME_HISTORY = 100


@dataclass(slots=True)
class CycleReport:
    """What one scheduling cycle observed and did."""

    dispatched: list[str] = field(default_factory=list)
    claim_conflicts: list[str] = field(default_factory=list)
    skipped_busy: list[str] = field(default_factory=list)
    skipped_exhausted: list[str] = field(default_factory=list)
    skipped_uninitialized: list[str] = field(default_factory=list)
    initialized_projects: list[str] = field(default_factory=list)
    failed_initializations: list[str] = field(default_factory=list)
    reconciled_sessions: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    fetch_error: str | None = None


def run_cycle(  # noqa: PLR0913
    *,
    settings: Settings,
    store: TaskStore,
    initializer: ProjectInitializer,
    launch: LaunchFn,
    busy_project_ids: Collection[str],
    reporter: EventReporter,
    stop_requested: Callable[[], bool] | None = None,
) -> CycleReport:
    """Run one poll cycle: initialize, fetch, select, claim and launch.

    `busy_project_ids` are projects with a dispatch in flight in this
    process. Once `stop_requested` returns true no further task is claimed.
    The function keeps no state between calls.
    """

    report = CycleReport()
    try:
        projects = store.list_projects()
        active_sessions = store.list_active_sessions()
    except StoreError as error:
        logger.warning("Task store unavailable, skipping cycle: %s", error)
        report.fetch_error = str(error)
        return report

    if settings.scheduler.orphan_session_policy == "mark_error":
        report.reconciled_sessions = reconcile_orphans(
            store=store,
            reporter=reporter,
            sessions=active_sessions,
            in_flight_project_ids=busy_project_ids,
            grace_seconds=settings.scheduler.orphan_session_grace_seconds,
        )
        reconciled = set(report.reconciled_sessions)
        active_sessions = [s for s in active_sessions if s.session_id not in reconciled]

    for result in initializer.initialize_pending(projects):
        if result.initialized:
            report.initialized_projects.append(result.project_id)
        else:
            report.failed_initializations.append(result.project_id)

    try:
        ready = store.list_ready_tasks()
    except StoreError as error:
        logger.warning("Could not fetch ready tasks: %s", error)
        report.fetch_error = str(error)
        return report

    projects_by_id = {project.project_id: project for project in projects}
    busy = {session.project_id or DEFAULT_PROJECT_ID for session in active_sessions}
    busy.update(busy_project_ids)
    slots = settings.scheduler.max_concurrent - len(busy)

    candidates: list[tuple[str, Task]] = []
    for project_id, tasks in group_by_project(ready).items():
        task = select_task(tasks, max_retries=settings.scheduler.max_retries)
        if task is None:
            logger.debug("Project %s has only exhausted tasks", project_id)
            report.skipped_exhausted.extend(t.task_id for t in tasks)
            continue
        candidates.append((project_id, task))
    candidates.sort(key=lambda item: (*selection_key(item[1])[:2], item[0]))

    claimer = TaskClaimer(store)
    for project_id, task in candidates:
        if project_id in busy:
            report.skipped_busy.append(project_id)
            continue
        project = projects_by_id.get(project_id) or Project(project_id=project_id, name=project_id)
        if project.needs_initialization:
            report.skipped_uninitialized.append(project_id)
            continue
        if slots <= 0:
            logger.info("Concurrency limit %s reached", settings.scheduler.max_concurrent)
            break
        if stop_requested is not None and stop_requested():
            logger.info("Shutdown requested; not claiming further tasks")
            break

        try:
            claimed = claimer.claim(task)
        except StoreError as error:
            logger.warning("Claim of task %s failed: %s", task.task_id, error)
            report.errors.append(f"claim {task.task_id}: {error}")
            continue
        if claimed == ClaimResult.ALREADY_CLAIMED:
            report.claim_conflicts.append(task.task_id)
            continue

        try:
            launch(task, project)
        except Exception as error:
            logger.exception("Could not launch task %s", task.task_id)
            report.errors.append(f"launch {task.task_id}: {error}")
            _release_claim(store, task)
            continue
        report.dispatched.append(task.task_id)
        busy.add(project_id)
        slots -= 1

    logger.info(
        "Cycle done: ready=%s dispatched=%s busy=%s conflicts=%s",
        len(ready),
        len(report.dispatched),
        len(busy),
        len(report.claim_conflicts),
    )
    return report


def _release_claim(store: TaskStore, task: Task) -> None:
    try:
        store.update_task(task.task_id, status=READY_STATUS, assigned_to=None)
    except StoreError as error:
        logger.error("Could not release claim on task %s: %s", task.task_id, error)


class Scheduler:
    """Owns the in-flight registry and runs cycles until stopped."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        store: TaskStore,
        backend: AgentBackend,
        reporter: EventReporter,
        initializer: ProjectInitializer,
        outcome_history: int = OUTCOME_HISTORY,
    ) -> None:
        self.settings = settings
        self.store = store
        self.reporter = reporter
        self.initializer = initializer
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._in_flight: dict[str, threading.Thread] = {}
        # Most recent session outcomes, oldest first.
        self.outcomes: deque[SessionOutcome] = deque(maxlen=outcome_history)
        self.session_manager = SessionManager(
            store=store,
            backend=backend,
            reporter=reporter,
            settings=settings,
            shutdown_requested=self._stop_event.is_set,
        )

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def in_flight_project_ids(self) -> set[str]:
        with self._lock:
            return {pid for pid, thread in self._in_flight.items() if thread.is_alive()}

    def run_once(self, *, wait: bool = True) -> CycleReport:
        """Run a single cycle; optionally wait for the dispatches it started."""

        with self._signal_handlers():
            report = self._cycle()
            if wait:
                self.wait_for_dispatches()
        return report

    def run_forever(self) -> None:
        logger.info("Scheduler started: %s", self.settings.redacted_summary())
        with self._signal_handlers():
            while not self._stop_event.is_set():
                try:
                    self._cycle()
                except Exception:
                    logger.exception("Scheduling cycle failed")
                self._stop_event.wait(self.settings.scheduler.poll_interval_seconds)
            logger.info("Stopping: waiting for %s dispatch(es)", len(self.in_flight_project_ids()))
            self.wait_for_dispatches()
        logger.info("Scheduler stopped")

    def request_stop(self, *, signal_name: str | None = None) -> None:
        if not self._stop_event.is_set():
            logger.warning("Shutdown requested (%s)", signal_name or "api")
        self._stop_event.set()

    def wait_for_dispatches(self) -> None:
        while True:
            with self._lock:
                threads = list(self._in_flight.values())
            if not threads:
                return
            for thread in threads:
                thread.join()

    def _cycle(self) -> CycleReport:
        return run_cycle(
            settings=self.settings,
            store=self.store,
            initializer=self.initializer,
            launch=self._launch,
            busy_project_ids=self.in_flight_project_ids(),
            reporter=self.reporter,
            stop_requested=self._stop_event.is_set,
        )

    def _launch(self, task: Task, project: Project) -> None:
        if self._stop_event.is_set():
            raise RuntimeError("Scheduler is shutting down")
        thread = threading.Thread(
            target=self._dispatch,
            args=(task, project),
            name=f"dispatch-{project.project_id}",
        )
        with self._lock:
            self._in_flight[project.project_id] = thread
        thread.start()

    def _dispatch(self, task: Task, project: Project) -> None:
        try:
            outcome = self.session_manager.run(task, project)
            with self._lock:
                self.outcomes.append(outcome)
        except Exception:
            logger.exception("Dispatch of task %s crashed", task.task_id)
        finally:
            with self._lock:
                if self._in_flight.get(project.project_id) is threading.current_thread():
                    del self._in_flight[project.project_id]

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
