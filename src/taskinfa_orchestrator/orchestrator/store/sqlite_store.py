"""Single-machine task store backed by SQLModel + SQLite."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import Column, DateTime, event
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from taskinfa_orchestrator.orchestrator.models import (
    ClaimResult,
    Event,
    EventType,
    Project,
    SessionStatus,
    Task,
    TaskPriority,
    TaskStatus,
    parse_task_status,
    utc_now,
)
from taskinfa_orchestrator.orchestrator.models import Session as SessionRecord
from taskinfa_orchestrator.orchestrator.store.base import UNSET, StoreError, _Unset


class ProjectRow(SQLModel, table=True):
    __tablename__ = "task_lists"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str
    repository_url: str | None = None
    working_directory: str | None = None
    is_initialized: bool = Field(default=False, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    task_list_id: str | None = Field(default=None, index=True)
    title: str
    description: str | None = None
    status: str = Field(index=True)
    priority: str = TaskPriority.MEDIUM.value
    error_count: int = 0
    assigned_to: str | None = None
    completion_notes: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SessionRow(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    task_id: str | None = Field(default=None, index=True)
    project_id: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    summary: str | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class EventRow(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]

    event_id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)
    message: str
    session_id: str | None = Field(default=None, index=True)
    task_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SqliteTaskStore:
    """Task store facade for local runs; the claim is a conditional UPDATE."""

    def __init__(self, db_path: Path, *, worker_name: str = "orchestrator") -> None:
        self.db_path = db_path
        self.worker_name = worker_name
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        event.listen(self.engine, "connect", _apply_sqlite_pragmas)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create tables if missing."""

        SQLModel.metadata.create_all(
            self.engine,
            tables=[
                ProjectRow.__table__,  # type: ignore[attr-defined]
                TaskRow.__table__,  # type: ignore[attr-defined]
                SessionRow.__table__,  # type: ignore[attr-defined]
                EventRow.__table__,  # type: ignore[attr-defined]
            ],
        )

    def check_connection(self) -> None:
        with self._session() as session:
            session.exec(select(ProjectRow).limit(1)).all()

    # -- seeding -----------------------------------------------------------------

    def add_project(
        self,
        *,
        name: str,
        project_id: str | None = None,
        repository_url: str | None = None,
        working_directory: str | None = None,
        initialized: bool = False,
    ) -> Project:
        """Insert a project (task list)."""

        row = ProjectRow(
            project_id=project_id or f"tl_{uuid4().hex[:12]}",
            name=name,
            repository_url=repository_url,
            working_directory=working_directory,
            is_initialized=initialized,
            created_at=_to_db_datetime(utc_now()),
        )
        with self._session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project(row)

    def add_task(  # noqa: PLR0913
        self,
        *,
        title: str,
        project_id: str | None,
        description: str | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        status: TaskStatus = TaskStatus.TODO,
        error_count: int = 0,
        task_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Task:
        """Insert a task."""

        now = utc_now()
        row = TaskRow(
            task_id=task_id or f"task_{uuid4().hex}",
            task_list_id=project_id,
            title=title,
            description=description,
            status=status.value,
            priority=priority.value,
            error_count=error_count,
            created_at=_to_db_datetime(created_at or now),
            updated_at=_to_db_datetime(now),
        )
        with self._session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task(row)

    # -- TaskStore protocol --------------------------------------------------------

    def list_projects(self) -> list[Project]:
        with self._session() as session:
            rows = session.exec(
                select(ProjectRow).order_by(col(ProjectRow.created_at).asc()),
            ).all()
            return [_to_project(row) for row in rows]

    def get_project(self, project_id: str) -> Project | None:
        with self._session() as session:
            row = session.get(ProjectRow, project_id)
            return None if row is None else _to_project(row)

    def list_ready_tasks(self, project_id: str | None = None) -> list[Task]:
        with self._session() as session:
            statement = select(TaskRow).where(TaskRow.status == TaskStatus.TODO.value)
            if project_id is not None:
                statement = statement.where(TaskRow.task_list_id == project_id)
            rows = session.exec(
                statement.order_by(col(TaskRow.created_at).asc(), col(TaskRow.task_id).asc()),
            ).all()
            return [_to_task(row) for row in rows]

    def list_tasks(self) -> list[Task]:
        with self._session() as session:
            rows = session.exec(select(TaskRow).order_by(col(TaskRow.created_at).asc())).all()
            return [_to_task(row) for row in rows]

    def get_task(self, task_id: str) -> Task:
        with self._session() as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise StoreError(f"Task not found: {task_id}", transient=False, status_code=404)
            return _to_task(row)

    def claim_task(self, task_id: str, expected_status: TaskStatus) -> ClaimResult:
        with self._session() as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == expected_status.value,
                )
                .values(
                    status=TaskStatus.IN_PROGRESS.value,
                    assigned_to=self.worker_name,
                    updated_at=_to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return ClaimResult.ALREADY_CLAIMED
            session.commit()
            return ClaimResult.CLAIMED

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        error_count: int | None = None,
        completion_notes: str | None = None,
        assigned_to: str | None | _Unset = UNSET,
    ) -> None:
        with self._session() as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise StoreError(f"Task not found: {task_id}", transient=False, status_code=404)
            if status is not None:
                row.status = status.value
            if error_count is not None:
                row.error_count = error_count
            if completion_notes is not None:
                row.completion_notes = completion_notes
            if not isinstance(assigned_to, _Unset):
                row.assigned_to = assigned_to
            row.updated_at = _to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def list_active_sessions(self) -> list[SessionRecord]:
        return self.list_sessions(status=SessionStatus.ACTIVE)

    def list_sessions(self, *, status: SessionStatus | None = None) -> list[SessionRecord]:
        with self._session() as session:
            statement = select(SessionRow)
            if status is not None:
                statement = statement.where(SessionRow.status == status.value)
            rows = session.exec(statement.order_by(col(SessionRow.started_at).asc())).all()
            return [_to_session(row) for row in rows]

    def create_session(self, task_id: str, project_id: str) -> SessionRecord:
        row = SessionRow(
            session_id=f"sess_{uuid4().hex}",
            task_id=task_id,
            project_id=project_id,
            status=SessionStatus.ACTIVE.value,
            started_at=_to_db_datetime(utc_now()),
        )
        with self._session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session(row)

    def update_session(
        self,
        session_id: str,
        *,
        status: SessionStatus,
        summary: str | None = None,
    ) -> None:
        with self._session() as session:
            row = session.get(SessionRow, session_id)
            if row is None:
                raise StoreError(
                    f"Session not found: {session_id}",
                    transient=False,
                    status_code=404,
                )
            row.status = status.value
            if summary is not None:
                row.summary = summary
            if status != SessionStatus.ACTIVE:
                row.ended_at = _to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def report_event(
        self,
        *,
        event_type: EventType,
        message: str,
        session_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        with self._session() as session:
            session.add(
                EventRow(
                    event_type=event_type.value,
                    message=message,
                    session_id=session_id,
                    task_id=task_id,
                    created_at=_to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_events(self, *, task_id: str | None = None) -> list[Event]:
        with self._session() as session:
            statement = select(EventRow)
            if task_id is not None:
                statement = statement.where(EventRow.task_id == task_id)
            rows = session.exec(statement.order_by(col(EventRow.event_id).asc())).all()
            return [
                Event(
                    event_type=EventType(row.event_type),
                    message=row.message,
                    session_id=row.session_id,
                    task_id=row.task_id,
                    created_at=_to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]

    def update_project(
        self,
        project_id: str,
        *,
        initialized: bool,
        working_directory: str | None = None,
    ) -> None:
        with self._session() as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                raise StoreError(
                    f"Project not found: {project_id}",
                    transient=False,
                    status_code=404,
                )
            row.is_initialized = initialized
            if working_directory is not None:
                row.working_directory = working_directory
            session.add(row)
            session.commit()

    def _session(self) -> _GuardedSession:
        return _GuardedSession(self.engine)


class _GuardedSession(Session):
    """SQLModel session whose database errors surface as StoreError."""

    def __exit__(self, exc_type, exc, traceback) -> None:  # noqa: ANN001
        super().__exit__(exc_type, exc, traceback)
        if isinstance(exc, SQLAlchemyError):
            raise StoreError(f"SQLite store error: {exc}", transient=True) from exc


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, _: object) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA busy_timeout = 30000")
    cursor.close()


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_project(row: ProjectRow) -> Project:
    return Project(
        project_id=row.project_id,
        name=row.name,
        repository_url=row.repository_url,
        working_directory=row.working_directory,
        initialized=bool(row.is_initialized),
    )


def _to_task(row: TaskRow) -> Task:
    return Task(
        task_id=row.task_id,
        project_id=row.task_list_id,
        title=row.title,
        description=row.description,
        status=parse_task_status(row.status),
        priority=TaskPriority.parse(row.priority),
        error_count=row.error_count,
        created_at=_to_utc_aware_datetime(row.created_at),
    )


def _to_session(row: SessionRow) -> SessionRecord:
    return SessionRecord(
        session_id=row.session_id,
        task_id=row.task_id,
        project_id=row.project_id,
        status=SessionStatus(row.status),
        started_at=_to_utc_aware_datetime(row.started_at),
        ended_at=None if row.ended_at is None else _to_utc_aware_datetime(row.ended_at),
        summary=row.summary,
    )
