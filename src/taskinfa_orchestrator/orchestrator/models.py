"""Domain models for tasks, projects, sessions and events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

DEFAULT_PROJECT_ID = "default"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class TaskStatus(str, Enum):
    """Task board columns as stored by the task store."""

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


READY_STATUS = TaskStatus.TODO


def parse_task_status(value: object) -> TaskStatus | str:
    """Known columns become TaskStatus; store-specific ones stay raw strings."""

    text = str(value or "").strip().lower()
    try:
        return TaskStatus(text)
    except ValueError:
        return text


class TaskPriority(str, Enum):
    """Task priority labels, most urgent first."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: object) -> TaskPriority:
        """Map store values onto a priority; unknown values count as medium."""

        if isinstance(value, TaskPriority):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.MEDIUM
        return cls.MEDIUM


_PRIORITY_RANK = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class SessionStatus(str, Enum):
    """Execution session lifecycle."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class EventType(str, Enum):
    """Event tags published to the task store."""

    SESSION_START = "session_start"
    SESSION_END = "session_end"
    SESSION_ERROR = "session_error"
    ERROR = "error"
    STUCK = "stuck"


class ClaimResult(str, Enum):
    """Outcome of a conditional claim."""

    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


class FailureKind(str, Enum):
    """Why an agent run failed. Diagnostic only: all kinds are handled alike."""

    EXIT_NONZERO = "exit_nonzero"
    TIMEOUT = "timeout"
    SPAWN_FAILED = "spawn_failed"
    SHUTDOWN = "shutdown"


@dataclass(slots=True)
class Task:
    """Unit of work owned by a project."""

    task_id: str
    project_id: str | None
    title: str
    description: str | None
    status: TaskStatus | str
    priority: TaskPriority = TaskPriority.MEDIUM
    error_count: int = 0
    created_at: datetime | None = None

    @property
    def group_key(self) -> str:
        return self.project_id or DEFAULT_PROJECT_ID

    @property
    def prompt_text(self) -> str:
        description = (self.description or "").strip()
        return description or self.title


@dataclass(slots=True)
class Project:
    """Concurrency and working-directory scope."""

    project_id: str
    name: str
    repository_url: str | None = None
    working_directory: str | None = None
    initialized: bool = False

    @property
    def needs_initialization(self) -> bool:
        return not self.initialized and bool((self.repository_url or "").strip())


@dataclass(slots=True)
class Session:
    """One execution attempt of a task."""

    session_id: str
    task_id: str | None
    project_id: str | None
    status: SessionStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    summary: str | None = None


@dataclass(slots=True)
class Event:
    """Append-only observability record."""

    event_type: EventType
    message: str
    session_id: str | None = None
    task_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)
