"""Task store client for the kanban dashboard REST API."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from taskinfa_orchestrator import __version__
from taskinfa_orchestrator.orchestrator.models import (
    ClaimResult,
    EventType,
    Project,
    Session,
    SessionStatus,
    Task,
    TaskPriority,
    TaskStatus,
    parse_task_status,
)
from taskinfa_orchestrator.orchestrator.store.base import UNSET, StoreError, _Unset

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
_CLAIM_CONFLICT_CODES = frozenset({409, 412})


class HttpTaskStore:
    """Kanban REST API wrapper with bearer auth, timeout and connect retries."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str,
        worker_name: str = "orchestrator",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        ready_task_limit: int = 100,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.worker_name = worker_name
        self.ready_task_limit = ready_task_limit
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "User-Agent": f"taskinfa-orchestrator/{__version__}",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpTaskStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def check_connection(self) -> None:
        self._request("GET", "/api/task-lists")

    def list_projects(self) -> list[Project]:
        payload = self._request("GET", "/api/task-lists")
        return [_to_project(item) for item in _items(payload, "task_lists")]

    def list_ready_tasks(self, project_id: str | None = None) -> list[Task]:
        params: dict[str, str | int] = {
            "status": TaskStatus.TODO.value,
            "limit": self.ready_task_limit,
        }
        if project_id is not None:
            params["task_list_id"] = project_id
        payload = self._request("GET", "/api/tasks", params=params)
        tasks = [_to_task(item) for item in _items(payload, "tasks")]
        # Servers that ignore the filter must not leak non-ready tasks into selection.
        return [
            task
            for task in tasks
            if task.status == TaskStatus.TODO
            and (project_id is None or task.project_id == project_id)
        ]

    def get_task(self, task_id: str) -> Task:
        payload = self._request("GET", f"/api/tasks/{task_id}")
        task = payload.get("task") if isinstance(payload, dict) else None
        if not isinstance(task, dict) or task.get("id") in (None, ""):
            raise StoreError(f"Malformed task payload for {task_id}", transient=False)
        return _to_task(task)

    def claim_task(self, task_id: str, expected_status: TaskStatus) -> ClaimResult:
        # Re-read first; some servers ignore expected_status.
        current = self.get_task(task_id)
        if current.status != expected_status:
            logger.debug("Task %s is no longer %s", task_id, expected_status.value)
            return ClaimResult.ALREADY_CLAIMED
        try:
            payload = self._request(
                "PATCH",
                f"/api/tasks/{task_id}",
                json={
                    "status": TaskStatus.IN_PROGRESS.value,
                    "expected_status": expected_status.value,
                    "assigned_to": self.worker_name,
                },
            )
        except StoreError as error:
            if error.status_code in _CLAIM_CONFLICT_CODES:
                return ClaimResult.ALREADY_CLAIMED
            raise
        task = payload.get("task") if isinstance(payload, dict) else None
        if isinstance(task, dict):
            assigned_to = task.get("assigned_to")
            if parse_task_status(task.get("status")) != TaskStatus.IN_PROGRESS or (
                assigned_to not in (None, "", self.worker_name)
            ):
                return ClaimResult.ALREADY_CLAIMED
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
        body: dict[str, Any] = {}
        if status is not None:
            body["status"] = status.value
        if error_count is not None:
            body["error_count"] = error_count
        if completion_notes is not None:
            body["completion_notes"] = completion_notes
        if not isinstance(assigned_to, _Unset):
            body["assigned_to"] = assigned_to
        if not body:
            return
        self._request("PATCH", f"/api/tasks/{task_id}", json=body)

    def list_active_sessions(self) -> list[Session]:
        payload = self._request(
            "GET",
            "/api/sessions",
            params={"status": SessionStatus.ACTIVE.value},
        )
        sessions = [_to_session(item) for item in _items(payload, "sessions")]
        return [session for session in sessions if session.status == SessionStatus.ACTIVE]

    def create_session(self, task_id: str, project_id: str) -> Session:
        payload = self._request(
            "POST",
            "/api/sessions",
            json={
                "project_id": project_id,
                "current_task_id": task_id,
                "status": SessionStatus.ACTIVE.value,
            },
        )
        session = payload.get("session") if isinstance(payload, dict) else None
        if not isinstance(session, dict) or not session.get("id"):
            raise StoreError("Session create returned no session id", transient=False)
        created = _to_session(session)
        if created.task_id is None:
            created.task_id = task_id
        if created.project_id is None:
            created.project_id = project_id
        return created

    def update_session(
        self,
        session_id: str,
        *,
        status: SessionStatus,
        summary: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"status": status.value}
        if summary is not None:
            body["summary"] = summary
        self._request("PATCH", f"/api/sessions/{session_id}", json=body)

    def report_event(
        self,
        *,
        event_type: EventType,
        message: str,
        session_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"event_type": event_type.value, "message": message}
        if session_id is not None:
            body["session_id"] = session_id
        if task_id is not None:
            body["task_id"] = task_id
        self._request("POST", "/api/events", json=body)

    def update_project(
        self,
        project_id: str,
        *,
        initialized: bool,
        working_directory: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"is_initialized": initialized}
        if working_directory is not None:
            body["working_directory"] = working_directory
        self._request("PATCH", f"/api/task-lists/{project_id}", json=body)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as error:
            raise StoreError(f"API {method} {path} timed out", transient=True) from error
        except httpx.HTTPError as error:
            raise StoreError(f"API {method} {path} failed: {error}", transient=True) from error

        if not response.is_success:
            raise StoreError(
                f"API {method} {path} failed: {response.status_code} {response.text[:200]}",
                transient=response.status_code >= 500 or response.status_code == 429,
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as error:
            raise StoreError(
                f"API {method} {path} returned invalid JSON",
                transient=False,
                status_code=response.status_code,
            ) from error


def _items(payload: Any, key: str) -> list[dict[str, Any]]:
    items = payload.get(key) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise StoreError(f"Malformed API payload: {key!r} is not a list", transient=False)
    records: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict) or item.get("id") in (None, ""):
            logger.warning("Skipping malformed %s record without id", key)
            continue
        records.append(item)
    return records


def _to_task(item: dict[str, Any]) -> Task:
    return Task(
        task_id=str(item["id"]),
        project_id=_optional_str(item.get("task_list_id")),
        title=str(item.get("title") or ""),
        description=_optional_str(item.get("description")),
        status=parse_task_status(item.get("status")),
        priority=TaskPriority.parse(item.get("priority")),
        error_count=_coerce_int(item.get("error_count")),
        created_at=_parse_datetime(item.get("created_at")),
    )


def _to_project(item: dict[str, Any]) -> Project:
    return Project(
        project_id=str(item["id"]),
        name=str(item.get("name") or item["id"]),
        repository_url=_optional_str(item.get("repository_url")),
        working_directory=_optional_str(item.get("working_directory")),
        initialized=_coerce_bool(item.get("is_initialized")),
    )


def _to_session(item: dict[str, Any]) -> Session:
    try:
        status = SessionStatus(str(item.get("status") or "").lower())
    except ValueError:
        status = SessionStatus.ERROR
    return Session(
        session_id=str(item["id"]),
        task_id=_optional_str(item.get("current_task_id") or item.get("task_id")),
        project_id=_optional_str(item.get("project_id")),
        status=status,
        started_at=_parse_datetime(item.get("started_at") or item.get("created_at")),
        ended_at=_parse_datetime(item.get("ended_at")),
        summary=_optional_str(item.get("summary")),
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def _coerce_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _parse_datetime(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    # SQLite-style "YYYY-MM-DD HH:MM:SS" timestamps are UTC without an offset.
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
