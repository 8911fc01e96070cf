"""Task store adapters."""

from taskinfa_orchestrator.orchestrator.store.base import UNSET, StoreError, TaskStore
from taskinfa_orchestrator.orchestrator.store.http_store import HttpTaskStore
from taskinfa_orchestrator.orchestrator.store.sqlite_store import SqliteTaskStore

__all__ = [
    "UNSET",
    "HttpTaskStore",
    "SqliteTaskStore",
    "StoreError",
    "TaskStore",
]
