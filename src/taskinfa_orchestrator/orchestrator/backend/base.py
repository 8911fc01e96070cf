"""Backend interface for execution agent runs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from taskinfa_orchestrator.orchestrator.models import FailureKind
from taskinfa_orchestrator.orchestrator.sanitization import tail


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one session."""

    prompt: str
    cwd: Path
    timeout_seconds: int
    command_template: str
    log_dir: Path
    task_id: str = ""
    session_id: str = ""
    env: dict[str, str] = field(default_factory=dict)
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path
    failure_kind: FailureKind | None = None
    duration_seconds: float = 0.0
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.failure_kind is None

    def stdout_tail(self, limit: int) -> str:
        return tail(_read_text(self.stdout_path), limit)

    def stderr_tail(self, limit: int) -> str:
        text = tail(_read_text(self.stderr_path), limit)
        if text or not self.error_message:
            return text
        return tail(self.error_message, limit)


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent to completion, deadline or shutdown."""


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except OSError:
        return ""
