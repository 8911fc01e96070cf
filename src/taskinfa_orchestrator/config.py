"""Runtime configuration for the orchestrator daemon."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_AGENT_COMMAND = "claude -p {prompt} --dangerously-skip-permissions --output-format text"
SUPPORTED_STORES = ("http", "sqlite")
ORPHAN_POLICIES = ("ignore", "mark_error")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class ConfigurationError(ValueError):
    """Settings are missing or invalid; the scheduler must not start."""


@dataclass(slots=True)
class ApiSettings:
    """Remote task store connection settings."""

    base_url: str = "http://localhost:3000"
    api_key: str = ""
    timeout_seconds: float = 30.0
    max_retries: int = 2


@dataclass(slots=True)
class SchedulerSettings:
    """Poll loop, concurrency and retry policy settings."""

    poll_interval_seconds: float = 900.0
    max_concurrent: int = 3
    max_retries: int = 3
    ready_task_limit: int = 100
    orphan_session_policy: str = "ignore"
    orphan_session_grace_seconds: int = 60


@dataclass(slots=True)
class AgentSettings:
    """Execution agent invocation settings."""

    command_template: str = DEFAULT_AGENT_COMMAND
    session_timeout_seconds: int = 2_700
    graceful_shutdown_seconds: int = 5
    worker_name: str = "orchestrator"


@dataclass(slots=True)
class WorkspaceSettings:
    """Filesystem layout for project checkouts."""

    workspace_root: Path = Path("/workspace")
    projects_dir: Path = Path("/workspace/projects")
    gh_token: str = ""
    clone_timeout_seconds: int = 600


@dataclass(slots=True)
class LoggingSettings:
    """Log destination and verbosity."""

    level: str = "INFO"
    log_dir: Path = Path("/workspace/.memory")


@dataclass(slots=True)
class Settings:
    """Resolved orchestrator settings grouped by concern."""

    store: str = "http"
    db_path: Path = Path(".taskinfa.db")
    api: ApiSettings = field(default_factory=ApiSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(
        cls,
        *,
        store: str | None = None,
        db_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> Settings:
        """Resolve settings once: environment first, then the optional config file."""

        values = _layered_values(os.environ if environ is None else environ)
        workspace_root = Path(values.get("TASKINFA_WORKSPACE_ROOT", "/workspace"))
        taskinfa_home = values.get("TASKINFA_HOME", "").strip()
        log_dir = Path(taskinfa_home) / "logs" if taskinfa_home else workspace_root / ".memory"
        try:
            return cls(
                store=(store or values.get("TASKINFA_STORE", "http")).strip().lower(),
                db_path=db_path or Path(values.get("TASKINFA_DB_PATH", ".taskinfa.db")),
                api=ApiSettings(
                    base_url=values.get("TASKINFA_API_URL", "http://localhost:3000").rstrip("/"),
                    api_key=values.get("TASKINFA_API_KEY", ""),
                    timeout_seconds=float(values.get("TASKINFA_API_TIMEOUT_SECONDS", "30")),
                    max_retries=int(values.get("TASKINFA_API_MAX_RETRIES", "2")),
                ),
                scheduler=SchedulerSettings(
                    poll_interval_seconds=float(
                        values.get("TASKINFA_POLL_INTERVAL_SECONDS", "900"),
                    ),
                    max_concurrent=int(values.get("TASKINFA_MAX_CONCURRENT", "3")),
                    max_retries=int(values.get("TASKINFA_MAX_RETRIES", "3")),
                    ready_task_limit=int(values.get("TASKINFA_READY_TASK_LIMIT", "100")),
                    orphan_session_policy=values.get(
                        "TASKINFA_ORPHAN_SESSION_POLICY",
                        "ignore",
                    )
                    .strip()
                    .lower(),
                    orphan_session_grace_seconds=int(
                        values.get("TASKINFA_ORPHAN_SESSION_GRACE_SECONDS", "60"),
                    ),
                ),
                agent=AgentSettings(
                    command_template=values.get("TASKINFA_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                    session_timeout_seconds=int(
                        values.get("TASKINFA_SESSION_TIMEOUT_SECONDS", "2700"),
                    ),
                    graceful_shutdown_seconds=int(
                        values.get("TASKINFA_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                    ),
                    worker_name=values.get("TASKINFA_WORKER_NAME", "orchestrator"),
                ),
                workspace=WorkspaceSettings(
                    workspace_root=workspace_root,
                    projects_dir=Path(
                        values.get("TASKINFA_PROJECTS_DIR", str(workspace_root / "projects")),
                    ),
                    gh_token=values.get("TASKINFA_GH_TOKEN", values.get("GH_TOKEN", "")),
                    clone_timeout_seconds=int(values.get("TASKINFA_CLONE_TIMEOUT_SECONDS", "600")),
                ),
                logging=LoggingSettings(
                    level=values.get("TASKINFA_LOG_LEVEL", "INFO").strip().upper(),
                    log_dir=log_dir,
                ),
            )
        except ValueError as error:
            raise ConfigurationError(f"Invalid numeric setting: {error}") from error

    def validate(self) -> None:
        """Raise ConfigurationError when the daemon cannot run with these settings."""

        if self.store not in SUPPORTED_STORES:
            raise ConfigurationError(
                f"TASKINFA_STORE must be one of {', '.join(SUPPORTED_STORES)}: {self.store!r}",
            )
        if self.store == "http":
            _validate_api_url(self.api.base_url)
            if not self.api.api_key.strip():
                raise ConfigurationError("TASKINFA_API_KEY is required for the http store.")
        if self.api.timeout_seconds <= 0:
            raise ConfigurationError("TASKINFA_API_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.poll_interval_seconds <= 0:
            raise ConfigurationError("TASKINFA_POLL_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.max_concurrent <= 0:
            raise ConfigurationError("TASKINFA_MAX_CONCURRENT must be a positive integer.")
        if self.scheduler.max_retries < 0:
            raise ConfigurationError("TASKINFA_MAX_RETRIES must be >= 0.")
        if self.scheduler.ready_task_limit <= 0:
            raise ConfigurationError("TASKINFA_READY_TASK_LIMIT must be a positive integer.")
        if self.scheduler.orphan_session_policy not in ORPHAN_POLICIES:
            raise ConfigurationError(
                "TASKINFA_ORPHAN_SESSION_POLICY must be one of "
                f"{', '.join(ORPHAN_POLICIES)}: {self.scheduler.orphan_session_policy!r}",
            )
        if self.scheduler.orphan_session_grace_seconds < 0:
            raise ConfigurationError("TASKINFA_ORPHAN_SESSION_GRACE_SECONDS must be >= 0.")
        if self.agent.session_timeout_seconds <= 0:
            raise ConfigurationError("TASKINFA_SESSION_TIMEOUT_SECONDS must be > 0.")
        if self.agent.graceful_shutdown_seconds < 0:
            raise ConfigurationError("TASKINFA_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not self.agent.command_template.strip():
            raise ConfigurationError("TASKINFA_AGENT_COMMAND must not be empty.")
        if self.workspace.clone_timeout_seconds <= 0:
            raise ConfigurationError("TASKINFA_CLONE_TIMEOUT_SECONDS must be > 0.")
        if self.logging.level not in _LOG_LEVELS:
            raise ConfigurationError(
                f"TASKINFA_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}: "
                f"{self.logging.level!r}",
            )

    def redacted_summary(self) -> dict[str, object]:
        """Startup banner fields; never includes credentials."""

        return {
            "store": self.store,
            "api_url": self.api.base_url if self.store == "http" else None,
            "db_path": str(self.db_path) if self.store == "sqlite" else None,
            "poll_interval_seconds": self.scheduler.poll_interval_seconds,
            "max_concurrent": self.scheduler.max_concurrent,
            "max_retries": self.scheduler.max_retries,
            "session_timeout_seconds": self.agent.session_timeout_seconds,
            "projects_dir": str(self.workspace.projects_dir),
            "orphan_session_policy": self.scheduler.orphan_session_policy,
            "gh_token_configured": bool(self.workspace.gh_token),
        }


def load_config_file(path: Path) -> dict[str, str]:
    """Parse a KEY=VALUE file; blank lines and '#' comments are skipped."""

    values: dict[str, str] = {}
    for raw_line in path.read_text("utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        if not key:
            continue
        values[key] = _strip_quotes(value.strip())
    return values


def _layered_values(environ: Mapping[str, str]) -> dict[str, str]:
    config_file = environ.get("TASKINFA_CONFIG", "").strip()
    values: dict[str, str] = {}
    if config_file:
        path = Path(config_file)
        if not path.is_file():
            raise ConfigurationError(f"TASKINFA_CONFIG file not found: {config_file}")
        values.update(load_config_file(path))
    values.update({key: value for key, value in environ.items() if value != ""})
    return values


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _validate_api_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(
            "Invalid TASKINFA_API_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
