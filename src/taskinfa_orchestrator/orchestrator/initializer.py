"""Lazy checkout of project repositories before their first dispatch."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from taskinfa_orchestrator.orchestrator.events import EventReporter
from taskinfa_orchestrator.orchestrator.models import DEFAULT_PROJECT_ID, Project
from taskinfa_orchestrator.orchestrator.sanitization import sanitize_text, tail
from taskinfa_orchestrator.orchestrator.store.base import StoreError, TaskStore

logger = logging.getLogger(__name__)

_SSH_GITHUB = re.compile(r"^git@github\.com:(.+)$")
_SSH_PROTO_GITHUB = re.compile(r"^ssh://git@github\.com/(.+)$")
_GITHUB_HTTPS_PREFIX = "https://github.com/"


class CloneError(RuntimeError):
    """git clone did not produce a checkout."""


def to_https_url(repository_url: str) -> str:
    """Rewrite GitHub SSH remotes to HTTPS; other URLs pass through."""

    url = repository_url.strip()
    for pattern in (_SSH_GITHUB, _SSH_PROTO_GITHUB):
        match = pattern.match(url)
        if match:
            return f"{_GITHUB_HTTPS_PREFIX}{match.group(1)}"
    return url


def authenticated_clone_url(repository_url: str, gh_token: str) -> str:
    url = to_https_url(repository_url)
    if gh_token and url.startswith(_GITHUB_HTTPS_PREFIX):
        return url.replace(_GITHUB_HTTPS_PREFIX, f"https://{gh_token}@github.com/", 1)
    return url


class GitCloner:
    """Runs `git clone` with a wall-clock limit."""

    def __init__(self, *, gh_token: str = "", timeout_seconds: int = 600) -> None:
        self.gh_token = gh_token
        self.timeout_seconds = timeout_seconds

    def clone(self, repository_url: str, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        clone_url = authenticated_clone_url(repository_url, self.gh_token)
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", "clone", clone_url, str(destination)],  # noqa: S607
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            raise CloneError(f"git clone timed out after {self.timeout_seconds}s") from error
        except OSError as error:
            raise CloneError(f"git clone could not start: {error}") from error
        if completed.returncode != 0:
            detail = sanitize_text(tail(completed.stderr or "", 200), secrets=(self.gh_token,))
            raise CloneError(f"git clone failed (exit {completed.returncode}): {detail}")


@dataclass(slots=True)
class InitResult:
    """Outcome of one initialization attempt."""

    project_id: str
    initialized: bool
    working_directory: Path | None = None
    skipped: bool = False
    adopted: bool = False
    error: str | None = None


class ProjectInitializer:
    """Ensures a project's checkout exists and records it in the store."""

    def __init__(
        self,
        *,
        store: TaskStore,
        reporter: EventReporter,
        projects_dir: Path,
        cloner: GitCloner,
    ) -> None:
        self.store = store
        self.reporter = reporter
        self.projects_dir = projects_dir
        self.cloner = cloner

    def destination_for(self, project: Project) -> Path:
        if project.working_directory:
            return Path(project.working_directory)
        return self.projects_dir / project.project_id

    def initialize(self, project: Project) -> InitResult:
        """No-op for initialized or repository-less projects; otherwise clone once."""

        if not project.needs_initialization:
            return InitResult(project_id=project.project_id, initialized=True, skipped=True)

        destination = self.destination_for(project)
        adopted = (destination / ".git").exists()
        try:
            if adopted:
                logger.info(
                    "Adopting existing checkout for project %s at %s",
                    project.project_id,
                    destination,
                )
            else:
                logger.info("Cloning project %s into %s", project.project_id, destination)
                self.cloner.clone(project.repository_url or "", destination)
            self.store.update_project(
                project.project_id,
                initialized=True,
                working_directory=str(destination),
            )
        except (CloneError, OSError, StoreError) as error:
            reason = sanitize_text(str(error), secrets=(self.cloner.gh_token,))
            logger.error("Project %s initialization failed: %s", project.project_id, reason)
            self.reporter.project_init_failed(project, reason)
            return InitResult(
                project_id=project.project_id,
                initialized=False,
                working_directory=destination,
                error=reason,
            )

        project.initialized = True
        project.working_directory = str(destination)
        return InitResult(
            project_id=project.project_id,
            initialized=True,
            working_directory=destination,
            adopted=adopted,
        )

    def initialize_pending(self, projects: list[Project]) -> list[InitResult]:
        return [self.initialize(project) for project in projects if project.needs_initialization]


def resolve_working_directory(
    project: Project,
    *,
    workspace_root: Path,
    projects_dir: Path,
) -> Path:
    """Directory an agent runs in for this project."""

    if project.working_directory:
        return Path(project.working_directory)
    if project.project_id == DEFAULT_PROJECT_ID:
        return workspace_root
    return projects_dir / project.project_id
