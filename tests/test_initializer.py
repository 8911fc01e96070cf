from __future__ import annotations

import shutil
from pathlib import Path

import allure
import pytest

from taskinfa_orchestrator.orchestrator.events import EventReporter
from taskinfa_orchestrator.orchestrator.initializer import (
    CloneError,
    GitCloner,
    ProjectInitializer,
    authenticated_clone_url,
    to_https_url,
)
from taskinfa_orchestrator.orchestrator.models import EventType
from taskinfa_orchestrator.orchestrator.store.sqlite_store import SqliteTaskStore

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Project Initialization"),
]

_REPO = "git@github.com:acme/widget.git"


class RecordingCloner(GitCloner):
    """Creates a fake checkout instead of running git."""

    def __init__(self, *, fail_with: str | None = None, gh_token: str = "") -> None:
        super().__init__(gh_token=gh_token)
        self.fail_with = fail_with
        self.calls: list[tuple[str, Path]] = []

    def clone(self, repository_url: str, destination: Path) -> None:
        self.calls.append((repository_url, destination))
        if self.fail_with is not None:
            raise CloneError(self.fail_with)
        (destination / ".git").mkdir(parents=True)


def _initializer(
    store: SqliteTaskStore,
    reporter: EventReporter,
    tmp_path: Path,
    cloner: GitCloner,
) -> ProjectInitializer:
    return ProjectInitializer(
        store=store,
        reporter=reporter,
        projects_dir=tmp_path / "projects",
        cloner=cloner,
    )


def test_ssh_urls_become_https_and_token_is_embedded() -> None:
    assert to_https_url("git@github.com:acme/widget.git") == "https://github.com/acme/widget.git"
    assert to_https_url("ssh://git@github.com/acme/widget") == "https://github.com/acme/widget"
    gitlab = "https://gitlab.com/acme/widget.git"
    assert to_https_url(gitlab) == gitlab
    assert (
        authenticated_clone_url(_REPO, "ghp_token123")
        == "https://ghp_token123@github.com/acme/widget.git"
    )
    assert (
        authenticated_clone_url("https://gitlab.com/a/b.git", "ghp_token123")
        == "https://gitlab.com/a/b.git"
    )


def test_clone_success_marks_project_initialized(
    store: SqliteTaskStore,
    reporter: EventReporter,
    tmp_path: Path,
) -> None:
    project = store.add_project(name="Widget", project_id="tl_widget", repository_url=_REPO)
    cloner = RecordingCloner()

    result = _initializer(store, reporter, tmp_path, cloner).initialize(project)

    destination = tmp_path / "projects" / "tl_widget"
    assert result.initialized is True
    assert result.adopted is False
    assert cloner.calls == [(_REPO, destination)]
    stored = store.get_project("tl_widget")
    assert stored is not None
    assert stored.initialized is True
    assert stored.working_directory == str(destination)


def test_initialized_or_repo_less_projects_are_noops(
    store: SqliteTaskStore,
    reporter: EventReporter,
    tmp_path: Path,
) -> None:
    done = store.add_project(name="Done", repository_url=_REPO, initialized=True)
    plain = store.add_project(name="Plain")
    cloner = RecordingCloner()
    initializer = _initializer(store, reporter, tmp_path, cloner)

    assert initializer.initialize(done).skipped is True
    assert initializer.initialize(plain).skipped is True
    assert initializer.initialize_pending([done, plain]) == []
    assert cloner.calls == []


def test_existing_checkout_is_adopted_without_cloning(
    store: SqliteTaskStore,
    reporter: EventReporter,
    tmp_path: Path,
) -> None:
    project = store.add_project(name="Widget", project_id="tl_widget", repository_url=_REPO)
    (tmp_path / "projects" / "tl_widget" / ".git").mkdir(parents=True)
    cloner = RecordingCloner()

    result = _initializer(store, reporter, tmp_path, cloner).initialize(project)

    assert result.initialized is True
    assert result.adopted is True
    assert cloner.calls == []
    stored = store.get_project("tl_widget")
    assert stored is not None and stored.initialized is True


def test_clone_failure_leaves_project_uninitialized_and_reports_error(
    store: SqliteTaskStore,
    tmp_path: Path,
) -> None:
    token = "ghp_abcdefghijklmnopqrstuvwxyz"
    reporter = EventReporter(store, secrets=(token,))
    project = store.add_project(name="Widget", repository_url=_REPO)
    cloner = RecordingCloner(
        fail_with=f"fatal: could not read from https://{token}@github.com/acme/widget.git",
        gh_token=token,
    )

    result = _initializer(store, reporter, tmp_path, cloner).initialize(project)

    assert result.initialized is False
    assert result.error is not None and token not in result.error
    stored = store.get_project(project.project_id)
    assert stored is not None and stored.initialized is False
    events = store.list_events()
    assert [event.event_type for event in events] == [EventType.ERROR]
    assert token not in events[0].message
    assert "Widget" in events[0].message


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_git_cloner_raises_clone_error_for_missing_repository(tmp_path: Path) -> None:
    cloner = GitCloner(timeout_seconds=60)

    with pytest.raises(CloneError, match="git clone failed"):
        cloner.clone(str(tmp_path / "no-such-repo"), tmp_path / "dest")
