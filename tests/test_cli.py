from __future__ import annotations

import logging
import os
import re
import sys
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskinfa_orchestrator.main import taskinfa

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Commands"),
]

_ECHO_COMMAND = (
    f"{sys.executable} -m taskinfa_orchestrator.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    for name in list(os.environ):
        if name.startswith("TASKINFA_") or name == "GH_TOKEN":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TASKINFA_WORKSPACE_ROOT", str(tmp_path / "workspace"))
    monkeypatch.setenv("TASKINFA_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("TASKINFA_AGENT_COMMAND", _ECHO_COMMAND)
    monkeypatch.setenv("TASKINFA_SESSION_TIMEOUT_SECONDS", "60")
    yield tmp_path / "cli.db"
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_taskinfa_handler", False):
            root.removeHandler(handler)
            handler.close()


def _invoke(*args: str):  # noqa: ANN202
    return CliRunner().invoke(taskinfa, list(args), catch_exceptions=False)


def test_local_seed_list_and_run_once(cli_env: Path) -> None:
    db = str(cli_env)

    added = _invoke("local", "add-project", "--db-path", db, "--name", "Alpha", "--id", "tl_a")
    assert added.exit_code == 0
    assert "id=tl_a" in added.output

    task_result = _invoke(
        "local",
        "add-task",
        "--db-path",
        db,
        "--title",
        "Write changelog",
        "--project",
        "tl_a",
        "--priority",
        "HIGH",
    )
    assert task_result.exit_code == 0
    assert "priority=high" in task_result.output
    task_id = re.search(r"id=(\S+)", task_result.output).group(1)

    listed = _invoke("tasks", "--store", "sqlite", "--db-path", db)
    assert listed.exit_code == 0
    assert "Project tl_a: 1 ready" in listed.output
    assert f"* {task_id}" in listed.output

    ran = _invoke("run", "--once", "--store", "sqlite", "--db-path", db)
    assert ran.exit_code == 0, ran.output
    assert "dispatched=1" in ran.output
    assert f"Task {task_id} completed" in ran.output

    after = _invoke("tasks", "--store", "sqlite", "--db-path", db)
    assert "No ready tasks." in after.output
    assert (cli_env.parent / "home" / "logs" / "orchestrator.log").exists()


def test_run_with_http_store_requires_api_key(cli_env: Path) -> None:
    result = CliRunner().invoke(taskinfa, ["run", "--once"])

    assert result.exit_code == 1
    assert "TASKINFA_API_KEY" in result.output


def test_run_rejects_invalid_agent_command(
    cli_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASKINFA_AGENT_COMMAND", "claude --print")

    result = CliRunner().invoke(
        taskinfa,
        ["run", "--once", "--store", "sqlite", "--db-path", str(cli_env)],
    )

    assert result.exit_code == 1
    assert "TASKINFA_AGENT_COMMAND" in result.output


def test_init_projects_reports_nothing_to_do(cli_env: Path) -> None:
    db = str(cli_env)
    _invoke("local", "add-project", "--db-path", db, "--name", "Plain")

    result = _invoke("init-projects", "--store", "sqlite", "--db-path", db)

    assert result.exit_code == 0
    assert "No projects need initialization." in result.output
