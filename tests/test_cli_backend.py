from __future__ import annotations

import sys
import time
from pathlib import Path

import allure
import pytest

from taskinfa_orchestrator.orchestrator.backend import (
    AgentRunRequest,
    BackendRunError,
    CliAgentBackend,
    validate_command_template,
)
from taskinfa_orchestrator.orchestrator.backend.cli_backend import build_run_args
from taskinfa_orchestrator.orchestrator.models import FailureKind

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskinfa_orchestrator.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("CLI Agent Backend"),
]


def _request(tmp_path: Path, **overrides) -> AgentRunRequest:  # noqa: ANN003
    cwd = tmp_path / "project"
    cwd.mkdir(exist_ok=True)
    values = {
        "prompt": "Project: Alpha\nTask: say hi",
        "cwd": cwd,
        "timeout_seconds": 30,
        "command_template": ECHO_AGENT_COMMAND_TEMPLATE,
        "log_dir": tmp_path / "logs" / "sess_1",
        "task_id": "task_1",
        "session_id": "sess_1",
        "env": {"KANBAN_TASK_ID": "task_1"},
    }
    values.update(overrides)
    return AgentRunRequest(**values)


def test_build_run_args_quotes_prompt_as_single_argument() -> None:
    argv = build_run_args(
        command_template="claude -p {prompt} --session {session_id} --task {task_id}",
        prompt='fix "the" bug; rm -rf /',
        prompt_file=Path("p.txt"),
        task_id="task_1",
        session_id="sess 1",
    )

    assert argv == [
        "claude",
        "-p",
        'fix "the" bug; rm -rf /',
        "--session",
        "sess 1",
        "--task",
        "task_1",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("", "empty"),
        ("claude --print", "must include"),
        ("claude {prompt} {model}", "Unsupported command template placeholder"),
        ("claude {prompt} '", "Malformed"),
    ],
)
def test_invalid_templates_are_rejected(template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message) as error:
        validate_command_template(template)

    assert error.value.transient is False


def test_run_success_captures_stdout_in_working_directory(
    tmp_path: Path,
    monkeypatch,  # noqa: ANN001
) -> None:
    monkeypatch.setenv("TASKINFA_ECHO_TOUCH", "marker.txt")

    result = CliAgentBackend().run(_request(tmp_path))

    assert result.succeeded is True
    assert result.exit_code == 0
    assert result.failure_kind is None
    assert "task=task_1" in result.stdout_tail(1000)
    assert "say hi" in result.stdout_tail(1000)
    assert (tmp_path / "project" / "marker.txt").read_text("utf-8").strip() == "task_1"
    assert (tmp_path / "logs" / "sess_1" / "prompt.txt").exists()


def test_run_nonzero_exit_is_failure_with_stderr(
    tmp_path: Path,
    monkeypatch,  # noqa: ANN001
) -> None:
    monkeypatch.setenv("TASKINFA_ECHO_EXIT_CODE", "3")
    monkeypatch.setenv("TASKINFA_ECHO_STDERR", "compilation failed")

    result = CliAgentBackend().run(_request(tmp_path))

    assert result.succeeded is False
    assert result.exit_code == 3
    assert result.failure_kind is FailureKind.EXIT_NONZERO
    assert result.stderr_tail(500) == "compilation failed"


def test_run_timeout_terminates_agent(tmp_path: Path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("TASKINFA_ECHO_SLEEP_SECONDS", "30")

    started = time.monotonic()
    result = CliAgentBackend().run(_request(tmp_path, timeout_seconds=1))

    assert time.monotonic() - started < 10
    assert result.timed_out is True
    assert result.failure_kind is FailureKind.TIMEOUT
    assert result.succeeded is False


def test_missing_executable_is_spawn_failure(tmp_path: Path) -> None:
    result = CliAgentBackend().run(
        _request(tmp_path, command_template="definitely-not-an-agent-binary {prompt}"),
    )

    assert result.exit_code == 127
    assert result.failure_kind is FailureKind.SPAWN_FAILED
    assert "definitely-not-an-agent-binary" in result.stderr_tail(500)


def test_shutdown_terminates_agent_after_grace(tmp_path: Path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("TASKINFA_ECHO_SLEEP_SECONDS", "30")

    started = time.monotonic()
    result = CliAgentBackend().run(
        _request(tmp_path, shutdown_requested=lambda: True, graceful_shutdown_seconds=0),
    )

    assert time.monotonic() - started < 10
    assert result.failure_kind is FailureKind.SHUTDOWN
    assert result.succeeded is False
