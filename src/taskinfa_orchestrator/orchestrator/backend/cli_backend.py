"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path

from taskinfa_orchestrator.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from taskinfa_orchestrator.orchestrator.models import FailureKind

logger = logging.getLogger(__name__)

SPAWN_FAILED_EXIT_CODE = 127
TIMEOUT_EXIT_CODE = 124
_PROMPT_PLACEHOLDERS = ("{prompt}", "{prompt_file}")


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Execute the configured agent command in the project working directory."""

    def __init__(self, *, poll_seconds: float = 0.1) -> None:
        self.poll_seconds = poll_seconds

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = request.log_dir / "stdout.log"
        stderr_path = request.log_dir / "stderr.log"
        prompt_file = request.log_dir / "prompt.txt"
        prompt_file.write_text(request.prompt, "utf-8")

        run_args = build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            prompt_file=prompt_file,
            task_id=request.task_id,
            session_id=request.session_id,
        )

        env = os.environ.copy()
        env.update(request.env)

        started = time.monotonic()
        with (
            stdout_path.open("w", encoding="utf-8") as stdout_handle,
            stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=request.cwd,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
            except OSError as error:
                message = f"Agent failed to start ({run_args[0]}): {error}"
                logger.warning("%s", message)
                stderr_handle.write(message)
                return AgentRunResult(
                    exit_code=SPAWN_FAILED_EXIT_CODE,
                    timed_out=False,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                    failure_kind=FailureKind.SPAWN_FAILED,
                    duration_seconds=time.monotonic() - started,
                    error_message=message,
                )

            return self._wait(
                process=process,
                request=request,
                started=started,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

    def _wait(
        self,
        *,
        process: subprocess.Popen[str],
        request: AgentRunRequest,
        started: float,
        stdout_path: Path,
        stderr_path: Path,
    ) -> AgentRunResult:
        shutdown_deadline: float | None = None
        graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

        while True:
            returncode = process.poll()
            now = time.monotonic()
            if returncode is not None:
                return AgentRunResult(
                    exit_code=returncode,
                    timed_out=False,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                    failure_kind=None if returncode == 0 else FailureKind.EXIT_NONZERO,
                    duration_seconds=now - started,
                )

            if now - started >= request.timeout_seconds:
                logger.warning(
                    "Agent pid=%s exceeded %ss budget; terminating",
                    process.pid,
                    request.timeout_seconds,
                )
                _terminate_process(process)
                return AgentRunResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                    failure_kind=FailureKind.TIMEOUT,
                    duration_seconds=time.monotonic() - started,
                    error_message=f"Agent timed out after {request.timeout_seconds}s",
                )

            if request.shutdown_requested is not None and request.shutdown_requested():
                if shutdown_deadline is None:
                    shutdown_deadline = now + graceful_seconds
                if now >= shutdown_deadline:
                    logger.warning("Shutdown grace expired; terminating agent pid=%s", process.pid)
                    _terminate_process(process)
                    return AgentRunResult(
                        exit_code=process.returncode or TIMEOUT_EXIT_CODE,
                        timed_out=False,
                        stdout_path=stdout_path,
                        stderr_path=stderr_path,
                        failure_kind=FailureKind.SHUTDOWN,
                        duration_seconds=time.monotonic() - started,
                        error_message="Agent terminated by orchestrator shutdown",
                    )

            time.sleep(self.poll_seconds)


def validate_command_template(command_template: str) -> None:
    """Render the template with placeholder values; raise BackendRunError if unusable."""

    build_run_args(
        command_template=command_template,
        prompt="prompt",
        prompt_file=Path("prompt.txt"),
        task_id="task",
        session_id="session",
    )


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    task_id: str,
    session_id: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", transient=False)
    if not any(placeholder in stripped for placeholder in _PROMPT_PLACEHOLDERS):
        raise BackendRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            task_id=shlex.quote(task_id),
            session_id=shlex.quote(session_id),
        )
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    except (IndexError, ValueError) as error:
        raise BackendRunError(f"Malformed command template: {error}", transient=False) from error

    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise BackendRunError(f"Malformed command template: {error}", transient=False) from error
    if not argv:
        raise BackendRunError("Agent command template rendered empty command.", transient=False)
    return argv


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
