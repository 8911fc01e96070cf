"""Local demo agent for CLI backend integration tests.

Behaviour is driven by environment variables:

- ``TASKINFA_ECHO_EXIT_CODE``: process exit code (default 0).
- ``TASKINFA_ECHO_SLEEP_SECONDS``: sleep before exiting (default 0).
- ``TASKINFA_ECHO_STDERR``: text written to stderr.
- ``TASKINFA_ECHO_TOUCH``: file name created in the working directory.
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt to stdout and exit with the configured code."""

    parser = argparse.ArgumentParser()
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--prompt")
    group.add_argument("--prompt-file")
    args = parser.parse_args(argv)

    prompt = args.prompt if args.prompt is not None else Path(args.prompt_file).read_text("utf-8")
    task_id = os.getenv("KANBAN_TASK_ID", "")

    touch_name = os.getenv("TASKINFA_ECHO_TOUCH", "").strip()
    if touch_name:
        Path(touch_name).write_text(f"{task_id}\n", "utf-8")

    sys.stdout.write(f"task={task_id}\n{prompt.strip()}\n")
    sys.stdout.flush()

    stderr_text = os.getenv("TASKINFA_ECHO_STDERR", "")
    if stderr_text:
        sys.stderr.write(stderr_text)
        sys.stderr.flush()

    sleep_seconds = float(os.getenv("TASKINFA_ECHO_SLEEP_SECONDS", "0") or 0)
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    return int(os.getenv("TASKINFA_ECHO_EXIT_CODE", "0") or 0)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
