"""Process-wide logging setup for the orchestrator CLI."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FILE_NAME = "orchestrator.log"
_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")
_MAX_LOG_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5


def configure_logging(*, level: str, log_dir: Path | None) -> Path | None:
    """Attach stderr and rotating file handlers to the root logger.

    Returns the log file path, or None when the log directory is unusable
    (logging then goes to stderr only).
    """

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, "_taskinfa_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler._taskinfa_handler = True  # type: ignore[attr-defined]
    root.addHandler(stream_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_dir is None:
        return None
    log_file = log_dir / LOG_FILE_NAME
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=_MAX_LOG_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as error:
        logging.getLogger(__name__).warning("File logging disabled (%s): %s", log_file, error)
        return None
    file_handler.setFormatter(formatter)
    file_handler._taskinfa_handler = True  # type: ignore[attr-defined]
    root.addHandler(file_handler)
    return log_file
