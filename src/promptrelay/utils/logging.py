"""Log routing for the console front end.

Answers own stdout. Diagnostics go to a rotating log file, and stderr only
carries warnings (or everything, when debugging) with a ``promptrelay:``
prefix so they read apart from the ``Error:`` lines the view prints for
failed requests.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import TextIO

__all__ = ["LOG_FILE_NAME", "install_handlers", "log_file_path"]

LOG_FILE_NAME = "promptrelay.log"
_DEFAULT_LOG_DIR = Path.home() / ".promptrelay" / "logs"
_QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_STDERR_FORMAT = "promptrelay: %(levelname)s: %(message)s"
_OWNER_MARK = "_promptrelay_handler"


def log_file_path(log_dir: Path | str | None = None) -> Path:
    """Return the log file location; ``PROMPTRELAY_LOG_DIR`` beats the default."""

    base = log_dir or os.environ.get("PROMPTRELAY_LOG_DIR") or _DEFAULT_LOG_DIR
    return Path(base).expanduser() / LOG_FILE_NAME


def install_handlers(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    stderr: TextIO | None = None,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> Path:
    """Attach the file and stderr handlers to the root logger.

    Calling this again swaps out the handlers of the previous call and leaves
    any other root handler in place.
    """

    path = log_file_path(log_dir)
    path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    for handler in [handler for handler in root.handlers if getattr(handler, _OWNER_MARK, False)]:
        root.removeHandler(handler)
        handler.close()

    file_handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    stderr_handler = logging.StreamHandler(stderr or sys.stderr)
    stderr_handler.setLevel(level if level <= logging.DEBUG else logging.WARNING)
    stderr_handler.setFormatter(logging.Formatter(_STDERR_FORMAT))

    for handler in (file_handler, stderr_handler):
        setattr(handler, _OWNER_MARK, True)
        root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(True)

    quiet_level = max(level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
    return path
