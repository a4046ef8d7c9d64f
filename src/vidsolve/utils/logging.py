"""Logging utilities."""

import traceback
from pathlib import Path

ERROR_LOG = Path.home() / "vidsolve_error.log"


def log_error(msg: str, exc: Exception | None = None, log_file: Path | None = None):
    """Append an error, with its traceback, to the error log file."""
    log_file = log_file or ERROR_LOG
    try:
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(f"{msg}\n")
            if exc:
                f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
            f.write("-" * 50 + "\n")
    except OSError:
        pass  # Can't log if logging fails
