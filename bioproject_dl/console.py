"""
Console output: status-prefixed logging and the per-phase progress bar.

Messages are printed as "Info: ...", "Warning: ...", "Error: ..."; the prefix
is coloured when the stream is an interactive terminal.
"""

import logging
import os
import sys
from typing import Optional

from tqdm import tqdm

# ANSI colours used for the status prefix
_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[31m",
}
_RESET = "\033[00m"

_LABELS = {
    "DEBUG": "Debug",
    "INFO": "Info",
    "WARNING": "Warning",
    "ERROR": "Error",
    "CRITICAL": "Error",
}


def stream_is_tty(stream) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


class StatusFormatter(logging.Formatter):
    """Prefix each record with its status label, coloured on terminals."""

    def __init__(self, use_color: bool = False):
        super().__init__("%(message)s")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        label = _LABELS.get(record.levelname, record.levelname.title())
        if self.use_color:
            color = _COLORS.get(record.levelname, "")
            return f"{color}{label}:{_RESET} {message}"
        return f"{label}: {message}"


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_color: Optional[bool] = None,
):
    """
    Configure logging to the console and optionally to a file.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR
        log_file: Explicit log file path; records are written with timestamps
        use_color: Force coloured prefixes on/off (default: auto-detect TTY)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    if use_color is None:
        use_color = stream_is_tty(sys.stderr)

    console = logging.StreamHandler()
    console.setFormatter(StatusFormatter(use_color=use_color))
    handlers = [console]

    if log_file:
        if os.path.dirname(log_file):
            os.makedirs(os.path.dirname(log_file), exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s"
        ))
        handlers.append(file_handler)

    # force=True so repeated CLI invocations in one process reconfigure cleanly
    logging.basicConfig(level=level, handlers=handlers, force=True)


def progress_bar(total: int, desc: str) -> tqdm:
    """Per-phase progress bar; silent when stderr is not a terminal."""
    return tqdm(total=total, desc=desc, unit="job", disable=None, leave=True)
