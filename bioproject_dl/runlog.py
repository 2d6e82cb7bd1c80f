"""
Shared run log.

One append-only text sink per run, written concurrently by every worker.
Each append is a single self-contained line written under a lock, so lines
from different workers never interleave. After each phase the log is scanned
for error/warning markers (see has_failure_markers).

RunLog writes to <target>/log; MemoryRunLog keeps lines in memory for tests.
"""

import os
import re
import threading
from typing import Iterable, List, Optional

FAILURE_MARKER = re.compile(r"error|warning", re.IGNORECASE)


class MemoryRunLog:
    """Thread-safe in-memory append-only log."""

    path: Optional[str] = None

    def __init__(self):
        self._lock = threading.Lock()
        self._lines: List[str] = []

    def _write(self, line: str):
        self._lines.append(line)

    def append(self, line: str):
        """Append one line; embedded newlines are folded into spaces."""
        line = " ".join(str(line).splitlines()).rstrip()
        with self._lock:
            self._write(line)

    def extend(self, lines: Iterable[str], prefix: str = ""):
        """Append several lines (e.g. tool output), skipping blanks."""
        for line in lines:
            if line.strip():
                self.append(f"{prefix}{line}")

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def failure_lines(self) -> List[str]:
        return [ln for ln in self.lines() if FAILURE_MARKER.search(ln)]

    def has_failure_markers(self) -> bool:
        return bool(self.failure_lines())

    def close(self):
        pass

    def remove(self):
        with self._lock:
            self._lines.clear()


class RunLog(MemoryRunLog):
    """
    Append-only log file at `path`.

    Existing content is kept (a re-run appends to the previous log), but only
    lines written through this instance are considered by the failure scan.
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._fh = open(path, "a", encoding="utf-8")

    def _write(self, line: str):
        super()._write(line)
        self._fh.write(line + "\n")
        self._fh.flush()

    def close(self):
        with self._lock:
            if not self._fh.closed:
                self._fh.close()

    def remove(self):
        """Close and delete the log file (called on clean success only)."""
        self.close()
        super().remove()
        if os.path.exists(self.path):
            os.remove(self.path)
