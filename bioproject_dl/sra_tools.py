"""
Thin wrappers around the external command-line tools.

    prefetch                    run accession -> <dest>/<run>/ (SRA archive)
    fastq-dump / fasterq-dump   archive       -> <run>_1.fastq, <run>_2.fastq, <run>.fastq
    pigz / gzip                 *.fastq       -> *.fastq.gz (in place)

Every call streams the tool's combined stdout/stderr into the shared run log,
one line per output line, tagged with the run or sample it belongs to. Calls
poll a cancellation event and terminate the child process when it is set.
"""

import glob
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .exceptions import JobCancelled

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while a tool is running
CANCEL_POLL_SEC = 0.5
# Grace period between SIGTERM and SIGKILL on cancellation
TERMINATE_GRACE_SEC = 5.0


def run_tool(
    cmd: Sequence[str],
    runlog=None,
    tag: str = "",
    cancel: Optional[threading.Event] = None,
    cwd: Optional[str] = None,
) -> int:
    """
    Run an external command to completion and return its exit code.

    Output goes to a temporary file (no pipe to drain while polling) and is
    appended to `runlog` afterwards, prefixed with "[tag] ".
    Raises JobCancelled if `cancel` is set before or while the command runs.
    """
    if cancel is not None and cancel.is_set():
        raise JobCancelled(tag)

    prefix = f"[{tag}] " if tag else ""
    logger.debug(f"{prefix}$ {' '.join(cmd)}")

    with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as out:
        try:
            proc = subprocess.Popen(
                list(cmd), stdout=out, stderr=subprocess.STDOUT, text=True, cwd=cwd,
            )
        except OSError as e:
            if runlog is not None:
                runlog.append(f"{prefix}Error: cannot run {cmd[0]}: {e}")
            return 127

        while True:
            try:
                returncode = proc.wait(timeout=CANCEL_POLL_SEC)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    _terminate(proc)
                    raise JobCancelled(tag)

        if runlog is not None:
            out.seek(0)
            runlog.extend(out.read().splitlines(), prefix=prefix)

    return returncode


def _terminate(proc: subprocess.Popen):
    proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_GRACE_SEC)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def remove_path(path: str):
    """Delete a file or directory tree if it exists."""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path, ignore_errors=True)
    elif os.path.lexists(path):
        os.remove(path)


# -----------------------
# Toolkit
# -----------------------
@dataclass
class SraToolkit:
    """Configured set of external binaries (see `tools` in the config)."""
    prefetch_bin: str = "prefetch"
    converter_bin: str = "fastq-dump"
    compressor_bin: str = "pigz"
    threads: int = 4

    @classmethod
    def from_config(cls, config: Optional[dict]) -> "SraToolkit":
        tools = (config or {}).get("tools", {}) or {}
        return cls(
            prefetch_bin=tools.get("prefetch", "prefetch"),
            converter_bin=tools.get("converter", "fastq-dump"),
            compressor_bin=tools.get("compressor", "pigz"),
            threads=int(tools.get("threads", 4)),
        )

    def binaries(self) -> List[str]:
        return [self.prefetch_bin, self.converter_bin, self.compressor_bin]

    def missing_tools(self) -> List[str]:
        """Binaries that cannot be found on PATH."""
        return [b for b in self.binaries() if shutil.which(b) is None]

    # --- download ---
    def archive_path(self, dest: str, run: str) -> Optional[str]:
        """Where prefetch left the archive for `run`, or None."""
        for candidate in (
            os.path.join(dest, run),
            os.path.join(dest, f"{run}.sra"),
            os.path.join(dest, f"{run}.sralite"),
        ):
            if os.path.exists(candidate):
                return candidate
        return None

    def prefetch_cmd(self, run: str, dest: str) -> List[str]:
        return [self.prefetch_bin, "-C", "yes", "-r", "yes", "-O", dest, run]

    def prefetch(self, run: str, dest: str, runlog=None, cancel=None) -> int:
        return run_tool(self.prefetch_cmd(run, dest), runlog, tag=run, cancel=cancel)

    # --- conversion ---
    def convert_cmd(self, archive: str, dest: str) -> List[str]:
        name = os.path.basename(self.converter_bin)
        if name.startswith("fasterq-dump"):
            return [
                self.converter_bin, "--outdir", dest, "--threads", str(self.threads),
                "--split-3", archive,
            ]
        return [self.converter_bin, "-O", dest, "--split-files", archive]

    def convert(self, archive: str, dest: str, run: str, runlog=None, cancel=None) -> int:
        tmp_dir = None
        cmd = self.convert_cmd(archive, dest)
        if os.path.basename(self.converter_bin).startswith("fasterq-dump"):
            # keep fasterq-dump scratch files inside the sample directory
            tmp_dir = os.path.join(dest, f"{run}.tmp")
            os.makedirs(tmp_dir, exist_ok=True)
            cmd[1:1] = ["--temp", tmp_dir]
        try:
            return run_tool(cmd, runlog, tag=run, cancel=cancel)
        finally:
            if tmp_dir:
                remove_path(tmp_dir)

    @staticmethod
    def converted_files(dest: str, run: str) -> List[str]:
        found = glob.glob(os.path.join(dest, f"{glob.escape(run)}_*.fastq"))
        found += glob.glob(os.path.join(dest, f"{glob.escape(run)}.fastq"))
        return sorted(found)

    # --- compression ---
    def compress_cmd(self, paths: Sequence[str]) -> List[str]:
        cmd = [self.compressor_bin, "-f"]
        if os.path.basename(self.compressor_bin).startswith("pigz"):
            cmd += ["-p", str(self.threads)]
        return cmd + list(paths)

    def compress(self, paths: Sequence[str], tag: str = "", runlog=None, cancel=None) -> int:
        if not paths:
            return 0
        return run_tool(self.compress_cmd(paths), runlog, tag=tag, cancel=cancel)
