"""
Shared fixtures for the bioproject-dl test suite.

FakeToolkit stands in for sra-tools and pigz: it writes small files into the
sample directories instead of spawning prefetch / fastq-dump / pigz, and
records how many jobs ran at the same time.
"""

import gzip
import os
import threading
import time

import pytest

from bioproject_dl.runlog import MemoryRunLog
from bioproject_dl.sra_tools import SraToolkit


def fastq_record(name: str, seq: str = "ACGT") -> bytes:
    return f"@{name}\n{seq}\n+\n{'I' * len(seq)}\n".encode()


class FakeToolkit(SraToolkit):
    """
    Args:
        reads: run -> {"1": bytes, "2": bytes} (paired) or {"": bytes} (unpaired).
               Runs not listed get a paired default.
        fail_download: runs whose prefetch never produces an archive
        fail_convert: runs whose conversion exits non-zero without output
        delay: seconds each prefetch call takes
    """

    def __init__(self, reads=None, fail_download=(), fail_convert=(), delay=0.0):
        super().__init__()
        self.reads = reads or {}
        self.fail_download = set(fail_download)
        self.fail_convert = set(fail_convert)
        self.delay = delay
        self.prefetch_calls = []
        self.convert_calls = []
        self.compress_calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def missing_tools(self):
        return []

    def prefetch(self, run, dest, runlog=None, cancel=None):
        with self._lock:
            self.prefetch_calls.append(run)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if runlog is not None:
                runlog.append(f"[{run}] prefetch: downloading {run}")
            if run in self.fail_download:
                return 3
            os.makedirs(os.path.join(dest, run), exist_ok=True)
            with open(os.path.join(dest, run, f"{run}.sra"), "wb") as fh:
                fh.write(b"SRA")
            return 0
        finally:
            with self._lock:
                self.active -= 1

    def convert(self, archive, dest, run, runlog=None, cancel=None):
        with self._lock:
            self.convert_calls.append(run)
        if run in self.fail_convert:
            return 1
        ends = self.reads.get(run) or {
            "1": fastq_record(f"{run}.1/1"),
            "2": fastq_record(f"{run}.1/2"),
        }
        for end, content in ends.items():
            name = f"{run}_{end}.fastq" if end else f"{run}.fastq"
            with open(os.path.join(dest, name), "wb") as fh:
                fh.write(content)
        return 0

    def compress(self, paths, tag="", runlog=None, cancel=None):
        with self._lock:
            self.compress_calls.append(list(paths))
        for path in paths:
            with open(path, "rb") as src, gzip.open(path + ".gz", "wb") as dst:
                dst.write(src.read())
            os.remove(path)
        return 0


@pytest.fixture
def runlog():
    return MemoryRunLog()


@pytest.fixture
def toolkit():
    return FakeToolkit()


@pytest.fixture
def make_runinfo():
    """Build runinfo CSV text from (run, sample, project) tuples."""
    def _make(rows, header="Run,SampleName,BioProject"):
        lines = [header] + [",".join(r) for r in rows]
        return "\n".join(lines) + "\n"
    return _make
