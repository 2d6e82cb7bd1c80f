"""
Rename/merge phase: turn run-level FASTQ files into canonical sample files.

Per sample directory, files produced by the fetch phase fall into three
categories:

    read-1     <run>_1.fastq
    read-2     <run>_2.fastq
    unpaired   <run>.fastq

Unpaired files are folded into read-1. For each of R1/R2, a single source
file is renamed to <sample>_R1.fastq / <sample>_R2.fastq; several sources
(one sample sequenced over several runs) are concatenated in directory
listing order. The canonical files are then compressed in place. A canonical
file left uncompressed by an interrupted run is compressed as it is.
"""

import logging
import os
import re
import shutil
import threading
from typing import Dict, List, Optional, Sequence, Tuple

from .exceptions import JobCancelled, MergeRequiredError
from .manifest import Manifest
from .scheduler import BoundedScheduler, JobResult, log_phase_summary
from .sra_tools import SraToolkit, remove_path

logger = logging.getLogger(__name__)

FASTQ_SUFFIX = ".fastq"
COMPRESSED_SUFFIX = ".gz"

_END_RE = re.compile(r"^(?P<run>.+?)(?:_(?P<end>\d+))?\.fastq$")


def canonical_name(sample: str, end: str) -> str:
    return f"{sample}_{end}{FASTQ_SUFFIX}"


def check_merge_allowed(manifest: Manifest, merge: bool):
    """Raise MergeRequiredError if some sample has several runs and merge is off."""
    if merge:
        return
    if len(manifest.sample_groups()) != len(manifest):
        raise MergeRequiredError(manifest.multi_run_samples())


def classify_read_files(
    listing: Sequence[str], runs: Sequence[str]
) -> Tuple[List[str], List[str], List[str]]:
    """
    Split a directory listing into (read1, read2, unpaired) file names.

    Only files belonging to `runs` are considered; order of `listing` is kept.
    """
    wanted = set(runs)
    read1, read2, unpaired = [], [], []
    for name in listing:
        m = _END_RE.match(name)
        if not m or m.group("run") not in wanted:
            continue
        end = m.group("end")
        if end is None:
            unpaired.append(name)
        elif end == "1":
            read1.append(name)
        elif end == "2":
            read2.append(name)
        else:
            logger.warning(f"Ignoring extra read file {name} (read end {end})")
    return read1, read2, unpaired


def consolidate(sources: Sequence[str], target: str, cancel: Optional[threading.Event] = None):
    """
    Move one file, or concatenate several (in the given order), to `target`.

    Sources are removed once the target is complete.
    """
    if len(sources) == 1:
        os.replace(sources[0], target)
        return

    tmp = target + ".part"
    try:
        with open(tmp, "wb") as out:
            for src in sources:
                if cancel is not None and cancel.is_set():
                    raise JobCancelled(target)
                with open(src, "rb") as fh:
                    shutil.copyfileobj(fh, out, length=1 << 20)
        os.replace(tmp, target)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)

    for src in sources:
        os.remove(src)


def rename_and_merge(
    root: str,
    sample: str,
    runs: Sequence[str],
    toolkit: SraToolkit,
    runlog,
    cancel: Optional[threading.Event] = None,
) -> JobResult:
    """
    Build <sample>_R1.fastq.gz (and _R2 when paired) from the run files of
    one sample, then compress them.
    """
    if cancel is not None and cancel.is_set():
        raise JobCancelled(sample)

    sample_dir = os.path.join(root, sample)
    listing = sorted(os.listdir(sample_dir)) if os.path.isdir(sample_dir) else []
    read1, read2, unpaired = classify_read_files(listing, runs)

    plan = []
    for end, sources in (("R1", read1 + unpaired), ("R2", read2)):
        if sources:
            plan.append((end, sources))
        elif canonical_name(sample, end) in listing:
            # left uncompressed by an interrupted run; the run files are gone
            plan.append((end, []))

    if not plan:
        existing = [
            canonical_name(sample, end) + COMPRESSED_SUFFIX
            for end in ("R1", "R2")
            if canonical_name(sample, end) + COMPRESSED_SUFFIX in listing
        ]
        if existing:
            return JobResult(sample, "skipped", "canonical files already present",
                             outputs=[os.path.join(sample_dir, n) for n in existing])
        runlog.append(f"Error: {sample}: no read files found to rename")
        return JobResult(sample, "failed", "no read files found")

    if len(runs) > 1:
        logger.debug(f"{sample}: merging {len(runs)} runs ({', '.join(runs)})")

    targets = []
    for end, sources in plan:
        target = os.path.join(sample_dir, canonical_name(sample, end))
        if sources:
            consolidate([os.path.join(sample_dir, s) for s in sources], target, cancel=cancel)
        targets.append(target)

    try:
        returncode = toolkit.compress(targets, tag=sample, runlog=runlog, cancel=cancel)
    except JobCancelled:
        # an interrupted compressor leaves a truncated .gz next to its source
        for target in targets:
            if os.path.exists(target):
                remove_path(target + COMPRESSED_SUFFIX)
        raise

    outputs = [t + COMPRESSED_SUFFIX for t in targets]
    if returncode != 0 or not all(os.path.exists(o) for o in outputs):
        runlog.append(f"Error: {sample}: compression failed (exit code {returncode})")
        return JobResult(sample, "failed", f"compression failed (exit code {returncode})", targets)

    return JobResult(sample, "success", outputs=outputs)


def run_rename_phase(
    manifest: Manifest,
    root: str,
    toolkit: SraToolkit,
    runlog,
    parallelism: int = 10,
    merge: bool = False,
    cancel: Optional[threading.Event] = None,
) -> List[JobResult]:
    """
    Rename (and merge, when allowed) the FASTQ files of every sample, with at
    most `parallelism` concurrent jobs. Samples are processed in sorted order.
    """
    check_merge_allowed(manifest, merge)
    groups: Dict[str, List[str]] = manifest.sample_groups()

    logger.info(f"Renaming and compressing FASTQ files of {len(groups)} sample(s)...")

    with BoundedScheduler(
        parallelism, cancel=cancel, desc="Renaming", total=len(groups), runlog=runlog
    ) as scheduler:
        for sample in sorted(groups):
            if not scheduler.submit(
                sample, rename_and_merge, root, sample, groups[sample], toolkit, runlog,
                cancel=scheduler.cancel,
            ):
                logger.warning("Cancellation requested, no further samples dispatched")
                break
        results = scheduler.join()

    log_phase_summary("rename", results)
    return results
