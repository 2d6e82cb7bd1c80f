"""
Fetch phase: download every run of the manifest and convert it to FASTQ.

For each run (in manifest order) the control thread creates <root>/<sample>/,
writes the sample name to the run log, optionally skips runs whose output is
already there, then dispatches fetch_and_convert() on a bounded pool.

fetch_and_convert():
  1. prefetch <run> into the sample directory, up to `attempts` times; an
     attempt counts as successful when the archive exists afterwards
  2. convert the archive, split by read end (<run>_1.fastq, <run>_2.fastq,
     or <run>.fastq for unpaired reads)
  3. delete the archive
"""

import glob
import logging
import os
import threading
from typing import List, Optional

from .exceptions import JobCancelled
from .manifest import Manifest, RunRecord
from .scheduler import BoundedScheduler, JobResult, log_phase_summary
from .sra_tools import SraToolkit, remove_path

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 2


def sample_dir_for(root: str, sample: str) -> str:
    return os.path.join(root, sample)


def has_existing_output(sample_dir: str, sample: str, run: str) -> bool:
    """
    True if the compressed sample output or a converted file of `run` exists.

    An uncompressed <sample>_R1.fastq does not count: it is what an
    interrupted rename leaves behind.
    """
    patterns = [
        f"{glob.escape(sample)}_R1.fastq.gz",
        f"{glob.escape(sample)}_R2.fastq.gz",
        f"{glob.escape(run)}_*.fastq*",
        f"{glob.escape(run)}.fastq*",
    ]
    return any(glob.glob(os.path.join(sample_dir, p)) for p in patterns)


def remove_run_artifacts(sample_dir: str, run: str):
    """Delete everything `run` may have left in its sample directory."""
    targets = [os.path.join(sample_dir, run)]
    targets += glob.glob(os.path.join(sample_dir, f"{glob.escape(run)}.*"))
    targets += glob.glob(os.path.join(sample_dir, f"{glob.escape(run)}_*"))
    for path in targets:
        remove_path(path)


def fetch_and_convert(
    run: RunRecord,
    root: str,
    toolkit: SraToolkit,
    runlog,
    attempts: int = DEFAULT_ATTEMPTS,
    cancel: Optional[threading.Event] = None,
) -> JobResult:
    """
    Download one run and convert it to per-end FASTQ files.

    Failures are reported through the returned JobResult and an "Error:" line
    in the run log; the scheduler never sees an exception except JobCancelled.
    """
    acc = run.run_accession
    sample_dir = sample_dir_for(root, run.sample_name)

    try:
        archive = None
        for attempt in range(1, attempts + 1):
            toolkit.prefetch(acc, sample_dir, runlog=runlog, cancel=cancel)
            archive = toolkit.archive_path(sample_dir, acc)
            if archive:
                break
            logger.debug(f"{acc}: download attempt {attempt}/{attempts} failed")

        if not archive:
            runlog.append(f"Error: {acc}: download failed after {attempts} attempt(s)")
            return JobResult(acc, "failed", f"download failed after {attempts} attempt(s)")

        returncode = toolkit.convert(archive, sample_dir, acc, runlog=runlog, cancel=cancel)
        remove_path(archive)

        outputs = toolkit.converted_files(sample_dir, acc)
        if returncode != 0 or not outputs:
            runlog.append(f"Error: {acc}: conversion failed (exit code {returncode}, {len(outputs)} file(s))")
            return JobResult(acc, "failed", f"conversion failed (exit code {returncode})", outputs)

    except JobCancelled:
        remove_run_artifacts(sample_dir, acc)
        raise

    logger.debug(f"{acc}: {len(outputs)} FASTQ file(s) in {sample_dir}")
    return JobResult(acc, "success", outputs=outputs)


def run_fetch_phase(
    manifest: Manifest,
    root: str,
    toolkit: SraToolkit,
    runlog,
    parallelism: int = 10,
    skip_existing: bool = False,
    attempts: int = DEFAULT_ATTEMPTS,
    cancel: Optional[threading.Event] = None,
) -> List[JobResult]:
    """
    Fetch and convert every run of `manifest` with at most `parallelism`
    concurrent jobs. Returns one JobResult per run, in manifest order.
    """
    logger.info(f"Downloading {len(manifest)} run(s) with {parallelism} parallel job(s)...")

    with BoundedScheduler(
        parallelism, cancel=cancel, desc="Downloading", total=len(manifest), runlog=runlog
    ) as scheduler:
        for run in manifest.runs:
            sample_dir = sample_dir_for(root, run.sample_name)
            try:
                os.makedirs(sample_dir, exist_ok=True)
            except OSError as e:
                scheduler.fail(run.run_accession, f"cannot create {sample_dir}: {e}")
                continue

            runlog.append(run.sample_name)

            if skip_existing and has_existing_output(sample_dir, run.sample_name, run.run_accession):
                logger.debug(f"{run.run_accession}: output present in {sample_dir}, skipping")
                scheduler.skip(run.run_accession, "output already present")
                continue

            if not scheduler.submit(
                run.run_accession, fetch_and_convert, run, root, toolkit, runlog,
                attempts=attempts, cancel=scheduler.cancel,
            ):
                logger.warning("Cancellation requested, no further downloads dispatched")
                break

        results = scheduler.join()

    log_phase_summary("download", results)
    return results
