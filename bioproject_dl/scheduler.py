"""
Bounded-parallelism job scheduler shared by the fetch and rename phases.

The control thread calls submit() once per unit of work, in order. submit()
blocks until one of the P job slots is free (BoundedSemaphore), then hands
the job to a ThreadPoolExecutor. Every job yields a JobResult; failures are
collected, never raised, so one bad run cannot abort its siblings. join()
waits for everything and returns the results in dispatch order.

Cancellation is cooperative: once `cancel` is set no further job is admitted,
and running jobs are expected to raise JobCancelled after cleaning up.
"""

import logging
import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .console import progress_bar
from .exceptions import JobCancelled

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while waiting for a free slot
ADMISSION_POLL_SEC = 0.5

STATUSES = ("success", "failed", "skipped", "cancelled")


@dataclass
class JobResult:
    """Outcome of a single fetch or rename job."""
    key: str                    # run accession or sample name
    status: str                 # success / failed / skipped / cancelled
    message: str = ""
    outputs: List[str] = field(default_factory=list)
    duration_sec: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in ("success", "skipped")


class BoundedScheduler:
    """
    Run jobs on at most `parallelism` threads at once.

    Usage:
        with BoundedScheduler(4, desc="Fetching runs", total=n) as sched:
            for item in items:
                if not sched.submit(item.key, worker, item):
                    break   # cancelled
            results = sched.join()
    """

    def __init__(
        self,
        parallelism: int,
        cancel: Optional[threading.Event] = None,
        desc: str = "",
        total: Optional[int] = None,
        runlog=None,
    ):
        if parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got {parallelism}")
        self.parallelism = parallelism
        self.cancel = cancel if cancel is not None else threading.Event()
        self.runlog = runlog
        self.max_active = 0

        self._slots = threading.BoundedSemaphore(parallelism)
        self._lock = threading.Lock()
        self._active = 0
        self._executor = ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="job")
        self._order: List[object] = []      # Future or ready JobResult, in dispatch order
        self._progress = progress_bar(total=total, desc=desc)
        self._joined = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self._joined:
            # an exception escaped the dispatch loop: stop running jobs and wait
            if exc_type is not None:
                self.cancel.set()
            self._executor.shutdown(wait=True)
            self._progress.close()
        return False

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def admit(self) -> bool:
        """Block until a slot is free. Returns False once cancellation is requested."""
        while not self.cancel.is_set():
            if self._slots.acquire(timeout=ADMISSION_POLL_SEC):
                if self.cancel.is_set():
                    self._slots.release()
                    return False
                return True
        return False

    def submit(self, key: str, fn: Callable[..., JobResult], *args, **kwargs) -> bool:
        """
        Dispatch fn(*args, **kwargs) once a slot is free.

        Returns False (nothing dispatched) if the run was cancelled meanwhile.
        """
        if not self.admit():
            self._order.append(JobResult(key, "cancelled", "not started"))
            return False
        with self._lock:
            # counted at admission so the peak reflects occupied slots
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        future = self._executor.submit(self._run, key, fn, args, kwargs)
        self._order.append(future)
        self._progress.update(1)
        return True

    def skip(self, key: str, message: str = ""):
        """Record a job that was deliberately not dispatched."""
        self._order.append(JobResult(key, "skipped", message))
        self._progress.update(1)

    def fail(self, key: str, message: str):
        """Record a job that failed before it could be dispatched."""
        if self.runlog is not None:
            self.runlog.append(f"Error: {key}: {message}")
        self._order.append(JobResult(key, "failed", message))
        self._progress.update(1)

    def _run(self, key, fn, args, kwargs) -> JobResult:
        t0 = time.time()
        try:
            result = fn(*args, **kwargs)
            if not isinstance(result, JobResult):
                result = JobResult(key, "success")
        except JobCancelled:
            result = JobResult(key, "cancelled")
        except Exception as e:
            logger.error(f"{key}: unexpected failure: {e}", exc_info=logger.isEnabledFor(logging.DEBUG))
            if self.runlog is not None:
                self.runlog.append(f"Error: {key}: {type(e).__name__}: {e}")
            result = JobResult(key, "failed", f"{type(e).__name__}: {e}")
        finally:
            with self._lock:
                self._active -= 1
            self._slots.release()
        result.duration_sec = time.time() - t0
        return result

    def join(self) -> List[JobResult]:
        """Wait for every dispatched job; results in dispatch order."""
        futures = [f for f in self._order if isinstance(f, Future)]
        for future in as_completed(futures):
            # _run never raises; surface the result for debug logging only
            res = future.result()
            logger.debug(f"{res.key}: {res.status} ({res.duration_sec:.1f}s) {res.message}")
        self._executor.shutdown(wait=True)
        self._progress.close()
        self._joined = True
        return [f.result() if isinstance(f, Future) else f for f in self._order]


# -----------------------
# Reporting
# -----------------------
def count_statuses(results: List[JobResult]) -> Counter:
    counts = Counter({s: 0 for s in STATUSES})
    counts.update(r.status for r in results)
    return counts


def log_phase_summary(phase: str, results: List[JobResult]):
    counts = count_statuses(results)
    logger.info("=" * 60)
    logger.info(f"{phase.upper()} SUMMARY")
    logger.info(f"  Succeeded: {counts['success']}")
    logger.info(f"  Failed:    {counts['failed']}")
    logger.info(f"  Skipped:   {counts['skipped']}")
    if counts["cancelled"]:
        logger.info(f"  Cancelled: {counts['cancelled']}")
    logger.info("=" * 60)
    for r in results:
        if r.status == "failed":
            logger.debug(f"  {r.key}: {r.message}")


def phase_failed(results: List[JobResult], runlog=None) -> bool:
    """
    Failure gate applied after each phase.

    Any failed job, or any error/warning line in the run log, fails the whole
    run, even if other samples completed.
    """
    if any(r.status == "failed" for r in results):
        return True
    return runlog is not None and runlog.has_failure_markers()
