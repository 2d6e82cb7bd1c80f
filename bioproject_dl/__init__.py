"""
bioproject-dl: download the FASTQ files of an NCBI BioProject.

Workflow:
1. acquire_manifest() / parse_manifest() - get the runinfo table as RunRecords
2. sanitize_manifest() - drop runs of other projects
3. run_fetch_phase() - prefetch + convert every run (bounded parallel jobs)
4. run_rename_phase() - build <sample>_R1/_R2.fastq.gz, merging runs if asked
"""

__version__ = "0.1.0"

from .manifest import (
    Manifest,
    RunRecord,
    acquire_manifest,
    parse_manifest,
    read_manifest_file,
    sanitize_manifest,
)
from .fetch import fetch_and_convert, run_fetch_phase
from .rename import check_merge_allowed, rename_and_merge, run_rename_phase
from .runlog import MemoryRunLog, RunLog
from .scheduler import BoundedScheduler, JobResult
from .sra_tools import SraToolkit

__all__ = [
    'Manifest', 'RunRecord', 'acquire_manifest', 'parse_manifest',
    'read_manifest_file', 'sanitize_manifest',
    'fetch_and_convert', 'run_fetch_phase',
    'check_merge_allowed', 'rename_and_merge', 'run_rename_phase',
    'MemoryRunLog', 'RunLog', 'BoundedScheduler', 'JobResult', 'SraToolkit',
]
