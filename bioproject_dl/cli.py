#!/usr/bin/env python3
"""
bioproject-dl: download FASTQ files of a BioProject, one directory per sample.

Steps:
  1. get the run manifest (runinfo) of the project, remotely or from a file
  2. drop runs that belong to other projects
  3. prefetch + convert every run (bounded parallel jobs, 2 download attempts)
  4. rename / merge per-run FASTQ files into <sample>_R1/_R2.fastq.gz

Usage:
    bioproject-dl -b PRJNA123456 -d data/
    bioproject-dl -b PRJNA123456 -d data/ -p 4 --merge --skip
    bioproject-dl -r runinfo.csv -d data/ --merge
    bioproject-dl -b PRJNA123456 --dry-run

Exit status: 0 on success or when the project has no data; 1 on any error,
on error/warning lines in <dir>/log, or on interruption. The log is removed
after a clean run and kept otherwise.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from . import __version__
from .config import cfg_get, load_config
from .console import setup_logging
from .exceptions import (
    BioprojectDlError,
    ConfigError,
    ManifestFormatError,
    ProjectNotFoundError,
)
from .fetch import run_fetch_phase
from .manifest import acquire_manifest, parse_manifest, sanitize_manifest
from .rename import check_merge_allowed, run_rename_phase
from .runlog import RunLog
from .scheduler import phase_failed
from .sra_tools import SraToolkit

logger = logging.getLogger("bioproject_dl")

AIM = "Download fastq files from a given BioProject."


class UsageArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 (not 2) on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> UsageArgumentParser:
    parser = UsageArgumentParser(
        prog="bioproject-dl",
        description=AIM,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-b", "--bp", dest="project", metavar="PROJECT",
                        help="BioProject identifier (e.g. PRJNA123456)")
    parser.add_argument("-d", "--dir", dest="target_dir", default=".",
                        help="Target directory (default: current directory)")
    parser.add_argument("-r", "--runinfo", metavar="FILE",
                        help="Pre-fetched runinfo CSV to use instead of querying NCBI")
    parser.add_argument("-p", "--parallel", type=int, default=None, metavar="N",
                        help="Number of parallel jobs (default: 10)")
    parser.add_argument("-m", "--merge", action="store_true",
                        help="Merge runs belonging to the same sample")
    parser.add_argument("-s", "--skip", action="store_true",
                        help="Skip download if fastq files are already present")
    parser.add_argument("--source", choices=["trace", "entrez"], default=None,
                        help="Metadata back end (default: trace)")
    parser.add_argument("--email", default=None,
                        help="Contact email for NCBI E-utilities (--source entrez)")
    parser.add_argument("--api-key", default=None,
                        help="NCBI API key (default: $NCBI_API_KEY)")
    parser.add_argument("--config", default=None,
                        help="YAML config file (default: ./config/bioproject_dl.yaml if present)")
    parser.add_argument("--log-level", default="INFO",
                        help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--log-file", default=None,
                        help="Also write console messages (with timestamps) to this file")
    parser.add_argument("--dry-run", action="store_true",
                        help="Show the samples and runs that would be downloaded and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def resolve_settings(args, parser) -> dict:
    """Merge config file values with command-line flags."""
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot load config: {e}") from e

    if args.source:
        config["metadata"]["source"] = args.source
    if args.email:
        config["metadata"]["email"] = args.email
    if args.api_key:
        config["metadata"]["api_key"] = args.api_key
    if args.parallel is not None:
        config["parallelism"] = args.parallel

    source = cfg_get(config, "metadata.source", "trace")
    if source not in ("trace", "entrez"):
        raise ConfigError(f"Unknown metadata source {source!r} (expected 'trace' or 'entrez')")

    if not args.project and not args.runinfo:
        parser.print_usage(sys.stderr)
        raise ConfigError("BioProject is required (-b) unless a runinfo file is given (-r)")
    for key, fallback in (("parallelism", 10), ("download_attempts", 2)):
        value = cfg_get(config, key, fallback)
        try:
            config[key] = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key} must be an integer, got {value!r}") from None
        if config[key] < 1:
            raise ConfigError(f"{key} must be >= 1, got {config[key]}")
    if os.path.exists(args.target_dir) and not os.path.isdir(args.target_dir):
        raise ConfigError(f"Target {args.target_dir} exists and is not a directory")
    return config


def install_signal_handlers(cancel: threading.Event) -> dict:
    """Route SIGINT/SIGTERM to `cancel`; returns the previous handlers."""
    def _handler(signum, frame):
        cancel.set()

    previous = {}
    if threading.current_thread() is not threading.main_thread():
        return previous
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def restore_signal_handlers(previous: dict):
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def print_plan(manifest):
    groups = manifest.sample_groups()
    print(f"{len(manifest)} run(s) in {len(groups)} sample(s) from {manifest.source}")
    for sample, runs in groups.items():
        print(f"  {sample}: {', '.join(runs)}")


def run(args, parser, cancel: Optional[threading.Event] = None) -> int:
    cancel = cancel if cancel is not None else threading.Event()
    config = resolve_settings(args, parser)
    if config.get("_config_path"):
        logger.debug(f"Config: {config['_config_path']}")

    toolkit = SraToolkit.from_config(config)
    if not args.dry_run:
        missing = toolkit.missing_tools()
        if missing:
            raise ConfigError(f"Command(s) needed but not found: {', '.join(missing)}")

    # --- manifest ---
    try:
        text, source = acquire_manifest(args.project, args.runinfo, config)
    except ProjectNotFoundError as e:
        logger.info(f"{e}. Nothing to download.")
        return 0

    manifest = parse_manifest(text, source)
    if cancel.is_set():
        logger.error("Interrupted. Nothing downloaded.")
        return 1
    if args.project:
        manifest, _ = sanitize_manifest(manifest, args.project)
    if len(manifest) == 0:
        if args.runinfo:
            raise ManifestFormatError(f"No usable runs in {args.runinfo}")
        logger.info(f"No runs found for {args.project}. Nothing to download.")
        return 0

    logger.info(f"{len(manifest)} run(s) in {len(manifest.sample_groups())} sample(s)")
    check_merge_allowed(manifest, args.merge)

    if args.dry_run:
        print_plan(manifest)
        return 0

    # --- download ---
    # from here on SIGINT/SIGTERM only set `cancel`; workers clean up after themselves
    previous = install_signal_handlers(cancel)
    try:
        return _download_and_rename(args, config, manifest, toolkit, cancel)
    finally:
        restore_signal_handlers(previous)


def _download_and_rename(args, config, manifest, toolkit, cancel: threading.Event) -> int:
    root = args.target_dir
    os.makedirs(root, exist_ok=True)
    runlog = RunLog(os.path.join(root, cfg_get(config, "log_name", "log")))
    parallelism = config["parallelism"]

    try:
        results = run_fetch_phase(
            manifest, root, toolkit, runlog,
            parallelism=parallelism,
            skip_existing=args.skip,
            attempts=config["download_attempts"],
            cancel=cancel,
        )
        if cancel.is_set():
            logger.error("Interrupted. Partial downloads removed.")
            return 1
        if phase_failed(results, runlog):
            logger.warning(f"Errors or warnings present in {runlog.path}.")
            return 1

        # --- rename / merge / compress ---
        results = run_rename_phase(
            manifest, root, toolkit, runlog,
            parallelism=parallelism, merge=args.merge, cancel=cancel,
        )
        if cancel.is_set():
            logger.error("Interrupted during renaming.")
            return 1
        if phase_failed(results, runlog):
            logger.warning(f"Errors or warnings present in {runlog.path}.")
            return 1
    finally:
        runlog.close()

    runlog.remove()
    logger.info(f"Done. FASTQ files are in {os.path.abspath(root)}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, log_file=args.log_file)

    try:
        return run(args, parser)
    except BioprojectDlError as e:
        logger.error(f"{str(e).rstrip('.')}. Exiting...")
        return 1
    except KeyboardInterrupt:
        # before the download phase nothing has been written yet
        logger.error("Interrupted. Nothing downloaded.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
