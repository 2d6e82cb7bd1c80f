"""
Run manifest acquisition and sanitizing.

A manifest is the SRA "runinfo" table of a BioProject: comma-separated, one
header line, one row per sequencing run. Only three columns matter here:

    SampleName   -> directory / output file prefix
    Run          -> accession handed to prefetch
    BioProject   -> used to drop rows leaked in from sibling projects

(download_path is recorded when present.) Column names are resolved once,
case-insensitively, into ManifestColumns; rows become typed RunRecords.

Sources:
  - a pre-fetched file (read_manifest_file)
  - the SRA runinfo endpoint over HTTP (fetch_runinfo_trace, via requests)
  - NCBI E-utilities esearch/efetch (fetch_runinfo_entrez, via Biopython)
"""

import io
import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pandas as pd
import requests
from Bio import Entrez
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import TRACE_RUNINFO_URL, cfg_get
from .exceptions import (
    ManifestFormatError,
    MetadataFetchError,
    ProjectNotFoundError,
)

logger = logging.getLogger(__name__)

SAMPLE_COLUMN = "samplename"
RUN_COLUMN = "run"
PROJECT_COLUMN = "bioproject"
DOWNLOAD_PATH_COLUMN = "download_path"

USER_AGENT = "bioproject-dl/0.1"


# -----------------------
# Data Structures
# -----------------------
@dataclass(frozen=True)
class RunRecord:
    """One manifest row (one sequencing run)."""
    sample_name: str
    run_accession: str       # SRR / ERR / DRR
    project_accession: str   # PRJNA...
    download_path: str = ""


@dataclass(frozen=True)
class ManifestColumns:
    """Header names and 0-based positions of the columns we use."""
    sample: str
    run: str
    project: str
    download_path: Optional[str]
    sample_idx: int
    run_idx: int
    project_idx: int
    download_path_idx: Optional[int] = None


@dataclass
class Manifest:
    runs: List[RunRecord]
    columns: ManifestColumns
    header: List[str] = field(default_factory=list)
    source: str = ""

    def __len__(self) -> int:
        return len(self.runs)

    def __iter__(self):
        return iter(self.runs)

    def sample_groups(self) -> Dict[str, List[str]]:
        """Sample name -> run accessions, both in manifest order."""
        groups: Dict[str, List[str]] = OrderedDict()
        for run in self.runs:
            groups.setdefault(run.sample_name, []).append(run.run_accession)
        return groups

    def sample_names(self) -> List[str]:
        return sorted(self.sample_groups())

    def multi_run_samples(self) -> List[str]:
        return sorted(s for s, runs in self.sample_groups().items() if len(runs) > 1)


# -----------------------
# Text helpers
# -----------------------
def strip_blank_lines(text: str) -> List[str]:
    return [ln for ln in text.splitlines() if ln.strip()]


def header_tokens(line: str) -> List[str]:
    """Split a header line into lowercase column tokens (quotes removed)."""
    return [t.strip().strip('"').strip().lower() for t in line.split(",")]


def has_sample_column(line: str) -> bool:
    return SAMPLE_COLUMN in header_tokens(line)


# -----------------------
# Acquisition
# -----------------------
def read_manifest_file(path: str) -> str:
    """
    Read a pre-fetched runinfo file.

    Blank lines are dropped. Raises ManifestFormatError if the file is
    unreadable, empty, or its header has no SampleName column.
    """
    try:
        with open(path, encoding="utf-8-sig") as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestFormatError(f"Cannot read manifest {path}: {e}") from e

    lines = strip_blank_lines(text)
    if not lines:
        raise ManifestFormatError(f"Manifest {path} is empty")
    if not has_sample_column(lines[0]):
        raise ManifestFormatError(
            f"Manifest {path} does not look like a runinfo table "
            f"(no SampleName column in header)"
        )
    return "\n".join(lines) + "\n"


def create_resilient_session(retries: int = 5) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=retries, read=retries, connect=retries,
        backoff_factor=1, status_forcelist=[429, 500, 502, 503, 504],
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers["User-Agent"] = USER_AGENT
    return session


def fetch_runinfo_trace(
    project: str,
    url_template: str = TRACE_RUNINFO_URL,
    session: Optional[requests.Session] = None,
    timeout: int = 120,
) -> str:
    """Download the runinfo CSV of `project` from the SRA runinfo endpoint."""
    session = session or create_resilient_session()
    url = url_template.format(project=project)
    logger.debug(f"GET {url}")
    try:
        response = session.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise MetadataFetchError(f"Runinfo query for {project} failed: {e}") from e

    if not strip_blank_lines(response.text):
        raise ProjectNotFoundError(f"BioProject {project} does not seem to exist")
    return response.text


def init_entrez(email: Optional[str], api_key: Optional[str]):
    Entrez.email = email
    # None rather than "" -- NCBI rejects an empty api_key parameter
    Entrez.api_key = api_key or os.environ.get("NCBI_API_KEY") or None
    Entrez.tool = "bioproject-dl"

    if not Entrez.email:
        logger.warning("No Entrez email provided. Set --email to comply with NCBI E-utilities policy.")


def ncbi_sleep_time() -> float:
    return 0.12 if Entrez.api_key else 0.34


def fetch_runinfo_entrez(project: str, batch_size: int = 500) -> str:
    """
    Fetch the runinfo CSV of `project` through E-utilities.

    esearch (db=sra, usehistory) followed by batched efetch rettype=runinfo.
    Each batch carries its own header line; parse_manifest drops the repeats.
    """
    try:
        handle = Entrez.esearch(db="sra", term=project, usehistory="y", retmax=0)
        search = Entrez.read(handle)
        handle.close()
    except Exception as e:
        raise MetadataFetchError(f"Entrez search for {project} failed: {e}") from e

    count = int(search.get("Count", 0))
    if count == 0:
        raise ProjectNotFoundError(f"BioProject {project} does not seem to exist")

    logger.info(f"Entrez: {count} SRA record(s) for {project}")
    chunks: List[str] = []
    for start in range(0, count, batch_size):
        try:
            handle = Entrez.efetch(
                db="sra", rettype="runinfo", retmode="text",
                retstart=start, retmax=batch_size,
                webenv=search["WebEnv"], query_key=search["QueryKey"],
            )
            data = handle.read()
            handle.close()
        except Exception as e:
            raise MetadataFetchError(
                f"Entrez runinfo fetch for {project} failed at record {start}: {e}"
            ) from e
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        chunks.append(data.strip("\n"))
        time.sleep(ncbi_sleep_time())

    text = "\n".join(c for c in chunks if c)
    if not strip_blank_lines(text):
        raise ProjectNotFoundError(f"BioProject {project} does not seem to exist")
    return text + "\n"


def acquire_manifest(
    project: Optional[str] = None,
    runinfo_file: Optional[str] = None,
    config: Optional[dict] = None,
) -> Tuple[str, str]:
    """
    Get the raw runinfo text, from `runinfo_file` if given, else remotely.

    Returns:
        (text, source) where source is the file path or "<backend>:<project>"
    """
    if runinfo_file:
        logger.info(f"Reading run manifest from {runinfo_file}")
        return read_manifest_file(runinfo_file), runinfo_file

    if not project:
        raise ValueError("Either a project identifier or a manifest file is required")

    source = cfg_get(config, "metadata.source", "trace")
    logger.info(f"Querying run manifest for {project} ({source})")
    if source == "entrez":
        init_entrez(cfg_get(config, "metadata.email"), cfg_get(config, "metadata.api_key"))
        text = fetch_runinfo_entrez(project, batch_size=cfg_get(config, "metadata.batch_size", 500))
    elif source == "trace":
        session = create_resilient_session(retries=cfg_get(config, "metadata.retries", 5))
        text = fetch_runinfo_trace(
            project,
            url_template=cfg_get(config, "metadata.runinfo_url", TRACE_RUNINFO_URL),
            session=session,
            timeout=cfg_get(config, "metadata.timeout", 120),
        )
    else:
        raise ValueError(f"Unknown metadata source: {source!r} (expected 'trace' or 'entrez')")
    return text, f"{source}:{project}"


# -----------------------
# Parsing
# -----------------------
def resolve_columns(header: List[str]) -> ManifestColumns:
    """Locate the required columns by case-insensitive exact name."""
    lowered = [h.strip().lower() for h in header]

    def _find(name: str) -> Optional[int]:
        return lowered.index(name) if name in lowered else None

    sample_idx = _find(SAMPLE_COLUMN)
    run_idx = _find(RUN_COLUMN)
    project_idx = _find(PROJECT_COLUMN)
    dl_idx = _find(DOWNLOAD_PATH_COLUMN)

    missing = [name for name, idx in (
        ("SampleName", sample_idx), ("Run", run_idx), ("BioProject", project_idx)
    ) if idx is None]
    if missing:
        raise ManifestFormatError(
            f"Manifest header lacks required column(s): {', '.join(missing)}"
        )

    return ManifestColumns(
        sample=header[sample_idx],
        run=header[run_idx],
        project=header[project_idx],
        download_path=header[dl_idx] if dl_idx is not None else None,
        sample_idx=sample_idx,
        run_idx=run_idx,
        project_idx=project_idx,
        download_path_idx=dl_idx,
    )


def is_safe_sample_name(name: str) -> bool:
    if name in (".", ".."):
        return False
    return os.sep not in name and (os.altsep is None or os.altsep not in name)


def parse_manifest(text: str, source: str = "") -> Manifest:
    """
    Parse runinfo CSV text into a Manifest of typed RunRecords.

    Quoted fields (sample names with embedded commas) are handled by pandas.
    Repeated header lines, rows without run or sample, and duplicated run
    accessions are dropped.
    """
    try:
        df = pd.read_csv(
            io.StringIO(text), dtype=str, keep_default_na=False,
            skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ManifestFormatError(f"Cannot parse manifest {source}: {e}") from e

    header = [str(c) for c in df.columns]
    columns = resolve_columns(header)

    for col in df.columns:
        df[col] = df[col].str.strip()
    # batched runinfo output repeats the header line
    df = df[df[columns.run] != columns.run]

    incomplete = (df[columns.run] == "") | (df[columns.sample] == "")
    if incomplete.any():
        logger.warning(f"Dropping {int(incomplete.sum())} manifest row(s) without run accession or sample name")
        df = df[~incomplete]

    duplicated = df[columns.run].duplicated(keep="first")
    if duplicated.any():
        dups = sorted(set(df.loc[duplicated, columns.run]))
        logger.warning(f"Dropping duplicated run accession(s): {', '.join(dups)}")
        df = df[~duplicated]

    unsafe = sorted({s for s in df[columns.sample] if not is_safe_sample_name(s)})
    if unsafe:
        raise ManifestFormatError(
            f"Sample name(s) cannot be used as directory names: {', '.join(unsafe)}"
        )

    runs = [
        RunRecord(
            sample_name=row[columns.sample],
            run_accession=row[columns.run],
            project_accession=row[columns.project],
            download_path=row[columns.download_path] if columns.download_path else "",
        )
        for _, row in df.iterrows()
    ]
    return Manifest(runs=runs, columns=columns, header=header, source=source)


# -----------------------
# Sanitizing
# -----------------------
def sanitize_manifest(manifest: Manifest, project: str) -> Tuple[Manifest, List[str]]:
    """
    Drop runs whose BioProject differs from `project`.

    Some runinfo responses include runs of sibling projects; these are removed
    and reported once in a single warning.

    Returns:
        (sanitized manifest, sorted list of removed project accessions)
    """
    # NCBI matches accessions case-insensitively
    wanted = project.strip().upper()
    foreign = sorted({r.project_accession for r in manifest.runs if r.project_accession.upper() != wanted})
    if not foreign:
        return manifest, []

    kept = [r for r in manifest.runs if r.project_accession.upper() == wanted]
    removed = len(manifest.runs) - len(kept)
    logger.warning(
        f"Manifest contains runs from other project(s): {', '.join(foreign)}. "
        f"Removed {removed} row(s)."
    )
    sanitized = Manifest(
        runs=kept, columns=manifest.columns, header=manifest.header, source=manifest.source
    )
    return sanitized, foreign
