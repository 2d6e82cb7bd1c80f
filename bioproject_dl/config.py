"""
config.py: configuration loading for bioproject-dl.

MECHANISM ONLY. Policy (parallelism, retry count, which metadata back end and
which sra-tools binaries to use) lives in bioproject_dl.yaml; anything not set
there falls back to DEFAULTS below. Command-line flags override both.

Search order for the YAML file:
  1. explicit path (--config)
  2. $BIOPROJECT_DL_CONFIG
  3. ./config/bioproject_dl.yaml
  4. ./bioproject_dl.yaml
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "BIOPROJECT_DL_CONFIG"

# SRA Trace runinfo endpoint, one CSV row per run
TRACE_RUNINFO_URL = (
    "https://trace.ncbi.nlm.nih.gov/Traces/sra/sra.cgi"
    "?save=efetch&rettype=runinfo&db=sra&term={project}"
)

DEFAULTS = {
    "parallelism": 10,
    "download_attempts": 2,
    "log_name": "log",
    "metadata": {
        "source": "trace",            # trace / entrez
        "runinfo_url": TRACE_RUNINFO_URL,
        "timeout": 120,
        "retries": 5,
        "email": None,
        "api_key": None,
        "batch_size": 500,
    },
    "tools": {
        "prefetch": "prefetch",
        "converter": "fastq-dump",    # fastq-dump / fasterq-dump
        "compressor": "pigz",         # pigz / gzip
        "threads": 4,
    },
}


# ============================================================
# CONFIG LOADING
# ============================================================

def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_config(config_path: Optional[str] = None) -> Optional[Path]:
    """
    Locate the YAML config file.

    Raises FileNotFoundError only when a path was given explicitly (argument
    or environment variable) and does not exist.
    """
    explicit = config_path or os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise FileNotFoundError(f"Config file not found: {path}")
        return path

    candidates = [
        Path.cwd() / "config" / "bioproject_dl.yaml",
        Path.cwd() / "bioproject_dl.yaml",
    ]
    for c in candidates:
        if c.is_file():
            return c
    return None


def load_config(config_path: Optional[str] = None) -> dict:
    """
    Load config from YAML and merge it over DEFAULTS.

    Args:
        config_path: Path to YAML file. If None, searches the environment
                     variable and the working directory (see module docstring).

    Returns:
        Config dict. "_config_path" records which file was used (None when
        running on built-in defaults).
    """
    path = find_config(config_path)
    if path is None:
        logger.debug("No config file found, using built-in defaults")
        config = copy.deepcopy(DEFAULTS)
        config["_config_path"] = None
        return config

    with open(path) as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(loaded).__name__}")

    config = _deep_merge(DEFAULTS, loaded)
    config["_config_path"] = str(path)
    return config


def cfg_get(config: Optional[dict], key_path: str, fallback: Any = None) -> Any:
    """Get nested config value with dotted key path, or return fallback."""
    if config is None:
        return fallback
    obj = config
    for key in key_path.split("."):
        if isinstance(obj, dict):
            obj = obj.get(key)
        else:
            return fallback
        if obj is None:
            return fallback
    return obj
