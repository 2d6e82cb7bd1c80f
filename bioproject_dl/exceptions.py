"""
Exception hierarchy for bioproject-dl.

Fatal errors (exit 1):  ConfigError, ManifestFormatError, MetadataFetchError,
                        MergeRequiredError
Informational (exit 0): ProjectNotFoundError
Worker-internal:        JobCancelled (recorded as a "cancelled" job result)
"""


class BioprojectDlError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(BioprojectDlError):
    """Missing or invalid run configuration (identifier, paths, tools)."""


class ManifestFormatError(BioprojectDlError):
    """Run manifest is empty, unreadable or lacks a required column."""


class ProjectNotFoundError(BioprojectDlError):
    """Metadata service returned no runs for the requested project."""


class MetadataFetchError(BioprojectDlError):
    """Metadata service could not be reached or returned an HTTP error."""


class MergeRequiredError(BioprojectDlError):
    """Some samples map to several runs but merge mode was not requested."""

    def __init__(self, samples):
        self.samples = list(samples)
        shown = ", ".join(self.samples[:10])
        if len(self.samples) > 10:
            shown += f", ... ({len(self.samples) - 10} more)"
        super().__init__(
            f"{len(self.samples)} sample(s) have several runs ({shown}). "
            f"Use --merge to merge runs per sample."
        )


class JobCancelled(BioprojectDlError):
    """Raised inside a worker once cancellation has been requested."""
