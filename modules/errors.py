"""
errors.py
2024-03-12 ZD

Exceptions raised when STIRRUPS data preparation finds an inconsistency that
must stop the run before any output table is written. All subclass ValueError
so callers can catch them alongside other data validation failures.
"""


class PipelineError(ValueError):
    """Base class for fatal data preparation errors."""


class MalformedRecord(PipelineError):
    """A profile line or fetched record could not be parsed."""


class DuplicateRecord(PipelineError):
    """The same sample/OTU pair appears more than once above threshold."""


class ManifestMismatch(PipelineError):
    """The file and sample manifests do not share the same sample_id keys."""


class RowSetMismatch(PipelineError):
    """A table does not cover exactly the rows or columns of the matrix."""


class TaxonomyConflict(PipelineError):
    """A reference taxon has two different values for the same rank."""



def format_keys(keys, limit=10):
    """Format offending keys for an error message, truncating long lists."""

    keys = sorted(str(key) for key in keys)
    shown = ', '.join(keys[:limit])
    if len(keys) > limit:
        shown += f", ... ({len(keys) - limit} more)"

    return shown
