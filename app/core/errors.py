# app/core/errors.py

"""
Error taxonomy for the reconciliation pipeline.

Only StoreUnavailableError is allowed to abort a run. Everything else is
collected, reported in the run summary, and left for the next run.
"""


class ReconciliationError(Exception):
    """Base class for pipeline errors."""


class SourceFetchError(ReconciliationError):
    """A domain's paginated fetch failed part way through."""

    def __init__(self, domain: str, message: str, partial: list | None = None):
        super().__init__(f"Fetch failed for {domain}: {message}")
        self.domain = domain
        self.partial = partial or []


class MergeConflictError(ReconciliationError):
    """Writing an annotation back to the store failed for one record."""

    def __init__(self, record_id: str, message: str):
        super().__init__(f"Merge failed for {record_id}: {message}")
        self.record_id = record_id


class MalformedRecordError(ReconciliationError):
    """A record is missing a field a strategy needs."""

    def __init__(self, record_id: str, field: str):
        super().__init__(f"Record {record_id} has no usable {field}")
        self.record_id = record_id
        self.field = field


class StoreUnavailableError(ReconciliationError):
    """No domain could be read at all."""
