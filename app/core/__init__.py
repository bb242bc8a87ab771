# app/core/__init__.py

from app.core.errors import (
    ReconciliationError,
    SourceFetchError,
    MergeConflictError,
    MalformedRecordError,
    StoreUnavailableError,
)
from app.core.normalizers import (
    normalize_amount,
    normalize_date,
    normalize_string,
    normalize_customer_name,
    normalize_email,
    tokenize,
)

__all__ = [
    "ReconciliationError",
    "SourceFetchError",
    "MergeConflictError",
    "MalformedRecordError",
    "StoreUnavailableError",
    "normalize_amount",
    "normalize_date",
    "normalize_string",
    "normalize_customer_name",
    "normalize_email",
    "tokenize",
]
