# app/database.py

"""
Record store access.

The pipeline only needs three things from storage: paginated reads of one
domain, the current annotation of a record, and a partial merge-update of
that annotation. Supabase is the production backend; the in-memory store
backs tests and offline dry runs.
"""

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Optional, Protocol
import logging

from pydantic import ValidationError
from supabase import create_client, Client

from app.config import Settings, get_settings
from app.models import Transaction, MatchAnnotation
from app.core.errors import SourceFetchError, MergeConflictError
from app.core.normalizers import normalize_amount, normalize_date

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    """Keyed record store with filtered range reads and annotation merges."""

    def fetch_page(self, domain: str, filters: dict, offset: int, limit: int) -> list[dict]:
        ...

    def get_annotation(self, record_id: str) -> dict:
        ...

    def merge_annotation(self, record_id: str, partial: dict) -> None:
        ...


# ============================================
# Row mapping
# ============================================

def row_to_transaction(row: dict) -> Transaction:
    """Map a stored row onto a Transaction, normalizing amount and date."""
    metadata = row.get("metadata") or row.get("custom_data") or {}
    raw_annotation = row.get("annotation") or {}
    try:
        annotation = MatchAnnotation.model_validate(raw_annotation).to_blob()
    except ValidationError:
        logger.warning(f"Record {row.get('id')} has a non-standard annotation, keeping it as stored")
        annotation = dict(raw_annotation)

    return Transaction(
        id=str(row["id"]),
        source_domain=row["source_domain"],
        source=row.get("source") or "",
        transaction_date=normalize_date(row.get("transaction_date") or row.get("date")),
        amount=normalize_amount(row.get("amount")),
        currency=row.get("currency"),
        description=row.get("description"),
        customer_name=row.get("customer_name"),
        customer_email=row.get("customer_email"),
        metadata=metadata,
        annotation=annotation,
    )


# ============================================
# Paginated fetch
# ============================================

@dataclass
class FetchResult:
    domain: str
    records: list[Transaction] = field(default_factory=list)
    complete: bool = True
    skipped: int = 0


def fetch_by_source(
    store: RecordStore,
    domain: str,
    filters: Optional[dict] = None,
    page_size: int = 1000,
    max_pages: int = 200,
) -> FetchResult:
    """
    Read every record of one domain, page by page.

    Raises SourceFetchError carrying what was read so far if a page fails.
    Stopping at the page ceiling returns the records read with
    complete=False.
    """
    result = FetchResult(domain=domain)
    for page in range(max_pages):
        try:
            rows = store.fetch_page(domain, filters or {}, page * page_size, page_size)
        except Exception as e:
            raise SourceFetchError(domain, f"page {page}: {e}", partial=result.records) from e

        for row in rows:
            try:
                result.records.append(row_to_transaction(row))
            except (KeyError, ValidationError) as e:
                result.skipped += 1
                logger.warning(f"[{domain}] skipping unreadable row {row.get('id')}: {e}")

        if len(rows) < page_size:
            logger.info(f"[{domain}] fetched {len(result.records)} records in {page + 1} pages")
            return result

    result.complete = False
    logger.warning(
        f"[{domain}] hit safety limit of {max_pages} pages ({len(result.records)} records), "
        f"results may be incomplete"
    )
    return result


# ============================================
# Supabase
# ============================================

class SupabaseRecordStore:
    """Records table in Supabase; annotations live in a JSON column."""

    def __init__(self, client: Client, table: str = "transactions", merge_rpc: Optional[str] = None):
        self.client = client
        self.table = table
        self.merge_rpc = merge_rpc

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseRecordStore":
        # Admin client: the pipeline reads and writes every record (bypasses RLS)
        client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        return cls(client, settings.records_table, settings.annotation_merge_rpc)

    def fetch_page(self, domain: str, filters: dict, offset: int, limit: int) -> list[dict]:
        query = self.client.table(self.table).select("*").eq("source_domain", domain)
        for column, value in filters.items():
            if isinstance(value, (list, tuple, set)):
                query = query.in_(column, list(value))
            else:
                query = query.eq(column, value)
        response = query.order("id").range(offset, offset + limit - 1).execute()
        return response.data or []

    def get_annotation(self, record_id: str) -> dict:
        response = self.client.table(self.table).select("annotation").eq("id", record_id).execute()
        if not response.data:
            return {}
        return response.data[0].get("annotation") or {}

    def merge_annotation(self, record_id: str, partial: dict) -> None:
        try:
            if self.merge_rpc:
                # Atomic jsonb merge on the database side
                self.client.rpc(self.merge_rpc, {"record_id": record_id, "patch": partial}).execute()
                return

            current = self.get_annotation(record_id)
            update = {"annotation": {**current, **partial}}
            if partial.get("reconciled"):
                update["reconciled"] = True
            self.client.table(self.table).update(update).eq("id", record_id).execute()
        except Exception as e:
            raise MergeConflictError(record_id, str(e)) from e


# ============================================
# In-memory
# ============================================

class InMemoryRecordStore:
    """
    Dict-backed store.

    `fail_after_pages` makes a domain's fetch raise after serving that many
    pages; `fail_merges` makes writes to those record ids raise.
    """

    def __init__(self, rows: Optional[list[dict]] = None):
        self._rows: dict[str, dict] = {}
        self.writes = 0
        self.fail_after_pages: dict[str, int] = {}
        self.fail_merges: set[str] = set()
        self._pages_served: dict[str, int] = {}
        for row in rows or []:
            self.add(row)

    def add(self, *rows: dict) -> None:
        for row in rows:
            stored = deepcopy(row)
            stored.setdefault("annotation", {})
            self._rows[str(stored["id"])] = stored

    def rows(self, domain: Optional[str] = None) -> list[dict]:
        return [
            deepcopy(row) for _, row in sorted(self._rows.items())
            if domain is None or row.get("source_domain") == domain
        ]

    def fetch_page(self, domain: str, filters: dict, offset: int, limit: int) -> list[dict]:
        served = self._pages_served.get(domain, 0)
        if domain in self.fail_after_pages and served >= self.fail_after_pages[domain]:
            raise ConnectionError(f"{domain} store connection reset")
        self._pages_served[domain] = served + 1

        matching = []
        for _, row in sorted(self._rows.items()):
            if row.get("source_domain") != domain:
                continue
            if all(row.get(column) == value for column, value in filters.items()):
                matching.append(deepcopy(row))
        return matching[offset:offset + limit]

    def get_annotation(self, record_id: str) -> dict:
        row = self._rows.get(record_id)
        return deepcopy(row.get("annotation") or {}) if row else {}

    def merge_annotation(self, record_id: str, partial: dict) -> None:
        if record_id in self.fail_merges or record_id not in self._rows:
            raise MergeConflictError(record_id, "write rejected")
        row = self._rows[record_id]
        row["annotation"] = {**(row.get("annotation") or {}), **deepcopy(partial)}
        if partial.get("reconciled"):
            row["reconciled"] = True
        self.writes += 1


def supabase_configured(settings: Optional[Settings] = None) -> bool:
    settings = settings or get_settings()
    return bool(settings.supabase_url and settings.supabase_service_role_key)
