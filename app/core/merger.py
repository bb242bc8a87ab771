# app/core/merger.py

"""
Non-destructive annotation merging.

Every phase stages its results here instead of writing to the store. The
merger keeps a working view of all annotations for the rest of the run,
and at the end flushes only the keys that actually changed.

Rules, applied both when staging and again against the store at flush:
- a record a human confirmed is never touched
- reconciled never goes from true back to false
- a classification from a higher-priority strategy is not replaced by a
  lower-priority one, unless the existing one is a fallback/catch-all
  or the caller knows it is stale
- an existing disbursement link is only replaced when stale
- classified_at moves only when classification fields change
"""

from collections.abc import Container
from datetime import datetime
import logging

from app.models import Transaction, MergeReport, UPGRADEABLE_OUTCOMES
from app.core.errors import MergeConflictError

logger = logging.getLogger(__name__)


# ============================================
# Strategy priority
# ============================================

# Lower index = higher priority
STRATEGY_ORDER = [
    # receivable cascade
    "exact-identifier",
    "reverified-identifier",
    "identifier-in-description",
    "email-amount-date",
    "email-date",
    "fuzzy-name-amount-date",
    "fuzzy-name-date",
    "amount-date",
    # payables
    "ap-provider-exact-3d",
    "ap-invoice-number",
    "ap-provider-exact-5d",
    "ap-multi-invoice-sum",
    "ap-provider-pct-7d",
    "ap-amount-date",
    # chain
    "chain-resolution",
    "chain-partial",
    # P&L fallback
    "internal-transfer",
    "intercompany",
    "name-extraction",
    "gateway-dominant",
    "catch-all",
]
_PRIORITY = {strategy_id: position for position, strategy_id in enumerate(STRATEGY_ORDER)}


def strategy_priority(strategy_id: str | None) -> int:
    return _PRIORITY.get(strategy_id or "", len(STRATEGY_ORDER))


CLASSIFICATION_KEYS = frozenset({
    "matched_target_id",
    "matched_invoice_number",
    "matched_financial_account_code",
    "strategy_id",
    "confidence",
    "outcome",
    "pnl_line",
})

LINK_KEYS = frozenset({
    "link_strategy_id",
    "link_confidence",
    "disbursement_reference",
    "disbursement_amount",
    "disbursement_date",
    "linked_transaction_ids",
    "member_count",
    "payment_source",
    "settlement_batch_ids",
})


def merge_fields(
    existing: dict,
    incoming: dict,
    now: datetime,
    supersede: bool = False,
) -> dict:
    """
    Partial update that takes `existing` to the merged state.

    Returns only changed keys (plus classified_at when classification
    changed); an empty dict means nothing to write.
    """
    if existing.get("confirmed"):
        return {}

    incoming = {k: v for k, v in incoming.items() if k != "classified_at"}

    if not supersede and existing.get("strategy_id") and incoming.get("strategy_id"):
        keeps_existing = (
            existing.get("outcome") not in UPGRADEABLE_OUTCOMES
            and strategy_priority(incoming["strategy_id"]) > strategy_priority(existing["strategy_id"])
        )
        if keeps_existing:
            incoming = {k: v for k, v in incoming.items() if k not in CLASSIFICATION_KEYS}

    if not supersede and existing.get("link_strategy_id"):
        incoming = {k: v for k, v in incoming.items() if k not in LINK_KEYS}

    if existing.get("reconciled") and not incoming.get("reconciled", True):
        incoming.pop("reconciled")

    partial = {k: v for k, v in incoming.items() if existing.get(k) != v}
    if any(k in CLASSIFICATION_KEYS for k in partial):
        partial["classified_at"] = now.isoformat()
    return partial


class StateMerger:
    """Stages annotation updates during a run and flushes them at the end."""

    def __init__(self, annotations: dict[str, dict], now: datetime):
        self.annotations = annotations
        self.now = now
        self._pending: dict[str, dict] = {}
        self._supersede: set[str] = set()
        self.skipped_confirmed = 0

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> dict[str, dict]:
        return self._pending

    def view(self, record_id: str) -> dict:
        return self.annotations.get(record_id, {})

    def stage(self, record_id: str, fields: dict, supersede: bool = False) -> bool:
        """Apply `fields` to the working view. Returns True if anything changed."""
        existing = self.annotations.get(record_id, {})
        if existing.get("confirmed"):
            self.skipped_confirmed += 1
            return False

        partial = merge_fields(existing, fields, self.now, supersede)
        if not partial:
            return False

        self.annotations[record_id] = {**existing, **partial}
        pending = self._pending.setdefault(record_id, {})
        pending.update({k: v for k, v in partial.items() if k != "classified_at"})
        if supersede:
            self._supersede.add(record_id)
        return True

    def stage_payable_settlement(
        self,
        debit: Transaction,
        invoices: list[Transaction],
        strategy_id: str,
        confidence: float,
        supersede_ids: Container[str] = (),
    ) -> bool:
        """
        One bank debit paying one or more payable invoices.

        The debit accumulates the linked invoice ids and their total across
        runs; each invoice points back at the debit and is reconciled.
        Invoices in `supersede_ids` had a stale settlement that may be replaced.
        """
        existing = self.view(debit.id)
        ids = list(existing.get("linked_invoice_ids") or [])
        numbers = list(existing.get("linked_invoice_numbers") or [])
        total = float(existing.get("linked_invoice_total") or 0.0)
        for invoice in sorted(invoices, key=lambda i: i.id):
            if invoice.id in ids:
                continue
            ids.append(invoice.id)
            if invoice.invoice_number:
                numbers.append(invoice.invoice_number)
            total += abs(invoice.amount or 0.0)

        fields = {
            "linked_invoice_ids": ids,
            "linked_invoice_numbers": numbers,
            "linked_invoice_total": round(total, 2),
            "strategy_id": strategy_id,
            "confidence": confidence,
            "outcome": "matched_specific",
            "reconciled": True,
        }
        if len(ids) == 1:
            fields["matched_target_id"] = ids[0]
            if numbers:
                fields["matched_invoice_number"] = numbers[0]
        changed = self.stage(debit.id, fields)

        for invoice in invoices:
            invoice_fields = {
                "matched_target_id": debit.id,
                "strategy_id": strategy_id,
                "confidence": confidence,
                "outcome": "matched_specific",
                "reconciled": True,
            }
            if invoice.category:
                invoice_fields["matched_financial_account_code"] = invoice.category
            changed = self.stage(invoice.id, invoice_fields, invoice.id in supersede_ids) or changed
        return changed

    # ============================================
    # Flush
    # ============================================

    def flush(self, store) -> MergeReport:
        """
        Write staged changes. Each record is re-read and re-merged against
        its current stored annotation; a failure on one record is reported
        and the rest of the batch continues.
        """
        report = MergeReport(staged=len(self._pending), skipped_confirmed=self.skipped_confirmed)

        for record_id in sorted(self._pending):
            fields = self._pending[record_id]
            try:
                current = store.get_annotation(record_id) or {}
                if current.get("confirmed"):
                    report.skipped_confirmed += 1
                    continue
                partial = merge_fields(current, fields, self.now, record_id in self._supersede)
                if not partial:
                    report.unchanged += 1
                    continue
                store.merge_annotation(record_id, partial)
                report.written += 1
            except MergeConflictError as e:
                logger.warning(str(e))
                report.conflicts.append(str(e))

        logger.info(
            f"Merge flush: {report.written} written, {report.unchanged} unchanged, "
            f"{report.skipped_confirmed} confirmed, {len(report.conflicts)} conflicts"
        )
        return report
