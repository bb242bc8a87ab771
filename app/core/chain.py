# app/core/chain.py

"""
Chain resolution: bank deposit -> disbursement -> gateway transaction ->
invoice -> category.

A bank entry is fully resolved when every gateway transaction behind its
disbursement is matched to a categorized invoice, partially resolved when
the disbursement link exists but some invoice links are missing, and
unresolved when it has no link at all. A bank entry matched directly to an
invoice is a one-hop chain.
"""

from collections import defaultdict
import logging

from app.models import Transaction, ChainResolution, ChainCoverage
from app.core.indexer import InvoiceIndexes
from app.core.normalizers import normalize_amount, pnl_line

logger = logging.getLogger(__name__)


class ChainResolver:
    """Walks links recorded in the working annotations."""

    def __init__(
        self,
        gateway_records: dict[str, Transaction],
        annotations: dict[str, dict],
        invoices: InvoiceIndexes,
    ):
        self.gateway_records = gateway_records
        self.annotations = annotations
        self.invoices = invoices

    def _gateway_category(self, gateway_id: str) -> tuple[str | None, str | None]:
        """(category, invoice number) of a gateway record's specific invoice match."""
        annotation = self.annotations.get(gateway_id, {})
        if annotation.get("outcome") != "matched_specific":
            return None, None
        return annotation.get("matched_financial_account_code"), annotation.get("matched_invoice_number")

    def _weight(self, gateway_id: str) -> float:
        record = self.gateway_records.get(gateway_id)
        if record is None:
            return 0.0
        settled = normalize_amount(record.metadata.get("settlement_amount"))
        return abs(settled if settled is not None else (record.amount or 0.0))

    def resolve(self, bank: Transaction) -> ChainResolution:
        annotation = self.annotations.get(bank.id, {})
        linked = list(annotation.get("linked_transaction_ids") or [])

        if linked:
            categories: dict[str, float] = defaultdict(float)
            resolved, missing, numbers = [], [], []
            for gateway_id in linked:
                category, number = self._gateway_category(gateway_id)
                if category:
                    resolved.append(gateway_id)
                    categories[category] += self._weight(gateway_id)
                    if number:
                        numbers.append(number)
                else:
                    missing.append(gateway_id)
            return ChainResolution(
                bank_id=bank.id,
                state="fully_resolved" if not missing else "partially_resolved",
                gateway_ids=linked,
                resolved_gateway_ids=resolved,
                missing_gateway_ids=missing,
                invoice_numbers=numbers,
                categories={k: round(v, 2) for k, v in sorted(categories.items())},
                dominant_category=_dominant(categories),
            )

        target = self.invoices.get(annotation.get("matched_target_id"))
        if target is not None and annotation.get("outcome") == "matched_specific":
            category = annotation.get("matched_financial_account_code") or target.category
            return ChainResolution(
                bank_id=bank.id,
                state="fully_resolved" if category else "partially_resolved",
                invoice_numbers=[target.invoice_number] if target.invoice_number else [],
                categories={category: abs(bank.amount or 0.0)} if category else {},
                dominant_category=category,
            )

        return ChainResolution(bank_id=bank.id, state="unresolved")

    def resolve_all(self, banks: list[Transaction]) -> tuple[dict[str, ChainResolution], ChainCoverage]:
        resolutions = {}
        coverage = ChainCoverage()
        for bank in sorted(banks, key=lambda t: t.id):
            resolution = self.resolve(bank)
            resolutions[bank.id] = resolution
            if resolution.state == "fully_resolved":
                coverage.fully_resolved += 1
            elif resolution.state == "partially_resolved":
                coverage.partially_resolved += 1
            else:
                coverage.unresolved += 1

        logger.info(
            f"Chain coverage: {coverage.fully_resolved} fully, {coverage.partially_resolved} partially, "
            f"{coverage.unresolved} unresolved ({coverage.resolved_percent}% fully resolved)"
        )
        return resolutions, coverage


def _dominant(categories: dict[str, float]) -> str | None:
    """Category carrying the most money; ties go to the smallest code."""
    if not categories:
        return None
    top = max(categories.values())
    return min(code for code, amount in categories.items() if amount == top)


def chain_fields(resolution: ChainResolution, link_confidence: float | None) -> dict:
    """
    Annotation fields for a bank entry after chain resolution.

    Only disbursement-linked entries are classified here; a direct invoice
    match already carries its own classification.
    """
    fields = {
        "chain_state": resolution.state,
        "chain_categories": resolution.categories,
    }
    if not resolution.gateway_ids or not resolution.dominant_category:
        return fields

    base = link_confidence if link_confidence is not None else 1.0
    if resolution.state == "fully_resolved":
        strategy_id, confidence = "chain-resolution", base
    else:
        strategy_id, confidence = "chain-partial", base * resolution.resolved_share

    fields.update({
        "matched_financial_account_code": resolution.dominant_category,
        "pnl_line": pnl_line(resolution.dominant_category),
        "strategy_id": strategy_id,
        "confidence": round(confidence, 4),
        "outcome": "matched_aggregate",
    })
    if len(resolution.invoice_numbers) == 1 and resolution.state == "fully_resolved":
        fields["matched_invoice_number"] = resolution.invoice_numbers[0]
    return fields
