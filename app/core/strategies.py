# app/core/strategies.py

"""
Receivable matching strategies (gateway/bank record -> invoice).

Each strategy is independent: given one record, the shared read-only
indexes and the ids already claimed this pass, it either proposes a single
best candidate or returns None. The cascade in app.core.matching tries
them in order and the first hit wins.
"""

from collections.abc import Container
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from app.config import Settings
from app.models import Transaction, MatchCandidate
from app.core.indexer import InvoiceIndexes
from app.core.normalizers import (
    compact_identifier,
    identifier_segments,
    normalize_email,
    extract_customer_info,
)
from app.core.confidence import (
    amount_percent_diff,
    amounts_equal,
    within_percent,
    day_distance,
    tie_break_score,
    scaled_confidence,
)


@dataclass
class MatchContext:
    """Everything a strategy may read. Built once per run, never mutated by strategies."""

    settings: Settings
    invoices: InvoiceIndexes
    annotations: dict[str, dict] = field(default_factory=dict)
    aggregates: Optional[object] = None  # AggregateIndex, set for disbursement cascades
    debits: Optional[object] = None  # DebitIndex, set for payable cascades
    payables: Optional[object] = None  # PayableIndex, set for multi-invoice settlement

    def annotation(self, record_id: str) -> dict:
        return self.annotations.get(record_id, {})


class MatchStrategy:
    """Base class for one step of a matching cascade."""

    strategy_id: str = "base"

    def try_match(
        self,
        tx: Transaction,
        ctx: MatchContext,
        exclusions: Container[str],
    ) -> MatchCandidate | None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.strategy_id}>"


# ============================================
# Helpers shared by receivable strategies
# ============================================

def _invoice_candidate(
    tx: Transaction,
    invoice: Transaction,
    strategy_id: str,
    confidence: float,
    score: float = 0.0,
) -> MatchCandidate:
    return MatchCandidate(
        source_id=tx.id,
        target_ids=[invoice.id],
        strategy_id=strategy_id,
        confidence=confidence,
        outcome="matched_specific",
        invoice_number=invoice.invoice_number,
        category=invoice.category,
        score=score,
    )


def _rank(tx: Transaction, invoice: Transaction) -> float:
    """Combined tie-break score of one candidate invoice."""
    date_diff = day_distance(tx.transaction_date, invoice.transaction_date) \
        if tx.transaction_date and invoice.transaction_date else 0
    pct = amount_percent_diff(tx.amount, invoice.amount) \
        if tx.amount is not None and invoice.amount is not None else 0.0
    return tie_break_score(date_diff, pct)


def _best(tx: Transaction, invoices: list[Transaction]) -> tuple[Transaction, float] | None:
    if not invoices:
        return None
    ranked = sorted(((inv, _rank(tx, inv)) for inv in invoices), key=lambda r: (r[1], r[0].id))
    return ranked[0]


def _available(invoices, exclusions: Container[str]) -> list[Transaction]:
    return [inv for inv in invoices if inv.id not in exclusions and not inv.is_payable]


def _within_window(tx_date: date, invoice: Transaction, days: int) -> bool:
    if invoice.transaction_date is None:
        return False
    return day_distance(tx_date, invoice.transaction_date) <= days


def _customer_email(tx: Transaction) -> str:
    if tx.customer_email:
        return normalize_email(tx.customer_email)
    _, email = extract_customer_info(tx.metadata)
    return normalize_email(email)


def _customer_names(tx: Transaction, ctx: MatchContext) -> list[str]:
    """Names to try for a record, most reliable first."""
    names = []
    meta_name, _ = extract_customer_info(tx.metadata)
    for name in (tx.customer_name, meta_name, ctx.annotation(tx.id).get("extracted_customer_name")):
        if name and name not in names:
            names.append(name)
    return names


# ============================================
# 1. Exact external identifier
# ============================================

class ExactIdentifierStrategy(MatchStrategy):
    """Order id on the record equals, or contains, an invoice/order number."""

    strategy_id = "exact-identifier"

    def __init__(self, exact_confidence: float, containment_confidence: float):
        self.exact_confidence = exact_confidence
        self.containment_confidence = containment_confidence

    def try_match(self, tx, ctx, exclusions):
        order_id = tx.metadata.get("order_id") or tx.metadata.get("order_number")
        if not order_id:
            return None
        order_id = str(order_id)

        exact = _available(ctx.invoices.lookup_identifier(order_id), exclusions)
        best = _best(tx, exact)
        if best:
            return _invoice_candidate(tx, best[0], self.strategy_id, self.exact_confidence, best[1])

        # Containment: the order id carries the invoice number plus a suffix
        # ("12345678-2"), or a longer reference embeds it.
        keys = []
        if '-' in order_id:
            prefix = order_id.split('-', 1)[0]
            if len(prefix) > 8 or len(compact_identifier(prefix)) >= 4:
                keys.append(prefix)
        keys.extend(identifier_segments(order_id))

        found: list[Transaction] = []
        for key in keys:
            for invoice in _available(ctx.invoices.lookup_identifier(key), exclusions):
                if invoice not in found:
                    found.append(invoice)
        best = _best(tx, found)
        if best:
            return _invoice_candidate(tx, best[0], self.strategy_id, self.containment_confidence, best[1])
        return None


# ============================================
# 2. Previously established identifier, re-verified
# ============================================

class ReverifiedIdentifierStrategy(MatchStrategy):
    """
    An invoice number recorded earlier (on the annotation, or by ingestion
    in metadata) is looked up again in the current index.

    Guards against stale annotations whose target id no longer exists.
    """

    strategy_id = "reverified-identifier"

    def __init__(self, confidence: float):
        self.confidence = confidence

    def try_match(self, tx, ctx, exclusions):
        annotation = ctx.annotation(tx.id)
        for number in (annotation.get("matched_invoice_number"), tx.metadata.get("invoice_number")):
            if not number:
                continue
            invoice = ctx.invoices.lookup_invoice_number(number)
            if invoice and invoice.id not in exclusions and not invoice.is_payable:
                return _invoice_candidate(tx, invoice, self.strategy_id, self.confidence, _rank(tx, invoice))
        return None


# ============================================
# 3. Invoice number inside the description
# ============================================

class IdentifierInDescriptionStrategy(MatchStrategy):
    """An invoice number appears literally in the description, amount exact."""

    strategy_id = "identifier-in-description"

    def __init__(self, confidence: float, amount_tolerance: float):
        self.confidence = confidence
        self.amount_tolerance = amount_tolerance

    def try_match(self, tx, ctx, exclusions):
        if not tx.description:
            return None
        amount = tx.require_amount()

        found = []
        for segment in identifier_segments(tx.description):
            invoice = ctx.invoices.by_invoice_number.get(segment)
            if invoice is None or invoice.id in exclusions or invoice.is_payable or invoice.amount is None:
                continue
            if amounts_equal(amount, invoice.amount, self.amount_tolerance) and invoice not in found:
                found.append(invoice)

        best = _best(tx, found)
        if best:
            return _invoice_candidate(tx, best[0], self.strategy_id, self.confidence, best[1])
        return None


# ============================================
# 4. Contact email
# ============================================

class EmailStrategy(MatchStrategy):
    """Same customer email; optionally amount within a percentage."""

    def __init__(
        self,
        strategy_id: str,
        confidence: float,
        window_days: int,
        amount_percent: float | None,
    ):
        self.strategy_id = strategy_id
        self.confidence = confidence
        self.window_days = window_days
        self.amount_percent = amount_percent

    def try_match(self, tx, ctx, exclusions):
        email = _customer_email(tx)
        if not email:
            return None
        tx_date = tx.require_date()
        amount = tx.require_amount() if self.amount_percent is not None else None

        found = []
        for invoice in _available(ctx.invoices.lookup_email(email), exclusions):
            if not _within_window(tx_date, invoice, self.window_days):
                continue
            if amount is not None:
                if invoice.amount is None or not within_percent(amount, invoice.amount, self.amount_percent):
                    continue
            found.append(invoice)

        best = _best(tx, found)
        if best:
            return _invoice_candidate(tx, best[0], self.strategy_id, self.confidence, best[1])
        return None


# ============================================
# 5. Fuzzy customer name
# ============================================

class FuzzyNameStrategy(MatchStrategy):
    """
    Token-overlap name match within a date window.

    Confidence is the ceiling scaled by the name score. The strict variant
    also requires the amount within a percentage; the loose one does not.
    """

    def __init__(
        self,
        strategy_id: str,
        ceiling: float,
        window_days: int,
        amount_percent: float | None,
        threshold: float,
    ):
        self.strategy_id = strategy_id
        self.ceiling = ceiling
        self.window_days = window_days
        self.amount_percent = amount_percent
        self.threshold = threshold

    def try_match(self, tx, ctx, exclusions):
        names = _customer_names(tx, ctx)
        if not names:
            return None
        tx_date = tx.require_date()
        amount = tx.require_amount() if self.amount_percent is not None else None

        # (tie-break, -similarity, invoice id, invoice, similarity)
        ranked = []
        seen: set[str] = set()
        for name in names:
            for candidate_name, similarity in ctx.invoices.fuzzy_lookup(name, self.threshold):
                for invoice in _available(ctx.invoices.by_name.get(candidate_name, []), exclusions):
                    if invoice.id in seen:
                        continue
                    if not _within_window(tx_date, invoice, self.window_days):
                        continue
                    if amount is not None:
                        if invoice.amount is None or not within_percent(amount, invoice.amount, self.amount_percent):
                            continue
                    seen.add(invoice.id)
                    ranked.append((_rank(tx, invoice), -similarity, invoice.id, invoice, similarity))

        if not ranked:
            return None
        ranked.sort(key=lambda r: r[:3])
        score, _, _, invoice, similarity = ranked[0]
        return _invoice_candidate(
            tx, invoice, self.strategy_id, scaled_confidence(self.ceiling, similarity), score,
        )


# ============================================
# 6. Amount and narrow date window only
# ============================================

class AmountDateStrategy(MatchStrategy):
    """No identity signal: exact amount inside a narrow window. Last resort."""

    strategy_id = "amount-date"

    def __init__(self, confidence: float, window_days: int, amount_tolerance: float):
        self.confidence = confidence
        self.window_days = window_days
        self.amount_tolerance = amount_tolerance

    def try_match(self, tx, ctx, exclusions):
        amount = tx.require_amount()
        tx_date = tx.require_date()

        found = [
            invoice for invoice in _available(ctx.invoices.candidates_by_amount(amount), exclusions)
            if invoice.amount is not None
            and amounts_equal(amount, invoice.amount, self.amount_tolerance)
            and _within_window(tx_date, invoice, self.window_days)
        ]
        best = _best(tx, found)
        if best:
            return _invoice_candidate(tx, best[0], self.strategy_id, self.confidence, best[1])
        return None


# ============================================
# Cascade configurations
# ============================================

def receivable_strategies(settings: Settings) -> list[MatchStrategy]:
    """Full gateway -> invoice cascade, highest confidence first."""
    return [
        ExactIdentifierStrategy(
            settings.confidence_exact_identifier,
            settings.confidence_identifier_containment,
        ),
        ReverifiedIdentifierStrategy(settings.confidence_reverified_identifier),
        IdentifierInDescriptionStrategy(
            settings.confidence_identifier_in_description,
            settings.exact_amount_tolerance,
        ),
        EmailStrategy(
            "email-amount-date",
            settings.confidence_email_amount_date,
            settings.identity_date_window_days,
            settings.amount_tolerance_percent,
        ),
        EmailStrategy(
            "email-date",
            settings.confidence_email_date,
            settings.identity_date_window_days,
            None,
        ),
        FuzzyNameStrategy(
            "fuzzy-name-amount-date",
            settings.confidence_fuzzy_name_ceiling,
            settings.identity_date_window_days,
            settings.amount_tolerance_percent,
            settings.fuzzy_name_threshold,
        ),
        FuzzyNameStrategy(
            "fuzzy-name-date",
            settings.confidence_fuzzy_name_loose_ceiling,
            settings.identity_date_window_days,
            None,
            settings.fuzzy_name_threshold,
        ),
        AmountDateStrategy(
            settings.confidence_amount_date,
            settings.narrow_date_window_days,
            settings.exact_amount_tolerance,
        ),
    ]


def bank_invoice_strategies(settings: Settings) -> list[MatchStrategy]:
    """
    Bank credit -> invoice, for direct transfers that never went through a
    gateway. Bank lines carry no order ids and rarely an email, so the
    identity strategies are the description and name based ones.
    """
    selected = {
        "reverified-identifier",
        "identifier-in-description",
        "email-amount-date",
        "fuzzy-name-amount-date",
        "amount-date",
    }
    return [s for s in receivable_strategies(settings) if s.strategy_id in selected]
