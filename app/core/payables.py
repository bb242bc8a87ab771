# app/core/payables.py

"""
Accounts-payable reconciliation: supplier invoices paid by bank debits.

Invoice-anchored: each unpaid payable invoice looks for the bank debit that
paid it. A final bank-anchored step lets one debit settle several invoices
from the same supplier (a set relation, every invoice still claimed once).
"""

from collections import defaultdict
from datetime import date, timedelta
from itertools import combinations
from app.config import Settings
from app.models import Transaction, MatchCandidate
from app.core.normalizers import (
    normalize_string,
    normalize_customer_name,
    bigram_similarity,
    identifier_segments,
    compact_identifier,
)
from app.core.confidence import (
    amount_percent_diff,
    amounts_equal,
    within_percent,
    day_distance,
    tie_break_score,
)
from app.core.strategies import MatchStrategy

# Cap on how many same-supplier invoices are combined when searching subsets
MULTI_INVOICE_CANDIDATES = 12


def provider_name(invoice: Transaction) -> str:
    return str(invoice.metadata.get("provider_name") or invoice.customer_name or "")


def supplier_from_description(description: str | None) -> str:
    """Bank debits usually read "<rail>/<SUPPLIER NAME>"; take what follows the slash."""
    if not description:
        return ""
    if '/' in description:
        return description.split('/', 1)[1].strip()
    return description.strip()


def provider_similarity(invoice: Transaction, debit: Transaction) -> float:
    """How well the invoice's supplier matches the debit's counterparty."""
    provider = normalize_customer_name(provider_name(invoice))
    if not provider:
        return 0.0
    description = normalize_string(debit.description)
    if len(provider) >= 4 and provider in description:
        return 1.0
    candidates = [supplier_from_description(debit.description), debit.customer_name]
    return max((bigram_similarity(provider, normalize_customer_name(c)) for c in candidates if c), default=0.0)


# ============================================
# Indexes
# ============================================

class DebitIndex:
    """Bank debits by booking date."""

    def __init__(self, debits: list[Transaction]):
        self.by_id: dict[str, Transaction] = {}
        self.by_date: dict[date, list[Transaction]] = defaultdict(list)
        for debit in sorted(debits, key=lambda t: t.id):
            self.by_id[debit.id] = debit
            if debit.transaction_date is not None:
                self.by_date[debit.transaction_date].append(debit)

    def __len__(self) -> int:
        return len(self.by_id)

    def around(self, day: date, days: int) -> list[Transaction]:
        found = []
        for offset in range(-days, days + 1):
            found.extend(self.by_date.get(day + timedelta(days=offset), []))
        return found


class PayableIndex:
    """Unpaid payable invoices by date, for the multi-invoice step."""

    def __init__(self, invoices: list[Transaction]):
        self.by_date: dict[date, list[Transaction]] = defaultdict(list)
        for invoice in sorted(invoices, key=lambda t: t.id):
            if invoice.transaction_date is not None and invoice.amount is not None:
                self.by_date[invoice.transaction_date].append(invoice)

    def around(self, day: date, days: int) -> list[Transaction]:
        found = []
        for offset in range(-days, days + 1):
            found.extend(self.by_date.get(day + timedelta(days=offset), []))
        return found


# ============================================
# Invoice -> debit strategies
# ============================================

def _debit_candidate(invoice, debit, strategy_id, confidence, score) -> MatchCandidate:
    return MatchCandidate(
        source_id=invoice.id,
        target_ids=[debit.id],
        strategy_id=strategy_id,
        confidence=confidence,
        outcome="matched_specific",
        invoice_number=invoice.invoice_number,
        category=invoice.category,
        score=score,
    )


class PayableStrategy(MatchStrategy):
    """Debits inside a window whose amount fits, ranked by tie-break score."""

    def __init__(
        self,
        strategy_id: str,
        confidence: float,
        window_days: int,
        amount_percent: float | None = None,
        min_similarity: float | None = None,
        require_invoice_number: bool = False,
    ):
        self.strategy_id = strategy_id
        self.confidence = confidence
        self.window_days = window_days
        self.amount_percent = amount_percent
        self.min_similarity = min_similarity
        self.require_invoice_number = require_invoice_number

    def try_match(self, tx, ctx, exclusions):
        amount = abs(tx.require_amount())
        invoice_date = tx.require_date()
        number = compact_identifier(tx.invoice_number)
        if self.require_invoice_number and len(number) < 4:
            return None

        ranked = []
        for debit in ctx.debits.around(invoice_date, self.window_days):
            if debit.id in exclusions or debit.amount is None or debit.amount >= 0:
                continue
            if self.amount_percent is None:
                if not amounts_equal(amount, debit.amount):
                    continue
            elif not within_percent(debit.amount, amount, self.amount_percent):
                continue

            similarity = 0.0
            if self.min_similarity is not None:
                similarity = provider_similarity(tx, debit)
                if similarity < self.min_similarity:
                    continue
            if self.require_invoice_number and number not in identifier_segments(debit.description):
                continue

            score = tie_break_score(
                day_distance(invoice_date, debit.transaction_date),
                amount_percent_diff(debit.amount, amount),
            )
            ranked.append((score, -similarity, debit.id, debit))

        if not ranked:
            return None
        ranked.sort(key=lambda r: r[:3])
        score, _, _, debit = ranked[0]
        return _debit_candidate(tx, debit, self.strategy_id, self.confidence, score)


# ============================================
# Debit -> several invoices
# ============================================

class MultiInvoiceSettlementStrategy(MatchStrategy):
    """
    One bank debit paying several invoices of the same supplier.

    Searches subsets of the closest candidate invoices, smallest subset
    first, for a sum equal to the debit amount.
    """

    strategy_id = "ap-multi-invoice-sum"

    def __init__(self, confidence: float, window_days: int, max_invoices: int, min_similarity: float):
        self.confidence = confidence
        self.window_days = window_days
        self.max_invoices = max_invoices
        self.min_similarity = min_similarity

    def try_match(self, tx, ctx, exclusions):
        amount = tx.require_amount()
        if amount >= 0:
            return None
        amount = abs(amount)
        debit_date = tx.require_date()

        by_provider: dict[str, list[Transaction]] = defaultdict(list)
        for invoice in ctx.payables.around(debit_date, self.window_days):
            if invoice.id in exclusions or abs(invoice.amount) > amount + 0.01:
                continue
            if provider_similarity(invoice, tx) < self.min_similarity:
                continue
            by_provider[normalize_customer_name(provider_name(invoice))].append(invoice)

        best = None
        for provider, invoices in sorted(by_provider.items()):
            if len(invoices) < 2:
                continue
            invoices.sort(key=lambda i: (day_distance(debit_date, i.transaction_date), i.id))
            pool = invoices[:MULTI_INVOICE_CANDIDATES]
            found = _subset_matching(pool, amount, self.max_invoices, debit_date)
            if found and (best is None or found[0] < best[0]):
                best = found

        if best is None:
            return None
        score, chosen = best
        chosen = sorted(chosen, key=lambda i: i.id)
        return MatchCandidate(
            source_id=tx.id,
            target_ids=[i.id for i in chosen],
            strategy_id=self.strategy_id,
            confidence=self.confidence,
            outcome="matched_specific",
            score=score,
            fields={
                "linked_invoice_ids": [i.id for i in chosen],
                "linked_invoice_numbers": [i.invoice_number for i in chosen if i.invoice_number],
                "linked_invoice_total": round(sum(abs(i.amount) for i in chosen), 2),
            },
        )


def _subset_matching(
    pool: list[Transaction],
    amount: float,
    max_size: int,
    debit_date: date,
) -> tuple[float, list[Transaction]] | None:
    """Smallest subset (then closest in time) whose total equals `amount`."""
    for size in range(2, min(max_size, len(pool)) + 1):
        hits = []
        for combo in combinations(pool, size):
            if amounts_equal(sum(abs(i.amount) for i in combo), amount):
                score = float(sum(day_distance(debit_date, i.transaction_date) for i in combo))
                hits.append((score, sorted(i.id for i in combo), list(combo)))
        if hits:
            hits.sort(key=lambda h: (h[0], h[1]))
            return hits[0][0], hits[0][2]
    return None


# ============================================
# Cascade configurations
# ============================================

def payable_strategies(settings: Settings) -> list[MatchStrategy]:
    """Invoice -> debit, highest confidence first."""
    return [
        PayableStrategy(
            "ap-provider-exact-3d", 0.95, 3,
            min_similarity=settings.ap_provider_similarity_strict,
        ),
        PayableStrategy("ap-invoice-number", 0.90, 30, require_invoice_number=True),
        PayableStrategy(
            "ap-provider-exact-5d", 0.85, 5,
            min_similarity=settings.ap_provider_similarity_relaxed,
        ),
        PayableStrategy(
            "ap-provider-pct-7d", 0.70, 7,
            amount_percent=settings.ap_percent_tolerance,
            min_similarity=settings.ap_provider_similarity_relaxed,
        ),
        PayableStrategy("ap-amount-date", 0.55, 3),
    ]


def multi_invoice_strategies(settings: Settings) -> list[MatchStrategy]:
    return [
        MultiInvoiceSettlementStrategy(
            0.80,
            settings.ap_multi_invoice_window_days,
            settings.ap_multi_invoice_max,
            settings.ap_provider_similarity_relaxed,
        ),
    ]
