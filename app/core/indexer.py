# app/core/indexer.py

"""
Lookup structures over the invoice/order domain.

Rebuilt from scratch each run and read-only afterwards, so matching
workers can share one instance without locking.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
import logging

from app.models import Transaction
from app.core.normalizers import (
    normalize_customer_name,
    normalize_email,
    compact_identifier,
    amount_bucket,
    tokenize,
)

logger = logging.getLogger(__name__)


@dataclass
class InvoiceIndexes:
    """Exact-id, name, name-token, email and amount lookups over invoices."""

    min_token_length: int = 3
    by_record_id: dict[str, Transaction] = field(default_factory=dict)
    by_identifier: dict[str, list[Transaction]] = field(default_factory=dict)
    by_invoice_number: dict[str, Transaction] = field(default_factory=dict)
    by_name: dict[str, list[Transaction]] = field(default_factory=dict)
    name_tokens: dict[str, set[str]] = field(default_factory=dict)
    by_email: dict[str, list[Transaction]] = field(default_factory=dict)
    by_amount: dict[int, list[Transaction]] = field(default_factory=dict)
    category_counts: dict[str, Counter] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.by_record_id)

    # ============================================
    # Exact lookups
    # ============================================

    def get(self, record_id: str | None) -> Transaction | None:
        if not record_id:
            return None
        return self.by_record_id.get(record_id)

    def lookup_identifier(self, value) -> list[Transaction]:
        """Invoices whose invoice or order number equals `value` (compact form)."""
        key = compact_identifier(value)
        if not key:
            return []
        return self.by_identifier.get(key, [])

    def lookup_invoice_number(self, value) -> Transaction | None:
        return self.by_invoice_number.get(compact_identifier(value))

    def lookup_email(self, email: str | None) -> list[Transaction]:
        key = normalize_email(email)
        return self.by_email.get(key, []) if key else []

    def lookup_name(self, name: str | None) -> list[Transaction]:
        key = normalize_customer_name(name)
        return self.by_name.get(key, []) if key else []

    def candidates_by_amount(self, amount: float, spread: int = 1) -> list[Transaction]:
        """Invoices whose rounded amount is within `spread` units of `amount`."""
        bucket = amount_bucket(amount)
        found: list[Transaction] = []
        for key in range(bucket - spread, bucket + spread + 1):
            found.extend(self.by_amount.get(key, []))
        return found

    # ============================================
    # Fuzzy lookups
    # ============================================

    def fuzzy_lookup(self, name: str | None, threshold: float = 0.5) -> list[tuple[str, float]]:
        """
        Token-overlap name lookup.

        Score = shared tokens / max(query tokens, candidate tokens).
        Returns (normalized name, score) pairs with score >= threshold,
        best first.
        """
        query = tokenize(normalize_customer_name(name), self.min_token_length)
        if not query:
            return []

        shared: Counter = Counter()
        for token in query:
            for candidate in self.name_tokens.get(token, ()):
                shared[candidate] += 1

        results = []
        for candidate, count in shared.items():
            candidate_tokens = tokenize(candidate, self.min_token_length)
            score = count / max(len(query), len(candidate_tokens))
            if count >= 1 and score >= threshold:
                results.append((candidate, round(score, 4)))

        results.sort(key=lambda r: (-r[1], r[0]))
        return results

    def substring_lookup(self, name: str | None) -> list[str]:
        """Indexed names containing, or contained in, the query name."""
        key = normalize_customer_name(name)
        if len(key) < self.min_token_length:
            return []
        return sorted(
            candidate for candidate in self.by_name
            if len(candidate) >= self.min_token_length and (key in candidate or candidate in key)
        )

    # ============================================
    # Category statistics
    # ============================================

    def dominant_category(self, normalized_name: str) -> str | None:
        """Most frequent category code among a customer's invoices."""
        counts = self.category_counts.get(normalized_name)
        return mode_of(counts) if counts else None


def mode_of(counts: Counter) -> str | None:
    """Most common key; ties resolved by the smallest key."""
    if not counts:
        return None
    best = max(counts.values())
    return min(key for key, value in counts.items() if value == best)


def build_indexes(invoices: list[Transaction], min_token_length: int = 3) -> InvoiceIndexes:
    """Build every invoice lookup in one pass."""
    indexes = InvoiceIndexes(min_token_length=min_token_length)
    by_identifier: dict[str, list[Transaction]] = defaultdict(list)
    by_name: dict[str, list[Transaction]] = defaultdict(list)
    name_tokens: dict[str, set[str]] = defaultdict(set)
    by_email: dict[str, list[Transaction]] = defaultdict(list)
    by_amount: dict[int, list[Transaction]] = defaultdict(list)
    category_counts: dict[str, Counter] = defaultdict(Counter)

    # Sorted so every list inside the indexes has a stable order
    for invoice in sorted(invoices, key=lambda t: t.id):
        indexes.by_record_id[invoice.id] = invoice

        for identifier in (invoice.invoice_number, invoice.metadata.get("order_number")):
            key = compact_identifier(identifier)
            if key and invoice not in by_identifier[key]:
                by_identifier[key].append(invoice)

        number_key = compact_identifier(invoice.invoice_number)
        if number_key and number_key not in indexes.by_invoice_number:
            indexes.by_invoice_number[number_key] = invoice

        names = {
            normalize_customer_name(invoice.customer_name),
            normalize_customer_name(invoice.metadata.get("company_name")),
        }
        for name in names - {""}:
            by_name[name].append(invoice)
            for token in tokenize(name, min_token_length):
                name_tokens[token].add(name)
            if invoice.category and not invoice.is_payable:
                category_counts[name][invoice.category] += 1

        email = normalize_email(invoice.customer_email)
        if email:
            by_email[email].append(invoice)

        if invoice.amount is not None:
            by_amount[amount_bucket(invoice.amount)].append(invoice)

    indexes.by_identifier = dict(by_identifier)
    indexes.by_name = dict(by_name)
    indexes.name_tokens = dict(name_tokens)
    indexes.by_email = dict(by_email)
    indexes.by_amount = dict(by_amount)
    indexes.category_counts = dict(category_counts)

    logger.info(
        f"Indexed {len(indexes)} invoices: {len(indexes.by_identifier)} identifiers, "
        f"{len(indexes.by_name)} names, {len(indexes.by_email)} emails"
    )
    return indexes
