# app/core/classification.py

"""
P&L classification fallback.

Runs over every inflow the matching phases could not tie to a specific
invoice or a categorized disbursement, and always ends in a category:

A. internal transfer between own accounts
B. intercompany transfer
C. customer name extracted from the description -> that customer's usual category
D. the gateway's most frequent category
E. catch-all "other income"
"""

from collections import Counter, defaultdict
import logging
import re

from app.config import Settings
from app.models import Transaction
from app.core.indexer import InvoiceIndexes, mode_of
from app.core.normalizers import (
    strip_accents,
    normalize_customer_name,
    pnl_line,
)
from app.core.disbursement import canonical_gateway, gateway_hint, is_amex

logger = logging.getLogger(__name__)

FALLBACK_PHASES = [
    "internal-transfer",
    "intercompany",
    "name-extraction",
    "gateway-dominant",
    "catch-all",
]

# Ordered; the first pattern yielding a usable name wins
NAME_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("transfer-prefix", re.compile(r"trans(?:f(?:er(?:encia)?)?|\.?\s*inm)?\s*/\s*(.+)")),
    ("code-prefix", re.compile(r"^(?:mxiso|spei|sepa ct|sct)\s+(.+)")),
    ("orig-co-name", re.compile(r"orig co name:\s*(.+?)(?:\s+orig id|\s+sec|\s*$)")),
    ("remittance", re.compile(r"(?:remittance\s+of|remesa\s+(?:de\s+)?)\s*(.+)")),
    ("ach-wire", re.compile(r"(?:ach|wire|chips)\s+(?:credit|deposit|transfer)\s+from\s+(.+)")),
    ("credit-from", re.compile(r"(?:credit\s+from|abono\s+(?:de\s+)?)\s*(.+)")),
]


def needs_fallback(tx: Transaction, annotation: dict, stale: bool = False) -> bool:
    """An inflow without a specific or disbursement-derived classification."""
    if not tx.is_inflow or tx.is_payout or annotation.get("confirmed"):
        return False
    if stale:
        return True
    return annotation.get("outcome") not in ("matched_specific", "matched_aggregate")


class PnlClassifier:
    """Phases A to E, strictly in order; the first phase that applies wins."""

    def __init__(self, settings: Settings, invoices: InvoiceIndexes):
        self.settings = settings
        self.invoices = invoices
        self.internal_pattern = re.compile(settings.internal_transfer_pattern, re.IGNORECASE)
        self.intercompany_suffix = re.compile(settings.intercompany_suffix_pattern, re.IGNORECASE)
        self.intercompany_markers = [
            re.compile(rf"\b{re.escape(marker.lower())}\b") for marker in settings.intercompany_entity_markers
        ]
        self.gateway_names = re.compile(settings.gateway_name_pattern, re.IGNORECASE)
        self.gateway_categories: dict[str, str] = {}

    # ============================================
    # Per-run statistics
    # ============================================

    def learn_gateway_categories(
        self,
        gateway_records: list[Transaction],
        annotations: dict[str, dict],
    ) -> dict[str, str]:
        """Most frequent category per gateway among invoice-matched gateway records."""
        counts: dict[str, Counter] = defaultdict(Counter)
        for tx in gateway_records:
            annotation = annotations.get(tx.id, {})
            code = annotation.get("matched_financial_account_code")
            if annotation.get("outcome") != "matched_specific" or not code:
                continue
            key = _gateway_key(tx)
            if key:
                counts[key][code] += 1

        self.gateway_categories = {key: mode_of(c) for key, c in sorted(counts.items())}
        logger.info(f"Gateway dominant categories: {self.gateway_categories}")
        return self.gateway_categories

    # ============================================
    # Phases
    # ============================================

    def _text(self, tx: Transaction) -> str:
        return strip_accents((tx.description or "").lower()).strip()

    def is_internal_transfer(self, tx: Transaction) -> bool:
        text = self._text(tx)
        return bool(text) and bool(self.internal_pattern.search(text))

    def is_intercompany(self, tx: Transaction) -> bool:
        text = self._text(tx)
        if not any(marker.search(text) for marker in self.intercompany_markers):
            return False
        return bool(self.intercompany_suffix.search(text))

    def extract_name(self, description: str | None) -> str | None:
        """Counterparty name quoted in a bank description, if any."""
        text = strip_accents((description or "").lower()).strip()
        for _, pattern in NAME_PATTERNS:
            match = pattern.search(text)
            if not match:
                continue
            candidate = match.group(1).strip(" ,.;:-/")
            if len(candidate) >= 3 and not self.gateway_names.search(candidate):
                return candidate
        return None

    def lookup_customer_category(self, name: str) -> tuple[str, str] | None:
        """
        (indexed customer name, category) for an extracted name.

        Exact normalized name first, then the closest substring match by
        length ratio, then token-overlap fuzzy lookup.
        """
        key = normalize_customer_name(name)
        if not key:
            return None

        candidates: list[str] = []
        if self.invoices.lookup_name(name):
            candidates.append(key)

        substrings = self.invoices.substring_lookup(name)
        substrings.sort(key=lambda c: (-min(len(c), len(key)) / max(len(c), len(key)), c))
        candidates.extend(c for c in substrings if c not in candidates)

        fuzzy = self.invoices.fuzzy_lookup(name, self.settings.fuzzy_name_threshold)
        candidates.extend(c for c, _ in fuzzy if c not in candidates)

        for candidate in candidates:
            category = self.invoices.dominant_category(candidate)
            if category:
                return candidate, category
        return None

    def gateway_category(self, tx: Transaction, annotation: dict) -> tuple[str, str] | None:
        key = _gateway_key(tx) if tx.source_domain == "gateway" else gateway_hint(tx, annotation)
        if key and self.gateway_categories.get(key):
            return key, self.gateway_categories[key]
        return None

    def classify(self, tx: Transaction, annotation: dict | None = None) -> tuple[str, dict]:
        """Returns (strategy id, annotation fields) for one inflow."""
        annotation = annotation or {}
        s = self.settings

        if self.is_internal_transfer(tx):
            fields = _fields("internal-transfer", s.internal_category, s.confidence_internal_transfer)
            fields["reconciled"] = True
            return "internal-transfer", fields

        if self.is_intercompany(tx):
            return "intercompany", _fields("intercompany", s.intercompany_category, s.confidence_intercompany)

        name = self.extract_name(tx.description)
        if name:
            found = self.lookup_customer_category(name)
            if found:
                _, category = found
                fields = _fields("name-extraction", category, s.confidence_name_extraction)
                fields["extracted_customer_name"] = name
                return "name-extraction", fields

        found = self.gateway_category(tx, annotation)
        if found:
            _, category = found
            return "gateway-dominant", _fields("gateway-dominant", category, s.confidence_gateway_dominant)

        return "catch-all", _fields("catch-all", s.catch_all_category, s.confidence_catch_all, outcome="catch_all")

    def classify_all(
        self,
        records: list[Transaction],
        annotations: dict[str, dict],
    ) -> tuple[dict[str, dict], Counter]:
        results: dict[str, dict] = {}
        counts: Counter = Counter()
        for tx in sorted(records, key=lambda t: t.id):
            strategy_id, fields = self.classify(tx, annotations.get(tx.id, {}))
            results[tx.id] = fields
            counts[strategy_id] += 1

        logger.info(f"P&L fallback classified {len(results)} records {dict(sorted(counts.items()))}")
        return results, counts


def _gateway_key(tx: Transaction) -> str | None:
    if is_amex(tx):
        return "amex"
    return canonical_gateway(tx.gateway)


def _fields(strategy_id: str, category: str, confidence: float, outcome: str = "fallback_category") -> dict:
    return {
        "matched_target_id": None,
        "matched_invoice_number": None,
        "matched_financial_account_code": category,
        "pnl_line": pnl_line(category),
        "strategy_id": strategy_id,
        "confidence": confidence,
        "outcome": outcome,
    }
