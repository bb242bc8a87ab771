# tests/test_matching.py

"""
Tests for the core matching engine.
"""

import pytest
from datetime import date, timedelta

from app.config import Settings
from app.models import Transaction
from app.core.indexer import build_indexes
from app.core.strategies import (
    MatchContext,
    receivable_strategies,
    bank_invoice_strategies,
)
from app.core.matching import (
    ExclusionSet,
    CascadeConfig,
    MatchingCascade,
)
from app.core.confidence import (
    amount_percent_diff,
    business_day_distance,
    tie_break_score,
    window_confidence,
)


# ============================================
# Test Data
# ============================================

D = date(2025, 3, 10)


def make_gateway_txn(
    id: str,
    amount: float,
    txn_date: date = D,
    customer_name: str = None,
    email: str = None,
    order_id: str = None,
    **metadata,
) -> Transaction:
    if order_id:
        metadata["order_id"] = order_id
    return Transaction(
        id=id,
        source_domain="gateway",
        source="braintree",
        transaction_date=txn_date,
        amount=amount,
        currency="EUR",
        customer_name=customer_name,
        customer_email=email,
        metadata=metadata,
    )


def make_bank_txn(id: str, amount: float, description: str, txn_date: date = D) -> Transaction:
    return Transaction(
        id=id,
        source_domain="bank",
        source="bankinter-eur",
        transaction_date=txn_date,
        amount=amount,
        currency="EUR",
        description=description,
    )


def make_invoice(
    id: str,
    number: str,
    amount: float,
    txn_date: date = D,
    customer_name: str = None,
    email: str = None,
    category: str = "101.1",
) -> Transaction:
    return Transaction(
        id=id,
        source_domain="invoice",
        source="holded",
        transaction_date=txn_date,
        amount=amount,
        customer_name=customer_name,
        customer_email=email,
        metadata={"invoice_number": number, "financial_account_code": category},
    )


def make_context(invoices: list[Transaction], settings: Settings = None, annotations: dict = None) -> MatchContext:
    settings = settings or Settings()
    return MatchContext(
        settings=settings,
        invoices=build_indexes(invoices, settings.min_token_length),
        annotations=annotations or {},
    )


def run_cascade(records, ctx, strategies=None, workers=1, exclusions=None):
    config = CascadeConfig(
        name="test",
        strategies=strategies or receivable_strategies(ctx.settings),
        workers=workers,
    )
    return MatchingCascade(config).run(records, ctx, exclusions or ExclusionSet())


# ============================================
# Confidence helpers
# ============================================

class TestConfidenceHelpers:

    def test_amount_percent_diff(self):
        assert amount_percent_diff(103, 100) == pytest.approx(0.03)
        assert amount_percent_diff(-100, 100) == 0.0
        assert amount_percent_diff(5, 0) == 1.0

    def test_tie_break_score(self):
        """One day apart outranks a 2% amount difference."""
        assert tie_break_score(1, 0.0) < tie_break_score(0, 0.02)

    def test_business_days_skip_weekends(self):
        friday = date(2025, 3, 7)
        monday = date(2025, 3, 10)
        assert business_day_distance(friday, monday) == 1
        assert business_day_distance(monday, friday) == 1
        assert business_day_distance(monday, monday) == 0

    def test_window_confidence_floor(self):
        assert window_confidence(0.95, 2, 0.85) == 0.91
        assert window_confidence(0.95, 10, 0.85) == 0.85


# ============================================
# Strategy order
# ============================================

class TestStrategyOrder:

    def test_receivable_order(self):
        ids = [s.strategy_id for s in receivable_strategies(Settings())]
        assert ids == [
            "exact-identifier",
            "reverified-identifier",
            "identifier-in-description",
            "email-amount-date",
            "email-date",
            "fuzzy-name-amount-date",
            "fuzzy-name-date",
            "amount-date",
        ]

    def test_bank_invoice_subset_keeps_order(self):
        ids = [s.strategy_id for s in bank_invoice_strategies(Settings())]
        assert ids == [
            "reverified-identifier",
            "identifier-in-description",
            "email-amount-date",
            "fuzzy-name-amount-date",
            "amount-date",
        ]


# ============================================
# Individual strategies through the cascade
# ============================================

class TestStrategies:

    def test_exact_identifier(self):
        """Order id equal to the invoice number."""
        ctx = make_context([make_invoice("i1", "INV-1001", 100.0)])
        result = run_cascade([make_gateway_txn("g1", 100.0, order_id="inv-1001")], ctx)

        match = result.matches["g1"]
        assert match.strategy_id == "exact-identifier"
        assert match.confidence == 0.98
        assert match.target_ids == ["i1"]
        assert match.category == "101.1"

    def test_identifier_containment(self):
        """Order id with an installment suffix still finds the invoice."""
        ctx = make_context([make_invoice("i1", "12345678", 50.0)])
        result = run_cascade([make_gateway_txn("g1", 50.0, order_id="12345678-2")], ctx)

        match = result.matches["g1"]
        assert match.strategy_id == "exact-identifier"
        assert match.confidence == 0.95

    def test_reverified_identifier(self):
        ctx = make_context([make_invoice("i1", "F-77", 10.0)])
        result = run_cascade([make_gateway_txn("g1", 12.0, invoice_number="F77")], ctx)

        assert result.matches["g1"].strategy_id == "reverified-identifier"

    def test_reverified_identifier_from_annotation(self):
        """A number recorded by an earlier run is looked up again."""
        ctx = make_context(
            [make_invoice("i-new", "F-77", 10.0)],
            annotations={"g1": {"matched_invoice_number": "F-77", "matched_target_id": "i-old"}},
        )
        result = run_cascade([make_gateway_txn("g1", 12.0)], ctx)

        assert result.matches["g1"].target_ids == ["i-new"]

    def test_identifier_in_description(self):
        ctx = make_context([make_invoice("i1", "INV-2002", 300.0)])
        records = [make_bank_txn("b1", 300.0, "Pago factura INV-2002")]
        result = run_cascade(records, ctx, bank_invoice_strategies(ctx.settings))

        match = result.matches["b1"]
        assert match.strategy_id == "identifier-in-description"
        assert match.confidence == 0.90

    def test_identifier_in_description_requires_amount(self):
        ctx = make_context([make_invoice("i1", "INV-2002", 300.0, txn_date=D - timedelta(days=40))])
        records = [make_bank_txn("b1", 250.0, "Pago factura INV-2002")]
        result = run_cascade(records, ctx, bank_invoice_strategies(ctx.settings))

        assert result.matches == {}

    def test_email_amount_date(self):
        ctx = make_context([make_invoice("i1", "A-1", 100.0, email="jane@clinic.com")])
        result = run_cascade([make_gateway_txn("g1", 103.0, email="Jane+x@Clinic.com")], ctx)

        match = result.matches["g1"]
        assert match.strategy_id == "email-amount-date"
        assert match.confidence == 0.85

    def test_email_date_without_amount(self):
        ctx = make_context([make_invoice("i1", "A-1", 100.0, email="jane@clinic.com")])
        result = run_cascade([make_gateway_txn("g1", 150.0, email="jane@clinic.com")], ctx)

        assert result.matches["g1"].strategy_id == "email-date"

    def test_fuzzy_name_scales_confidence(self):
        ctx = make_context([make_invoice("i1", "A-1", 100.0, customer_name="Jane Doe Clinic")])
        result = run_cascade([make_gateway_txn("g1", 100.0, customer_name="Jane Doe")], ctx)

        match = result.matches["g1"]
        assert match.strategy_id == "fuzzy-name-amount-date"
        assert match.confidence == pytest.approx(0.85 * 2 / 3, abs=1e-3)

    def test_fuzzy_name_loose(self):
        ctx = make_context([make_invoice("i1", "A-1", 100.0, customer_name="Jane Doe Clinic")])
        result = run_cascade([make_gateway_txn("g1", 180.0, customer_name="Jane Doe Clinic")], ctx)

        match = result.matches["g1"]
        assert match.strategy_id == "fuzzy-name-date"
        assert match.confidence == 0.65

    def test_amount_date(self):
        ctx = make_context([make_invoice("i1", "A-1", 75.5, txn_date=D + timedelta(days=2))])
        result = run_cascade([make_gateway_txn("g1", 75.5)], ctx)

        match = result.matches["g1"]
        assert match.strategy_id == "amount-date"
        assert match.confidence == 0.60

    def test_amount_date_outside_window(self):
        ctx = make_context([make_invoice("i1", "A-1", 75.5, txn_date=D + timedelta(days=5))])
        result = run_cascade([make_gateway_txn("g1", 75.5)], ctx)

        assert result.matches == {}
        assert [tx.id for tx in result.unresolved] == ["g1"]

    def test_payable_invoices_are_not_receivable_targets(self):
        payable = make_invoice("i1", "A-1", 75.5)
        payable.metadata["kind"] = "payable"
        ctx = make_context([payable])
        result = run_cascade([make_gateway_txn("g1", 75.5)], ctx)

        assert result.matches == {}


# ============================================
# Ranking and exclusivity
# ============================================

class TestRanking:

    def test_closest_date_wins(self):
        ctx = make_context([
            make_invoice("i1", "A-1", 40.0, txn_date=D + timedelta(days=2)),
            make_invoice("i2", "A-2", 40.0, txn_date=D + timedelta(days=1)),
        ])
        result = run_cascade([make_gateway_txn("g1", 40.0)], ctx)

        assert result.matches["g1"].target_ids == ["i2"]

    def test_equal_score_goes_to_lower_id(self):
        ctx = make_context([
            make_invoice("i2", "A-2", 40.0),
            make_invoice("i1", "A-1", 40.0),
        ])
        result = run_cascade([make_gateway_txn("g1", 40.0)], ctx)

        assert result.matches["g1"].target_ids == ["i1"]


class TestExclusivity:

    def test_claim_is_all_or_nothing(self):
        exclusions = ExclusionSet(["a"])

        assert exclusions.claim(["b", "c"]) is True
        assert exclusions.claim(["c", "d"]) is False
        assert "d" not in exclusions
        assert len(exclusions) == 3

    def test_target_claimed_once(self):
        """Two identical records compete for one invoice; the earlier one wins."""
        ctx = make_context([make_invoice("i1", "A-1", 40.0)])
        records = [
            make_gateway_txn("g2", 40.0),
            make_gateway_txn("g1", 40.0, txn_date=D - timedelta(days=1)),
        ]
        result = run_cascade(records, ctx, workers=4)

        assert list(result.matches) == ["g1"]
        assert [tx.id for tx in result.unresolved] == ["g2"]

    def test_seeded_exclusions_are_respected(self):
        ctx = make_context([make_invoice("i1", "INV-1", 40.0)])
        result = run_cascade(
            [make_gateway_txn("g1", 40.0, order_id="INV-1")],
            ctx,
            exclusions=ExclusionSet(["i1"]),
        )

        assert result.matches == {}

    def test_parallel_equals_sequential(self):
        invoices = [
            make_invoice(f"i{n:02d}", f"A-{n}", 100.0 + (n % 3), txn_date=D + timedelta(days=n % 4))
            for n in range(10)
        ]
        records = [
            make_gateway_txn(f"g{n:02d}", 100.0 + (n % 3), txn_date=D + timedelta(days=n % 5))
            for n in range(20)
        ]
        ctx = make_context(invoices)

        sequential = run_cascade(records, ctx, workers=1)
        parallel = run_cascade(records, ctx, workers=4)

        def targets(result):
            return {source: match.target_ids for source, match in result.matches.items()}

        assert targets(parallel) == targets(sequential)
        assert sequential.matched_count > 0
        claimed = [t for ids in targets(sequential).values() for t in ids]
        assert len(claimed) == len(set(claimed))


# ============================================
# Malformed records
# ============================================

class TestMalformed:

    def test_missing_amount_is_a_non_match(self):
        ctx = make_context([make_invoice("i1", "A-1", 40.0)])
        broken = Transaction(id="g1", source_domain="gateway", source="braintree")
        result = run_cascade([broken, make_gateway_txn("g2", 40.0)], ctx)

        assert result.malformed == ["g1"]
        assert [tx.id for tx in result.unresolved] == ["g1"]
        assert result.matches["g2"].target_ids == ["i1"]

    def test_missing_amount_still_matches_by_identifier(self):
        ctx = make_context([make_invoice("i1", "INV-9", 40.0)])
        record = Transaction(
            id="g1", source_domain="gateway", source="braintree", metadata={"order_id": "INV-9"},
        )
        result = run_cascade([record], ctx)

        assert result.matches["g1"].strategy_id == "exact-identifier"
        assert result.malformed == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
