# tests/test_orchestrator.py

"""
End-to-end pipeline runs against the in-memory store.
"""

import asyncio
import pytest
from datetime import datetime, timezone

from app.config import Settings
from app.core.errors import StoreUnavailableError
from app.core.orchestrator import run_reconciliation
from app.database import InMemoryRecordStore
from app.models import RunRequest


NOW = datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)
LATER = datetime(2025, 3, 15, 9, 0, tzinfo=timezone.utc)


# ============================================
# Test Data
# ============================================

def bank_row(id: str, amount: float, description: str, day: str, annotation: dict = None) -> dict:
    return {
        "id": id,
        "source_domain": "bank",
        "source": "bankinter-eur",
        "transaction_date": day,
        "amount": amount,
        "currency": "EUR",
        "description": description,
        "metadata": {},
        "annotation": annotation or {},
    }


def gateway_row(id: str, amount: float, order_id: str, disbursed: str | None = "2025-03-10") -> dict:
    metadata = {"gateway": "braintree", "merchant_account_id": "acme_eur", "order_id": order_id}
    if disbursed:
        metadata["disbursement_date"] = disbursed
    return {
        "id": id,
        "source_domain": "gateway",
        "source": "braintree",
        "transaction_date": "2025-03-07",
        "amount": amount,
        "currency": "EUR",
        "metadata": metadata,
    }


def invoice_row(id: str, number: str, amount: float, category: str, customer: str, day: str = "2025-03-06") -> dict:
    return {
        "id": id,
        "source_domain": "invoice",
        "source": "holded",
        "transaction_date": day,
        "amount": amount,
        "customer_name": customer,
        "metadata": {"invoice_number": number, "financial_account_code": category},
    }


def make_store() -> InMemoryRecordStore:
    """
    A 600 + 400 disbursement landing as one 1000 deposit, a direct transfer
    naming a known customer, an own-account transfer, an unmatched gateway
    charge and an unexplained credit.
    """
    return InMemoryRecordStore([
        invoice_row("i1", "INV-1", 600.0, "101.1", "Acme Trading"),
        invoice_row("i2", "INV-2", 400.0, "101.2", "Globex"),
        invoice_row("i-jd", "INV-3001", 900.0, "102", "Jane Doe Clinic", day="2025-01-10"),
        gateway_row("g1", 600.0, "INV-1"),
        gateway_row("g2", 400.0, "INV-2"),
        gateway_row("g3", 55.0, "NOPE-1", disbursed=None),
        bank_row("b1", 1000.0, "BRAINTREE DEPOSIT", "2025-03-12"),
        bank_row("b-int", 5000.0, "TRASPASO PROPIOS DESDE CUENTA 2", "2025-03-11"),
        bank_row("b-jd", 250.0, "Transfer/Jane Doe Clinic", "2025-03-14"),
        bank_row("b-unk", 77.77, "XJ-99 misc", "2025-03-13"),
    ])


def run(store, now=NOW, settings=None, **request):
    settings = settings or Settings(match_workers=2)
    return asyncio.run(run_reconciliation(store, RunRequest(**request), settings, now))


def annotation(store: InMemoryRecordStore, record_id: str) -> dict:
    return store.get_annotation(record_id)


# ============================================
# Full run
# ============================================

class TestFullRun:

    def test_disbursement_chain_resolves_to_dominant_category(self):
        store = make_store()
        run(store)

        bank = annotation(store, "b1")
        assert bank["link_strategy_id"] == "disbursement-window"
        assert bank["linked_transaction_ids"] == ["g1", "g2"]
        assert bank["disbursement_amount"] == 1000.0
        assert bank["chain_state"] == "fully_resolved"
        assert bank["chain_categories"] == {"101.1": 600.0, "101.2": 400.0}
        assert bank["strategy_id"] == "chain-resolution"
        assert bank["matched_financial_account_code"] == "101.1"
        assert bank["pnl_line"] == "101"
        assert bank["outcome"] == "matched_aggregate"
        assert bank["confidence"] == 0.91
        assert bank["reconciled"] is True

    def test_gateway_matches_point_both_ways(self):
        store = make_store()
        run(store)

        assert annotation(store, "g1")["matched_target_id"] == "i1"
        assert annotation(store, "g1")["strategy_id"] == "exact-identifier"
        assert annotation(store, "i1")["matched_target_id"] == "g1"
        assert annotation(store, "i1")["reconciled"] is True

    def test_name_extraction_from_description(self):
        store = make_store()
        run(store)

        jane = annotation(store, "b-jd")
        assert jane["strategy_id"] == "name-extraction"
        assert jane["matched_financial_account_code"] == "102"
        assert jane["pnl_line"] == "102"
        assert jane["outcome"] == "fallback_category"
        assert jane["extracted_customer_name"] == "jane doe clinic"

    def test_fallback_phases(self):
        store = make_store()
        run(store)

        internal = annotation(store, "b-int")
        assert internal["strategy_id"] == "internal-transfer"
        assert internal["matched_financial_account_code"] == "internal"
        assert internal["reconciled"] is True

        assert annotation(store, "g3")["strategy_id"] == "gateway-dominant"
        assert annotation(store, "g3")["matched_financial_account_code"] == "101.1"

        unknown = annotation(store, "b-unk")
        assert unknown["strategy_id"] == "catch-all"
        assert unknown["matched_financial_account_code"] == "105.0"
        assert unknown["outcome"] == "catch_all"
        assert "reconciled" not in unknown

    def test_every_inflow_is_classified(self):
        summary = run(make_store())

        assert summary.inflow_total == 7
        assert summary.classified_total == 7
        assert summary.coverage_percent == 100.0
        assert "unclassified" not in summary.outcomes
        assert summary.outcomes == {
            "catch_all": 1,
            "fallback_category": 3,
            "matched_aggregate": 1,
            "matched_specific": 2,
        }

    def test_summary_counts(self):
        summary = run(make_store())

        assert summary.phases == {
            "bank_disbursement": {"disbursement-window": 1},
            "chain": {"chain-resolution": 1},
            "fallback": {
                "catch-all": 1,
                "gateway-dominant": 1,
                "internal-transfer": 1,
                "name-extraction": 1,
            },
            "gateway_invoice": {"exact-identifier": 2},
        }
        assert summary.activity == summary.phases
        assert summary.chain.fully_resolved == 1
        assert summary.chain.unresolved == 3
        assert summary.complete is True
        assert summary.errors == []

    def test_sample_is_bounded(self):
        summary = run(make_store(), settings=Settings(summary_sample_size=3))

        assert len(summary.sample) == 3

    def test_single_pass(self):
        store = make_store()
        summary = run(store, second_pass=False)

        assert annotation(store, "b-jd")["strategy_id"] == "name-extraction"
        assert summary.coverage_percent == 100.0


# ============================================
# Idempotence and monotonicity
# ============================================

class TestRerun:

    def test_second_run_writes_nothing(self):
        store = make_store()
        first = run(store, now=NOW)
        rows = store.rows()
        writes = store.writes

        second = run(store, now=LATER)

        assert second.merge.written == 0
        assert store.writes == writes
        assert store.rows() == rows
        assert second.phases == first.phases
        assert second.outcomes == first.outcomes
        assert second.activity == {}

    def test_reconciled_stays_true(self):
        store = InMemoryRecordStore([
            bank_row("b1", 77.77, "XJ-99 misc", "2025-03-13", annotation={
                "strategy_id": "catch-all",
                "outcome": "catch_all",
                "matched_financial_account_code": "105.0",
                "pnl_line": "105",
                "confidence": 0.1,
                "reconciled": True,
                "chain_state": "unresolved",
                "chain_categories": {},
            }),
        ])
        summary = run(store)

        assert annotation(store, "b1")["reconciled"] is True
        assert summary.merge.written == 0

    def test_confirmed_record_is_untouched(self):
        confirmed = {
            "confirmed": True,
            "strategy_id": "catch-all",
            "outcome": "fallback_category",
            "matched_financial_account_code": "999",
        }
        store = InMemoryRecordStore([bank_row("b1", 77.77, "XJ-99 misc", "2025-03-13", annotation=confirmed)])
        run(store)

        assert annotation(store, "b1") == confirmed
        assert store.writes == 0

    def test_stale_match_is_reclassified(self):
        """The invoice a bank line was matched to no longer exists."""
        store = InMemoryRecordStore([
            bank_row("b1", 77.77, "XJ-99 misc", "2025-03-13", annotation={
                "matched_target_id": "i-gone",
                "matched_invoice_number": "INV-GONE",
                "matched_financial_account_code": "101",
                "strategy_id": "amount-date",
                "outcome": "matched_specific",
                "confidence": 0.6,
                "reconciled": True,
            }),
        ])
        run(store)

        stale = annotation(store, "b1")
        assert stale["strategy_id"] == "catch-all"
        assert stale["matched_target_id"] is None
        assert stale["reconciled"] is True


# ============================================
# Dry run and scope
# ============================================

class TestScope:

    def test_dry_run_writes_nothing(self):
        store = make_store()
        rows = store.rows()
        summary = run(store, dry_run=True)

        assert summary.dry_run is True
        assert summary.merge.staged > 0
        assert summary.merge.written == 0
        assert store.writes == 0
        assert store.rows() == rows
        assert summary.phases["gateway_invoice"] == {"exact-identifier": 2}

    def test_domain_filter(self):
        store = make_store()
        summary = run(store, domain_filter=["gateway"])

        assert annotation(store, "g1")["strategy_id"] == "exact-identifier"
        assert annotation(store, "b1") == {}
        assert annotation(store, "i1") == {}
        assert summary.inflow_total == 3

    def test_feed_name_filter(self):
        store = make_store()
        run(store, domain_filter=["bankinter-eur"])

        assert annotation(store, "b1")["link_strategy_id"] == "disbursement-window"
        assert annotation(store, "g1") == {}


# ============================================
# Failures
# ============================================

class TestFailures:

    def test_failed_domain_marks_run_incomplete(self):
        store = make_store()
        store.fail_after_pages["gateway"] = 0
        summary = run(store)

        assert summary.complete is False
        report = {r.domain: r for r in summary.fetched}["gateway"]
        assert report.count == 0
        assert "gateway" in report.error
        assert any("gateway" in e for e in summary.errors)
        assert annotation(store, "b-unk")["strategy_id"] == "catch-all"

    def test_page_limit_marks_run_incomplete(self):
        store = InMemoryRecordStore([
            invoice_row("i1", "INV-1", 600.0, "101.1", "Acme Trading"),
            invoice_row("i2", "INV-2", 400.0, "101.2", "Globex"),
        ])
        summary = run(store, settings=Settings(fetch_page_size=1, fetch_max_pages=1))

        reports = {r.domain: r for r in summary.fetched}
        assert reports["invoice"].complete is False
        assert "page limit" in reports["invoice"].error
        assert reports["bank"].complete is True
        assert summary.complete is False

    def test_merge_conflict_is_collected(self):
        store = make_store()
        store.fail_merges.add("b-unk")
        summary = run(store)

        assert len(summary.merge.conflicts) == 1
        assert "b-unk" in summary.merge.conflicts[0]
        assert annotation(store, "b-unk") == {}
        assert annotation(store, "b-jd")["strategy_id"] == "name-extraction"

    def test_store_unavailable(self):
        store = make_store()
        store.fail_after_pages.update({"bank": 0, "gateway": 0, "invoice": 0})

        with pytest.raises(StoreUnavailableError):
            run(store)

    def test_malformed_record_is_counted(self):
        store = make_store()
        store.add({"id": "g-bad", "source_domain": "gateway", "source": "braintree", "amount": 12.0,
                   "metadata": {"gateway": "braintree"}})
        summary = run(store)

        assert summary.malformed_skipped >= 1
        assert annotation(store, "g-bad")["strategy_id"] == "gateway-dominant"

    def test_out_of_range_timestamps_do_not_abort_the_run(self):
        store = make_store()
        g_bad = gateway_row("g-ts", 42.0, "NOPE-2")
        g_bad["metadata"]["disbursement_date"] = 10**20
        store.add(g_bad)
        store.add(bank_row("b-ts", 13.0, "XJ-100 misc", 10**20))
        summary = run(store)

        assert summary.complete is True
        assert summary.malformed_skipped >= 1
        assert annotation(store, "g-ts")["strategy_id"] == "gateway-dominant"
        assert annotation(store, "b1")["link_strategy_id"] == "disbursement-window"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
