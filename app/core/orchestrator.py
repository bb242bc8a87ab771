# app/core/orchestrator.py

"""
Reconciliation pipeline.

fetch (parallel) -> indexes + disbursement aggregates -> matching pass ->
chain resolution -> P&L fallback -> [second matching pass -> chain ->
fallback] -> flush

Every phase stages into one StateMerger; nothing reaches the store until
the final flush, and a dry run skips the flush entirely.
"""

import asyncio
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Optional
import logging
import time
import uuid

from app.config import Settings, get_settings
from app.models import (
    Transaction,
    RunRequest,
    RunSummary,
    FetchReport,
    MatchDecision,
    ChainCoverage,
    ChainResolution,
    MergeReport,
)
from app.core.errors import SourceFetchError, StoreUnavailableError
from app.core.normalizers import pnl_line
from app.core.indexer import build_indexes
from app.core.strategies import MatchContext, receivable_strategies, bank_invoice_strategies
from app.core.matching import ExclusionSet, CascadeConfig, CascadeResult, MatchingCascade
from app.core.disbursement import DisbursementAggregator, AggregateIndex, disbursement_strategies
from app.core.payables import DebitIndex, PayableIndex, payable_strategies, multi_invoice_strategies
from app.core.chain import ChainResolver, chain_fields
from app.core.classification import PnlClassifier, FALLBACK_PHASES, needs_fallback
from app.core.merger import StateMerger
from app.database import RecordStore, fetch_by_source

logger = logging.getLogger(__name__)

DOMAINS = ("bank", "gateway", "invoice")
CHAIN_STRATEGIES = frozenset({"chain-resolution", "chain-partial"})

# Classification keys cleared when a chain classification no longer holds
_CLEARED_CLASSIFICATION = {
    "matched_financial_account_code": None,
    "pnl_line": None,
    "strategy_id": None,
    "confidence": None,
    "outcome": None,
}


class ReconciliationPipeline:
    """One reconciliation run against a record store."""

    def __init__(self, store: RecordStore, settings: Optional[Settings] = None, now: Optional[datetime] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.now = now

    async def run(self, request: RunRequest) -> RunSummary:
        started = time.monotonic()
        now = self.now or datetime.now(timezone.utc)

        fetched = await asyncio.gather(*(asyncio.to_thread(self._fetch, domain) for domain in DOMAINS))
        reports = [report for _, report in fetched]
        if all(report.error and report.count == 0 for report in reports):
            raise StoreUnavailableError("; ".join(report.error for report in reports))

        records = {domain: result for domain, (result, _) in zip(DOMAINS, fetched)}
        summary = await asyncio.to_thread(self._execute, records, reports, request, now)
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Run {summary.run_id} finished in {summary.duration_ms}ms")
        return summary

    def _fetch(self, domain: str) -> tuple[list[Transaction], FetchReport]:
        try:
            result = fetch_by_source(
                self.store,
                domain,
                page_size=self.settings.fetch_page_size,
                max_pages=self.settings.fetch_max_pages,
            )
        except SourceFetchError as e:
            logger.warning(f"{e} ({len(e.partial)} records read before the failure)")
            return e.partial, FetchReport(domain=domain, count=len(e.partial), complete=False, error=str(e))

        error = None if result.complete else f"{domain}: page limit of {self.settings.fetch_max_pages} reached"
        return result.records, FetchReport(
            domain=domain,
            count=len(result.records),
            complete=result.complete,
            error=error,
        )

    def _execute(
        self,
        records: dict[str, list[Transaction]],
        reports: list[FetchReport],
        request: RunRequest,
        now: datetime,
    ) -> RunSummary:
        run = PipelineRun(self.settings, records, request, now)
        second_pass = self.settings.second_pass if request.second_pass is None else request.second_pass

        logger.info(
            f"Run {run.run_id}: {len(run.banks)} bank, {len(run.gateways)} gateway, "
            f"{len(run.invoices)} invoice records (dry_run={request.dry_run}, second_pass={second_pass})"
        )

        run.matching_pass("pass 1")
        run.resolve_chains()
        if second_pass:
            # Preliminary fallback records extracted customer names for pass 2
            run.classify_fallback(final=False)
            run.matching_pass("pass 2")
            run.resolve_chains()
        run.classify_fallback(final=True)

        if request.dry_run:
            merge = MergeReport(staged=len(run.merger), skipped_confirmed=run.merger.skipped_confirmed)
            logger.info(f"Dry run: {merge.staged} records staged, nothing written")
        else:
            merge = run.merger.flush(self.store)

        return run.summarize(reports, merge)


async def run_reconciliation(
    store: RecordStore,
    request: RunRequest,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> RunSummary:
    return await ReconciliationPipeline(store, settings, now).run(request)


# ============================================
# Per-run state
# ============================================

class PipelineRun:
    """Working state of one run: records, indexes, staged annotations."""

    def __init__(
        self,
        settings: Settings,
        records: dict[str, list[Transaction]],
        request: RunRequest,
        now: datetime,
    ):
        self.settings = settings
        self.run_id = uuid.uuid4().hex[:12]
        self.request = request
        self.now = now

        self.banks = records.get("bank", [])
        self.gateways = records.get("gateway", [])
        self.invoices = records.get("invoice", [])
        self.by_id = {tx.id: tx for tx in (*self.banks, *self.gateways, *self.invoices)}
        self.gateway_by_id = {tx.id: tx for tx in self.gateways}
        self.debit_by_id = {tx.id: tx for tx in self.banks if (tx.amount or 0) < 0}

        self.annotations = {tx.id: dict(tx.annotation) for tx in self.by_id.values()}
        self.merger = StateMerger(self.annotations, now)

        self.indexes = build_indexes(self.invoices, settings.min_token_length)
        self.aggregates = AggregateIndex(DisbursementAggregator(settings).build(self.gateways))
        self.ctx = MatchContext(
            settings=settings,
            invoices=self.indexes,
            annotations=self.annotations,
            aggregates=self.aggregates,
            debits=DebitIndex([d for d in self.debit_by_id.values() if self.annotatable(d)]),
        )
        self.classifier = PnlClassifier(settings, self.indexes)

        workers = settings.match_workers
        self.receivables = MatchingCascade(CascadeConfig("gateway->invoice", receivable_strategies(settings), workers))
        self.disbursements = MatchingCascade(
            CascadeConfig("bank->disbursement", disbursement_strategies(settings), workers)
        )
        self.bank_invoices = MatchingCascade(CascadeConfig("bank->invoice", bank_invoice_strategies(settings), workers))
        self.payables = MatchingCascade(CascadeConfig("payable->debit", payable_strategies(settings), workers))
        self.multi_invoice = MatchingCascade(
            CascadeConfig("debit->invoices", multi_invoice_strategies(settings), workers)
        )

        # Records whose stored link or match points at something that no longer exists
        self.stale: set[str] = set()
        self.activity: dict[str, Counter] = defaultdict(Counter)
        self.decisions: list[MatchDecision] = []
        self.malformed: set[str] = set()
        self.preliminary: set[str] = set()  # staged by the fallback run ahead of pass 2
        self.coverage = ChainCoverage()

    # ============================================
    # Scope
    # ============================================

    def in_scope(self, tx: Transaction) -> bool:
        wanted = self.request.domain_filter
        if not wanted:
            return True
        wanted = {w.lower() for w in wanted}
        return tx.source_domain in wanted or tx.source.lower() in wanted

    def annotatable(self, tx: Transaction) -> bool:
        return self.in_scope(tx) and not self.annotations.get(tx.id, {}).get("confirmed")

    # ============================================
    # Existing link state
    # ============================================

    def invoice_match_state(self, tx: Transaction) -> Optional[bool]:
        """None: no invoice match. True: valid. False: target gone."""
        annotation = self.annotations.get(tx.id, {})
        target = annotation.get("matched_target_id")
        if annotation.get("outcome") != "matched_specific" or not target:
            return None
        return self.indexes.get(target) is not None

    def link_state(self, tx: Transaction) -> Optional[bool]:
        """None: no disbursement link. True: valid. False: aggregate gone."""
        annotation = self.annotations.get(tx.id, {})
        if not annotation.get("link_strategy_id"):
            return None
        references = [r for r in (annotation.get("disbursement_reference") or "").split(",") if r]
        return bool(references) and all(self.aggregates.get(r) is not None for r in references)

    def settlement_state(self, invoice: Transaction) -> Optional[bool]:
        annotation = self.annotations.get(invoice.id, {})
        target = annotation.get("matched_target_id")
        if annotation.get("outcome") != "matched_specific" or not target:
            return None
        return target in self.debit_by_id

    def _mark(self, tx: Transaction, state: Optional[bool]) -> bool:
        """True when the record still needs matching; remembers stale ones."""
        if state is False:
            self.stale.add(tx.id)
        return state is not True

    # ============================================
    # Matching
    # ============================================

    def matching_pass(self, label: str) -> None:
        logger.info(f"Run {self.run_id}: matching {label}")
        invoice_exclusions = ExclusionSet(
            self.annotations[tx.id]["matched_target_id"]
            for tx in (*self.gateways, *self.banks)
            if self.invoice_match_state(tx)
        )
        self.match_gateways(invoice_exclusions)
        self.match_disbursements()
        self.match_bank_invoices(invoice_exclusions)
        self.match_payables()

    def _run_cascade(self, cascade: MatchingCascade, records: list[Transaction], exclusions) -> CascadeResult:
        result = cascade.run(records, self.ctx, exclusions)
        self.malformed.update(result.malformed)
        return result

    def match_gateways(self, exclusions: ExclusionSet) -> None:
        pending = [
            tx for tx in self.gateways
            if self.annotatable(tx) and tx.is_inflow and not tx.is_payout
            and self._mark(tx, self.invoice_match_state(tx))
        ]
        result = self._run_cascade(self.receivables, pending, exclusions)
        for tx_id, candidate in sorted(result.matches.items()):
            self._stage_invoice_match("gateway_invoice", self.by_id[tx_id], candidate)

    def match_disbursements(self) -> None:
        exclusions = ExclusionSet(
            reference
            for tx in self.banks if self.link_state(tx)
            for reference in self.annotations[tx.id]["disbursement_reference"].split(",")
        )
        pending = [
            tx for tx in self.banks
            if self.annotatable(tx) and tx.is_inflow
            and self._mark(tx, self.link_state(tx))
            and not self.invoice_match_state(tx)
        ]
        result = self._run_cascade(self.disbursements, pending, exclusions)
        for tx_id, candidate in sorted(result.matches.items()):
            supersede = tx_id in self.stale
            fields = {
                **candidate.fields,
                "link_strategy_id": candidate.strategy_id,
                "link_confidence": candidate.confidence,
                "reconciled": True,
            }
            if self.merger.stage(tx_id, fields, supersede):
                self.stale.discard(tx_id)
                self._record("bank_disbursement", self.by_id[tx_id], candidate.strategy_id,
                             candidate.confidence, candidate.target_ids)

    def match_bank_invoices(self, exclusions: ExclusionSet) -> None:
        pending = [
            tx for tx in self.banks
            if self.annotatable(tx) and tx.is_inflow
            and not self.link_state(tx)
            and self._mark(tx, self.invoice_match_state(tx))
        ]
        result = self._run_cascade(self.bank_invoices, pending, exclusions)
        for tx_id, candidate in sorted(result.matches.items()):
            self._stage_invoice_match("bank_invoice", self.by_id[tx_id], candidate)

    def _stage_invoice_match(self, phase: str, tx: Transaction, candidate) -> None:
        invoice = self.indexes.get(candidate.target_id)
        fields = {
            "matched_target_id": candidate.target_id,
            "matched_invoice_number": candidate.invoice_number,
            "matched_financial_account_code": candidate.category,
            "pnl_line": pnl_line(candidate.category),
            "strategy_id": candidate.strategy_id,
            "confidence": candidate.confidence,
            "outcome": candidate.outcome,
            "reconciled": True,
        }
        changed = self.merger.stage(tx.id, fields, tx.id in self.stale)
        self.stale.discard(tx.id)

        if invoice is not None and self.annotatable(invoice):
            # The claimed invoice had no valid claimant, so any back-pointer on it is outdated
            self.merger.stage(invoice.id, {
                "matched_target_id": tx.id,
                "strategy_id": candidate.strategy_id,
                "confidence": candidate.confidence,
                "outcome": candidate.outcome,
                "reconciled": True,
            }, supersede=True)

        if changed:
            self._record(phase, tx, candidate.strategy_id, candidate.confidence,
                         candidate.target_ids, candidate.category)

    def match_payables(self) -> None:
        payables = [inv for inv in self.invoices if inv.is_payable and self.annotatable(inv)]
        debit_exclusions = ExclusionSet(
            [d.id for d in self.debit_by_id.values() if self.annotations[d.id].get("linked_invoice_ids")]
            + [self.annotations[inv.id]["matched_target_id"] for inv in self.invoices
               if inv.is_payable and self.settlement_state(inv)]
        )

        pending = [inv for inv in payables if self._mark(inv, self.settlement_state(inv))]
        result = self._run_cascade(self.payables, pending, debit_exclusions)
        for invoice_id, candidate in sorted(result.matches.items()):
            invoice = self.by_id[invoice_id]
            debit = self.debit_by_id[candidate.target_id]
            if self.merger.stage_payable_settlement(
                debit, [invoice], candidate.strategy_id, candidate.confidence, self.stale
            ):
                self._record("payables", invoice, candidate.strategy_id, candidate.confidence,
                             candidate.target_ids, candidate.category)
            self.stale.discard(invoice_id)

        # One debit settling several invoices of the same supplier
        unpaid = [inv for inv in pending if inv.id not in result.matches]
        self.ctx.payables = PayableIndex(unpaid)
        debits = [
            d for d in self.debit_by_id.values()
            if self.annotatable(d) and d.id not in debit_exclusions
        ]
        multi = self._run_cascade(self.multi_invoice, debits, ExclusionSet())
        for debit_id, candidate in sorted(multi.matches.items()):
            invoices = [self.by_id[i] for i in candidate.target_ids]
            if self.merger.stage_payable_settlement(
                self.by_id[debit_id], invoices, candidate.strategy_id, candidate.confidence, self.stale
            ):
                self._record("payables", self.by_id[debit_id], candidate.strategy_id,
                             candidate.confidence, candidate.target_ids)
            self.stale.difference_update(candidate.target_ids)

    # ============================================
    # Chain resolution
    # ============================================

    def resolve_chains(self) -> ChainCoverage:
        banks = [b for b in self.banks if b.is_inflow and self.in_scope(b)]
        live = [b for b in banks if b.id not in self.stale]
        resolver = ChainResolver(self.gateway_by_id, self.annotations, self.indexes)
        resolutions, coverage = resolver.resolve_all(live)
        for bank in banks:
            if bank.id not in resolutions:
                resolutions[bank.id] = ChainResolution(bank_id=bank.id, state="unresolved")
                coverage.unresolved += 1

        for bank in sorted(banks, key=lambda b: b.id):
            if not self.annotatable(bank):
                continue
            annotation = self.annotations.get(bank.id, {})
            fields = chain_fields(resolutions[bank.id], annotation.get("link_confidence"))
            # The chain owns its own classification and may revise it
            owned = annotation.get("strategy_id") in CHAIN_STRATEGIES
            if owned and "strategy_id" not in fields:
                fields.update(_CLEARED_CLASSIFICATION)
            if self.merger.stage(bank.id, fields, supersede=owned) and fields.get("strategy_id") in CHAIN_STRATEGIES:
                self._record("chain", bank, fields["strategy_id"], fields["confidence"],
                             resolutions[bank.id].resolved_gateway_ids, fields["matched_financial_account_code"])

        self.coverage = coverage
        return coverage

    # ============================================
    # P&L fallback
    # ============================================

    def classify_fallback(self, final: bool) -> None:
        self.classifier.learn_gateway_categories(self.gateways, self.annotations)
        targets = [
            tx for tx in (*self.banks, *self.gateways)
            if self.annotatable(tx) and needs_fallback(tx, self.annotations.get(tx.id, {}), tx.id in self.stale)
        ]
        results, _ = self.classifier.classify_all(targets, self.annotations)
        for tx_id, fields in results.items():
            changed = self.merger.stage(tx_id, fields, supersede=tx_id in self.stale)
            if not final:
                if changed:
                    self.preliminary.add(tx_id)
                continue
            if changed or tx_id in self.preliminary:
                self._record("fallback", self.by_id[tx_id], fields["strategy_id"], fields["confidence"],
                             category=fields["matched_financial_account_code"])

    # ============================================
    # Summary
    # ============================================

    def _record(
        self,
        phase: str,
        tx: Transaction,
        strategy_id: str,
        confidence: float,
        target_ids=(),
        category: Optional[str] = None,
    ) -> None:
        self.activity[phase][strategy_id] += 1
        if len(self.decisions) < self.settings.summary_sample_size:
            self.decisions.append(MatchDecision(
                record_id=tx.id,
                source_domain=tx.source_domain,
                phase=phase,
                strategy_id=strategy_id,
                confidence=confidence,
                target_ids=list(target_ids),
                category=category,
                amount=tx.amount,
                description=tx.description,
            ))

    def _phase_of(self, tx: Transaction, strategy_id: str) -> Optional[str]:
        if strategy_id in CHAIN_STRATEGIES:
            return "chain"
        if strategy_id in FALLBACK_PHASES:
            return "fallback"
        if strategy_id.startswith("ap-"):
            # Counted once, on the payable invoice side
            return "payables" if tx.is_payable else None
        if tx.source_domain == "invoice":
            return None
        return f"{tx.source_domain}_invoice"

    def final_counts(self) -> dict[str, dict[str, int]]:
        """Per-phase strategy counts over the final annotation state."""
        phases: dict[str, Counter] = defaultdict(Counter)
        for tx in sorted(self.by_id.values(), key=lambda t: t.id):
            if not self.in_scope(tx):
                continue
            annotation = self.annotations.get(tx.id, {})
            if tx.source_domain == "bank" and annotation.get("link_strategy_id") and self.link_state(tx):
                phases["bank_disbursement"][annotation["link_strategy_id"]] += 1
            strategy_id = annotation.get("strategy_id")
            if not strategy_id:
                continue
            phase = self._phase_of(tx, strategy_id)
            if phase:
                phases[phase][strategy_id] += 1
        return {phase: dict(sorted(counts.items())) for phase, counts in sorted(phases.items())}

    def summarize(self, reports: list[FetchReport], merge: MergeReport) -> RunSummary:
        inflows = [
            tx for tx in (*self.banks, *self.gateways)
            if self.in_scope(tx) and tx.is_inflow and not tx.is_payout
        ]
        outcomes: Counter = Counter()
        classified = 0
        for tx in inflows:
            annotation = self.annotations.get(tx.id, {})
            outcome = annotation.get("outcome") or ("confirmed" if annotation.get("confirmed") else "unclassified")
            outcomes[outcome] += 1
            if outcome != "unclassified":
                classified += 1

        if outcomes.get("unclassified"):
            logger.warning(f"Run {self.run_id}: {outcomes['unclassified']} inflows left without a classification")

        errors = [r.error for r in reports if r.error] + merge.conflicts
        summary = RunSummary(
            run_id=self.run_id,
            dry_run=self.request.dry_run,
            started_at=self.now,
            complete=all(r.complete for r in reports),
            fetched=reports,
            phases=self.final_counts(),
            activity={phase: dict(sorted(c.items())) for phase, c in sorted(self.activity.items())},
            outcomes=dict(sorted(outcomes.items())),
            inflow_total=len(inflows),
            classified_total=classified,
            coverage_percent=round(classified / len(inflows) * 100, 2) if inflows else 100.0,
            chain=self.coverage,
            merge=merge,
            malformed_skipped=len(self.malformed),
            sample=self.decisions,
            errors=errors[:self.settings.summary_error_limit],
        )
        logger.info(
            f"Run {self.run_id}: {classified}/{len(inflows)} inflows classified "
            f"({summary.coverage_percent}%), outcomes {summary.outcomes}"
        )
        return summary
