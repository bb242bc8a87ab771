# app/core/disbursement.py

"""
Disbursement aggregation and bank <-> disbursement matching.

Gateways pay many individual transactions out as one bank deposit. We
rebuild those settlement batches every run from the gateway records,
then match bank credits against the batches:

0. payout / batch reference quoted in the bank description
a. same-day amount match
b. amount match inside the payment rail's day window
c. several batches summing to one bank credit
d. batch total net of gateway fees
"""

from collections import defaultdict
from datetime import date, timedelta
import logging
import re

from app.config import Settings, RailTolerance
from app.models import Transaction, DisbursementAggregate, MatchCandidate
from app.core.normalizers import (
    normalize_amount,
    normalize_date,
    normalize_string,
    compact_identifier,
    identifier_segments,
)
from app.core.confidence import (
    amount_percent_diff,
    amounts_equal,
    within_percent,
    day_distance,
    rail_day_distance,
    tie_break_score,
    window_confidence,
)
from app.core.strategies import MatchStrategy

logger = logging.getLogger(__name__)


# ============================================
# Gateway detection
# ============================================

# Order matters: "american express" must win over generic card wording
GATEWAY_KEYWORDS: list[tuple[str, str]] = [
    (r"american express|\bamex\b", "amex"),
    (r"paypal|braintree", "braintree"),
    (r"stripe", "stripe"),
    (r"gocardless|go cardless", "gocardless"),
    (r"adyen", "adyen"),
]

PAYOUT_REFERENCE = re.compile(r"\b(po_[A-Za-z0-9]{6,}|[A-Z0-9]{2,}-?PAYOUT-?[A-Z0-9]+)\b", re.IGNORECASE)


def canonical_gateway(name: str | None) -> str | None:
    """Map a gateway/provider name to its rail key."""
    if not name:
        return None
    text = normalize_string(name)
    for pattern, key in GATEWAY_KEYWORDS:
        if re.search(pattern, text):
            return key
    return text.replace(' ', '') or None


def detect_gateway(description: str | None) -> str | None:
    """Gateway named in free text, if any."""
    text = normalize_string(description)
    if not text:
        return None
    for pattern, key in GATEWAY_KEYWORDS:
        if re.search(pattern, text):
            return key
    return None


def gateway_hint(tx: Transaction, annotation: dict | None = None) -> str | None:
    """Known gateway for a bank record: annotation first, then description."""
    if annotation and annotation.get("payment_source"):
        return canonical_gateway(annotation["payment_source"])
    return detect_gateway(tx.description)


def rail_for(settings: Settings, gateway: str | None) -> RailTolerance:
    rails = settings.rail_tolerances
    return rails.get(gateway or "default") or rails.get("default") or RailTolerance()


def is_amex(tx: Transaction) -> bool:
    card = normalize_string(str(tx.metadata.get("card_type") or ""))
    return "american express" in card or card == "amex"


def _currency_from_merchant(merchant: str) -> str | None:
    match = re.search(r"(EUR|USD|GBP|CHF|MXN|CAD|AUD)", merchant.upper())
    return match.group(1) if match else None


# ============================================
# Aggregator
# ============================================

class DisbursementAggregator:
    """Groups gateway records into settlement batches."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.undisbursed = 0

    def build(self, gateway_records: list[Transaction]) -> list[DisbursementAggregate]:
        """
        Group by (disbursement day, merchant account), with AMEX card volume
        split out. Charges that name a payout id are grouped under that
        payout instead; payout records supply its date and amount.
        """
        self.undisbursed = 0
        payouts: dict[str, Transaction] = {}
        for tx in gateway_records:
            if tx.is_payout:
                payouts[str(tx.metadata.get("payout_id") or tx.id)] = tx

        groups: dict[tuple, list[Transaction]] = defaultdict(list)
        for tx in sorted(gateway_records, key=lambda t: t.id):
            if tx.is_payout:
                continue
            payout_id = tx.metadata.get("payout_id")
            if payout_id:
                groups[("payout", str(payout_id))].append(tx)
                continue

            day = normalize_date(tx.metadata.get("disbursement_date")) \
                or normalize_date(tx.metadata.get("settlement_date"))
            if day is None:
                self.undisbursed += 1
                continue
            merchant = str(tx.metadata.get("merchant_account_id") or tx.gateway or "unknown")
            gateway = "amex" if is_amex(tx) else (canonical_gateway(tx.gateway) or "unknown")
            groups[("batch", day, merchant, gateway)].append(tx)

        aggregates = []
        for key, members in groups.items():
            if key[0] == "payout":
                aggregates.append(self._payout_aggregate(key[1], payouts.pop(key[1], None), members))
            else:
                _, day, merchant, gateway = key
                aggregates.append(self._batch_aggregate(day, merchant, gateway, members))

        # Payout records with no charges attached stand alone
        for payout_id, payout in sorted(payouts.items()):
            aggregate = self._payout_aggregate(payout_id, payout, [])
            if aggregate is not None:
                aggregates.append(aggregate)

        aggregates = [a for a in aggregates if a is not None]
        aggregates.sort(key=lambda a: (a.disbursement_date, a.reference))
        logger.info(
            f"Built {len(aggregates)} disbursement aggregates from {len(gateway_records)} gateway records "
            f"({self.undisbursed} not yet disbursed)"
        )
        return aggregates

    def _batch_aggregate(
        self,
        day: date,
        merchant: str,
        gateway: str,
        members: list[Transaction],
    ) -> DisbursementAggregate:
        suffix = ":amex" if gateway == "amex" else ""
        return DisbursementAggregate(
            reference=f"{gateway}:{merchant}:{day.isoformat()}{suffix}",
            disbursement_date=day,
            merchant_account_id=merchant,
            gateway=gateway,
            currency=_members_currency(members) or _currency_from_merchant(merchant),
            total_amount=round(sum(_settlement_amount(m) for m in members), 2),
            fee_total=round(sum(normalize_amount(m.metadata.get("fee_amount")) or 0.0 for m in members), 2),
            member_record_ids=[m.id for m in members],
            member_transaction_ids=[str(m.metadata.get("transaction_id") or m.id) for m in members],
            settlement_batch_ids=sorted({str(m.metadata["settlement_batch_id"]) for m in members
                                         if m.metadata.get("settlement_batch_id")}),
        )

    def _payout_aggregate(
        self,
        payout_id: str,
        payout: Transaction | None,
        members: list[Transaction],
    ) -> DisbursementAggregate | None:
        source = payout or (members[0] if members else None)
        if source is None:
            return None

        day = None
        if payout is not None:
            day = normalize_date(payout.metadata.get("arrival_date")) or payout.transaction_date
        if day is None:
            member_days = [
                normalize_date(m.metadata.get("disbursement_date")) or m.transaction_date for m in members
            ]
            member_days = [d for d in member_days if d is not None]
            day = max(member_days) if member_days else None
        if day is None:
            self.undisbursed += len(members) or 1
            return None

        if payout is not None and payout.amount is not None:
            total = payout.amount
        else:
            total = round(sum(_settlement_amount(m) for m in members), 2)

        merchant = str(source.metadata.get("merchant_account_id") or source.gateway or "unknown")
        gateway = canonical_gateway(source.gateway) or "unknown"
        # Pass-through payout: the payout record is its own only member
        records = members or [payout]
        return DisbursementAggregate(
            reference=f"{gateway}:payout:{payout_id}",
            disbursement_date=day,
            merchant_account_id=merchant,
            gateway=gateway,
            currency=(payout.currency if payout else None) or _members_currency(members)
            or _currency_from_merchant(merchant),
            total_amount=round(total, 2),
            fee_total=round(sum(normalize_amount(m.metadata.get("fee_amount")) or 0.0 for m in members), 2),
            member_record_ids=[r.id for r in records],
            member_transaction_ids=[str(r.metadata.get("transaction_id") or r.id) for r in records],
            payout_id=payout_id,
        )


def _settlement_amount(tx: Transaction) -> float:
    value = normalize_amount(tx.metadata.get("settlement_amount"))
    if value is None:
        value = tx.amount or 0.0
    return value


def _members_currency(members: list[Transaction]) -> str | None:
    currencies = {m.currency.upper() for m in members if m.currency}
    return currencies.pop() if len(currencies) == 1 else None


# ============================================
# Aggregate index
# ============================================

class AggregateIndex:
    """Read-only lookups over the run's aggregates."""

    def __init__(self, aggregates: list[DisbursementAggregate]):
        self.by_reference: dict[str, DisbursementAggregate] = {}
        self.by_date: dict[date, list[DisbursementAggregate]] = defaultdict(list)
        self.by_token: dict[str, DisbursementAggregate] = {}

        for aggregate in aggregates:
            self.by_reference[aggregate.reference] = aggregate
            self.by_date[aggregate.disbursement_date].append(aggregate)
            for token in (aggregate.payout_id, *aggregate.settlement_batch_ids):
                key = compact_identifier(token)
                if len(key) >= 6:
                    self.by_token[key] = aggregate

    def __len__(self) -> int:
        return len(self.by_reference)

    def get(self, reference: str | None) -> DisbursementAggregate | None:
        return self.by_reference.get(reference) if reference else None

    def around(self, day: date, before: int, after: int) -> list[DisbursementAggregate]:
        found = []
        for offset in range(-before, after + 1):
            found.extend(self.by_date.get(day + timedelta(days=offset), []))
        return found


# ============================================
# Bank -> disbursement strategies
# ============================================

def aggregate_fields(aggregates: list[DisbursementAggregate]) -> dict:
    """Annotation fields describing the linked disbursement(s)."""
    first = aggregates[0]
    return {
        "disbursement_reference": ",".join(a.reference for a in aggregates),
        "disbursement_amount": round(sum(a.total_amount for a in aggregates), 2),
        "disbursement_date": first.disbursement_date.isoformat(),
        "linked_transaction_ids": [rid for a in aggregates for rid in a.member_record_ids],
        "member_count": sum(a.member_count for a in aggregates),
        "payment_source": first.gateway,
        "settlement_batch_ids": sorted({b for a in aggregates for b in a.settlement_batch_ids}),
    }


class DisbursementStrategy(MatchStrategy):
    """Shared candidate selection for bank credit -> aggregate matching."""

    def __init__(self, settings: Settings, confidence: float):
        self.settings = settings
        self.confidence = confidence

    def candidates(self, tx, ctx, exclusions, before: int, after: int) -> list[DisbursementAggregate]:
        hint = gateway_hint(tx, ctx.annotation(tx.id))
        currency = tx.currency.upper() if tx.currency else None
        found = []
        for aggregate in ctx.aggregates.around(tx.require_date(), before, after):
            if aggregate.reference in exclusions or aggregate.total_amount <= 0:
                continue
            if currency and aggregate.currency and aggregate.currency.upper() != currency:
                continue
            if hint and aggregate.gateway != hint:
                continue
            found.append(aggregate)
        return found

    def max_window(self) -> int:
        """Calendar-day span covering every rail window, weekends included."""
        rails = self.settings.rail_tolerances.values()
        days = max([r.window_days for r in rails] + [r.sum_lookback_days for r in rails] + [1])
        return days * 7 // 5 + 2

    def build(
        self,
        tx: Transaction,
        aggregates: list[DisbursementAggregate],
        confidence: float,
        score: float,
    ) -> MatchCandidate:
        return MatchCandidate(
            source_id=tx.id,
            target_ids=[a.reference for a in aggregates],
            strategy_id=self.strategy_id,
            confidence=confidence,
            outcome="matched_aggregate",
            score=score,
            fields=aggregate_fields(aggregates),
        )

    def best(self, tx, ranked: list[tuple[float, DisbursementAggregate]]):
        if not ranked:
            return None
        ranked.sort(key=lambda r: (r[0], r[1].reference))
        return ranked[0]


class DisbursementReferenceStrategy(DisbursementStrategy):
    """Payout or settlement batch id quoted in the bank description."""

    strategy_id = "disbursement-reference"

    def try_match(self, tx, ctx, exclusions):
        if not tx.description:
            return None
        amount = tx.require_amount()

        tokens = [compact_identifier(m) for m in PAYOUT_REFERENCE.findall(tx.description)]
        tokens.extend(identifier_segments(tx.description, min_length=6))
        for token in tokens:
            aggregate = ctx.aggregates.by_token.get(token)
            if aggregate is None or aggregate.reference in exclusions:
                continue
            if not within_percent(amount, aggregate.total_amount, 5.0):
                continue
            score = tie_break_score(
                day_distance(tx.require_date(), aggregate.disbursement_date),
                amount_percent_diff(amount, aggregate.total_amount),
            )
            return self.build(tx, [aggregate], self.confidence, score)
        return None


class SameDayDisbursementStrategy(DisbursementStrategy):
    """Same day, amount within the rail's small absolute tolerance."""

    strategy_id = "disbursement-same-day"

    def try_match(self, tx, ctx, exclusions):
        amount = tx.require_amount()
        ranked = []
        for aggregate in self.candidates(tx, ctx, exclusions, 0, 0):
            rail = rail_for(self.settings, aggregate.gateway)
            if amounts_equal(amount, aggregate.total_amount, rail.same_day_tolerance):
                ranked.append((tie_break_score(0, amount_percent_diff(amount, aggregate.total_amount)), aggregate))
        best = self.best(tx, ranked)
        return self.build(tx, [best[1]], self.confidence, best[0]) if best else None


class WindowDisbursementStrategy(DisbursementStrategy):
    """Amount match inside the rail's (business) day window."""

    strategy_id = "disbursement-window"

    def __init__(self, settings: Settings, confidence: float, floor: float):
        super().__init__(settings, confidence)
        self.floor = floor

    def try_match(self, tx, ctx, exclusions):
        amount = tx.require_amount()
        bank_date = tx.require_date()
        span = self.max_window()

        ranked = []
        for aggregate in self.candidates(tx, ctx, exclusions, span, span):
            rail = rail_for(self.settings, aggregate.gateway)
            distance = rail_day_distance(bank_date, aggregate.disbursement_date, rail.business_days)
            if distance > rail.window_days:
                continue
            if not amounts_equal(amount, aggregate.total_amount, rail.same_day_tolerance):
                continue
            score = tie_break_score(
                day_distance(bank_date, aggregate.disbursement_date),
                amount_percent_diff(amount, aggregate.total_amount),
            )
            ranked.append((score, aggregate))

        best = self.best(tx, ranked)
        if not best:
            return None
        days = day_distance(bank_date, best[1].disbursement_date)
        return self.build(tx, [best[1]], window_confidence(self.confidence, days, self.floor), best[0])


class SumDisbursementStrategy(DisbursementStrategy):
    """
    Several payout cycles landing as one bank credit.

    Per gateway, walk unclaimed aggregates from the lookback window closest
    in time first, skip any that would overshoot, stop once the running
    sum is within tolerance. At least two aggregates are required.
    """

    strategy_id = "disbursement-sum"

    def try_match(self, tx, ctx, exclusions):
        amount = tx.require_amount()
        bank_date = tx.require_date()
        span = self.max_window()

        by_gateway: dict[str, list[DisbursementAggregate]] = defaultdict(list)
        for aggregate in self.candidates(tx, ctx, exclusions, span, 0):
            by_gateway[aggregate.gateway].append(aggregate)

        results = []
        for gateway, aggregates in sorted(by_gateway.items()):
            rail = rail_for(self.settings, gateway)
            in_window = [
                a for a in aggregates
                if day_distance(bank_date, a.disbursement_date) <= rail.sum_lookback_days
            ]
            in_window.sort(key=lambda a: (day_distance(bank_date, a.disbursement_date), a.reference))

            chosen: list[DisbursementAggregate] = []
            running = 0.0
            for aggregate in in_window:
                if len(chosen) >= rail.sum_max_members:
                    break
                if running + aggregate.total_amount > amount + rail.sum_tolerance:
                    continue
                chosen.append(aggregate)
                running = round(running + aggregate.total_amount, 2)
                if len(chosen) >= 2 and abs(running - amount) <= rail.sum_tolerance:
                    score = sum(day_distance(bank_date, a.disbursement_date) for a in chosen) \
                        + amount_percent_diff(amount, running) * 100
                    results.append((score, gateway, list(chosen)))
                    break

        if not results:
            return None
        results.sort(key=lambda r: (r[0], r[1]))
        score, _, chosen = results[0]
        chosen.sort(key=lambda a: (a.disbursement_date, a.reference))
        return self.build(tx, chosen, self.confidence, score)


class NetOfFeesDisbursementStrategy(DisbursementStrategy):
    """Bank received the batch total minus the gateway's fees."""

    strategy_id = "disbursement-net-of-fees"

    def try_match(self, tx, ctx, exclusions):
        amount = tx.require_amount()
        bank_date = tx.require_date()
        span = self.max_window()

        ranked = []
        for aggregate in self.candidates(tx, ctx, exclusions, span, span):
            if aggregate.fee_total <= 0:
                continue
            rail = rail_for(self.settings, aggregate.gateway)
            if rail_day_distance(bank_date, aggregate.disbursement_date, rail.business_days) > rail.window_days:
                continue
            net = round(aggregate.total_amount - aggregate.fee_total, 2)
            if not amounts_equal(amount, net, rail.same_day_tolerance):
                continue
            ranked.append((tie_break_score(day_distance(bank_date, aggregate.disbursement_date), 0.0), aggregate))

        best = self.best(tx, ranked)
        return self.build(tx, [best[1]], self.confidence, best[0]) if best else None


def disbursement_strategies(settings: Settings) -> list[MatchStrategy]:
    return [
        DisbursementReferenceStrategy(settings, settings.confidence_disbursement_reference),
        SameDayDisbursementStrategy(settings, settings.confidence_disbursement_same_day),
        WindowDisbursementStrategy(
            settings,
            settings.confidence_disbursement_window,
            settings.confidence_disbursement_window_floor,
        ),
        SumDisbursementStrategy(settings, settings.confidence_disbursement_sum),
        NetOfFeesDisbursementStrategy(settings, settings.confidence_disbursement_net_of_fees),
    ]
