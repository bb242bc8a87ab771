# app/core/matching.py

"""
Core matching cascade.

One configurable runner for every matching phase: gateway -> invoice,
bank -> disbursement, bank -> invoice and payable invoice -> bank debit
are all the same loop with a different ordered strategy list.

Records are evaluated in parallel against a snapshot of the exclusion
set, then committed one by one in input order. A record whose proposed
target was claimed in the meantime is re-evaluated against the live set,
so the outcome is exactly what a sequential run would produce.
"""

from collections import Counter
from collections.abc import Container
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import threading

from app.models import Transaction, MatchCandidate
from app.core.errors import MalformedRecordError
from app.core.strategies import MatchContext, MatchStrategy

logger = logging.getLogger(__name__)


class ExclusionSet:
    """Target ids claimed during one matching pass. Thread-safe."""

    def __init__(self, initial=None):
        self._lock = threading.Lock()
        self._claimed: set[str] = set(initial or ())

    def __contains__(self, target_id: str) -> bool:
        with self._lock:
            return target_id in self._claimed

    def __len__(self) -> int:
        with self._lock:
            return len(self._claimed)

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._claimed)

    def claim(self, target_ids: list[str]) -> bool:
        """Claim every id or none of them."""
        with self._lock:
            if any(t in self._claimed for t in target_ids):
                return False
            self._claimed.update(target_ids)
            return True

    def add(self, target_ids) -> None:
        with self._lock:
            self._claimed.update(target_ids)


@dataclass
class CascadeConfig:
    """One call site of the cascade."""

    name: str
    strategies: list[MatchStrategy]
    workers: int = 1


@dataclass
class CascadeResult:
    """Matches and leftovers of one cascade execution."""

    name: str
    matches: dict[str, MatchCandidate] = field(default_factory=dict)
    unresolved: list[Transaction] = field(default_factory=list)
    malformed: list[str] = field(default_factory=list)  # records a strategy could not evaluate
    counts: Counter = field(default_factory=Counter)

    @property
    def matched_count(self) -> int:
        return len(self.matches)


class MatchingCascade:
    """Runs an ordered strategy list over a batch of records."""

    def __init__(self, config: CascadeConfig):
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name

    def match_one(
        self,
        tx: Transaction,
        ctx: MatchContext,
        exclusions: Container[str],
    ) -> tuple[MatchCandidate | None, int]:
        """
        First strategy with an acceptable candidate wins.

        Returns (candidate, malformed strategy count). A strategy that needs
        a field the record lacks counts as a non-match.
        """
        malformed = 0
        for strategy in self.config.strategies:
            try:
                candidate = strategy.try_match(tx, ctx, exclusions)
            except MalformedRecordError as e:
                malformed += 1
                logger.debug(f"{strategy.strategy_id} skipped: {e}")
                continue
            if candidate is not None:
                return candidate, malformed
        return None, malformed

    def run(
        self,
        records: list[Transaction],
        ctx: MatchContext,
        exclusions: ExclusionSet,
    ) -> CascadeResult:
        result = CascadeResult(name=self.name)
        if not records:
            return result

        ordered = sorted(records, key=_record_order)

        # ============================================
        # Speculative evaluation
        # ============================================
        snapshot = exclusions.snapshot()
        if self.config.workers > 1 and len(ordered) > 1:
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                speculative = list(pool.map(lambda tx: self.match_one(tx, ctx, snapshot), ordered))
        else:
            speculative = None

        # ============================================
        # Ordered commit
        # ============================================
        for position, tx in enumerate(ordered):
            if speculative is not None:
                candidate, malformed = speculative[position]
                if candidate is not None and not exclusions.claim(candidate.target_ids):
                    candidate, malformed = self._commit_live(tx, ctx, exclusions)
            else:
                candidate, malformed = self._commit_live(tx, ctx, exclusions)

            if malformed:
                result.malformed.append(tx.id)

            if candidate is None:
                result.unresolved.append(tx)
                continue

            result.matches[tx.id] = candidate
            result.counts[candidate.strategy_id] += 1

        logger.info(
            f"[{self.name}] {result.matched_count}/{len(ordered)} matched "
            f"{dict(sorted(result.counts.items()))}"
        )
        return result

    def _commit_live(
        self,
        tx: Transaction,
        ctx: MatchContext,
        exclusions: ExclusionSet,
    ) -> tuple[MatchCandidate | None, int]:
        candidate, malformed = self.match_one(tx, ctx, exclusions)
        # Commit is single-threaded, so the claim cannot fail here
        if candidate is not None and not exclusions.claim(candidate.target_ids):
            logger.warning(f"[{self.name}] lost claim for {tx.id}, leaving unresolved")
            return None, malformed
        return candidate, malformed


def _record_order(tx: Transaction):
    return (
        tx.transaction_date.isoformat() if tx.transaction_date else "9999-12-31",
        tx.id,
    )
