# app/models/run.py

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


# ============================================
# Run request
# ============================================

class RunRequest(BaseModel):
    """Entry point parameters for a reconciliation run."""

    dry_run: bool = False
    domain_filter: Optional[list[str]] = Field(
        default=None,
        description="Domains (bank, gateway, invoice) or feed names whose records may be annotated",
    )
    second_pass: Optional[bool] = None  # None = use settings


# ============================================
# Run summary pieces
# ============================================

class FetchReport(BaseModel):
    """What was read from one domain."""

    domain: str
    count: int
    complete: bool = True
    error: Optional[str] = None


class MatchDecision(BaseModel):
    """One audited decision, for the bounded sample in the summary."""

    record_id: str
    source_domain: str
    phase: str
    strategy_id: str
    confidence: float
    target_ids: list[str] = Field(default_factory=list)
    category: Optional[str] = None
    amount: Optional[float] = None
    description: Optional[str] = None


class ChainCoverage(BaseModel):
    """Bank inflows by chain state."""

    fully_resolved: int = 0
    partially_resolved: int = 0
    unresolved: int = 0

    @property
    def total(self) -> int:
        return self.fully_resolved + self.partially_resolved + self.unresolved

    @property
    def resolved_percent(self) -> float:
        return round(self.fully_resolved / self.total * 100, 2) if self.total else 0.0


class MergeReport(BaseModel):
    """Outcome of flushing staged annotations to the store."""

    staged: int = 0
    written: int = 0
    unchanged: int = 0
    skipped_confirmed: int = 0
    conflicts: list[str] = Field(default_factory=list)


class RunSummary(BaseModel):
    """Stable output contract of a reconciliation run."""

    run_id: str
    dry_run: bool
    started_at: datetime
    duration_ms: int = 0
    complete: bool = True
    fetched: list[FetchReport] = Field(default_factory=list)
    phases: dict[str, dict[str, int]] = Field(default_factory=dict)  # final state, per phase
    activity: dict[str, dict[str, int]] = Field(default_factory=dict)  # changes staged by this run
    outcomes: dict[str, int] = Field(default_factory=dict)
    inflow_total: int = 0
    classified_total: int = 0
    coverage_percent: float = 0.0
    chain: ChainCoverage = Field(default_factory=ChainCoverage)
    merge: MergeReport = Field(default_factory=MergeReport)
    malformed_skipped: int = 0
    sample: list[MatchDecision] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
