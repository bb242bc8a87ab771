# app/models/match.py

from datetime import datetime
from typing import Optional, Literal
from pydantic import BaseModel, Field


# ============================================
# Classification outcome
# ============================================

ClassificationOutcome = Literal[
    "matched_specific",
    "matched_aggregate",
    "fallback_category",
    "catch_all",
]

# Outcomes a later run is allowed to replace with a better match
UPGRADEABLE_OUTCOMES = frozenset({"fallback_category", "catch_all"})


# ============================================
# Match candidate
# ============================================

class MatchCandidate(BaseModel):
    """A strategy's proposed link from one source record to its target(s).

    Most strategies produce a single target. Disbursement sums and
    multi-invoice settlements produce a set relation with several targets,
    each of which is still claimed exclusively.
    """

    source_id: str
    target_ids: list[str]
    strategy_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    outcome: ClassificationOutcome = "matched_specific"
    invoice_number: Optional[str] = None
    category: Optional[str] = None
    score: float = 0.0  # tie-break score, lower is better
    fields: dict = Field(default_factory=dict)

    @property
    def target_id(self) -> str:
        return self.target_ids[0]


# ============================================
# Annotation written back onto a record
# ============================================

class MatchAnnotation(BaseModel):
    """Classification fields written back onto a Transaction.

    Extra keys (link details, chain state, AP links) are allowed and kept
    as-is when the annotation is serialized.
    """

    matched_target_id: Optional[str] = None
    matched_invoice_number: Optional[str] = None
    matched_financial_account_code: Optional[str] = None
    strategy_id: Optional[str] = None
    confidence: Optional[float] = None
    outcome: Optional[ClassificationOutcome] = None
    classified_at: Optional[datetime] = None
    reconciled: Optional[bool] = None
    confirmed: Optional[bool] = None

    class Config:
        extra = "allow"

    def to_blob(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


# ============================================
# Chain resolution
# ============================================

ChainState = Literal["fully_resolved", "partially_resolved", "unresolved"]


class ChainResolution(BaseModel):
    """End-to-end trace for one bank inflow."""

    bank_id: str
    state: ChainState
    gateway_ids: list[str] = Field(default_factory=list)
    resolved_gateway_ids: list[str] = Field(default_factory=list)
    missing_gateway_ids: list[str] = Field(default_factory=list)
    invoice_numbers: list[str] = Field(default_factory=list)
    categories: dict[str, float] = Field(default_factory=dict)  # code -> amount
    dominant_category: Optional[str] = None

    @property
    def resolved_share(self) -> float:
        if not self.gateway_ids:
            return 1.0 if self.state == "fully_resolved" else 0.0
        return len(self.resolved_gateway_ids) / len(self.gateway_ids)
