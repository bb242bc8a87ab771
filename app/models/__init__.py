# app/models/__init__.py

from app.models.transaction import (
    Transaction,
    DisbursementAggregate,
    SourceDomain,
)
from app.models.match import (
    ClassificationOutcome,
    UPGRADEABLE_OUTCOMES,
    MatchCandidate,
    MatchAnnotation,
    ChainState,
    ChainResolution,
)
from app.models.run import (
    RunRequest,
    RunSummary,
    FetchReport,
    MatchDecision,
    ChainCoverage,
    MergeReport,
)

__all__ = [
    # Transaction
    "Transaction",
    "DisbursementAggregate",
    "SourceDomain",
    # Match
    "ClassificationOutcome",
    "UPGRADEABLE_OUTCOMES",
    "MatchCandidate",
    "MatchAnnotation",
    "ChainState",
    "ChainResolution",
    # Run
    "RunRequest",
    "RunSummary",
    "FetchReport",
    "MatchDecision",
    "ChainCoverage",
    "MergeReport",
]
