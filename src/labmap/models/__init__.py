"""Pydantic models for labmap."""

from .base import (
    AliasSource,
    Decision,
    IssueType,
    ReviewStatus,
    SemanticVerdict,
    Tier,
    Vocabulary,
)
from .resolution import (
    BatchResult,
    Candidate,
    ConflictDetail,
    ResolutionDecision,
    ResolutionRequest,
    SemanticBatch,
    SemanticOutcome,
    SemanticProposal,
    SemanticQuery,
    TierResult,
)
from .review import ReviewProposal, ReviewQueueItem, ReviewStats
from .vocabulary import CanonicalEntry, SeedEntry, SeedReport

__all__ = [
    # Enums
    "AliasSource",
    "Decision",
    "IssueType",
    "ReviewStatus",
    "SemanticVerdict",
    "Tier",
    "Vocabulary",
    # Vocabulary
    "CanonicalEntry",
    "SeedEntry",
    "SeedReport",
    # Resolution
    "BatchResult",
    "Candidate",
    "ConflictDetail",
    "ResolutionDecision",
    "ResolutionRequest",
    "SemanticBatch",
    "SemanticOutcome",
    "SemanticProposal",
    "SemanticQuery",
    "TierResult",
    # Review
    "ReviewProposal",
    "ReviewQueueItem",
    "ReviewStats",
]
