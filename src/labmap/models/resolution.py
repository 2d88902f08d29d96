"""Request, tier and decision models for the resolution pipeline."""

from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .base import Decision, IssueType, SemanticVerdict, Tier, Vocabulary


class ResolutionRequest(BaseModel):
    """One raw label to resolve."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    label: str | None
    context: list[str] = Field(default_factory=list)
    unit_hint: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Candidate(BaseModel):
    """A canonical entry proposed by a tier."""

    canonical_id: UUID
    code: str
    score: float = Field(ge=0.0, le=1.0)
    key: str | None = None


class TierResult(BaseModel):
    """Output of Tier A or Tier B for one item."""

    tier: Tier
    matched: bool = False
    candidates: list[Candidate] = Field(default_factory=list)
    elapsed_ms: float = 0.0
    skipped: bool = False
    reason: str | None = None
    ambiguous: bool = False

    @property
    def top(self) -> Candidate | None:
        return self.candidates[0] if self.candidates else None

    def summary(self) -> dict[str, Any]:
        top = self.top
        return {
            "matched": self.matched,
            "skipped": self.skipped,
            "reason": self.reason,
            "ambiguous": self.ambiguous,
            "top_code": top.code if top else None,
            "top_score": top.score if top else None,
            "candidates": len(self.candidates),
            "elapsed_ms": round(self.elapsed_ms, 3),
        }


class SemanticQuery(BaseModel):
    """One item sent to the semantic tier."""

    index: int
    label: str
    key: str
    hints: list[Candidate] = Field(default_factory=list)
    unit_hint: str | None = None


class SemanticProposal(BaseModel):
    """Raw per-item proposal as returned by a semantic backend."""

    index: int = Field(ge=0)
    decision: SemanticVerdict
    code: str | None = None
    name: str | None = None
    unit: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str | None = None


class SemanticOutcome(BaseModel):
    """Validated Tier C result for one item.

    A null verdict means the semantic tier could not answer (timeout,
    transport failure, malformed output); the item is uncertain.
    """

    verdict: SemanticVerdict | None = None
    code: str | None = None
    name: str | None = None
    unit: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    rationale: str | None = None
    canonical_id: UUID | None = None
    syntax_valid: bool = True
    syntax_issues: list[str] = Field(default_factory=list)
    suggestion: str | None = None
    error_reason: str | None = None
    timeout: bool = False
    elapsed_ms: float = 0.0

    @property
    def uncertain(self) -> bool:
        return self.verdict is None

    @property
    def in_vocabulary(self) -> bool:
        return self.canonical_id is not None

    def summary(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value if self.verdict else None,
            "code": self.code,
            "confidence": self.confidence,
            "in_vocabulary": self.in_vocabulary,
            "syntax_valid": self.syntax_valid,
            "error_reason": self.error_reason,
            "timeout": self.timeout,
            "elapsed_ms": round(self.elapsed_ms, 3),
        }


class SemanticBatch(BaseModel):
    """Outcomes of one semantic tier run, aligned with its queries."""

    outcomes: list[SemanticOutcome] = Field(default_factory=list)
    # Backend calls made (one per chunk that was sent)
    calls: int = 0


class ConflictDetail(BaseModel):
    """Both sides of a fuzzy/semantic disagreement."""

    fuzzy: Candidate
    semantic: Candidate
    resolved_by: str


class ResolutionDecision(BaseModel):
    """Final, audited decision for one request."""

    request_id: str
    label: str | None
    key: str | None
    decision: Decision
    confidence: float = Field(ge=0.0, le=1.0)
    chosen_canonical_id: UUID | None = None
    chosen_code: str | None = None
    candidates: list[Candidate] = Field(default_factory=list)
    conflict_detail: ConflictDetail | None = None
    tiers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    note: str | None = None
    learned: bool = False
    review_item_id: UUID | None = None
    # Issue the item was (or, in a dry run, would be) queued under
    review_issue: IssueType | None = None
    # Dry run only: an alias would have been learned
    would_learn: bool = False
    # Left unresolved because the semantic tier could not answer
    uncertain: bool = False
    # The semantic tier ran out of time on this item
    timeout: bool = False
    duration_ms: float = 0.0


class BatchResult(BaseModel):
    """Decisions for a batch, in input order, plus its audit summary."""

    vocabulary: Vocabulary
    decisions: list[ResolutionDecision]
    summary: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = False
