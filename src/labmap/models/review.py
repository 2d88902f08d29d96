"""Review queue models."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from .base import IssueType, ReviewStatus, Vocabulary


class ReviewProposal(BaseModel):
    """What the pipeline (or a reviewer) suggests the label means."""

    code: str | None = None
    name: str | None = None
    unit: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class ReviewQueueItem(BaseModel):
    """An unresolved or doubtful label awaiting a human decision."""

    id: UUID
    vocabulary: Vocabulary
    normalized_key: str
    raw_label: str | None = None
    issue_type: IssueType
    status: ReviewStatus = ReviewStatus.PENDING
    proposal: ReviewProposal = Field(default_factory=ReviewProposal)
    needs_correction: bool = False
    evidence: dict[str, Any] = Field(default_factory=dict)
    occurrence_count: int = 1
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    resolved_canonical_id: UUID | None = None


class ReviewStats(BaseModel):
    """Queue counts for dashboards and the CLI."""

    total: int = 0
    pending: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    pending_by_issue: dict[str, int] = Field(default_factory=dict)
    oldest_pending_at: datetime | None = None
