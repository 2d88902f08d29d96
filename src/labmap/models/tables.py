"""SQLAlchemy table mappings for the alias store and review queue."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

PENDING_ONLY = text("status = 'pending'")


class CanonicalEntryRow(Base):
    __tablename__ = "canonical_entries"
    __table_args__ = (UniqueConstraint("vocabulary", "code"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vocabulary: Mapped[str] = mapped_column(String(20), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class AliasRow(Base):
    __tablename__ = "aliases"
    __table_args__ = (Index("ix_aliases_canonical_id", "canonical_id"),)

    vocabulary: Mapped[str] = mapped_column(String(20), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    canonical_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("canonical_entries.id", ondelete="CASCADE"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    display: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class ReviewItemRow(Base):
    __tablename__ = "review_items"
    __table_args__ = (
        # At most one pending item per (vocabulary, key, issue)
        Index(
            "uq_review_items_pending",
            "vocabulary",
            "normalized_key",
            "issue_type",
            unique=True,
            postgresql_where=PENDING_ONLY,
            sqlite_where=PENDING_ONLY,
        ),
        Index("ix_review_items_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vocabulary: Mapped[str] = mapped_column(String(20), nullable=False)
    normalized_key: Mapped[str] = mapped_column(String(255), nullable=False)
    raw_label: Mapped[str | None] = mapped_column(Text, nullable=True)
    issue_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    proposed_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    proposed_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    proposed_unit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    proposed_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    needs_correction: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    evidence: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_canonical_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("canonical_entries.id", ondelete="SET NULL"), nullable=True
    )
