"""Create alias store and review queue tables

Revision ID: 001_resolver_tables
Revises:
Create Date: 2026-10-19

Creates:
- canonical_entries: Canonical analytes and units per vocabulary
- aliases: Normalized label keys mapped to canonical entries
- review_items: Human review queue with one pending item per key and issue

Also enables pg_trgm and adds a trigram index on alias keys for the
database-side fuzzy tier.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001_resolver_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    # =========================
    # Canonical Entries Table
    # =========================
    op.create_table(
        "canonical_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("vocabulary", sa.String(20), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column(
            "attributes",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_canonical_entries"),
        sa.UniqueConstraint("vocabulary", "code", name="uq_canonical_entries_vocabulary"),
    )

    # =========================
    # Aliases Table
    # =========================
    op.create_table(
        "aliases",
        sa.Column("vocabulary", sa.String(20), nullable=False),
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("canonical_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("display", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("vocabulary", "key", name="pk_aliases"),
        sa.ForeignKeyConstraint(
            ["canonical_id"],
            ["canonical_entries.id"],
            name="fk_aliases_canonical_id_canonical_entries",
            ondelete="CASCADE",
        ),
    )

    op.create_index("ix_aliases_canonical_id", "aliases", ["canonical_id"])
    op.create_index(
        "ix_aliases_key_trgm",
        "aliases",
        ["key"],
        postgresql_using="gin",
        postgresql_ops={"key": "gin_trgm_ops"},
    )

    # =========================
    # Review Items Table
    # =========================
    op.create_table(
        "review_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("vocabulary", sa.String(20), nullable=False),
        sa.Column("normalized_key", sa.String(255), nullable=False),
        sa.Column("raw_label", sa.Text, nullable=True),
        sa.Column("issue_type", sa.String(32), nullable=False),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("proposed_code", sa.String(64), nullable=True),
        sa.Column("proposed_name", sa.String(255), nullable=True),
        sa.Column("proposed_unit", sa.String(64), nullable=True),
        sa.Column("proposed_confidence", sa.Float, nullable=True),
        sa.Column(
            "needs_correction",
            sa.Boolean,
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column(
            "evidence",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("occurrence_count", sa.Integer, nullable=False, server_default=sa.text("1")),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text, nullable=True),
        sa.Column("resolved_canonical_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_review_items"),
        sa.ForeignKeyConstraint(
            ["resolved_canonical_id"],
            ["canonical_entries.id"],
            name="fk_review_items_resolved_canonical_id_canonical_entries",
            ondelete="SET NULL",
        ),
    )

    op.create_index(
        "uq_review_items_pending",
        "review_items",
        ["vocabulary", "normalized_key", "issue_type"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index("ix_review_items_status", "review_items", ["status"])


def downgrade() -> None:
    op.drop_table("review_items")
    op.drop_table("aliases")
    op.drop_table("canonical_entries")
