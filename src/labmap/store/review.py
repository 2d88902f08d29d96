"""Review queue.

Holds labels the pipeline would not decide on its own. Pending items are
deduplicated on (vocabulary, normalized key, issue type): a repeat
sighting bumps the occurrence count instead of adding a row. Approval is
the only path by which a reviewer's decision enters the alias store.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db import get_db_session
from ..errors import (
    AliasConflictError,
    InvalidReviewTransitionError,
    ProposalInvalidError,
    ReviewItemNotFoundError,
    ReviewNeedsCorrectionError,
)
from ..logging import get_context_logger, log_review_action
from ..models import (
    AliasSource,
    IssueType,
    ReviewProposal,
    ReviewQueueItem,
    ReviewStats,
    ReviewStatus,
    Vocabulary,
)
from ..models.tables import PENDING_ONLY, ReviewItemRow
from ..resolution.profiles import get_profile
from .aliases import AliasStore, AliasWriteStatus, upsert_insert

logger = get_context_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_item(row: ReviewItemRow) -> ReviewQueueItem:
    return ReviewQueueItem(
        id=row.id,
        vocabulary=row.vocabulary,
        normalized_key=row.normalized_key,
        raw_label=row.raw_label,
        issue_type=row.issue_type,
        status=row.status,
        proposal=ReviewProposal(
            code=row.proposed_code,
            name=row.proposed_name,
            unit=row.proposed_unit,
            confidence=row.proposed_confidence,
        ),
        needs_correction=row.needs_correction,
        evidence=row.evidence or {},
        occurrence_count=row.occurrence_count,
        first_seen_at=row.first_seen_at,
        last_seen_at=row.last_seen_at,
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
        review_notes=row.review_notes,
        resolved_canonical_id=row.resolved_canonical_id,
    )


class ReviewQueue:
    """Queue of labels awaiting a human decision.

    Lifecycle: pending -> approved or pending -> rejected. Both end
    states are terminal; acting on them raises
    InvalidReviewTransitionError.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        alias_store: AliasStore | None = None,
    ):
        self._session_factory = session_factory
        self.aliases = alias_store or AliasStore(session_factory)

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with get_db_session(self._session_factory) as session:
            yield session

    async def _load_for_update(self, session: AsyncSession, item_id: UUID) -> ReviewItemRow:
        row = await session.get(ReviewItemRow, item_id, with_for_update=True)
        if row is None:
            raise ReviewItemNotFoundError(item_id)
        return row

    @staticmethod
    def _alias_keys(row: ReviewItemRow) -> list[tuple[str, str | None]]:
        keys = [(row.normalized_key, row.raw_label)]
        for variation in (row.evidence or {}).get("variations", []):
            key = variation.get("key")
            if key and all(key != k for k, _ in keys):
                keys.append((key, variation.get("label")))
        return keys

    # =========================
    # Producing
    # =========================

    async def enqueue(
        self,
        vocabulary: Vocabulary,
        normalized_key: str,
        issue_type: IssueType,
        raw_label: str | None = None,
        proposal: ReviewProposal | None = None,
        needs_correction: bool = False,
        evidence: dict[str, Any] | None = None,
    ) -> ReviewQueueItem:
        """Add an item, or bump the matching pending one.

        Args:
            vocabulary: Vocabulary of the label
            normalized_key: Lookup key of the label
            issue_type: Why the label needs review
            raw_label: Label as first seen
            proposal: Pipeline suggestion, if any
            needs_correction: Proposal failed validation and must be edited
            evidence: Tier outputs supporting the item (latest sighting wins)

        Returns:
            The pending item with its current occurrence count
        """
        proposal = proposal or ReviewProposal()
        now = _utcnow()

        async with self._session() as session:
            stmt = upsert_insert(session, ReviewItemRow).values(
                id=uuid4(),
                vocabulary=vocabulary.value,
                normalized_key=normalized_key,
                raw_label=raw_label,
                issue_type=issue_type.value,
                status=ReviewStatus.PENDING.value,
                proposed_code=proposal.code,
                proposed_name=proposal.name,
                proposed_unit=proposal.unit,
                proposed_confidence=proposal.confidence,
                needs_correction=needs_correction,
                evidence=evidence or {},
                occurrence_count=1,
                first_seen_at=now,
                last_seen_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["vocabulary", "normalized_key", "issue_type"],
                index_where=PENDING_ONLY,
                set_={
                    "occurrence_count": ReviewItemRow.occurrence_count + 1,
                    "last_seen_at": stmt.excluded.last_seen_at,
                    "evidence": stmt.excluded.evidence,
                },
            ).returning(ReviewItemRow.id)
            item_id = (await session.execute(stmt)).scalar_one()
            row = await session.get(ReviewItemRow, item_id, populate_existing=True)
            item = _row_to_item(row)

        if item.occurrence_count == 1:
            log_review_action(str(item.id), "enqueued", code=proposal.code)
        else:
            logger.debug(
                f"Review item {item.id} seen {item.occurrence_count} times",
                extra={"issue_type": issue_type.value, "vocabulary": vocabulary.value},
            )
        return item

    async def enqueue_new_candidate(
        self,
        vocabulary: Vocabulary,
        normalized_key: str,
        raw_label: str | None,
        proposal: ReviewProposal,
        evidence: dict[str, Any] | None = None,
    ) -> ReviewQueueItem:
        """Queue a proposed new entry, grouped with others proposing the same code.

        Labels proposing the same code share one pending new_candidate item.
        Each distinct key is kept in evidence["variations"] as
        {"key", "label"}; approving the item writes an alias for every one.
        """
        variation = {"key": normalized_key, "label": raw_label}
        if proposal.code:
            async with self._session() as session:
                row = (
                    await session.execute(
                        select(ReviewItemRow)
                        .where(
                            ReviewItemRow.vocabulary == vocabulary.value,
                            ReviewItemRow.issue_type == IssueType.NEW_CANDIDATE.value,
                            ReviewItemRow.status == ReviewStatus.PENDING.value,
                            ReviewItemRow.proposed_code == proposal.code,
                        )
                        .order_by(ReviewItemRow.first_seen_at)
                        .limit(1)
                        .with_for_update()
                    )
                ).scalar_one_or_none()
                if row is not None:
                    variations = list((row.evidence or {}).get("variations", []))
                    if all(v.get("key") != normalized_key for v in variations):
                        variations.append(variation)
                    row.evidence = {**(evidence or {}), "variations": variations}
                    row.occurrence_count += 1
                    row.last_seen_at = _utcnow()
                    item = _row_to_item(row)

            if row is not None:
                logger.debug(
                    f"Review item {item.id} now groups {len(variations)} variations of {proposal.code}",
                    extra={"vocabulary": vocabulary.value},
                )
                return item

        return await self.enqueue(
            vocabulary,
            normalized_key,
            IssueType.NEW_CANDIDATE,
            raw_label=raw_label,
            proposal=proposal,
            evidence={**(evidence or {}), "variations": [variation]},
        )

    # =========================
    # Reading
    # =========================

    async def get(self, item_id: UUID) -> ReviewQueueItem:
        """Get one item.

        Raises:
            ReviewItemNotFoundError: If no such item exists
        """
        async with self._session() as session:
            row = await session.get(ReviewItemRow, item_id)
            if row is None:
                raise ReviewItemNotFoundError(item_id)
            return _row_to_item(row)

    async def list_items(
        self,
        status: ReviewStatus | None = ReviewStatus.PENDING,
        vocabulary: Vocabulary | None = None,
        issue_type: IssueType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ReviewQueueItem]:
        """List items, most frequent first."""
        stmt = select(ReviewItemRow)
        if status is not None:
            stmt = stmt.where(ReviewItemRow.status == status.value)
        if vocabulary is not None:
            stmt = stmt.where(ReviewItemRow.vocabulary == vocabulary.value)
        if issue_type is not None:
            stmt = stmt.where(ReviewItemRow.issue_type == issue_type.value)
        stmt = (
            stmt.order_by(
                ReviewItemRow.occurrence_count.desc(),
                ReviewItemRow.first_seen_at,
            )
            .limit(limit)
            .offset(offset)
        )

        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_item(row) for row in rows]

    async def stats(self) -> ReviewStats:
        """Count items per status and pending items per issue type."""
        async with self._session() as session:
            by_status = (
                await session.execute(
                    select(ReviewItemRow.status, func.count()).group_by(ReviewItemRow.status)
                )
            ).all()
            by_issue = (
                await session.execute(
                    select(ReviewItemRow.issue_type, func.count())
                    .where(ReviewItemRow.status == ReviewStatus.PENDING.value)
                    .group_by(ReviewItemRow.issue_type)
                )
            ).all()
            oldest = (
                await session.execute(
                    select(func.min(ReviewItemRow.first_seen_at)).where(
                        ReviewItemRow.status == ReviewStatus.PENDING.value
                    )
                )
            ).scalar_one_or_none()

        status_counts = {status: count for status, count in by_status}
        return ReviewStats(
            total=sum(status_counts.values()),
            pending=status_counts.get(ReviewStatus.PENDING.value, 0),
            by_status=status_counts,
            pending_by_issue={issue: count for issue, count in by_issue},
            oldest_pending_at=oldest,
        )

    # =========================
    # Deciding
    # =========================

    async def approve(
        self,
        item_id: UUID,
        reviewed_by: str,
        canonical_code: str | None = None,
        display_name: str | None = None,
        notes: str | None = None,
    ) -> ReviewQueueItem:
        """Approve an item and materialize its mapping.

        The chosen code (explicit, or the item's proposal) is created as a
        canonical entry if it does not exist yet, and a manual alias from
        the item's key to it is written, plus one per grouped variation.
        Any conflicting key rolls the whole approval back.

        Raises:
            ReviewItemNotFoundError: If no such item exists
            InvalidReviewTransitionError: If the item is not pending
            ReviewNeedsCorrectionError: If the proposal is flagged invalid
            ProposalInvalidError: If no code is known or a new one is invalid
            AliasConflictError: If the key already maps to another entry
        """
        async with self._session() as session:
            row = await self._load_for_update(session, item_id)
            if row.status != ReviewStatus.PENDING.value:
                raise InvalidReviewTransitionError(item_id, row.status, "approve")
            if row.needs_correction:
                raise ReviewNeedsCorrectionError(item_id)

            vocabulary = Vocabulary(row.vocabulary)
            code = canonical_code or row.proposed_code
            if not code:
                raise ProposalInvalidError(
                    f"Review item {item_id} has no proposed code; pass one explicitly",
                    {"item_id": str(item_id)},
                )

            entry = await self.aliases.get_entry_by_code(vocabulary, code, session=session)
            if entry is None:
                name = display_name or row.proposed_name or code
                unit = row.proposed_unit if code == row.proposed_code else None
                outcome = get_profile(vocabulary).validator.validate_proposal(code, name, unit)
                if not outcome.valid:
                    raise ProposalInvalidError(
                        f"Proposed {vocabulary.value} code {code!r} is invalid",
                        {"issues": outcome.issues, "suggestion": outcome.suggestion},
                    )
                attributes = {"unit": unit} if unit else {}
                entry, _ = await self.aliases.create_entry(
                    vocabulary,
                    code,
                    name,
                    attributes=attributes,
                    source=AliasSource.MANUAL,
                    session=session,
                )

            for key, label in self._alias_keys(row):
                result = await self.aliases.insert_alias_if_absent(
                    vocabulary,
                    key,
                    entry.id,
                    AliasSource.MANUAL,
                    display=label,
                    session=session,
                )
                if result.status == AliasWriteStatus.CONFLICT:
                    raise AliasConflictError(vocabulary.value, key, result.code or "?", entry.code)

            row.status = ReviewStatus.APPROVED.value
            row.reviewed_by = reviewed_by
            row.reviewed_at = _utcnow()
            row.review_notes = notes
            row.resolved_canonical_id = entry.id
            item = _row_to_item(row)

        log_review_action(str(item_id), "approved", reviewer=reviewed_by, code=entry.code)
        return item

    async def reject(
        self,
        item_id: UUID,
        reviewed_by: str,
        notes: str | None = None,
    ) -> ReviewQueueItem:
        """Reject an item. Nothing is written to the alias store.

        Raises:
            ReviewItemNotFoundError: If no such item exists
            InvalidReviewTransitionError: If the item is not pending
        """
        async with self._session() as session:
            row = await self._load_for_update(session, item_id)
            if row.status != ReviewStatus.PENDING.value:
                raise InvalidReviewTransitionError(item_id, row.status, "reject")

            row.status = ReviewStatus.REJECTED.value
            row.reviewed_by = reviewed_by
            row.reviewed_at = _utcnow()
            row.review_notes = notes
            item = _row_to_item(row)

        log_review_action(str(item_id), "rejected", reviewer=reviewed_by)
        return item

    async def correct(
        self,
        item_id: UUID,
        code: str,
        name: str | None = None,
        unit: str | None = None,
        corrected_by: str | None = None,
    ) -> ReviewQueueItem:
        """Replace an item's proposal and re-validate it.

        The item stays pending. needs_correction is cleared when the new
        proposal passes the vocabulary's validator.

        Raises:
            ReviewItemNotFoundError: If no such item exists
            InvalidReviewTransitionError: If the item is not pending
            ProposalInvalidError: If the corrected proposal is still invalid
        """
        async with self._session() as session:
            row = await self._load_for_update(session, item_id)
            if row.status != ReviewStatus.PENDING.value:
                raise InvalidReviewTransitionError(item_id, row.status, "correct")

            vocabulary = Vocabulary(row.vocabulary)
            name = name or row.proposed_name or code
            outcome = get_profile(vocabulary).validator.validate_proposal(code, name, unit)
            if not outcome.valid:
                raise ProposalInvalidError(
                    f"Corrected {vocabulary.value} proposal {code!r} is invalid",
                    {"issues": outcome.issues, "suggestion": outcome.suggestion},
                )

            row.proposed_code = code
            row.proposed_name = name
            row.proposed_unit = unit
            row.needs_correction = False
            item = _row_to_item(row)

        log_review_action(str(item_id), "corrected", reviewer=corrected_by, code=code)
        return item


_queue: ReviewQueue | None = None


def get_review_queue() -> ReviewQueue:
    """Get the review queue bound to the default session factory."""
    global _queue
    if _queue is None:
        _queue = ReviewQueue()
    return _queue
