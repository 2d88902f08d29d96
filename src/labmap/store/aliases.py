"""Alias store.

Persists canonical entries and the normalized alias keys that point at
them. Aliases are append-only: every write is insert-if-absent, so
concurrent writers of the same key converge on the first row and a
conflicting proposal never replaces an existing mapping.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Iterable
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db import dialect_name, get_db_session
from ..errors import StoreUnavailableError
from ..logging import get_context_logger
from ..models import AliasSource, CanonicalEntry, SeedEntry, SeedReport, Vocabulary
from ..models.tables import AliasRow, CanonicalEntryRow

logger = get_context_logger(__name__)


class AliasWriteStatus(str, Enum):
    """Outcome of an insert-if-absent alias write."""

    CREATED = "created"
    EXISTS = "exists"
    CONFLICT = "conflict"


class AliasWriteResult(BaseModel):
    status: AliasWriteStatus
    canonical_id: UUID
    code: str | None = None


@dataclass(frozen=True)
class AliasKey:
    """A lightweight alias row used for in-memory similarity search."""

    key: str
    canonical_id: UUID
    code: str


def upsert_insert(session: AsyncSession, entity: Any):
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    name = dialect_name(session)
    if name == "postgresql":
        return pg_insert(entity)
    if name == "sqlite":
        return sqlite_insert(entity)
    raise StoreUnavailableError(f"Unsupported database dialect: {name}")


def _row_to_entry(row: CanonicalEntryRow) -> CanonicalEntry:
    return CanonicalEntry(
        id=row.id,
        vocabulary=row.vocabulary,
        code=row.code,
        display_name=row.display_name,
        attributes=row.attributes or {},
        source=row.source,
        created_at=row.created_at,
    )


class AliasStore:
    """Canonical entries and aliases for every vocabulary.

    Each public method opens its own short session unless one is passed
    in, so reads can run concurrently and callers that need a single
    transaction (review approval) can share theirs.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession] | None:
        return self._session_factory

    @asynccontextmanager
    async def _session(
        self, session: AsyncSession | None = None
    ) -> AsyncGenerator[AsyncSession, None]:
        if session is not None:
            yield session
            return
        async with get_db_session(self._session_factory) as new_session:
            yield new_session

    # =========================
    # Reads
    # =========================

    async def lookup(
        self,
        vocabulary: Vocabulary,
        key: str,
        session: AsyncSession | None = None,
    ) -> CanonicalEntry | None:
        """Find the canonical entry an alias key points at."""
        stmt = (
            select(CanonicalEntryRow)
            .join(AliasRow, AliasRow.canonical_id == CanonicalEntryRow.id)
            .where(AliasRow.vocabulary == vocabulary.value, AliasRow.key == key)
        )
        async with self._session(session) as s:
            row = (await s.execute(stmt)).scalar_one_or_none()
        return _row_to_entry(row) if row else None

    async def snapshot(self, vocabulary: Vocabulary) -> list[AliasKey]:
        """Load every alias of a vocabulary with its canonical code."""
        stmt = (
            select(AliasRow.key, AliasRow.canonical_id, CanonicalEntryRow.code)
            .join(CanonicalEntryRow, AliasRow.canonical_id == CanonicalEntryRow.id)
            .where(AliasRow.vocabulary == vocabulary.value)
            .order_by(AliasRow.key)
        )
        async with self._session() as s:
            rows = (await s.execute(stmt)).all()
        return [AliasKey(key=r.key, canonical_id=r.canonical_id, code=r.code) for r in rows]

    async def list_entries(self, vocabulary: Vocabulary) -> list[CanonicalEntry]:
        """All canonical entries of a vocabulary, ordered by code."""
        stmt = (
            select(CanonicalEntryRow)
            .where(CanonicalEntryRow.vocabulary == vocabulary.value)
            .order_by(CanonicalEntryRow.code)
        )
        async with self._session() as s:
            rows = (await s.execute(stmt)).scalars().all()
        return [_row_to_entry(row) for row in rows]

    async def get_entry(
        self, entry_id: UUID, session: AsyncSession | None = None
    ) -> CanonicalEntry | None:
        async with self._session(session) as s:
            row = await s.get(CanonicalEntryRow, entry_id)
        return _row_to_entry(row) if row else None

    async def get_entry_by_code(
        self,
        vocabulary: Vocabulary,
        code: str,
        session: AsyncSession | None = None,
    ) -> CanonicalEntry | None:
        stmt = select(CanonicalEntryRow).where(
            CanonicalEntryRow.vocabulary == vocabulary.value,
            CanonicalEntryRow.code == code,
        )
        async with self._session(session) as s:
            row = (await s.execute(stmt)).scalar_one_or_none()
        return _row_to_entry(row) if row else None

    async def aliases_for(self, entry_id: UUID) -> list[str]:
        """Alias keys pointing at one entry."""
        stmt = select(AliasRow.key).where(AliasRow.canonical_id == entry_id).order_by(AliasRow.key)
        async with self._session() as s:
            return list((await s.execute(stmt)).scalars().all())

    async def count_aliases(self, vocabulary: Vocabulary) -> int:
        stmt = select(func.count()).select_from(AliasRow).where(
            AliasRow.vocabulary == vocabulary.value
        )
        async with self._session() as s:
            return (await s.execute(stmt)).scalar_one()

    # =========================
    # Writes
    # =========================

    async def create_entry(
        self,
        vocabulary: Vocabulary,
        code: str,
        display_name: str,
        attributes: dict[str, Any] | None = None,
        source: AliasSource = AliasSource.MANUAL,
        session: AsyncSession | None = None,
    ) -> tuple[CanonicalEntry, bool]:
        """Create a canonical entry unless its code already exists.

        Returns:
            Tuple of (entry, created). An existing entry is returned
            unchanged; codes are immutable.
        """
        async with self._session(session) as s:
            stmt = (
                upsert_insert(s, CanonicalEntryRow)
                .values(
                    id=uuid4(),
                    vocabulary=vocabulary.value,
                    code=code,
                    display_name=display_name,
                    attributes=attributes or {},
                    source=source.value,
                )
                .on_conflict_do_nothing(index_elements=["vocabulary", "code"])
                .returning(CanonicalEntryRow.id)
            )
            created_id = (await s.execute(stmt)).scalar_one_or_none()
            entry = await self.get_entry_by_code(vocabulary, code, session=s)

        if entry is None:
            raise StoreUnavailableError(f"Entry {vocabulary.value}:{code} vanished after insert")
        if created_id is not None:
            logger.info(f"Created {vocabulary.value} entry {code} ({source.value})")
        return entry, created_id is not None

    async def insert_alias_if_absent(
        self,
        vocabulary: Vocabulary,
        key: str,
        canonical_id: UUID,
        source: AliasSource,
        display: str | None = None,
        session: AsyncSession | None = None,
    ) -> AliasWriteResult:
        """Write an alias unless the key is already taken.

        Returns:
            CREATED when written, EXISTS when the key already points at the
            same entry, CONFLICT (with the existing target) otherwise.
        """
        async with self._session(session) as s:
            stmt = (
                upsert_insert(s, AliasRow)
                .values(
                    vocabulary=vocabulary.value,
                    key=key,
                    canonical_id=canonical_id,
                    source=source.value,
                    display=display[:255] if display else None,
                )
                .on_conflict_do_nothing(index_elements=["vocabulary", "key"])
                .returning(AliasRow.key)
            )
            inserted = (await s.execute(stmt)).scalar_one_or_none()
            if inserted is not None:
                return AliasWriteResult(status=AliasWriteStatus.CREATED, canonical_id=canonical_id)

            existing = (
                await s.execute(
                    select(AliasRow.canonical_id, CanonicalEntryRow.code)
                    .join(CanonicalEntryRow, AliasRow.canonical_id == CanonicalEntryRow.id)
                    .where(AliasRow.vocabulary == vocabulary.value, AliasRow.key == key)
                )
            ).one()

        status = (
            AliasWriteStatus.EXISTS
            if existing.canonical_id == canonical_id
            else AliasWriteStatus.CONFLICT
        )
        return AliasWriteResult(
            status=status, canonical_id=existing.canonical_id, code=existing.code
        )

    async def seed(
        self,
        vocabulary: Vocabulary,
        entries: Iterable[SeedEntry],
        key_fn: Callable[[str | None], str | None],
    ) -> SeedReport:
        """Load seed entries and their aliases idempotently.

        The entry's code and name are always registered as aliases too.

        Args:
            vocabulary: Target vocabulary
            entries: Seed entries with raw alias strings
            key_fn: The vocabulary's normalization function
        """
        report = SeedReport(vocabulary=vocabulary)

        async with self._session() as s:
            for seed_entry in entries:
                entry, created = await self.create_entry(
                    vocabulary,
                    seed_entry.code,
                    seed_entry.name,
                    attributes=seed_entry.attributes,
                    source=AliasSource.SEED,
                    session=s,
                )
                if created:
                    report.entries_created += 1

                keys: dict[str, str] = {}
                for raw in [seed_entry.code, seed_entry.name, *seed_entry.aliases]:
                    key = key_fn(raw)
                    if key and key not in keys:
                        keys[key] = raw

                for key, raw in keys.items():
                    result = await self.insert_alias_if_absent(
                        vocabulary, key, entry.id, AliasSource.SEED, display=raw, session=s
                    )
                    if result.status == AliasWriteStatus.CREATED:
                        report.aliases_created += 1
                    elif result.status == AliasWriteStatus.EXISTS:
                        report.aliases_existing += 1
                    else:
                        report.alias_conflicts.append(
                            f"{key}: {result.code} (wanted {seed_entry.code})"
                        )

        logger.info(
            f"Seeded {vocabulary.value}: {report.entries_created} entries, "
            f"{report.aliases_created} aliases, {len(report.alias_conflicts)} conflicts"
        )
        return report
