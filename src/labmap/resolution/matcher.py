"""Tier A and Tier B matchers.

Implements the two deterministic tiers:
1. Exact: alias key lookup, confidence 1.0
2. Fuzzy: similarity search over known aliases with an ambiguity guard

Similarity search is pluggable. RapidFuzzSearch scores an in-memory alias
snapshot; TrigramSearch delegates to PostgreSQL's pg_trgm extension.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable

from rapidfuzz import fuzz, process
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import ResolverConfig
from ..db import dialect_name, get_db_session
from ..errors import TierUnavailableError
from ..logging import get_context_logger
from ..models import Candidate, Tier, TierResult, Vocabulary
from ..store.aliases import AliasKey, AliasStore
from .normalize import detect_script

logger = get_context_logger(__name__)

# Float slack when comparing score deltas against the ambiguity delta
_EPSILON = 1e-9


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def best_per_entry(candidates: list[Candidate]) -> list[Candidate]:
    """Keep the best-scoring alias per canonical entry, best first."""
    best: dict = {}
    for candidate in candidates:
        current = best.get(candidate.canonical_id)
        if current is None or candidate.score > current.score:
            best[candidate.canonical_id] = candidate
    return sorted(best.values(), key=lambda c: (-c.score, c.code))


class ExactMatcher:
    """Tier A: exact alias lookup.

    A hit is terminal; the item never reaches Tier B or Tier C.
    """

    def __init__(self, alias_store: AliasStore, vocabulary: Vocabulary):
        self.aliases = alias_store
        self.vocabulary = vocabulary

    async def match(self, key: str | None) -> TierResult:
        started = time.perf_counter()
        if not key:
            return TierResult(tier=Tier.EXACT, skipped=True, reason="empty_key")

        entry = await self.aliases.lookup(self.vocabulary, key)
        if entry is None:
            return TierResult(tier=Tier.EXACT, elapsed_ms=_elapsed_ms(started))

        return TierResult(
            tier=Tier.EXACT,
            matched=True,
            candidates=[
                Candidate(canonical_id=entry.id, code=entry.code, score=1.0, key=key)
            ],
            elapsed_ms=_elapsed_ms(started),
        )


class SimilaritySearch(ABC):
    """Similarity search capability used by Tier B."""

    async def prepare(self, vocabulary: Vocabulary) -> None:
        """Load whatever the search needs before a batch."""

    @abstractmethod
    async def search(
        self,
        vocabulary: Vocabulary,
        key: str,
        limit: int,
        min_score: float,
    ) -> list[Candidate]:
        """Return candidates scoring at least min_score, best first.

        At most one candidate per canonical entry (its best alias) and at
        most limit entries. Grouping happens before the limit is applied,
        so an entry with many close aliases cannot push the runner-up
        entry out of the result.

        Raises:
            TierUnavailableError: If the capability is not usable
        """
        ...


class RapidFuzzSearch(SimilaritySearch):
    """Edit-distance search over an alias snapshot using RapidFuzz.

    The snapshot is loaded once per batch by prepare(). With
    same_script_only, aliases written in a different script than the
    query are not scored (a Latin transliteration never fuzzily matches a
    Cyrillic alias; the semantic tier handles cross-script labels).
    """

    def __init__(
        self,
        alias_store: AliasStore,
        scorer: Callable[..., float] = fuzz.ratio,
        same_script_only: bool = True,
    ):
        self.aliases = alias_store
        self.scorer = scorer
        self.same_script_only = same_script_only
        self._snapshots: dict[Vocabulary, dict[str, list[AliasKey]]] = {}

    async def prepare(self, vocabulary: Vocabulary) -> None:
        rows = await self.aliases.snapshot(vocabulary)
        by_script: dict[str, list[AliasKey]] = {}
        for row in rows:
            script = detect_script(row.key) if self.same_script_only else "any"
            by_script.setdefault(script, []).append(row)
        self._snapshots[vocabulary] = by_script

    async def search(
        self,
        vocabulary: Vocabulary,
        key: str,
        limit: int,
        min_score: float,
    ) -> list[Candidate]:
        snapshot = self._snapshots.get(vocabulary)
        if snapshot is None:
            raise TierUnavailableError(f"No alias snapshot loaded for {vocabulary.value}")

        if self.same_script_only:
            rows = snapshot.get(detect_script(key), [])
        else:
            rows = snapshot.get("any", [])
        if not rows:
            return []

        # Score every alias; the limit applies to entries, not aliases
        matches = process.extract(
            key,
            [row.key for row in rows],
            scorer=self.scorer,
            limit=None,
            score_cutoff=min_score * 100,
        )
        candidates = [
            Candidate(
                canonical_id=rows[index].canonical_id,
                code=rows[index].code,
                score=round(score / 100, 4),
                key=rows[index].key,
            )
            for _, score, index in matches
        ]
        return best_per_entry(candidates)[:limit]


class TrigramSearch(SimilaritySearch):
    """Trigram similarity via PostgreSQL pg_trgm.

    Reports itself unavailable on other databases or when the extension
    is not installed; the fuzzy tier is then skipped.
    """

    QUERY = text(
        """
        SELECT best.key, best.canonical_id, best.code, best.score
        FROM (
            SELECT DISTINCT ON (a.canonical_id)
                   a.key, a.canonical_id, e.code, similarity(a.key, :key) AS score
            FROM aliases a
            JOIN canonical_entries e ON e.id = a.canonical_id
            WHERE a.vocabulary = :vocabulary
              AND similarity(a.key, :key) >= :min_score
            ORDER BY a.canonical_id, score DESC, a.key
        ) best
        ORDER BY best.score DESC, best.code
        LIMIT :limit
        """
    )

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory
        self._available: bool | None = None

    async def prepare(self, vocabulary: Vocabulary) -> None:
        if self._available is not None:
            return
        async with get_db_session(self._session_factory) as session:
            if dialect_name(session) != "postgresql":
                self._available = False
            else:
                result = await session.execute(
                    text("SELECT EXISTS(SELECT 1 FROM pg_extension WHERE extname = 'pg_trgm')")
                )
                self._available = bool(result.scalar())
        if not self._available:
            logger.warning("pg_trgm not available; fuzzy tier will be skipped")

    async def search(
        self,
        vocabulary: Vocabulary,
        key: str,
        limit: int,
        min_score: float,
    ) -> list[Candidate]:
        if not self._available:
            raise TierUnavailableError("pg_trgm extension is not available")

        async with get_db_session(self._session_factory) as session:
            rows = (
                await session.execute(
                    self.QUERY,
                    {
                        "key": key,
                        "vocabulary": vocabulary.value,
                        "min_score": min_score,
                        "limit": limit,
                    },
                )
            ).all()

        return [
            Candidate(
                canonical_id=row.canonical_id,
                code=row.code,
                score=round(min(float(row.score), 1.0), 4),
                key=row.key,
            )
            for row in rows
        ]


class FuzzyMatcher:
    """Tier B: similarity search with an ambiguity guard.

    The search returns one candidate per canonical entry (best alias wins)
    and the top two are compared. Once the top score reaches queue_lower_threshold, a
    gap of at most ambiguity_delta to the runner-up makes the result
    ambiguous, however high the top score is. A result is a match only
    when the top score reaches accept_threshold and it is not ambiguous.

    The search is bounded by fuzzy_timeout. Timeouts, unavailability and
    search errors mark the tier skipped; they never fail the item.
    """

    def __init__(self, search: SimilaritySearch, config: ResolverConfig):
        self.search_backend = search
        self.config = config

    async def prepare(self, vocabulary: Vocabulary) -> str | None:
        """Prepare the search backend. Returns a skip reason on failure."""
        try:
            await self.search_backend.prepare(vocabulary)
        except TierUnavailableError as e:
            logger.warning(f"Fuzzy tier unavailable: {e.message}")
            return "unavailable"
        return None

    async def search(self, vocabulary: Vocabulary, key: str | None) -> TierResult:
        started = time.perf_counter()
        if not key:
            return TierResult(tier=Tier.FUZZY, skipped=True, reason="empty_key")

        try:
            raw = await asyncio.wait_for(
                self.search_backend.search(
                    vocabulary,
                    key,
                    limit=self.config.fuzzy_top_k,
                    min_score=self.config.queue_lower_threshold - self.config.ambiguity_delta,
                ),
                timeout=self.config.fuzzy_timeout,
            )
        except asyncio.TimeoutError:
            return self._skipped("timeout", started)
        except TierUnavailableError:
            return self._skipped("unavailable", started)
        except Exception as e:
            logger.warning(f"Fuzzy search failed for '{key}': {e}")
            return self._skipped("error", started)

        # Searches group per entry already; this only restores the ordering
        candidates = best_per_entry(raw)[: self.config.fuzzy_top_k]
        return self._evaluate(candidates, started)

    def _evaluate(self, candidates: list[Candidate], started: float) -> TierResult:
        if not candidates:
            return TierResult(tier=Tier.FUZZY, elapsed_ms=_elapsed_ms(started))

        top = candidates[0]
        ambiguous = (
            len(candidates) > 1
            and top.score >= self.config.queue_lower_threshold
            and top.score - candidates[1].score <= self.config.ambiguity_delta + _EPSILON
        )
        matched = top.score >= self.config.accept_threshold and not ambiguous

        return TierResult(
            tier=Tier.FUZZY,
            matched=matched,
            ambiguous=ambiguous,
            candidates=candidates,
            elapsed_ms=_elapsed_ms(started),
        )

    def _skipped(self, reason: str, started: float) -> TierResult:
        return TierResult(
            tier=Tier.FUZZY,
            skipped=True,
            reason=reason,
            elapsed_ms=_elapsed_ms(started),
        )
