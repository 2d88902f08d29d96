"""Tiered resolver.

Orchestrates one batch of labels through the pipeline:

    normalize -> Tier A (exact) -> Tier B (fuzzy) -> Tier C (semantic)
              -> arbitration -> learning / review -> audit

Tier A and Tier B run concurrently across items. Tier C receives every
item the deterministic tiers did not settle, in one call per chunk.
Store writes happen sequentially after arbitration. Decisions are
returned in input order.
"""

import asyncio
import time
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError

from ..config import ResolverConfig, get_settings
from ..errors import StoreUnavailableError
from ..logging import get_context_logger
from ..models import (
    BatchResult,
    Decision,
    ResolutionDecision,
    ResolutionRequest,
    SemanticBatch,
    SemanticOutcome,
    SemanticQuery,
    Tier,
    TierResult,
    Vocabulary,
)
from ..store.aliases import AliasStore
from ..store.review import ReviewQueue
from .arbitration import Arbitration, ArbitrationEngine
from .audit import AuditEmitter, LoggingAuditEmitter, build_batch_summary, item_event
from .learning import AutoLearner
from .matcher import (
    ExactMatcher,
    FuzzyMatcher,
    RapidFuzzSearch,
    SimilaritySearch,
    TrigramSearch,
)
from .profiles import get_profile
from .semantic import SemanticBackend, SemanticResolver, uncertain

STORE_ERRORS = (SQLAlchemyError, OSError, StoreUnavailableError)

# Sibling labels passed to Tier C as context
MAX_CONTEXT_LABELS = 50


class TieredResolver:
    """Resolves labels of one vocabulary through the tiered pipeline.

    Usage:
        resolver = TieredResolver(Vocabulary.ANALYTE, semantic_backend=backend)
        result = await resolver.resolve_batch(["Ферритин", "Fer-ritin"])
        for decision in result.decisions:
            print(decision.decision, decision.chosen_code)
    """

    def __init__(
        self,
        vocabulary: Vocabulary | str,
        config: ResolverConfig | None = None,
        alias_store: AliasStore | None = None,
        review_queue: ReviewQueue | None = None,
        similarity: SimilaritySearch | None = None,
        semantic_backend: SemanticBackend | None = None,
        audit: AuditEmitter | None = None,
    ):
        """Initialize the resolver.

        Args:
            vocabulary: Vocabulary to resolve against
            config: Thresholds and budgets (defaults if omitted)
            alias_store: Alias store (default session factory if omitted)
            review_queue: Review queue (shares the alias store if omitted)
            similarity: Tier B search (RapidFuzz over the alias store if omitted)
            semantic_backend: Tier C backend; Tier C is disabled without one
            audit: Audit emitter (structured logging if omitted)
        """
        self.profile = get_profile(vocabulary)
        self.config = config or ResolverConfig()
        self.aliases = alias_store or AliasStore()
        self.review_queue = review_queue or ReviewQueue(
            self.aliases.session_factory, alias_store=self.aliases
        )
        self.audit = audit or LoggingAuditEmitter()

        self.exact = ExactMatcher(self.aliases, self.profile.vocabulary)
        self.fuzzy: FuzzyMatcher | None = None
        if self.profile.fuzzy_enabled:
            search = similarity or RapidFuzzSearch(
                self.aliases, same_script_only=self.config.same_script_only
            )
            self.fuzzy = FuzzyMatcher(search, self.config)
        self.semantic: SemanticResolver | None = None
        if semantic_backend is not None:
            self.semantic = SemanticResolver(semantic_backend, self.config, self.profile)
        self.arbiter = ArbitrationEngine()
        self.learner = AutoLearner(self.aliases, self.review_queue, self.config, self.profile)

        self.logger = get_context_logger(__name__, vocabulary=self.vocabulary.value)

    @property
    def vocabulary(self) -> Vocabulary:
        return self.profile.vocabulary

    async def resolve(
        self,
        label: str | None,
        context: list[str] | None = None,
        unit_hint: str | None = None,
        timeout: float | None = None,
        dry_run: bool = False,
    ) -> ResolutionDecision:
        """Resolve a single label."""
        request = ResolutionRequest(label=label, context=context or [], unit_hint=unit_hint)
        result = await self.resolve_batch([request], timeout=timeout, dry_run=dry_run)
        return result.decisions[0]

    async def resolve_batch(
        self,
        requests: Sequence[ResolutionRequest | str | None],
        timeout: float | None = None,
        dry_run: bool = False,
    ) -> BatchResult:
        """Resolve a batch of labels.

        Args:
            requests: Requests or raw labels
            timeout: Caller deadline in seconds. Tier C is cut short when it
                expires; Tier A and B results are kept.
            dry_run: Resolve without writing. Nothing is learned or queued;
                decisions report what would have been (would_learn,
                review_issue).

        Returns:
            BatchResult with one decision per request, in input order
        """
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        requests = [
            r if isinstance(r, ResolutionRequest) else ResolutionRequest(label=r)
            for r in requests
        ]
        keys = [self.profile.key(r.label) for r in requests]

        try:
            exact = list(await asyncio.gather(*(self.exact.match(key) for key in keys)))
            fuzzy = await self._run_fuzzy(keys, exact)
            pending = self._semantic_positions(keys, exact, fuzzy)
            entries = (
                await self.aliases.list_entries(self.vocabulary)
                if self.semantic and pending
                else []
            )
        except STORE_ERRORS as e:
            self.logger.error(f"Alias store unavailable: {e}")
            decisions = [self._store_unavailable(r, k) for r, k in zip(requests, keys)]
            return self._finish(decisions, started, 0, dry_run)

        semantic, semantic_calls = await self._run_semantic(
            requests, pending, fuzzy, entries, deadline
        )

        decisions = []
        for i, request in enumerate(requests):
            arbitration = self.arbiter.arbitrate(exact[i], fuzzy[i], semantic[i])
            decision = self._build_decision(
                request, keys[i], arbitration, exact[i], fuzzy[i], semantic[i]
            )
            await self._record(decision, arbitration, semantic[i], dry_run)
            decisions.append(decision)

        return self._finish(decisions, started, semantic_calls, dry_run)

    # =========================
    # Tiers
    # =========================

    async def _run_fuzzy(
        self,
        keys: list[str | None],
        exact: list[TierResult],
    ) -> list[TierResult | None]:
        unsettled = [i for i, result in enumerate(exact) if not result.matched and keys[i]]
        results: list[TierResult | None] = [None] * len(keys)
        if not unsettled:
            return results

        if self.fuzzy is None:
            for i in unsettled:
                results[i] = TierResult(tier=Tier.FUZZY, skipped=True, reason="disabled")
            return results

        skip_reason = await self.fuzzy.prepare(self.vocabulary)
        if skip_reason:
            for i in unsettled:
                results[i] = TierResult(tier=Tier.FUZZY, skipped=True, reason=skip_reason)
            return results

        found = await asyncio.gather(
            *(self.fuzzy.search(self.vocabulary, keys[i]) for i in unsettled)
        )
        for i, result in zip(unsettled, found):
            results[i] = result
        return results

    def _semantic_positions(
        self,
        keys: list[str | None],
        exact: list[TierResult],
        fuzzy: list[TierResult | None],
    ) -> list[int]:
        return [
            i
            for i, key in enumerate(keys)
            if key
            and not exact[i].matched
            and not (fuzzy[i] is not None and fuzzy[i].ambiguous)
        ]

    async def _run_semantic(
        self,
        requests: list[ResolutionRequest],
        pending: list[int],
        fuzzy: list[TierResult | None],
        entries: list,
        deadline: float | None,
    ) -> tuple[list[SemanticOutcome | None], int]:
        """Run Tier C; returns outcomes by position and the backend call count."""
        outcomes: list[SemanticOutcome | None] = [None] * len(requests)
        if self.semantic is None or not pending:
            return outcomes, 0

        queries = [
            SemanticQuery(
                index=i,
                label=requests[i].label,
                key=self.profile.key(requests[i].label),
                hints=fuzzy[i].candidates if fuzzy[i] is not None else [],
                unit_hint=requests[i].unit_hint,
            )
            for i in pending
        ]
        context = self._context(requests)

        remaining = None
        if deadline is not None:
            remaining = deadline - asyncio.get_running_loop().time()
        if remaining is not None and remaining <= 0:
            batch = SemanticBatch(outcomes=uncertain(len(queries), "timeout", timeout=True))
        else:
            batch = await self.semantic.propose(queries, entries, context, timeout=remaining)

        for i, outcome in zip(pending, batch.outcomes):
            outcomes[i] = outcome
        return outcomes, batch.calls

    def _context(self, requests: list[ResolutionRequest]) -> list[str]:
        seen: dict[str, None] = {}
        for request in requests:
            for label in [request.label, *request.context]:
                if label:
                    seen.setdefault(label, None)
        return list(seen)[:MAX_CONTEXT_LABELS]

    # =========================
    # Decisions
    # =========================

    def _build_decision(
        self,
        request: ResolutionRequest,
        key: str | None,
        arbitration: Arbitration,
        exact: TierResult,
        fuzzy: TierResult | None,
        semantic: SemanticOutcome | None,
    ) -> ResolutionDecision:
        tiers = {Tier.EXACT.value: exact.summary()}
        duration = exact.elapsed_ms
        if fuzzy is not None:
            tiers[Tier.FUZZY.value] = fuzzy.summary()
            duration += fuzzy.elapsed_ms
        if semantic is not None:
            tiers[Tier.SEMANTIC.value] = semantic.summary()
            duration += semantic.elapsed_ms

        chosen = arbitration.chosen
        return ResolutionDecision(
            request_id=request.id,
            label=request.label,
            key=key,
            decision=arbitration.decision,
            confidence=arbitration.confidence,
            chosen_canonical_id=chosen.canonical_id if chosen else None,
            chosen_code=chosen.code if chosen else None,
            candidates=arbitration.candidates,
            conflict_detail=arbitration.conflict_detail,
            tiers=tiers,
            note="empty_label" if key is None else arbitration.note,
            uncertain=(
                arbitration.decision == Decision.UNRESOLVED
                and semantic is not None
                and semantic.uncertain
            ),
            timeout=semantic is not None and semantic.timeout,
            duration_ms=duration,
        )

    async def _record(
        self,
        decision: ResolutionDecision,
        arbitration: Arbitration,
        semantic: SemanticOutcome | None,
        dry_run: bool = False,
    ) -> None:
        started = time.perf_counter()
        try:
            outcome = await self.learner.apply(decision, arbitration, semantic, dry_run=dry_run)
        except STORE_ERRORS as e:
            self.logger.error(f"Could not record decision for '{decision.key}': {e}")
            decision.note = "store_write_failed"
        else:
            decision.learned = outcome.learned
            decision.would_learn = outcome.would_learn
            decision.review_item_id = outcome.review_item_id
            decision.review_issue = outcome.issue_type
            if outcome.note:
                decision.note = outcome.note
        decision.duration_ms += (time.perf_counter() - started) * 1000

    def _store_unavailable(self, request: ResolutionRequest, key: str | None) -> ResolutionDecision:
        return ResolutionDecision(
            request_id=request.id,
            label=request.label,
            key=key,
            decision=Decision.UNRESOLVED,
            confidence=0.0,
            note="store_unavailable",
        )

    def _finish(
        self,
        decisions: list[ResolutionDecision],
        started: float,
        semantic_calls: int,
        dry_run: bool = False,
    ) -> BatchResult:
        for decision in decisions:
            self.audit.emit_item(item_event(self.vocabulary.value, decision, dry_run=dry_run))

        summary = build_batch_summary(
            self.vocabulary.value,
            decisions,
            (time.perf_counter() - started) * 1000,
            semantic_calls,
            dry_run=dry_run,
        )
        self.audit.emit_batch(summary)
        return BatchResult(
            vocabulary=self.vocabulary,
            decisions=decisions,
            summary=summary,
            dry_run=dry_run,
        )


def get_resolver(
    vocabulary: Vocabulary | str,
    semantic: bool = True,
    audit: AuditEmitter | None = None,
) -> TieredResolver:
    """Build a resolver from process settings.

    Args:
        vocabulary: Vocabulary to resolve against
        semantic: Enable Tier C when a backend is configured
        audit: Audit emitter (structured logging if omitted)
    """
    from .llm import get_semantic_backend

    settings = get_settings()
    backend = get_semantic_backend() if semantic else None
    similarity = TrigramSearch() if settings.fuzzy_backend == "trigram" else None
    return TieredResolver(
        vocabulary,
        config=settings.resolver_config(),
        similarity=similarity,
        semantic_backend=backend,
        audit=audit,
    )
