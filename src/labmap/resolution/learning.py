"""Auto-learning cache writer.

Turns confident decisions into aliases so the next occurrence of the same
label resolves at Tier A, and routes everything the pipeline will not
decide on its own to the review queue.
"""

from typing import Any
from uuid import UUID

from pydantic import BaseModel

from ..config import ResolverConfig
from ..logging import get_context_logger, log_alias_learned
from ..models import (
    AliasSource,
    Candidate,
    Decision,
    IssueType,
    ResolutionDecision,
    ReviewProposal,
    SemanticOutcome,
)
from ..store.aliases import AliasStore, AliasWriteStatus
from ..store.review import ReviewQueue
from .arbitration import Arbitration
from .profiles import VocabularyProfile

logger = get_context_logger(__name__)

_NO_ACTION = {Decision.EXACT_MATCH, Decision.CONFLICT}


class LearningOutcome(BaseModel):
    """What the writer did (or, in a dry run, would do) for one decision."""

    learned: bool = False
    would_learn: bool = False
    review_item_id: UUID | None = None
    issue_type: IssueType | None = None
    note: str | None = None


class AutoLearner:
    """Writes learned aliases and enqueues review items.

    Learning requires confidence >= learn_threshold and one of:
    - SEMANTIC_MATCH on an in-vocabulary entry (source auto-learned)
    - FUZZY_MATCH confirmed by the semantic tier (source fuzzy-confirmed)
    - NEW_CANDIDATE that passed syntax validation, in a vocabulary that
      learns new entries (source auto-learned)

    An alias key already mapped elsewhere is never overwritten; the item
    is queued as alias_conflict instead.

    NEW proposals a vocabulary does not learn by itself are grouped per
    proposed code: every label proposing the same code joins one review
    item as a variation.

    Writes go through _learn_alias, _learn_new_entry, _queue and
    _queue_new_candidate; PreviewLearner replaces them for dry runs.
    """

    def __init__(
        self,
        alias_store: AliasStore,
        review_queue: ReviewQueue,
        config: ResolverConfig,
        profile: VocabularyProfile,
    ):
        self.aliases = alias_store
        self.review_queue = review_queue
        self.config = config
        self.profile = profile

    @property
    def vocabulary(self):
        return self.profile.vocabulary

    async def apply(
        self,
        decision: ResolutionDecision,
        arbitration: Arbitration,
        semantic: SemanticOutcome | None,
        dry_run: bool = False,
    ) -> LearningOutcome:
        """Learn from or queue one decision.

        With dry_run nothing is written; the outcome reports the alias
        that would be learned or the issue the item would be queued under.
        """
        if dry_run:
            preview = PreviewLearner(self.aliases, self.review_queue, self.config, self.profile)
            return await preview.apply(decision, arbitration, semantic)

        if not decision.key or decision.decision in _NO_ACTION:
            return LearningOutcome()

        confident = decision.confidence >= self.config.learn_threshold

        if decision.decision == Decision.FUZZY_MATCH:
            if arbitration.semantic_confirmed and confident:
                return await self._learn_alias(
                    decision, arbitration.chosen, AliasSource.FUZZY_CONFIRMED
                )
            return LearningOutcome()

        if decision.decision == Decision.SEMANTIC_MATCH:
            if confident:
                return await self._learn_alias(
                    decision, arbitration.chosen, AliasSource.AUTO_LEARNED
                )
            return await self._queue(
                decision, IssueType.LOW_CONFIDENCE, semantic,
                proposal=self._proposal(semantic, decision.confidence),
            )

        if decision.decision == Decision.NEW_CANDIDATE:
            return await self._handle_new(decision, semantic, confident)

        if decision.decision == Decision.AMBIGUOUS:
            return await self._queue(decision, IssueType.AMBIGUOUS, semantic)

        if decision.decision == Decision.UNKNOWN_CODE:
            return await self._queue(
                decision, IssueType.UNKNOWN_CODE, semantic,
                proposal=self._proposal(semantic, semantic.confidence if semantic else None),
            )

        # ABSTAIN and UNRESOLVED: a mid-range fuzzy hint is a low-confidence lead
        hint = self._best_hint(decision.candidates)
        if hint is not None:
            return await self._queue(
                decision, IssueType.LOW_CONFIDENCE, semantic,
                proposal=ReviewProposal(code=hint.code, confidence=hint.score),
            )
        return await self._queue(decision, IssueType.UNRESOLVED, semantic)

    async def _handle_new(
        self,
        decision: ResolutionDecision,
        semantic: SemanticOutcome | None,
        confident: bool,
    ) -> LearningOutcome:
        proposal = self._proposal(semantic, decision.confidence)

        if semantic is None or not semantic.syntax_valid:
            return await self._queue(
                decision, IssueType.SYNTAX_INVALID, semantic,
                proposal=proposal, needs_correction=True,
            )
        if not self.profile.learn_new_entries:
            return await self._queue_new_candidate(decision, semantic, proposal)
        if not confident:
            return await self._queue(decision, IssueType.LOW_CONFIDENCE, semantic, proposal=proposal)
        return await self._learn_new_entry(decision, semantic)

    # =========================
    # Writes
    # =========================

    async def _learn_new_entry(
        self,
        decision: ResolutionDecision,
        semantic: SemanticOutcome,
    ) -> LearningOutcome:
        attributes = {"unit": semantic.unit} if semantic.unit else {}
        entry, _ = await self.aliases.create_entry(
            self.vocabulary,
            semantic.code,
            semantic.name or semantic.code,
            attributes=attributes,
            source=AliasSource.AUTO_LEARNED,
        )
        decision.chosen_canonical_id = entry.id
        decision.chosen_code = entry.code
        chosen = Candidate(canonical_id=entry.id, code=entry.code, score=decision.confidence)
        return await self._learn_alias(decision, chosen, AliasSource.AUTO_LEARNED)

    async def _learn_alias(
        self,
        decision: ResolutionDecision,
        chosen: Candidate | None,
        source: AliasSource,
    ) -> LearningOutcome:
        if chosen is None:
            return LearningOutcome()

        result = await self.aliases.insert_alias_if_absent(
            self.vocabulary,
            decision.key,
            chosen.canonical_id,
            source,
            display=decision.label,
        )

        if result.status == AliasWriteStatus.CREATED:
            log_alias_learned(
                self.vocabulary.value, decision.key, chosen.code, source.value, decision.confidence
            )
            return LearningOutcome(learned=True)

        if result.status == AliasWriteStatus.EXISTS:
            return LearningOutcome(note="alias_exists")

        logger.warning(
            f"Alias '{decision.key}' already maps to {result.code}; not remapping to {chosen.code}"
        )
        outcome = await self._queue(
            decision,
            IssueType.ALIAS_CONFLICT,
            None,
            proposal=ReviewProposal(code=chosen.code, confidence=decision.confidence),
            extra={"existing_code": result.code, "existing_canonical_id": str(result.canonical_id)},
        )
        outcome.note = "alias_conflict"
        return outcome

    async def _queue(
        self,
        decision: ResolutionDecision,
        issue_type: IssueType,
        semantic: SemanticOutcome | None,
        proposal: ReviewProposal | None = None,
        needs_correction: bool = False,
        extra: dict[str, Any] | None = None,
    ) -> LearningOutcome:
        item = await self.review_queue.enqueue(
            self.vocabulary,
            decision.key,
            issue_type,
            raw_label=decision.label,
            proposal=proposal,
            needs_correction=needs_correction,
            evidence=self._evidence(decision, semantic, extra),
        )
        return LearningOutcome(review_item_id=item.id, issue_type=issue_type)

    async def _queue_new_candidate(
        self,
        decision: ResolutionDecision,
        semantic: SemanticOutcome | None,
        proposal: ReviewProposal,
    ) -> LearningOutcome:
        item = await self.review_queue.enqueue_new_candidate(
            self.vocabulary,
            decision.key,
            raw_label=decision.label,
            proposal=proposal,
            evidence=self._evidence(decision, semantic),
        )
        return LearningOutcome(review_item_id=item.id, issue_type=IssueType.NEW_CANDIDATE)

    # =========================
    # Helpers
    # =========================

    def _evidence(
        self,
        decision: ResolutionDecision,
        semantic: SemanticOutcome | None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        evidence: dict[str, Any] = {
            "request_id": decision.request_id,
            "decision": decision.decision.value,
            "confidence": decision.confidence,
            "candidates": [c.model_dump(mode="json") for c in decision.candidates],
            "tiers": decision.tiers,
            "note": decision.note,
        }
        if semantic is not None:
            evidence["semantic"] = {
                **semantic.summary(),
                "rationale": semantic.rationale,
                "syntax_issues": semantic.syntax_issues,
                "suggestion": semantic.suggestion,
            }
        if extra:
            evidence.update(extra)
        return evidence

    def _proposal(self, semantic: SemanticOutcome | None, confidence: float | None) -> ReviewProposal:
        if semantic is None:
            return ReviewProposal(confidence=confidence)
        return ReviewProposal(
            code=semantic.code,
            name=semantic.name,
            unit=semantic.unit,
            confidence=confidence,
        )

    def _best_hint(self, candidates: list[Candidate]) -> Candidate | None:
        for candidate in candidates:
            if candidate.score >= self.config.queue_lower_threshold:
                return candidate
        return None


class PreviewLearner(AutoLearner):
    """Same routing as AutoLearner, without writing anything.

    Alias conflicts are still detected with a read of the alias store.
    """

    async def _learn_new_entry(
        self,
        decision: ResolutionDecision,
        semantic: SemanticOutcome,
    ) -> LearningOutcome:
        existing = await self.aliases.get_entry_by_code(self.vocabulary, semantic.code)
        decision.chosen_code = semantic.code
        if existing is not None:
            decision.chosen_canonical_id = existing.id
        return LearningOutcome(would_learn=True)

    async def _learn_alias(
        self,
        decision: ResolutionDecision,
        chosen: Candidate | None,
        source: AliasSource,
    ) -> LearningOutcome:
        if chosen is None:
            return LearningOutcome()

        existing = await self.aliases.lookup(self.vocabulary, decision.key)
        if existing is None:
            return LearningOutcome(would_learn=True)
        if existing.id == chosen.canonical_id:
            return LearningOutcome(note="alias_exists")
        return LearningOutcome(issue_type=IssueType.ALIAS_CONFLICT, note="alias_conflict")

    async def _queue(
        self,
        decision: ResolutionDecision,
        issue_type: IssueType,
        semantic: SemanticOutcome | None,
        proposal: ReviewProposal | None = None,
        needs_correction: bool = False,
        extra: dict[str, Any] | None = None,
    ) -> LearningOutcome:
        return LearningOutcome(issue_type=issue_type)

    async def _queue_new_candidate(
        self,
        decision: ResolutionDecision,
        semantic: SemanticOutcome | None,
        proposal: ReviewProposal,
    ) -> LearningOutcome:
        return LearningOutcome(issue_type=IssueType.NEW_CANDIDATE)
