"""Arbitration between tier outputs.

Rules are evaluated in order and the first that applies wins:

1. Exact hit                          -> EXACT_MATCH (1.0)
2. Fuzzy accepted, not ambiguous:
   semantic agrees                    -> FUZZY_MATCH, max(fuzzy, semantic)
   semantic names another entry       -> CONFLICT, higher confidence wins
   semantic silent / uncertain        -> FUZZY_MATCH, fuzzy score
3. Fuzzy ambiguous                    -> AMBIGUOUS (never auto-accepted)
4. Semantic alone: in-vocabulary MATCH -> SEMANTIC_MATCH,
   out-of-vocabulary MATCH -> UNKNOWN_CODE, NEW -> NEW_CANDIDATE,
   ABSTAIN -> ABSTAIN
5. Otherwise                          -> UNRESOLVED (0.0)
"""

import math

from pydantic import BaseModel, Field

from ..models import (
    Candidate,
    ConflictDetail,
    Decision,
    SemanticOutcome,
    SemanticVerdict,
    TierResult,
)

TIE_PREFERS_FUZZY = "tie_prefers_fuzzy"
HIGHER_CONFIDENCE = "higher_confidence"


class Arbitration(BaseModel):
    """Outcome of arbitrating one item."""

    decision: Decision
    confidence: float = Field(ge=0.0, le=1.0)
    chosen: Candidate | None = None
    candidates: list[Candidate] = Field(default_factory=list)
    conflict_detail: ConflictDetail | None = None
    # Fuzzy match independently confirmed by the semantic tier
    semantic_confirmed: bool = False
    note: str | None = None


class ArbitrationEngine:
    """Combines Tier A, B and C outputs into one decision."""

    def arbitrate(
        self,
        exact: TierResult | None,
        fuzzy: TierResult | None,
        semantic: SemanticOutcome | None,
    ) -> Arbitration:
        if exact is not None and exact.matched and exact.top is not None:
            return Arbitration(
                decision=Decision.EXACT_MATCH,
                confidence=1.0,
                chosen=exact.top,
                candidates=[exact.top],
            )

        if fuzzy is not None and fuzzy.matched and fuzzy.top is not None:
            return self._arbitrate_fuzzy(fuzzy, semantic)

        if fuzzy is not None and fuzzy.ambiguous:
            return Arbitration(
                decision=Decision.AMBIGUOUS,
                confidence=fuzzy.top.score if fuzzy.top else 0.0,
                candidates=fuzzy.candidates[:2],
                note="fuzzy_ambiguous",
            )

        hints = fuzzy.candidates if fuzzy is not None else []

        if semantic is not None and not semantic.uncertain:
            return self._arbitrate_semantic(semantic, hints)

        note = None
        if semantic is not None and semantic.error_reason:
            note = f"semantic_{semantic.error_reason}"
        elif fuzzy is not None and fuzzy.skipped and fuzzy.reason:
            note = f"fuzzy_{fuzzy.reason}"
        return Arbitration(
            decision=Decision.UNRESOLVED,
            confidence=0.0,
            candidates=hints,
            note=note,
        )

    def _arbitrate_fuzzy(
        self,
        fuzzy: TierResult,
        semantic: SemanticOutcome | None,
    ) -> Arbitration:
        top = fuzzy.top

        if (
            semantic is None
            or semantic.verdict != SemanticVerdict.MATCH
            or not semantic.in_vocabulary
        ):
            note = None
            if semantic is not None and semantic.verdict is not None:
                note = f"semantic_{semantic.verdict.value.lower()}_ignored"
            return Arbitration(
                decision=Decision.FUZZY_MATCH,
                confidence=top.score,
                chosen=top,
                candidates=fuzzy.candidates,
                note=note,
            )

        if semantic.canonical_id == top.canonical_id:
            return Arbitration(
                decision=Decision.FUZZY_MATCH,
                confidence=max(top.score, semantic.confidence),
                chosen=top,
                candidates=fuzzy.candidates,
                semantic_confirmed=True,
            )

        semantic_candidate = Candidate(
            canonical_id=semantic.canonical_id,
            code=semantic.code,
            score=semantic.confidence,
        )
        if math.isclose(top.score, semantic.confidence, abs_tol=1e-9):
            winner, resolved_by = top, TIE_PREFERS_FUZZY
        elif top.score > semantic.confidence:
            winner, resolved_by = top, HIGHER_CONFIDENCE
        else:
            winner, resolved_by = semantic_candidate, HIGHER_CONFIDENCE

        return Arbitration(
            decision=Decision.CONFLICT,
            confidence=winner.score,
            chosen=winner,
            candidates=[top, semantic_candidate],
            conflict_detail=ConflictDetail(
                fuzzy=top,
                semantic=semantic_candidate,
                resolved_by=resolved_by,
            ),
        )

    def _arbitrate_semantic(
        self,
        semantic: SemanticOutcome,
        hints: list[Candidate],
    ) -> Arbitration:
        if semantic.verdict == SemanticVerdict.MATCH:
            if semantic.in_vocabulary:
                chosen = Candidate(
                    canonical_id=semantic.canonical_id,
                    code=semantic.code,
                    score=semantic.confidence,
                )
                return Arbitration(
                    decision=Decision.SEMANTIC_MATCH,
                    confidence=semantic.confidence,
                    chosen=chosen,
                    candidates=[chosen],
                )
            return Arbitration(
                decision=Decision.UNKNOWN_CODE,
                confidence=0.0,
                candidates=hints,
                note=f"code_not_in_vocabulary:{semantic.code}",
            )

        if semantic.verdict == SemanticVerdict.NEW:
            return Arbitration(
                decision=Decision.NEW_CANDIDATE,
                confidence=semantic.confidence,
                candidates=hints,
                note=None if semantic.syntax_valid else "syntax_invalid",
            )

        return Arbitration(
            decision=Decision.ABSTAIN,
            confidence=0.0,
            candidates=hints,
        )
