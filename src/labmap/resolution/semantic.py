"""Tier C: batched semantic resolution.

Sends the labels the deterministic tiers could not settle to a semantic
backend (normally an LLM) in one call per batch, then validates what comes
back. Backend failures never propagate: every item of the failed batch
becomes uncertain and carries the failure class.
"""

import asyncio
import time
from typing import Any, Protocol, Sequence

import httpx
from pydantic import ValidationError

from ..config import ResolverConfig
from ..errors import SemanticResolverError
from ..logging import get_context_logger, log_semantic_call
from ..models import (
    CanonicalEntry,
    SemanticBatch,
    SemanticOutcome,
    SemanticProposal,
    SemanticQuery,
    SemanticVerdict,
    Vocabulary,
)
from .normalize import sanitize_prompt_input
from .profiles import VocabularyProfile

logger = get_context_logger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class SemanticBackend(Protocol):
    """One call resolves one batch.

    Returns one mapping per query with keys ``index`` (the query's
    position in the batch), ``decision`` (MATCH, NEW or ABSTAIN),
    ``code``, ``name``, ``unit``, ``confidence`` and ``rationale``.
    """

    async def propose(
        self,
        profile: VocabularyProfile,
        queries: Sequence[SemanticQuery],
        vocabulary: Sequence[CanonicalEntry],
        context: Sequence[str],
    ) -> list[dict[str, Any]]:
        ...


def classify_error(error: BaseException) -> SemanticResolverError:
    """Map a backend exception onto a failure class and retry policy."""
    if isinstance(error, SemanticResolverError):
        return error
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return SemanticResolverError("timeout", str(error), transient=True)
    if isinstance(error, (httpx.NetworkError, ConnectionError)):
        return SemanticResolverError("network", str(error), transient=True)

    status = getattr(error, "status_code", None)
    if status is None and isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    if status == 429:
        return SemanticResolverError("rate_limited", str(error), transient=True)
    if isinstance(status, int) and status >= 500:
        return SemanticResolverError("server_error", str(error), transient=status in RETRYABLE_STATUS)

    # Provider SDK connection errors (openai/anthropic APIConnectionError)
    if type(error).__name__ in ("APIConnectionError", "APITimeoutError"):
        return SemanticResolverError("network", str(error), transient=True)

    return SemanticResolverError("backend_error", f"{type(error).__name__}: {error}")


def uncertain(count: int, reason: str, timeout: bool = False, elapsed_ms: float = 0.0) -> list[SemanticOutcome]:
    return [
        SemanticOutcome(error_reason=reason, timeout=timeout, elapsed_ms=elapsed_ms)
        for _ in range(count)
    ]


class SemanticResolver:
    """Tier C driver: chunking, deadline, retry and validation.

    Batches larger than max_batch_size are split into chunks resolved
    sequentially, so at most one backend call is in flight per resolver
    call. semantic_timeout bounds the whole call, all chunks and retries
    included, and is shortened to the caller's deadline when that comes
    first. Chunks still unsent when the deadline passes become uncertain
    with timeout set.
    """

    def __init__(
        self,
        backend: SemanticBackend,
        config: ResolverConfig,
        profile: VocabularyProfile,
    ):
        self.backend = backend
        self.config = config
        self.profile = profile

    @property
    def vocabulary(self) -> Vocabulary:
        return self.profile.vocabulary

    async def propose(
        self,
        queries: Sequence[SemanticQuery],
        vocabulary: Sequence[CanonicalEntry],
        context: Sequence[str] = (),
        timeout: float | None = None,
    ) -> SemanticBatch:
        """Resolve queries; one outcome per query, in input order.

        Args:
            queries: Items to resolve (index is ignored; order is kept)
            vocabulary: Entries a MATCH must name to be in-vocabulary
            context: Sibling labels of the batch, passed as hints
            timeout: Caller's remaining budget in seconds

        Returns:
            SemanticBatch with outcomes aligned with queries and the
            number of backend calls made
        """
        if not queries:
            return SemanticBatch()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.semantic_timeout
        if timeout is not None:
            deadline = min(deadline, loop.time() + timeout)
        codes = {entry.code: entry for entry in vocabulary}
        sanitized_context = [c for c in (sanitize_prompt_input(x) for x in context) if c]

        outcomes: list[SemanticOutcome | None] = [None] * len(queries)
        sendable: list[tuple[int, SemanticQuery]] = []
        for position, query in enumerate(queries):
            label = sanitize_prompt_input(query.label)
            if label is None:
                outcomes[position] = SemanticOutcome(error_reason="sanitization_rejected")
                continue
            sendable.append((position, query.model_copy(update={"label": label})))

        calls = 0
        size = self.config.max_batch_size
        for start in range(0, len(sendable), size):
            chunk = sendable[start:start + size]
            budget = deadline - loop.time()
            if budget <= 0:
                results = uncertain(len(chunk), "timeout", timeout=True)
            else:
                calls += 1
                results = await self._resolve_chunk(
                    [query for _, query in chunk], codes, sanitized_context, budget
                )
            for (position, _), outcome in zip(chunk, results):
                outcomes[position] = outcome

        return SemanticBatch(
            outcomes=[outcome or SemanticOutcome(error_reason="not_sent") for outcome in outcomes],
            calls=calls,
        )

    async def _resolve_chunk(
        self,
        chunk: list[SemanticQuery],
        codes: dict[str, CanonicalEntry],
        context: list[str],
        budget: float,
    ) -> list[SemanticOutcome]:
        queries = [query.model_copy(update={"index": i}) for i, query in enumerate(chunk)]
        started = time.perf_counter()
        attempts = [0]

        try:
            raw = await asyncio.wait_for(
                self._call_with_retry(queries, list(codes.values()), context, attempts),
                timeout=budget,
            )
            outcomes = self._parse(raw, len(queries), codes)
        except asyncio.TimeoutError:
            elapsed = (time.perf_counter() - started) * 1000
            log_semantic_call(self.vocabulary.value, len(queries), attempts[0], elapsed, "timeout")
            return uncertain(len(queries), "timeout", timeout=True, elapsed_ms=elapsed)
        except SemanticResolverError as e:
            elapsed = (time.perf_counter() - started) * 1000
            log_semantic_call(self.vocabulary.value, len(queries), attempts[0], elapsed, e.reason)
            return uncertain(len(queries), e.reason, elapsed_ms=elapsed)

        elapsed = (time.perf_counter() - started) * 1000
        log_semantic_call(self.vocabulary.value, len(queries), attempts[0], elapsed)
        for outcome in outcomes:
            outcome.elapsed_ms = elapsed
        return outcomes

    async def _call_with_retry(
        self,
        queries: list[SemanticQuery],
        vocabulary: list[CanonicalEntry],
        context: list[str],
        attempts: list[int],
    ) -> list[dict[str, Any]]:
        """Call the backend, retrying once after a fixed backoff on transient errors."""
        while True:
            attempts[0] += 1
            try:
                return await self.backend.propose(self.profile, queries, vocabulary, context)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_error(e)
                if not error.transient or attempts[0] >= 2:
                    if error is e:
                        raise
                    raise error from e
                logger.info(
                    f"Transient semantic failure ({error.reason}), retrying in "
                    f"{self.config.semantic_retry_backoff}s"
                )
                await asyncio.sleep(self.config.semantic_retry_backoff)

    def _parse(
        self,
        raw: Any,
        count: int,
        codes: dict[str, CanonicalEntry],
    ) -> list[SemanticOutcome]:
        """Validate backend output; any violation fails the whole chunk."""
        if not isinstance(raw, list):
            raise SemanticResolverError("malformed_output", "Backend output is not a list")

        try:
            proposals = [SemanticProposal.model_validate(item) for item in raw]
        except ValidationError as e:
            raise SemanticResolverError("malformed_output", str(e)) from e

        by_index: dict[int, SemanticProposal] = {}
        for proposal in proposals:
            if proposal.index >= count or proposal.index in by_index:
                raise SemanticResolverError(
                    "malformed_output", f"Unexpected or duplicate index {proposal.index}"
                )
            by_index[proposal.index] = proposal
        if len(by_index) != count:
            missing = sorted(set(range(count)) - set(by_index))
            raise SemanticResolverError("malformed_output", f"Missing indices {missing}")

        return [self._to_outcome(by_index[i], codes) for i in range(count)]

    def _to_outcome(
        self,
        proposal: SemanticProposal,
        codes: dict[str, CanonicalEntry],
    ) -> SemanticOutcome:
        code = proposal.code.strip() if proposal.code else None
        outcome = SemanticOutcome(
            verdict=proposal.decision,
            code=code,
            name=proposal.name,
            unit=proposal.unit,
            confidence=proposal.confidence,
            rationale=proposal.rationale,
        )

        if proposal.decision == SemanticVerdict.MATCH:
            entry = codes.get(code) if code else None
            if entry is not None:
                outcome.canonical_id = entry.id
        elif proposal.decision == SemanticVerdict.NEW:
            existing = codes.get(code) if code else None
            if existing is not None:
                # A "new" entry that already exists is a match on it
                outcome.verdict = SemanticVerdict.MATCH
                outcome.canonical_id = existing.id
            else:
                validation = self.profile.validator.validate_proposal(
                    code, proposal.name, proposal.unit
                )
                outcome.syntax_valid = validation.valid
                outcome.syntax_issues = validation.issues
                outcome.suggestion = validation.suggestion

        return outcome
