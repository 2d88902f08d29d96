"""End-to-end resolver tests on SQLite with a scripted semantic backend.

Run with: pytest tests/integration/test_resolver_flow.py -v
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from labmap.config import ResolverConfig
from labmap.models import AliasSource, Decision, IssueType, ResolutionRequest, Vocabulary
from labmap.resolution.matcher import TrigramSearch
from labmap.resolution.resolver import TieredResolver
from labmap.store.aliases import AliasStore

from tests.fixtures import FakeSemanticBackend

pytestmark = pytest.mark.integration


@pytest.fixture
def make_resolver(seeded_store, review_queue, config, audit):
    def _make(vocabulary=Vocabulary.ANALYTE, backend=None, **kwargs):
        return TieredResolver(
            vocabulary,
            config=kwargs.pop("config", config),
            alias_store=kwargs.pop("alias_store", seeded_store),
            review_queue=review_queue,
            semantic_backend=backend,
            audit=audit,
            **kwargs,
        )

    return _make


class TestExactTier:
    """Tests for Tier A short-circuiting."""

    @pytest.mark.asyncio
    async def test_exact_hits_skip_later_tiers(self, make_resolver, audit):
        """Test that exact matches never reach the fuzzy or semantic tier."""
        backend = FakeSemanticBackend()
        resolver = make_resolver(backend=backend)

        result = await resolver.resolve_batch(["Гемоглобин", "HGB", "  ферритин "])

        assert [d.decision for d in result.decisions] == [Decision.EXACT_MATCH] * 3
        assert [d.chosen_code for d in result.decisions] == ["HGB", "HGB", "FER"]
        assert all(d.confidence == 1.0 for d in result.decisions)
        assert all(set(d.tiers) == {"exact"} for d in result.decisions)
        assert backend.calls == []
        assert audit.batches[0]["semantic_calls"] == 0

    @pytest.mark.asyncio
    async def test_exact_hit_is_not_learned_or_queued(self, make_resolver, review_queue):
        """Test that exact matches write nothing."""
        decision = await make_resolver().resolve("Hb")

        assert decision.learned is False
        assert decision.review_item_id is None
        assert await review_queue.list_items() == []


class TestSemanticLearning:
    """Tests for the auto-learning cache."""

    @pytest.mark.asyncio
    async def test_latin_misspelling_learned_then_exact(self, make_resolver, seeded_store):
        """Test that a semantic match is learned and the next sighting is exact."""
        backend = FakeSemanticBackend(
            {"Fer-ritin": {"decision": "MATCH", "code": "FER", "confidence": 0.92}}
        )
        resolver = make_resolver(backend=backend)

        first = await resolver.resolve("Fer-ritin")

        assert first.decision == Decision.SEMANTIC_MATCH
        assert first.chosen_code == "FER"
        assert first.key == "fer ritin"
        assert first.learned is True
        assert (await seeded_store.lookup(Vocabulary.ANALYTE, "fer ritin")).code == "FER"
        assert len(backend.calls) == 1

        second = await resolver.resolve("fer ritin")

        assert second.decision == Decision.EXACT_MATCH
        assert second.chosen_code == "FER"
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_low_confidence_semantic_is_queued(self, make_resolver, seeded_store, review_queue):
        """Test that a semantic match below the learn threshold goes to review."""
        backend = FakeSemanticBackend(
            {"ferrit": {"decision": "MATCH", "code": "FER", "confidence": 0.7}}
        )

        decision = await make_resolver(backend=backend).resolve("ferrit")

        assert decision.decision == Decision.SEMANTIC_MATCH
        assert decision.learned is False
        item = await review_queue.get(decision.review_item_id)
        assert item.issue_type == IssueType.LOW_CONFIDENCE
        assert item.proposal.code == "FER"
        assert await seeded_store.lookup(Vocabulary.ANALYTE, "ferrit") is None

    @pytest.mark.asyncio
    async def test_unknown_code_is_queued(self, make_resolver, review_queue):
        """Test that a MATCH on a code outside the vocabulary is never learned."""
        backend = FakeSemanticBackend(
            {"ldh": {"decision": "MATCH", "code": "LDH", "confidence": 0.95}}
        )

        decision = await make_resolver(backend=backend).resolve("ldh")

        assert decision.decision == Decision.UNKNOWN_CODE
        assert decision.chosen_code is None
        item = await review_queue.get(decision.review_item_id)
        assert item.issue_type == IssueType.UNKNOWN_CODE
        assert item.proposal.code == "LDH"

    @pytest.mark.asyncio
    async def test_new_analyte_is_queued_not_created(self, make_resolver, seeded_store, review_queue):
        """Test that analytes never auto-create entries."""
        backend = FakeSemanticBackend(
            {"Lp(a)": {"decision": "NEW", "code": "LPA", "name": "Lipoprotein(a)", "confidence": 0.95}}
        )

        decision = await make_resolver(backend=backend).resolve("Lp(a)")

        assert decision.decision == Decision.NEW_CANDIDATE
        assert decision.learned is False
        item = await review_queue.get(decision.review_item_id)
        assert item.issue_type == IssueType.NEW_CANDIDATE
        assert await seeded_store.get_entry_by_code(Vocabulary.ANALYTE, "LPA") is None

    @pytest.mark.asyncio
    async def test_new_analyte_variations_grouped(self, make_resolver, seeded_store, review_queue):
        """Test that labels proposing the same new code share one item and one approval."""
        il6 = {"decision": "NEW", "code": "IL6", "name": "Interleukin 6", "confidence": 0.9}
        backend = FakeSemanticBackend({"IL-6": il6, "интерлейкин 6": il6})

        result = await make_resolver(backend=backend).resolve_batch(["IL-6", "интерлейкин 6"])

        assert [d.decision for d in result.decisions] == [Decision.NEW_CANDIDATE] * 2
        [item] = await review_queue.list_items()
        assert item.issue_type == IssueType.NEW_CANDIDATE
        assert {d.review_item_id for d in result.decisions} == {item.id}
        keys = [d.key for d in result.decisions]
        assert [v["key"] for v in item.evidence["variations"]] == keys

        await review_queue.approve(item.id, reviewed_by="alice")

        for key in keys:
            assert (await seeded_store.lookup(Vocabulary.ANALYTE, key)).code == "IL6"

    @pytest.mark.asyncio
    async def test_fuzzy_confirmed_by_semantic_is_learned(self, make_resolver, seeded_store):
        """Test that a fuzzy match the semantic tier agrees with is learned."""
        backend = FakeSemanticBackend(
            {"glucoze": {"decision": "MATCH", "code": "GLU", "confidence": 0.9}}
        )

        decision = await make_resolver(backend=backend).resolve("glucoze")

        assert decision.decision == Decision.FUZZY_MATCH
        assert decision.chosen_code == "GLU"
        assert decision.confidence == 0.9
        assert decision.learned is True
        snapshot = await seeded_store.snapshot(Vocabulary.ANALYTE)
        assert any(row.key == "glucoze" and row.code == "GLU" for row in snapshot)

    @pytest.mark.asyncio
    async def test_unconfirmed_fuzzy_is_not_learned(self, make_resolver, seeded_store):
        """Test that fuzzy matches alone are returned but never cached."""
        decision = await make_resolver().resolve("glucoze")

        assert decision.decision == Decision.FUZZY_MATCH
        assert decision.chosen_code == "GLU"
        assert decision.learned is False
        assert await seeded_store.lookup(Vocabulary.ANALYTE, "glucoze") is None

    @pytest.mark.asyncio
    async def test_ambiguous_fuzzy_is_queued_without_semantic_call(self, make_resolver, review_queue):
        """Test that ambiguous items go straight to review."""
        backend = FakeSemanticBackend()

        decision = await make_resolver(backend=backend).resolve("vitamin b")

        assert decision.decision == Decision.AMBIGUOUS
        assert decision.chosen_code is None
        assert {c.code for c in decision.candidates} == {"VITB12", "VITB6"}
        assert backend.calls == []
        item = await review_queue.get(decision.review_item_id)
        assert item.issue_type == IssueType.AMBIGUOUS


class TestUnits:
    """Tests for the unit vocabulary."""

    @pytest.mark.asyncio
    async def test_valid_new_unit_is_learned(self, make_resolver, seeded_store):
        """Test that a validated NEW unit creates its entry and alias."""
        backend = FakeSemanticBackend(
            {"мкмоль/л": {"decision": "NEW", "code": "umol/L", "name": "micromole per liter", "confidence": 0.95}}
        )
        resolver = make_resolver(Vocabulary.UNIT, backend=backend)

        first = await resolver.resolve("мкмоль/л")
        second = await resolver.resolve("мкмоль / л")

        assert first.decision == Decision.NEW_CANDIDATE
        assert first.learned is True
        assert first.chosen_code == "umol/L"
        entry = await seeded_store.get_entry_by_code(Vocabulary.UNIT, "umol/L")
        assert entry.source == AliasSource.AUTO_LEARNED
        assert second.decision == Decision.EXACT_MATCH
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_caret_unit_needs_correction(self, make_resolver, seeded_store, review_queue):
        """Test that a NEW unit failing UCUM syntax is queued and not learned."""
        backend = FakeSemanticBackend(
            {"10^12/л": {"decision": "NEW", "code": "10^12/L", "confidence": 0.95}}
        )
        before = await seeded_store.count_aliases(Vocabulary.UNIT)

        decision = await make_resolver(Vocabulary.UNIT, backend=backend).resolve("10^12/л")

        assert decision.decision == Decision.NEW_CANDIDATE
        assert decision.learned is False
        assert decision.note == "syntax_invalid"
        item = await review_queue.get(decision.review_item_id)
        assert item.issue_type == IssueType.SYNTAX_INVALID
        assert item.needs_correction is True
        assert item.evidence["semantic"]["suggestion"] == "10*12/L"
        assert await seeded_store.count_aliases(Vocabulary.UNIT) == before
        assert await seeded_store.get_entry_by_code(Vocabulary.UNIT, "10^12/L") is None

    @pytest.mark.asyncio
    async def test_units_skip_fuzzy(self, make_resolver):
        """Test that near-miss units are never fuzzily matched."""
        decision = await make_resolver(Vocabulary.UNIT).resolve("mmol/dl")

        assert decision.decision == Decision.UNRESOLVED
        assert decision.tiers["fuzzy"]["reason"] == "disabled"


class TestBatching:
    """Tests for batch behaviour."""

    @pytest.mark.asyncio
    async def test_one_semantic_call_per_batch(self, make_resolver):
        """Test that all unsettled items share one backend call."""
        backend = FakeSemanticBackend()

        result = await make_resolver(backend=backend).resolve_batch(
            ["Гемоглобин", "aaa", "bbb", "ccc"]
        )

        assert len(backend.calls) == 1
        assert backend.labels_sent == ["aaa", "bbb", "ccc"]
        assert result.summary["semantic_calls"] == 1

    @pytest.mark.asyncio
    async def test_order_and_determinism(self, make_resolver):
        """Test that decisions follow input order and repeat identically."""
        labels = ["zzz", "Hb", None, "glucoze", "ТТГ"]
        resolver = make_resolver()

        first = await resolver.resolve_batch(labels)
        second = await resolver.resolve_batch(labels)

        expected = [
            Decision.UNRESOLVED,
            Decision.EXACT_MATCH,
            Decision.UNRESOLVED,
            Decision.FUZZY_MATCH,
            Decision.EXACT_MATCH,
        ]
        assert [d.decision for d in first.decisions] == expected
        assert [d.decision for d in second.decisions] == expected
        assert [d.chosen_code for d in first.decisions] == [d.chosen_code for d in second.decisions]
        assert [d.label for d in first.decisions] == labels

    @pytest.mark.asyncio
    async def test_empty_label(self, make_resolver, review_queue):
        """Test that empty labels are unresolved and not queued."""
        decision = await make_resolver().resolve("  --  ")

        assert decision.decision == Decision.UNRESOLVED
        assert decision.note == "empty_label"
        assert decision.review_item_id is None
        assert await review_queue.list_items() == []

    @pytest.mark.asyncio
    async def test_context_passed_as_hints(self, make_resolver):
        """Test that sibling labels reach the semantic backend."""
        backend = FakeSemanticBackend()
        request = ResolutionRequest(label="aaa", context=["Гемоглобин", "ТТГ"])

        await make_resolver(backend=backend).resolve_batch([request, "bbb"])

        assert backend.contexts[0] == ["aaa", "Гемоглобин", "ТТГ", "bbb"]

    @pytest.mark.asyncio
    async def test_repeat_sightings_bump_review_item(self, make_resolver, review_queue):
        """Test that the same unresolved label twice shares one review item."""
        resolver = make_resolver()

        result = await resolver.resolve_batch(["zzz", "ZZZ"])

        [item] = await review_queue.list_items()
        assert item.occurrence_count == 2
        assert {d.review_item_id for d in result.decisions} == {item.id}


class TestDegradation:
    """Tests for failures that must degrade, not raise."""

    @pytest.mark.asyncio
    async def test_semantic_timeout_keeps_exact_results(self, make_resolver, audit):
        """Test that a caller deadline cuts Tier C but keeps Tier A answers."""
        backend = FakeSemanticBackend(delay=2.0)

        result = await make_resolver(backend=backend).resolve_batch(["Hb", "zzz"], timeout=0.2)

        hb, zzz = result.decisions
        assert hb.decision == Decision.EXACT_MATCH
        assert zzz.decision == Decision.UNRESOLVED
        assert zzz.timeout is True
        assert zzz.note == "semantic_timeout"
        assert audit.batches[0]["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_semantic_outage(self, make_resolver):
        """Test that a backend error leaves items unresolved and uncertain."""
        backend = FakeSemanticBackend(errors=[RuntimeError("down")])

        decision = await make_resolver(backend=backend).resolve("zzz")

        assert decision.decision == Decision.UNRESOLVED
        assert decision.uncertain is True
        assert decision.note == "semantic_backend_error"

    @pytest.mark.asyncio
    async def test_store_unavailable(self, make_resolver, session_factory, audit):
        """Test that an unreachable store yields UNRESOLVED items, not an exception."""

        class BrokenStore(AliasStore):
            async def lookup(self, vocabulary, key, session=None):
                raise OperationalError("SELECT", {}, ConnectionRefusedError("refused"))

        resolver = make_resolver(alias_store=BrokenStore(session_factory))

        result = await resolver.resolve_batch(["Hb", "zzz"])

        assert [d.decision for d in result.decisions] == [Decision.UNRESOLVED] * 2
        assert all(d.note == "store_unavailable" for d in result.decisions)
        assert len(audit.items) == 2
        assert audit.batches[0]["counts"]["UNRESOLVED"] == 2

    @pytest.mark.asyncio
    async def test_trigram_search_unavailable_on_sqlite(self, make_resolver, session_factory):
        """Test that pg_trgm search is skipped on databases without it."""
        resolver = make_resolver(similarity=TrigramSearch(session_factory))

        decision = await resolver.resolve("glucoze")

        assert decision.decision == Decision.UNRESOLVED
        assert decision.tiers["fuzzy"]["reason"] == "unavailable"

    @pytest.mark.asyncio
    async def test_tight_config_respected(self, make_resolver):
        """Test that thresholds come from the injected config."""
        strict = ResolverConfig(accept_threshold=0.95, fuzzy_timeout=1.0)

        decision = await make_resolver(config=strict).resolve("glucoze")

        assert decision.decision == Decision.UNRESOLVED
        assert decision.candidates[0].code == "GLU"

    @pytest.mark.asyncio
    async def test_configured_semantic_timeout_bounds_batch(self, make_resolver, audit):
        """Test that semantic_timeout alone bounds a batch split into many chunks."""
        backend = FakeSemanticBackend(delay=0.15)
        config = ResolverConfig(
            fuzzy_timeout=1.0,
            semantic_timeout=0.2,
            semantic_retry_backoff=0.01,
            max_batch_size=1,
        )
        loop = asyncio.get_running_loop()

        started = loop.time()
        result = await make_resolver(backend=backend, config=config).resolve_batch(
            ["aaa", "bbb", "ccc", "ddd"]
        )
        elapsed = loop.time() - started

        assert elapsed < 0.6
        assert result.summary["semantic_calls"] == 2
        last = result.decisions[-1]
        assert last.decision == Decision.UNRESOLVED
        assert last.timeout is True
        assert last.note == "semantic_timeout"

    @pytest.mark.asyncio
    async def test_fuzzy_match_with_semantic_outage_is_not_uncertain(self, make_resolver):
        """Test that a settled fuzzy match is not flagged uncertain when Tier C fails."""
        backend = FakeSemanticBackend(errors=[RuntimeError("down")])

        decision = await make_resolver(backend=backend).resolve("glucoze")

        assert decision.decision == Decision.FUZZY_MATCH
        assert decision.chosen_code == "GLU"
        assert decision.uncertain is False
        assert decision.learned is False


class TestSemanticCallCount:
    """Tests for per-batch semantic call accounting."""

    @pytest.mark.asyncio
    async def test_count_matches_chunks(self, make_resolver):
        """Test that semantic_calls equals the number of chunks sent."""
        config = ResolverConfig(fuzzy_timeout=1.0, semantic_timeout=2.0, max_batch_size=2)
        backend = FakeSemanticBackend()

        result = await make_resolver(backend=backend, config=config).resolve_batch(
            ["aaa", "bbb", "ccc"]
        )

        assert len(backend.calls) == 2
        assert result.summary["semantic_calls"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_batches_count_their_own_calls(self, make_resolver):
        """Test that overlapping batches on one resolver do not share a counter."""
        backend = FakeSemanticBackend(delay=0.05)
        config = ResolverConfig(fuzzy_timeout=1.0, semantic_timeout=2.0, max_batch_size=1)
        resolver = make_resolver(backend=backend, config=config)

        small, large = await asyncio.gather(
            resolver.resolve_batch(["aaa"]),
            resolver.resolve_batch(["bbb", "ccc", "ddd"]),
        )

        assert small.summary["semantic_calls"] == 1
        assert large.summary["semantic_calls"] == 3


class TestDryRun:
    """Tests for resolving without writes."""

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, make_resolver, seeded_store, review_queue, audit):
        """Test that a dry run reports learning and queueing but stores nothing."""
        backend = FakeSemanticBackend(
            {"Fer-ritin": {"decision": "MATCH", "code": "FER", "confidence": 0.92}}
        )
        aliases_before = await seeded_store.count_aliases(Vocabulary.ANALYTE)

        result = await make_resolver(backend=backend).resolve_batch(
            ["Fer-ritin", "zzz"], dry_run=True
        )

        learned, queued = result.decisions
        assert learned.decision == Decision.SEMANTIC_MATCH
        assert learned.would_learn is True
        assert learned.learned is False
        assert queued.review_issue == IssueType.UNRESOLVED
        assert queued.review_item_id is None

        assert await seeded_store.lookup(Vocabulary.ANALYTE, "fer ritin") is None
        assert await seeded_store.count_aliases(Vocabulary.ANALYTE) == aliases_before
        assert await review_queue.list_items() == []

        assert result.dry_run is True
        assert result.summary["would_learn"] == 1
        assert result.summary["would_queue"] == 1
        assert audit.batches[0]["dry_run"] is True

    @pytest.mark.asyncio
    async def test_dry_run_new_unit_creates_no_entry(self, make_resolver, seeded_store):
        """Test that a learnable new unit is previewed, not created."""
        backend = FakeSemanticBackend(
            {"мкмоль/л": {"decision": "NEW", "code": "umol/L", "name": "micromole per liter", "confidence": 0.95}}
        )

        decision = await make_resolver(Vocabulary.UNIT, backend=backend).resolve(
            "мкмоль/л", dry_run=True
        )

        assert decision.decision == Decision.NEW_CANDIDATE
        assert decision.would_learn is True
        assert decision.chosen_code == "umol/L"
        assert await seeded_store.get_entry_by_code(Vocabulary.UNIT, "umol/L") is None
