"""Unit tests for the semantic tier driver.

Run with: pytest tests/unit/test_semantic.py -v
"""

import asyncio
from uuid import uuid4

import httpx
import pytest

from labmap.config import ResolverConfig
from labmap.errors import SemanticResolverError
from labmap.models import CanonicalEntry, SemanticQuery, SemanticVerdict, Vocabulary
from labmap.resolution.profiles import ANALYTE_PROFILE, UNIT_PROFILE
from labmap.resolution.semantic import SemanticResolver, classify_error

from tests.fixtures import FakeSemanticBackend

FER = CanonicalEntry(id=uuid4(), vocabulary=Vocabulary.ANALYTE, code="FER", display_name="Ferritin")
HGB = CanonicalEntry(id=uuid4(), vocabulary=Vocabulary.ANALYTE, code="HGB", display_name="Hemoglobin")
MMOL = CanonicalEntry(id=uuid4(), vocabulary=Vocabulary.UNIT, code="mmol/L", display_name="mmol/L")

FAST = ResolverConfig(semantic_timeout=1.0, semantic_retry_backoff=0.01)


def queries(*labels):
    return [
        SemanticQuery(index=i, label=label, key=label.lower())
        for i, label in enumerate(labels)
    ]


def resolver(backend, config=FAST, profile=ANALYTE_PROFILE):
    return SemanticResolver(backend, config, profile)


class RawBackend:
    """Returns a fixed raw payload regardless of the queries."""

    def __init__(self, payload):
        self.payload = payload

    async def propose(self, profile, queries, vocabulary, context):
        return self.payload


class TestSemanticOutcomes:
    """Tests for turning proposals into outcomes."""

    @pytest.mark.asyncio
    async def test_in_vocabulary_match(self):
        """Test that a MATCH on a known code carries its canonical id."""
        backend = FakeSemanticBackend({"Fer-ritin": {"decision": "MATCH", "code": "FER", "confidence": 0.92}})

        [outcome] = (await resolver(backend).propose(queries("Fer-ritin"), [FER, HGB])).outcomes

        assert outcome.verdict == SemanticVerdict.MATCH
        assert outcome.canonical_id == FER.id
        assert outcome.in_vocabulary is True
        assert outcome.uncertain is False

    @pytest.mark.asyncio
    async def test_match_on_unknown_code(self):
        """Test that a MATCH naming a missing code is out of vocabulary."""
        backend = FakeSemanticBackend({"Ferritin": {"decision": "MATCH", "code": "FERR", "confidence": 0.9}})

        [outcome] = (await resolver(backend).propose(queries("Ferritin"), [FER])).outcomes

        assert outcome.verdict == SemanticVerdict.MATCH
        assert outcome.canonical_id is None
        assert outcome.in_vocabulary is False

    @pytest.mark.asyncio
    async def test_new_for_existing_code_becomes_match(self):
        """Test that NEW naming an existing code is treated as a match."""
        backend = FakeSemanticBackend({"ферритин": {"decision": "NEW", "code": "FER", "name": "Ferritin", "confidence": 0.9}})

        [outcome] = (await resolver(backend).propose(queries("ферритин"), [FER])).outcomes

        assert outcome.verdict == SemanticVerdict.MATCH
        assert outcome.canonical_id == FER.id

    @pytest.mark.asyncio
    async def test_new_unit_is_validated(self):
        """Test that a NEW unit with caret syntax is flagged invalid."""
        backend = FakeSemanticBackend({"10^12/л": {"decision": "NEW", "code": "10^12/L", "confidence": 0.9}})

        sem = resolver(backend, profile=UNIT_PROFILE)
        [outcome] = (await sem.propose(queries("10^12/л"), [MMOL])).outcomes

        assert outcome.verdict == SemanticVerdict.NEW
        assert outcome.syntax_valid is False
        assert "caret_exponent" in outcome.syntax_issues
        assert outcome.suggestion == "10*12/L"

    @pytest.mark.asyncio
    async def test_outcomes_follow_input_order(self):
        """Test alignment when the backend answers out of order."""
        payload = [
            {"index": 1, "decision": "MATCH", "code": "HGB", "confidence": 0.9},
            {"index": 0, "decision": "MATCH", "code": "FER", "confidence": 0.8},
        ]

        outcomes = (await resolver(RawBackend(payload)).propose(queries("a", "b"), [FER, HGB])).outcomes

        assert [o.code for o in outcomes] == ["FER", "HGB"]

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_call(self):
        """Test that nothing is sent for an empty batch."""
        backend = FakeSemanticBackend()
        batch = await resolver(backend).propose([], [FER])

        assert batch.outcomes == []
        assert batch.calls == 0
        assert backend.calls == []


class TestMalformedOutput:
    """Tests for output validation; any violation fails the whole chunk."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            "not a list",
            [{"index": 0, "decision": "MAYBE", "confidence": 0.5}],
            [{"index": 0, "decision": "MATCH", "confidence": 1.5}],
            [{"index": 0, "decision": "MATCH", "code": "FER", "confidence": 0.9}],
            [
                {"index": 0, "decision": "ABSTAIN", "confidence": 0.0},
                {"index": 0, "decision": "ABSTAIN", "confidence": 0.0},
            ],
            [
                {"index": 0, "decision": "ABSTAIN", "confidence": 0.0},
                {"index": 5, "decision": "ABSTAIN", "confidence": 0.0},
            ],
        ],
    )
    async def test_malformed_payload(self, payload):
        """Test that bad shapes, missing and duplicate indices are malformed."""
        outcomes = (await resolver(RawBackend(payload)).propose(queries("a", "b"), [FER])).outcomes

        assert len(outcomes) == 2
        assert all(o.uncertain for o in outcomes)
        assert all(o.error_reason == "malformed_output" for o in outcomes)


class TestRetryAndDeadline:
    """Tests for the single retry and the time budget."""

    @pytest.mark.asyncio
    async def test_transient_error_retried_once(self):
        """Test that a network error is retried after the backoff."""
        backend = FakeSemanticBackend(
            {"a": {"decision": "MATCH", "code": "FER", "confidence": 0.9}},
            errors=[httpx.ConnectError("refused")],
        )

        [outcome] = (await resolver(backend).propose(queries("a"), [FER])).outcomes

        assert len(backend.calls) == 2
        assert outcome.canonical_id == FER.id

    @pytest.mark.asyncio
    async def test_second_transient_error_gives_up(self):
        """Test that a retried call failing again yields uncertain outcomes."""
        backend = FakeSemanticBackend(
            errors=[httpx.ConnectError("refused"), httpx.ConnectError("refused")]
        )

        [outcome] = (await resolver(backend).propose(queries("a"), [FER])).outcomes

        assert len(backend.calls) == 2
        assert outcome.error_reason == "network"

    @pytest.mark.asyncio
    async def test_non_transient_error_not_retried(self):
        """Test that malformed output is never retried."""
        backend = FakeSemanticBackend(errors=[SemanticResolverError("malformed_output")])

        [outcome] = (await resolver(backend).propose(queries("a"), [FER])).outcomes

        assert len(backend.calls) == 1
        assert outcome.error_reason == "malformed_output"

    @pytest.mark.asyncio
    async def test_timeout_within_budget(self):
        """Test that a slow backend times out at the caller's budget."""
        backend = FakeSemanticBackend(delay=1.0)
        loop = asyncio.get_running_loop()

        started = loop.time()
        outcomes = (await resolver(backend).propose(queries("a", "b"), [FER], timeout=0.05)).outcomes

        assert loop.time() - started < 0.5
        assert all(o.timeout and o.error_reason == "timeout" for o in outcomes)

    @pytest.mark.asyncio
    async def test_configured_timeout_bounds_all_chunks(self):
        """Test that semantic_timeout bounds the whole call, not each chunk."""
        backend = FakeSemanticBackend(delay=0.2)
        config = ResolverConfig(max_batch_size=1, semantic_timeout=0.3, semantic_retry_backoff=0.01)
        loop = asyncio.get_running_loop()

        started = loop.time()
        batch = await resolver(backend, config=config).propose(queries("a", "b", "c", "d"), [FER])
        elapsed = loop.time() - started

        assert elapsed < 0.45
        assert batch.calls == 2
        assert batch.outcomes[0].timeout is False
        assert all(o.timeout and o.uncertain for o in batch.outcomes[1:])

    @pytest.mark.asyncio
    async def test_chunking(self):
        """Test that large batches are split into sequential calls."""
        backend = FakeSemanticBackend()
        config = ResolverConfig(max_batch_size=2, semantic_retry_backoff=0.01)
        batch = await resolver(backend, config=config).propose(queries("a", "b", "c", "d", "e"), [FER])

        assert [len(call) for call in backend.calls] == [2, 2, 1]
        assert batch.calls == 3
        assert len(batch.outcomes) == 5
        # Indices restart per chunk
        assert [q.index for q in backend.calls[2]] == [0]


class TestSanitization:
    """Tests for prompt input sanitization before sending."""

    @pytest.mark.asyncio
    async def test_rejected_label_not_sent(self):
        """Test that a label with nothing safe left is not sent."""
        backend = FakeSemanticBackend()

        outcomes = (await resolver(backend).propose(queries('{}<>"', "ferritin"), [FER])).outcomes

        assert outcomes[0].error_reason == "sanitization_rejected"
        assert outcomes[0].uncertain is True
        assert backend.labels_sent == ["ferritin"]

    @pytest.mark.asyncio
    async def test_context_sanitized(self):
        """Test that context labels are sanitized too."""
        backend = FakeSemanticBackend()

        await resolver(backend).propose(queries("a"), [FER], context=["<b>HGB</b>", "{}"])

        assert backend.contexts[0] == ["bHGB/b"]


class TestClassifyError:
    """Tests for mapping backend exceptions onto failure classes."""

    def test_http_status_errors(self):
        """Test classification of HTTP status failures."""
        request = httpx.Request("POST", "http://semantic")

        def status_error(code):
            return httpx.HTTPStatusError(
                "error", request=request, response=httpx.Response(code, request=request)
            )

        assert classify_error(status_error(429)).reason == "rate_limited"
        assert classify_error(status_error(429)).transient is True
        assert classify_error(status_error(503)).reason == "server_error"
        assert classify_error(status_error(503)).transient is True
        assert classify_error(status_error(400)).reason == "backend_error"
        assert classify_error(status_error(400)).transient is False

    def test_timeouts_and_network(self):
        """Test timeout and network classification."""
        assert classify_error(asyncio.TimeoutError()).reason == "timeout"
        assert classify_error(httpx.ReadTimeout("slow")).reason == "timeout"
        assert classify_error(ConnectionResetError()).reason == "network"

    def test_unknown_error(self):
        """Test that anything else is a non-transient backend error."""
        error = classify_error(ValueError("bad"))

        assert error.reason == "backend_error"
        assert error.transient is False
