"""Shared pytest fixtures for labmap tests."""

import pytest
import pytest_asyncio

from labmap.config import ResolverConfig
from labmap.db import build_engine, build_session_factory, create_schema
from labmap.models import Vocabulary
from labmap.resolution.audit import InMemoryAuditEmitter
from labmap.resolution.normalize import normalize_label, normalize_unit
from labmap.store.aliases import AliasStore
from labmap.store.review import ReviewQueue

from tests.fixtures import SAMPLE_ANALYTES, SAMPLE_UNITS


# =========================
# Database Fixtures
# =========================


@pytest_asyncio.fixture
async def engine(tmp_path):
    """SQLite database with the labmap schema, one per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'labmap.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def alias_store(session_factory):
    return AliasStore(session_factory)


@pytest.fixture
def review_queue(session_factory, alias_store):
    return ReviewQueue(session_factory, alias_store=alias_store)


@pytest_asyncio.fixture
async def seeded_store(alias_store):
    """Alias store loaded with the sample analytes and units."""
    await alias_store.seed(Vocabulary.ANALYTE, SAMPLE_ANALYTES, normalize_label)
    await alias_store.seed(Vocabulary.UNIT, SAMPLE_UNITS, normalize_unit)
    return alias_store


# =========================
# Resolver Fixtures
# =========================


@pytest.fixture
def config():
    return ResolverConfig(fuzzy_timeout=1.0, semantic_timeout=2.0, semantic_retry_backoff=0.01)


@pytest.fixture
def audit():
    return InMemoryAuditEmitter()
