# python -m pytest bicopilot/tests/routers/test_deps.py -v

"""Dependency wiring: orchestrator singleton built from settings."""

import pytest

from bicopilot import deps
from bicopilot.config import settings
from bicopilot.context.models import EntityType
from bicopilot.context.repository import InMemorySchemaRepository
from bicopilot.core.semantic_cache import set_semantic_cache


@pytest.fixture
def fresh_deps(monkeypatch, generator_cls, embedder):
    monkeypatch.setattr(settings, "schema_repository", "json")
    monkeypatch.setattr(settings, "cache_backend", "memory")
    monkeypatch.setattr(settings, "target_db_enabled", False)
    monkeypatch.setattr(deps, "get_generator", lambda: generator_cls())
    monkeypatch.setattr(deps, "get_embedder", lambda: embedder)
    deps.reset_singletons()
    set_semantic_cache(None)
    yield deps
    deps.reset_singletons()
    set_semantic_cache(None)


@pytest.mark.asyncio
async def test_orchestrator_is_built_once(fresh_deps):
    first = await fresh_deps.get_orchestrator()
    second = await fresh_deps.get_orchestrator()

    assert first is second
    assert isinstance(first.repository, InMemorySchemaRepository)
    assert first.executor is None
    assert first.cache is fresh_deps.get_cache()


@pytest.mark.asyncio
async def test_classifier_knows_catalog_tables(fresh_deps):
    orchestrator = await fresh_deps.get_orchestrator()

    profile = orchestrator.classifier.classify("show the white labels")

    assert "common.tbl_White_labels" in {e.mapped_name for e in profile.entities_of(EntityType.TABLE)}


@pytest.mark.asyncio
async def test_classifier_falls_back_when_catalog_unavailable(fresh_deps, monkeypatch):
    class Unreachable(InMemorySchemaRepository):
        async def get_active_tables(self):
            raise ConnectionError("metadata store unreachable")

    monkeypatch.setattr(fresh_deps, "get_repository", lambda: Unreachable())

    orchestrator = await fresh_deps.get_orchestrator()

    assert orchestrator.classifier.classify("Top 10 depositors yesterday").intent is not None
