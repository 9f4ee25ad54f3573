import asyncio
import json
from datetime import date
from typing import Any, Dict, List, Optional

import pytest

from bicopilot.context.budget import TokenBudgetManager
from bicopilot.context.classifier import AliasIndex, BusinessContextClassifier
from bicopilot.context.prompt_builder import PromptAssembler
from bicopilot.context.reference_data import default_reference_data
from bicopilot.context.relevance import SchemaRelevanceEngine
from bicopilot.context.repository import DEFAULT_CATALOG_PATH, InMemorySchemaRepository, parse_catalog
from bicopilot.core.embedding import HashingEmbeddingClient
from bicopilot.core.generation import GenerationBackend
from bicopilot.core.semantic_cache import SemanticCache
from bicopilot.pipeline.orchestrator import StreamingOrchestrator

FIXED_TODAY = date(2024, 3, 15)


class ScriptedGenerationBackend(GenerationBackend):
    """Streams fixed chunks; can stall or fail after ``fail_after`` chunks."""

    def __init__(
        self,
        chunks=("SELECT player_id ", "FROM common.tbl_Daily_actions"),
        *,
        delay: float = 0.0,
        stall_after: Optional[int] = None,
        fail_after: Optional[int] = None,
    ):
        self.chunks = list(chunks)
        self.delay = delay
        self.stall_after = stall_after
        self.fail_after = fail_after
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return "".join(self.chunks)

    async def generate_stream(self, prompt: str):
        self.prompts.append(prompt)
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i >= self.fail_after:
                raise RuntimeError("generation backend unavailable")
            if self.stall_after is not None and i >= self.stall_after:
                await asyncio.sleep(3600)
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResult:
    def __init__(self, records: List[Dict[str, Any]]):
        self._records = records

    async def data(self) -> List[Dict[str, Any]]:
        return list(self._records)

    async def single(self) -> Optional[Dict[str, Any]]:
        return self._records[0] if self._records else None


class FakeNeo4jSession:
    """Records every query; answers from a queue of canned record lists."""

    def __init__(self, responses: Optional[List[List[Dict[str, Any]]]] = None):
        self.responses = list(responses or [])
        self.queries: List[Dict[str, Any]] = []
        self.closed = 0

    async def run(self, query: str, **params: Any) -> FakeResult:
        self.queries.append({"query": query, "params": params})
        records = self.responses.pop(0) if self.responses else []
        return FakeResult(records)

    async def close(self) -> None:
        self.closed += 1


@pytest.fixture
def catalog() -> Dict[str, list]:
    return parse_catalog(json.loads(DEFAULT_CATALOG_PATH.read_text(encoding="utf-8")))


@pytest.fixture
def embedder() -> HashingEmbeddingClient:
    return HashingEmbeddingClient(64)


@pytest.fixture
def repository(embedder) -> InMemorySchemaRepository:
    return InMemorySchemaRepository.from_json(embedder=embedder)


@pytest.fixture
def classifier(catalog) -> BusinessContextClassifier:
    reference = default_reference_data()
    aliases = AliasIndex.build(catalog["tables"], catalog["glossary"], reference)
    return BusinessContextClassifier(
        reference, aliases=aliases, glossary=catalog["glossary"], clock=lambda: FIXED_TODAY
    )


@pytest.fixture
def relevance(embedder) -> SchemaRelevanceEngine:
    return SchemaRelevanceEngine(embedder=embedder, max_columns_per_table=8)


@pytest.fixture
def assembler() -> PromptAssembler:
    return PromptAssembler(clock=lambda: FIXED_TODAY, max_examples=2)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(embedder, fake_clock) -> SemanticCache:
    return SemanticCache(
        embedder=embedder,
        similarity_threshold=0.9,
        ttl_seconds=3600,
        soft_invalidate_ttl_seconds=300,
        enable_query_caching=True,
        enable_semantic_cache=True,
        clock=fake_clock,
    )


@pytest.fixture
def generator_cls():
    return ScriptedGenerationBackend


@pytest.fixture
def neo4j_session_cls():
    return FakeNeo4jSession


@pytest.fixture
def build_orchestrator(repository, classifier, relevance, assembler):
    def _build(generator: Optional[GenerationBackend] = None, **overrides: Any) -> StreamingOrchestrator:
        kwargs: Dict[str, Any] = dict(
            repository=repository,
            generator=generator or ScriptedGenerationBackend(),
            classifier=classifier,
            relevance=relevance,
            budget=TokenBudgetManager(),
            assembler=assembler,
            cache=None,
            generation_timeout_seconds=5.0,
        )
        kwargs.update(overrides)
        return StreamingOrchestrator(**kwargs)

    return _build
