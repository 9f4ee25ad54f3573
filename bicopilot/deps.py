"""Dependency injection for FastAPI"""
import os
from functools import lru_cache
from typing import Optional

from langchain_community.cache import SQLiteCache
from langchain_core.globals import set_llm_cache
from neo4j import AsyncDriver, AsyncGraphDatabase

from bicopilot.config import settings
from bicopilot.context.classifier import BusinessContextClassifier
from bicopilot.context.neo4j_repository import Neo4jSchemaRepository
from bicopilot.context.prompt_builder import PromptAssembler
from bicopilot.context.reference_data import ReferenceData, default_reference_data
from bicopilot.context.relevance import SchemaRelevanceEngine
from bicopilot.context.repository import InMemorySchemaRepository, SchemaRepository
from bicopilot.core.generation import GenerationBackend, LangChainGenerationBackend
from bicopilot.core.llm_factory import create_embedding_client
from bicopilot.core.neo4j_cache_backend import Neo4jCacheBackend
from bicopilot.core.semantic_cache import SemanticCache, get_semantic_cache, set_semantic_cache
from bicopilot.core.sql_exec import SQLExecutor
from bicopilot.pipeline.orchestrator import StreamingOrchestrator
from bicopilot.pipeline.session_context import SessionContextStore
from bicopilot.smart_logger import SmartLogger
from bicopilot.utils.log_sanitize import sanitize_for_log


def init_cache():
    cache_dir = os.path.dirname(settings.llm_cache_path)
    if cache_dir and not os.path.exists(cache_dir):
        os.makedirs(cache_dir, exist_ok=True)

    set_llm_cache(SQLiteCache(database_path=settings.llm_cache_path))

if settings.is_use_llm_cache:
    init_cache()


class Neo4jConnection:
    """Neo4j connection manager"""

    def __init__(self):
        self.driver: AsyncDriver | None = None

    async def connect(self):
        """Initialize Neo4j driver"""
        if not self.driver:
            self.driver = AsyncGraphDatabase.driver(
                settings.neo4j_uri,
                auth=(settings.neo4j_user, settings.neo4j_password)
            )

    async def close(self):
        """Close Neo4j driver"""
        if self.driver:
            await self.driver.close()
            self.driver = None

    async def get_session(self):
        """Get Neo4j session"""
        if not self.driver:
            await self.connect()
        return self.driver.session(database=settings.neo4j_database)


# Global instances
neo4j_conn = Neo4jConnection()
_repository: Optional[SchemaRepository] = None
_orchestrator: Optional[StreamingOrchestrator] = None
_sessions: Optional[SessionContextStore] = None


def get_reference_data() -> ReferenceData:
    return default_reference_data()


@lru_cache(maxsize=1)
def get_embedder():
    return create_embedding_client()


def get_repository() -> SchemaRepository:
    """Schema metadata repository selected by ``settings.schema_repository``"""
    global _repository
    if _repository is None:
        if settings.schema_repository == "neo4j":
            _repository = Neo4jSchemaRepository(neo4j_conn.get_session)
        else:
            _repository = InMemorySchemaRepository.from_json(
                settings.schema_catalog_path or None, embedder=get_embedder()
            )
    return _repository


def get_cache() -> SemanticCache:
    """Question cache; the backend follows ``settings.cache_backend``"""
    if settings.cache_backend == "neo4j":
        cache = get_semantic_cache()
        if not isinstance(cache.backend, Neo4jCacheBackend):
            cache = SemanticCache(Neo4jCacheBackend(neo4j_conn.get_session), embedder=get_embedder())
            set_semantic_cache(cache)
        return cache
    return get_semantic_cache()


def get_session_store() -> SessionContextStore:
    """Prior classified profile per (user_id, session_id) for follow-up questions"""
    global _sessions
    if _sessions is None:
        _sessions = SessionContextStore()
    return _sessions


@lru_cache(maxsize=1)
def get_generator() -> GenerationBackend:
    return LangChainGenerationBackend()


async def get_orchestrator() -> StreamingOrchestrator:
    """FastAPI dependency: pipeline orchestrator, built once on first use"""
    global _orchestrator
    if _orchestrator is None:
        reference = get_reference_data()
        repository = get_repository()
        try:
            classifier = await BusinessContextClassifier.from_repository(repository, reference)
        except Exception as e:
            SmartLogger.log(
                "WARNING",
                "deps.classifier.catalog_aliases_unavailable",
                category="deps",
                params=sanitize_for_log({"error": repr(e)}),
            )
            classifier = BusinessContextClassifier(reference)
        _orchestrator = StreamingOrchestrator(
            repository=repository,
            generator=get_generator(),
            classifier=classifier,
            relevance=SchemaRelevanceEngine(embedder=get_embedder(), reference=reference),
            assembler=PromptAssembler(reference=reference),
            cache=get_cache(),
            executor=SQLExecutor() if settings.target_db_enabled else None,
            sessions=get_session_store(),
        )
    return _orchestrator


def reset_singletons() -> None:
    global _repository, _orchestrator, _sessions
    _repository = None
    _orchestrator = None
    _sessions = None
