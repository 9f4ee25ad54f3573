"""Application configuration"""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Neo4j
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = "password123"
    neo4j_database: str = "neo4j"

    # LLM / Embedding providers
    llm_provider: Literal["openai", "google", "gemini", "openai_compatible"] = "openai"
    llm_model: str = "gpt-4.1-2025-04-14"
    llm_provider_url: str = ""
    llm_temperature: float = 0.1
    llm_max_output_tokens: int = 1200
    openai_api_key: str = ""
    openai_compatible_api_key: str = ""
    google_api_key: str = ""
    embedding_provider: Literal["openai", "local"] = "local"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 256
    is_use_llm_cache: bool = False
    llm_cache_path: str = ".cache/llm_cache.db"

    # Target Database (optional execution stage)
    target_db_enabled: bool = False
    target_db_host: str = "localhost"
    target_db_port: int = 5432
    target_db_name: str = "bi"
    target_db_user: str = "bi"
    target_db_password: str = ""
    target_db_ssl: str = "disable"
    target_db_schemas: str = "public,dbo"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Security & Limits
    sql_timeout_seconds: int = 30
    sql_row_limit: int = 1000
    sql_max_rows: int = 100000
    max_join_depth: int = 10
    max_subquery_depth: int = 10
    strict_table_allowlist: bool = False

    # Schema metadata repository
    schema_repository: Literal["json", "neo4j"] = "json"
    schema_catalog_path: str = ""

    # Business context / relevance
    max_tables: int = 5
    max_columns_per_table: int = 15
    min_table_relevance: float = 0.5
    semantic_match_threshold: float = 0.25
    domain_exclusion_penalty: float = 10.0
    strategy_timeout_seconds: float = 10.0

    # Token budget
    total_token_budget: int = 4000
    budget_schema_ratio: float = 0.60
    budget_rules_ratio: float = 0.15
    budget_glossary_ratio: float = 0.10
    budget_examples_ratio: float = 0.15

    # Prompt assembly
    template_cache_ttl_seconds: int = 3600
    max_examples: int = 3

    # Caching
    enable_query_caching: bool = True
    enable_semantic_cache: bool = True
    similarity_threshold: float = 0.85
    cache_ttl_seconds: int = 24 * 3600
    cache_soft_invalidate_ttl_seconds: int = 5 * 60
    cache_max_entries: int = 1000
    cache_vector_top_k: int = 5
    cache_backend: Literal["memory", "neo4j"] = "memory"
    cache_timeout_seconds: float = 5.0

    # Generation
    generation_timeout_seconds: float = 30.0

    # Conversation context (prior profile per user / session)
    session_context_ttl_seconds: int = 30 * 60
    session_context_max_entries: int = 1000

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
