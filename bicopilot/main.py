"""FastAPI main application"""
from dotenv import load_dotenv
load_dotenv()

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bicopilot.config import settings
from bicopilot.core.neo4j_cache_backend import Neo4jCacheBackend
from bicopilot.deps import get_cache, get_orchestrator, get_repository, neo4j_conn
from bicopilot.routers import ask, cache
from bicopilot.smart_logger import SmartLogger
from bicopilot.utils.log_sanitize import sanitize_for_log


def _uses_neo4j() -> bool:
    return settings.schema_repository == "neo4j" or settings.cache_backend == "neo4j"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    print("Starting BI Copilot API...")
    if _uses_neo4j():
        try:
            await neo4j_conn.connect()
            print(f"Connected to Neo4j at {settings.neo4j_uri}")
        except Exception as e:
            print(f"Neo4j connection warning: {e}")
            SmartLogger.log(
                "WARNING",
                "main.lifespan.neo4j_connect.warning",
                category="main.lifespan.start",
                params=sanitize_for_log({"error": str(e)}),
                max_inline_chars=0,
            )
    print(f"Schema repository: {settings.schema_repository}")
    print(f"Cache backend: {settings.cache_backend} (enabled={settings.enable_query_caching})")
    llm_url_suffix = (
        f" (base_url={settings.llm_provider_url})"
        if (settings.llm_provider in {"openai", "openai_compatible"} and settings.llm_provider_url)
        else ""
    )
    print(f"Using LLM: {settings.llm_provider}:{settings.llm_model}{llm_url_suffix}")
    print(f"Using Embedding Model: {settings.embedding_provider}:{settings.embedding_model}")

    # Vector index for the cache (best-effort, idempotent).
    backend = get_cache().backend
    if isinstance(backend, Neo4jCacheBackend):
        await backend.setup_constraints()
        print("Neo4j cache index bootstrap completed")

    # Warm the orchestrator so catalog aliases are loaded before the first request.
    try:
        await get_orchestrator()
        print("Pipeline orchestrator ready")
    except Exception as e:
        print(f"Pipeline warmup warning: {e}")
        SmartLogger.log(
            "WARNING",
            "main.lifespan.orchestrator_warmup.warning",
            category="main.lifespan.start",
            params=sanitize_for_log({"error": str(e), "repository": type(get_repository()).__name__}),
            max_inline_chars=0,
        )
    SmartLogger.log(
        "INFO",
        "Starting BI Copilot API...",
        category="main.lifespan.start"
    )

    yield

    # Shutdown
    print("Shutting down...")
    await neo4j_conn.close()
    print("Neo4j connection closed")


app = FastAPI(
    title="BI Copilot API",
    description="""
    Natural language to SQL for BI questions.

    ## Features
    - Business context classification (domain, intent, entities, time)
    - Schema relevance ranking with domain exclusion
    - Token-budgeted prompt assembly
    - Exact and semantic question cache
    - NDJSON progress streaming with cancellation

    ## Workflow
    1. Ask questions: `POST /ask` or `POST /ask/stream`
    2. Inspect prompts: `POST /ask/prompt`
    3. Manage the cache: `GET /cache/stats`
    """,
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ask.router)
app.include_router(cache.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "BI Copilot API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    status = {
        "status": "healthy",
        "config": {
            "llm_provider": settings.llm_provider,
            "llm_model": settings.llm_model,
            "embedding_provider": settings.embedding_provider,
            "schema_repository": settings.schema_repository,
            "cache_backend": settings.cache_backend,
        },
    }
    if not _uses_neo4j():
        return status
    try:
        session = await neo4j_conn.get_session()
        try:
            result = await session.run("RETURN 1 AS health")
            await result.single()
        finally:
            await session.close()
        status["neo4j"] = "connected"
    except Exception as e:
        status["status"] = "degraded"
        status["neo4j"] = f"error: {e}"
    return status


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bicopilot.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True
    )
