"""
Question cache administration
- hit/miss statistics
- soft invalidation by question pattern
- full clear
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from bicopilot.core.semantic_cache import SemanticCache
from bicopilot.deps import get_cache
from bicopilot.smart_logger import SmartLogger

router = APIRouter(prefix="/cache", tags=["cache"])


class InvalidateRequest(BaseModel):
    pattern: str = Field(..., min_length=1, description="Question glob (* ?) or substring")


@router.get("/stats")
async def cache_stats(cache: SemanticCache = Depends(get_cache)) -> Dict[str, Any]:
    return await cache.stats()


@router.post("/invalidate")
async def invalidate_cache(request: InvalidateRequest, cache: SemanticCache = Depends(get_cache)):
    """Shorten the expiry of matching entries to the soft-invalidation TTL."""
    count = await cache.invalidate(request.pattern)
    return {"status": "ok", "pattern": request.pattern, "invalidated": count}


@router.delete("")
async def clear_cache(cache: SemanticCache = Depends(get_cache)):
    removed = await cache.clear()
    SmartLogger.log(
        "INFO",
        "routers.cache.cleared",
        category="routers.cache",
        params={"removed": removed},
    )
    return {"status": "ok", "removed": removed}
