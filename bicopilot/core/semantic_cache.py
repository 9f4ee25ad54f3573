"""
Question cache (semantic + exact tiers)
- semantic tier: question embedding, top-k vector search, best hit above the similarity threshold
- exact tier: md5 of the normalized question
- lookup order: semantic -> exact; store writes every enabled tier
- best-effort: backend errors and timeouts are logged and treated as a miss / no-op
"""
from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from bicopilot.config import settings
from bicopilot.context.models import CacheEntry
from bicopilot.context.text import compact_ws, normalize_question
from bicopilot.core.cache_backend import CacheBackend, InMemoryCacheBackend
from bicopilot.core.llm_factory import create_embedding_client
from bicopilot.smart_logger import SmartLogger
from bicopilot.utils.log_sanitize import sanitize_for_log

__all__ = ["SemanticCache", "question_hash", "get_semantic_cache", "set_semantic_cache"]

T = TypeVar("T")

CATEGORY = "core.cache"
EXACT_PREFIX = "exact:"
SEMANTIC_PREFIX = "semantic:"


def question_hash(question: str) -> str:
    return hashlib.md5(normalize_question(question).encode("utf-8")).hexdigest()


def _normalize_sql(sql: str) -> str:
    return compact_ws(sql).rstrip(";").lower()


class SemanticCache:
    """Two-tier question cache over a pluggable ``CacheBackend``"""

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        *,
        embedder: Any = None,
        similarity_threshold: Optional[float] = None,
        ttl_seconds: Optional[int] = None,
        soft_invalidate_ttl_seconds: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        top_k: Optional[int] = None,
        enable_query_caching: Optional[bool] = None,
        enable_semantic_cache: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend or InMemoryCacheBackend(settings.cache_max_entries, clock=clock)
        self.embedder = embedder
        self.similarity_threshold = float(
            settings.similarity_threshold if similarity_threshold is None else similarity_threshold
        )
        self.ttl_seconds = int(settings.cache_ttl_seconds if ttl_seconds is None else ttl_seconds)
        self.soft_invalidate_ttl_seconds = int(
            settings.cache_soft_invalidate_ttl_seconds
            if soft_invalidate_ttl_seconds is None
            else soft_invalidate_ttl_seconds
        )
        self.timeout_seconds = float(settings.cache_timeout_seconds if timeout_seconds is None else timeout_seconds)
        self.top_k = int(settings.cache_vector_top_k if top_k is None else top_k)
        self._enable_query_caching = enable_query_caching
        self._enable_semantic_cache = enable_semantic_cache
        self._clock = clock

        self._total_hits = 0
        self._semantic_hits = 0
        self._exact_hits = 0
        self._total_misses = 0
        self._stores = 0
        self._errors = 0

    # ------------------------------------------------------------------
    # Toggles (read from settings at call time unless overridden)
    # ------------------------------------------------------------------

    @property
    def query_caching_enabled(self) -> bool:
        if self._enable_query_caching is not None:
            return self._enable_query_caching
        return bool(settings.enable_query_caching)

    @property
    def semantic_enabled(self) -> bool:
        if self._enable_semantic_cache is not None:
            return self._enable_semantic_cache
        return bool(settings.enable_semantic_cache)

    def is_enabled(self, use_cache: Optional[bool] = None) -> bool:
        """``enable_query_caching`` is the master switch; ``use_cache=False`` disables per request."""
        if use_cache is False:
            return False
        return self.query_caching_enabled

    # ------------------------------------------------------------------

    async def _guard(self, op: str, awaitable: Awaitable[T], default: T) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except Exception as exc:
            self._errors += 1
            SmartLogger.log(
                "WARNING",
                "core.cache.backend.error",
                category=CATEGORY,
                params=sanitize_for_log({"op": op, "backend": getattr(self.backend, "name", "?"), "error": repr(exc)}),
                max_inline_chars=0,
            )
            return default

    async def embed(self, question: str) -> Optional[List[float]]:
        if self.embedder is None:
            return None
        vector = await self._guard("embed", self.embedder.embed_text(normalize_question(question)), None)
        return list(vector) if vector else None

    async def _semantic_lookup(
        self, question: str, draft_sql: Optional[str], question_embedding: Optional[Sequence[float]]
    ) -> Optional[CacheEntry]:
        embedding = list(question_embedding) if question_embedding else await self.embed(question)
        if not embedding:
            return None
        hits = await self._guard("vector_search", self.backend.vector_search(embedding, self.top_k), [])
        accepted = [
            (key, entry, sim) for key, entry, sim in hits
            if key.startswith(SEMANTIC_PREFIX) and sim >= self.similarity_threshold
        ]
        if not accepted:
            return None
        best = accepted[0]
        if draft_sql:
            draft = _normalize_sql(draft_sql)
            for hit in accepted:
                if _normalize_sql(hit[1].generated_sql) == draft:
                    best = hit
                    break
        _, entry, sim = best
        return replace(entry, similarity=float(sim), tier="semantic")

    async def lookup(
        self,
        question: str,
        draft_sql: Optional[str] = None,
        *,
        question_embedding: Optional[Sequence[float]] = None,
        use_cache: Optional[bool] = None,
    ) -> Optional[CacheEntry]:
        if not self.is_enabled(use_cache):
            return None
        started = time.perf_counter()

        entry = None
        if self.semantic_enabled:
            entry = await self._semantic_lookup(question, draft_sql, question_embedding)
        if entry is not None:
            self._semantic_hits += 1
        else:
            entry = await self._guard("get", self.backend.get(EXACT_PREFIX + question_hash(question)), None)
            if entry is not None:
                entry = replace(entry, similarity=1.0, tier="exact")
                self._exact_hits += 1

        if entry is None:
            self._total_misses += 1
        else:
            self._total_hits += 1
            entry.hit_count += 1
        SmartLogger.log(
            "INFO",
            "core.cache.lookup",
            category=CATEGORY,
            params={
                "question": question[:200],
                "hit": entry is not None,
                "tier": entry.tier if entry else None,
                "similarity": round(entry.similarity, 4) if entry else None,
                "elapsed_ms": round((time.perf_counter() - started) * 1000.0, 2),
            },
        )
        return entry

    async def store(
        self,
        question: str,
        sql: str,
        response: Dict[str, Any],
        ttl: Optional[int] = None,
        *,
        question_embedding: Optional[Sequence[float]] = None,
        use_cache: Optional[bool] = None,
    ) -> bool:
        if not self.is_enabled(use_cache):
            return False
        now = self._clock()
        ttl_seconds = int(self.ttl_seconds if ttl is None else ttl)
        qhash = question_hash(question)

        def make_entry(embedding: Optional[List[float]]) -> CacheEntry:
            return CacheEntry(
                question=question,
                question_hash=qhash,
                generated_sql=sql,
                cached_response=dict(response),
                question_embedding=embedding,
                similarity_threshold=self.similarity_threshold,
                created_at=now,
                expires_at=now + ttl_seconds,
            )

        stored = False
        if self.semantic_enabled:
            embedding = list(question_embedding) if question_embedding else await self.embed(question)
            if embedding:
                ok = await self._guard("set", self.backend.set(SEMANTIC_PREFIX + qhash, make_entry(embedding)), False)
                stored = ok is not False or stored
        ok = await self._guard("set", self.backend.set(EXACT_PREFIX + qhash, make_entry(None)), False)
        stored = ok is not False or stored
        if stored:
            self._stores += 1
        SmartLogger.log(
            "INFO",
            "core.cache.store",
            category=CATEGORY,
            params={"question": question[:200], "ttl_seconds": ttl_seconds, "stored": stored},
        )
        return stored

    async def invalidate(self, pattern: str) -> int:
        """
        Soft-invalidate entries whose question matches ``pattern``.

        ``pattern`` is a case-insensitive glob (``*``, ``?``) or, without
        wildcards, a substring. Matching entries stay readable until the
        shortened expiry passes.
        """
        p = normalize_question(pattern)
        if not p:
            return 0
        use_glob = any(ch in p for ch in "*?[")
        keys = await self._guard("keys", self.backend.keys(), [])
        soft_expiry = self._clock() + self.soft_invalidate_ttl_seconds
        count = 0
        for key in keys:
            entry = await self._guard("get", self.backend.get(key), None)
            if entry is None:
                continue
            q = normalize_question(entry.question)
            if not (fnmatch.fnmatchcase(q, p) if use_glob else p in q):
                continue
            if entry.expires_at > soft_expiry:
                entry.expires_at = soft_expiry
                await self._guard("set", self.backend.set(key, entry), None)
            count += 1
        SmartLogger.log(
            "INFO",
            "core.cache.invalidate",
            category=CATEGORY,
            params={"pattern": pattern, "matched": count, "soft_ttl_seconds": self.soft_invalidate_ttl_seconds},
        )
        return count

    async def clear(self) -> int:
        count = await self._guard("clear", self.backend.clear(), 0)
        SmartLogger.log("INFO", "core.cache.clear", category=CATEGORY, params={"removed": count})
        return count

    async def stats(self) -> Dict[str, Any]:
        lookups = self._total_hits + self._total_misses
        hit_rate = self._total_hits / lookups if lookups > 0 else 0
        size = await self._guard("size", self.backend.size(), -1)
        return {
            "backend": getattr(self.backend, "name", "?"),
            "size": size,
            "enable_query_caching": self.query_caching_enabled,
            "enable_semantic_cache": self.semantic_enabled,
            "similarity_threshold": self.similarity_threshold,
            "ttl_seconds": self.ttl_seconds,
            "total_hits": self._total_hits,
            "semantic_hits": self._semantic_hits,
            "exact_hits": self._exact_hits,
            "total_misses": self._total_misses,
            "stores": self._stores,
            "errors": self._errors,
            "hit_rate": round(hit_rate, 4),
        }


# Global cache instance
_semantic_cache: Optional[SemanticCache] = None


def get_semantic_cache() -> SemanticCache:
    """Global cache instance (in-memory backend unless configured at startup)"""
    global _semantic_cache
    if _semantic_cache is None:
        _semantic_cache = SemanticCache(embedder=create_embedding_client())
    return _semantic_cache


def set_semantic_cache(cache: Optional[SemanticCache]) -> None:
    global _semantic_cache
    _semantic_cache = cache
