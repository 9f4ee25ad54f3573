"""Neo4j cache backend: one (:QueryCacheEntry) node per key, cosine vector index over question embeddings"""
from __future__ import annotations

import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from bicopilot.config import settings
from bicopilot.context.models import CacheEntry
from bicopilot.core.cache_backend import CacheBackend
from bicopilot.smart_logger import SmartLogger
from bicopilot.utils.log_sanitize import sanitize_for_log

__all__ = ["Neo4jCacheBackend"]

CACHE_VEC_INDEX = "query_cache_vec_index"


def _node_to_entry(node: Dict[str, Any]) -> CacheEntry:
    data = dict(node)
    raw = data.get("cached_response_json") or "{}"
    data["cached_response"] = json.loads(raw) if isinstance(raw, str) else dict(raw)
    return CacheEntry.from_dict(data)


class Neo4jCacheBackend(CacheBackend):
    name = "neo4j"

    def __init__(
        self,
        session_factory: Callable[[], Awaitable[Any]],
        *,
        index_name: str = CACHE_VEC_INDEX,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self.index_name = index_name
        self._clock = clock

    async def _fetch(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        session = await self._session_factory()
        try:
            result = await session.run(query, **params)
            return await result.data()
        finally:
            await session.close()

    async def setup_constraints(self) -> None:
        queries = [
            """
            CREATE CONSTRAINT query_cache_key IF NOT EXISTS
            FOR (e:QueryCacheEntry) REQUIRE e.key IS UNIQUE
            """,
            f"""
            CREATE VECTOR INDEX {self.index_name} IF NOT EXISTS
            FOR (e:QueryCacheEntry) ON (e.question_embedding)
            OPTIONS {{
                indexConfig: {{
                    `vector.dimensions`: $dimensions,
                    `vector.similarity_function`: 'cosine'
                }}
            }}
            """,
        ]
        for query in queries:
            try:
                if "$dimensions" in query:
                    await self._fetch(query, dimensions=settings.embedding_dimension)
                else:
                    await self._fetch(query)
            except Exception as e:
                SmartLogger.log(
                    "WARNING",
                    "core.cache.neo4j.setup_constraints.warning",
                    category="core.cache",
                    params=sanitize_for_log({"cypher": query, "exception": repr(e)}),
                    max_inline_chars=0,
                )

    async def get(self, key: str) -> Optional[CacheEntry]:
        records = await self._fetch(
            """
            MATCH (e:QueryCacheEntry {key: $key})
            WHERE e.expires_at > $now
            RETURN e {.*} AS entry
            """,
            key=key,
            now=self._clock(),
        )
        if not records:
            return None
        return _node_to_entry(records[0]["entry"])

    async def set(self, key: str, entry: CacheEntry) -> None:
        props = entry.to_dict()
        props.pop("cached_response", None)
        props["cached_response_json"] = json.dumps(entry.cached_response, ensure_ascii=False, default=str)
        if not props.get("question_embedding"):
            props.pop("question_embedding", None)
        await self._fetch(
            """
            MERGE (e:QueryCacheEntry {key: $key})
            SET e += $props
            """,
            key=key,
            props=props,
        )

    async def remove(self, key: str) -> bool:
        records = await self._fetch(
            """
            MATCH (e:QueryCacheEntry {key: $key})
            DETACH DELETE e
            RETURN count(*) AS removed
            """,
            key=key,
        )
        return bool(records and records[0]["removed"])

    async def keys(self) -> List[str]:
        records = await self._fetch(
            """
            MATCH (e:QueryCacheEntry)
            WHERE e.expires_at > $now
            RETURN e.key AS key
            ORDER BY key
            """,
            now=self._clock(),
        )
        return [r["key"] for r in records]

    async def vector_search(self, embedding: Sequence[float], top_k: int) -> List[Tuple[str, CacheEntry, float]]:
        records = await self._fetch(
            """
            CALL db.index.vector.queryNodes($index_name, $k, $embedding)
            YIELD node, score
            WITH node AS e, score
            WHERE e:QueryCacheEntry AND e.expires_at > $now
            RETURN e.key AS key, e {.*} AS entry, score
            ORDER BY score DESC, key ASC
            """,
            index_name=self.index_name,
            k=int(top_k),
            embedding=list(embedding),
            now=self._clock(),
        )
        out: List[Tuple[str, CacheEntry, float]] = []
        for r in records:
            # Neo4j reports cosine as (1 + cos) / 2
            cosine = 2.0 * float(r.get("score") or 0.0) - 1.0
            out.append((r["key"], _node_to_entry(r["entry"]), cosine))
        return out

    async def clear(self) -> int:
        records = await self._fetch(
            """
            MATCH (e:QueryCacheEntry)
            DETACH DELETE e
            RETURN count(*) AS removed
            """
        )
        return int(records[0]["removed"]) if records else 0
