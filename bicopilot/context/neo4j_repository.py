"""Neo4j-backed schema metadata repository (read-only)"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from bicopilot.config import settings
from bicopilot.context.models import (
    BusinessRule,
    GlossaryTerm,
    QueryExample,
    TableDescriptor,
    TableRelationship,
)
from bicopilot.context.repository import SchemaRepository, _parse_intent, _tuple, parse_table


_TABLES_QUERY = """
MATCH (t:Table)
WHERE coalesce(t.is_active, true) = true
OPTIONAL MATCH (t)-[:HAS_COLUMN]->(c:Column)
WITH t, c ORDER BY c.ordinal ASC, c.name ASC
WITH t, collect(c {
    .name, .data_type, .business_meaning, .aliases, .is_key,
    .semantic_tags, .relevance_prior, .validation_rule
}) AS columns
RETURN t {
    .id, .schema, .name, .business_purpose, .domain, .aliases, .semantic_tags,
    .relevance_prior, .business_context, .partition_column, .is_active
} AS table, columns
ORDER BY t.schema ASC, t.name ASC
"""

_VECTOR_QUERY = """
CALL db.index.vector.queryNodes($index_name, $k, $embedding)
YIELD node, score
WHERE coalesce(node.is_active, true) = true
RETURN node.schema AS schema, node.name AS name, score
ORDER BY score DESC, schema ASC, name ASC
"""

_RULES_QUERY = """
MATCH (r:BusinessRule)-[:APPLIES_TO]->(t:Table)
WHERE toLower(t.schema + '.' + t.name) IN $fqns OR toLower(t.name) IN $fqns
RETURN r.id AS id, t.schema + '.' + t.name AS table, r.description AS description,
       coalesce(r.priority, 3) AS priority, coalesce(r.rule_type, '') AS rule_type,
       coalesce(r.affected_columns, []) AS affected_columns
ORDER BY priority ASC, id ASC
"""

_GLOSSARY_QUERY = """
MATCH (g:GlossaryTerm)
OPTIONAL MATCH (g)-[:MAPS_TO]->(t:Table)
RETURN g.term AS term, coalesce(g.definition, '') AS definition,
       coalesce(g.preferred_calculation, '') AS preferred_calculation,
       coalesce(g.domain, '') AS domain, coalesce(g.synonyms, []) AS synonyms,
       collect(t.schema + '.' + t.name) AS mapped_tables
ORDER BY term ASC
"""

_RELATIONSHIPS_QUERY = """
MATCH (t1:Table)-[:HAS_COLUMN]->(c1:Column)-[fk:FK_TO]->(c2:Column)<-[:HAS_COLUMN]-(t2:Table)
WITH t1, c1, fk, c2, t2,
     toLower(t1.schema + '.' + t1.name) AS f1, toLower(t2.schema + '.' + t2.name) AS f2
WHERE f1 IN $fqns AND f2 IN $fqns
RETURN t1.schema + '.' + t1.name AS from_table, c1.name AS from_column,
       t2.schema + '.' + t2.name AS to_table, c2.name AS to_column,
       coalesce(fk.business_meaning, '') AS business_meaning
ORDER BY from_table, from_column, to_table
"""

_EXAMPLES_QUERY = """
MATCH (q:QueryExample)
RETURN q.question AS question, q.sql AS sql, q.intent AS intent,
       coalesce(q.domain, '') AS domain, coalesce(q.tables, []) AS tables
ORDER BY question ASC
"""


class Neo4jSchemaRepository(SchemaRepository):
    """
    Reads the business-annotated schema graph.

    Each query opens and closes its own session from ``session_factory``
    (e.g. ``Neo4jConnection.get_session``). Tables are read once and kept.
    """

    def __init__(self, session_factory: Callable[[], Awaitable[Any]], *, index_name: str = "table_vec_index"):
        self._session_factory = session_factory
        self.index_name = index_name
        self._tables: Optional[List[TableDescriptor]] = None

    async def _fetch(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        session = await self._session_factory()
        try:
            result = await session.run(query, **params)
            return await result.data()
        finally:
            await session.close()

    async def get_active_tables(self) -> List[TableDescriptor]:
        if self._tables is None:
            records = await self._fetch(_TABLES_QUERY)
            tables = []
            for r in records:
                raw = dict(r.get("table") or {})
                raw["columns"] = [dict(c) for c in r.get("columns") or [] if c and c.get("name")]
                tables.append(parse_table(raw))
            self._tables = tables
        return list(self._tables)

    async def get_table(self, table_id: str) -> Optional[TableDescriptor]:
        key = (table_id or "").strip().lower()
        for t in await self.get_active_tables():
            if key in {t.id.lower(), t.fqn.lower(), t.name.lower()}:
                return t
        return None

    async def get_business_rules(self, table_fqns: Sequence[str]) -> List[BusinessRule]:
        records = await self._fetch(_RULES_QUERY, fqns=[f.lower() for f in table_fqns])
        return [
            BusinessRule(
                id=str(r.get("id") or ""),
                table=str(r["table"]),
                description=str(r.get("description") or ""),
                priority=int(r.get("priority") or 3),
                rule_type=str(r.get("rule_type") or ""),
                affected_columns=_tuple(r.get("affected_columns")),
            )
            for r in records
        ]

    async def get_glossary_terms(self) -> List[GlossaryTerm]:
        records = await self._fetch(_GLOSSARY_QUERY)
        return [
            GlossaryTerm(
                term=str(r["term"]),
                definition=str(r.get("definition") or ""),
                preferred_calculation=str(r.get("preferred_calculation") or ""),
                mapped_tables=_tuple(r.get("mapped_tables")),
                domain=str(r.get("domain") or ""),
                synonyms=_tuple(r.get("synonyms")),
            )
            for r in records
        ]

    async def get_relationships(self, table_fqns: Sequence[str]) -> List[TableRelationship]:
        records = await self._fetch(_RELATIONSHIPS_QUERY, fqns=[f.lower() for f in table_fqns])
        return [TableRelationship(**r) for r in records]

    async def get_examples(self) -> List[QueryExample]:
        records = await self._fetch(_EXAMPLES_QUERY)
        return [
            QueryExample(
                question=str(r["question"]),
                sql=str(r["sql"]),
                intent=_parse_intent(r.get("intent")),
                domain=str(r.get("domain") or ""),
                tables=_tuple(r.get("tables")),
            )
            for r in records
        ]

    async def search_similar_tables(
        self, embedding: Sequence[float], top_k: int
    ) -> List[Tuple[TableDescriptor, float]]:
        records = await self._fetch(
            _VECTOR_QUERY,
            index_name=self.index_name,
            k=int(top_k or settings.max_tables),
            embedding=list(embedding),
        )
        by_fqn = {t.fqn.lower(): t for t in await self.get_active_tables()}
        out: List[Tuple[TableDescriptor, float]] = []
        for r in records:
            fqn = f"{r.get('schema') or ''}.{r.get('name') or ''}".lower()
            table = by_fqn.get(fqn)
            if table is not None:
                out.append((table, float(r.get("score") or 0.0)))
        return out
