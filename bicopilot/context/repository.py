"""
Schema Metadata Repository: the read-only, business-annotated view of the
warehouse schema consumed by the relevance engine and prompt assembler.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from bicopilot.context.models import (
    BusinessRule,
    ColumnDescriptor,
    GlossaryTerm,
    IntentType,
    QueryExample,
    TableDescriptor,
    TableRelationship,
)
from bicopilot.core.embedding import cosine_similarity
from bicopilot.smart_logger import SmartLogger

__all__ = [
    "SchemaRepository",
    "InMemorySchemaRepository",
    "DEFAULT_CATALOG_PATH",
    "parse_table",
    "parse_catalog",
]

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "data" / "sample_catalog.json"


class SchemaRepository:
    """Read-only schema metadata source"""

    async def get_active_tables(self) -> List[TableDescriptor]:
        raise NotImplementedError

    async def get_table(self, table_id: str) -> Optional[TableDescriptor]:
        raise NotImplementedError

    async def get_business_rules(self, table_fqns: Sequence[str]) -> List[BusinessRule]:
        raise NotImplementedError

    async def get_glossary_terms(self) -> List[GlossaryTerm]:
        raise NotImplementedError

    async def get_relationships(self, table_fqns: Sequence[str]) -> List[TableRelationship]:
        raise NotImplementedError

    async def get_examples(self) -> List[QueryExample]:
        raise NotImplementedError

    async def search_similar_tables(
        self, embedding: Sequence[float], top_k: int
    ) -> List[Tuple[TableDescriptor, float]]:
        """Top-k active tables by cosine similarity to ``embedding``"""
        raise NotImplementedError


# --------------------------------------------------------------------------
# Parsing
# --------------------------------------------------------------------------


def _tuple(values: Any) -> Tuple[str, ...]:
    if not values:
        return ()
    if isinstance(values, str):
        return (values,)
    return tuple(str(v) for v in values if str(v or "").strip())


def _float(value: Any, default: float) -> float:
    return default if value is None else float(value)


def parse_column(raw: Dict[str, Any]) -> ColumnDescriptor:
    return ColumnDescriptor(
        name=str(raw["name"]),
        data_type=str(raw.get("data_type") or ""),
        business_meaning=str(raw.get("business_meaning") or ""),
        aliases=_tuple(raw.get("aliases")),
        is_key=bool(raw.get("is_key", False)),
        semantic_tags=_tuple(raw.get("semantic_tags")),
        relevance_prior=_float(raw.get("relevance_prior"), 0.5),
        validation_rule=str(raw.get("validation_rule") or ""),
    )


def parse_table(raw: Dict[str, Any]) -> TableDescriptor:
    embedding = raw.get("embedding")
    return TableDescriptor(
        id=str(raw.get("id") or f"{raw.get('schema', '')}.{raw['name']}"),
        schema=str(raw.get("schema") or ""),
        name=str(raw["name"]),
        business_purpose=str(raw.get("business_purpose") or ""),
        domain=str(raw.get("domain") or ""),
        aliases=_tuple(raw.get("aliases")),
        semantic_tags=_tuple(raw.get("semantic_tags")),
        relevance_prior=_float(raw.get("relevance_prior"), 0.5),
        columns=tuple(parse_column(c) for c in raw.get("columns") or []),
        business_context=str(raw.get("business_context") or ""),
        partition_column=str(raw.get("partition_column") or ""),
        is_active=raw.get("is_active") is not False,
        embedding=tuple(float(x) for x in embedding) if embedding else None,
    )


def _parse_intent(value: Any) -> Optional[IntentType]:
    if not value:
        return None
    try:
        return IntentType(str(value))
    except ValueError:
        return None


def parse_catalog(data: Dict[str, Any]) -> Dict[str, list]:
    return {
        "tables": [parse_table(t) for t in data.get("tables") or []],
        "business_rules": [
            BusinessRule(
                id=str(r.get("id") or ""),
                table=str(r["table"]),
                description=str(r["description"]),
                priority=int(r.get("priority", 3)),
                rule_type=str(r.get("rule_type") or ""),
                affected_columns=_tuple(r.get("affected_columns")),
            )
            for r in data.get("business_rules") or []
        ],
        "glossary": [
            GlossaryTerm(
                term=str(g["term"]),
                definition=str(g.get("definition") or ""),
                preferred_calculation=str(g.get("preferred_calculation") or ""),
                mapped_tables=_tuple(g.get("mapped_tables")),
                domain=str(g.get("domain") or ""),
                synonyms=_tuple(g.get("synonyms")),
            )
            for g in data.get("glossary") or []
        ],
        "relationships": [
            TableRelationship(
                from_table=str(r["from_table"]),
                from_column=str(r["from_column"]),
                to_table=str(r["to_table"]),
                to_column=str(r["to_column"]),
                business_meaning=str(r.get("business_meaning") or ""),
            )
            for r in data.get("relationships") or []
        ],
        "examples": [
            QueryExample(
                question=str(e["question"]),
                sql=str(e["sql"]),
                intent=_parse_intent(e.get("intent")),
                domain=str(e.get("domain") or ""),
                tables=_tuple(e.get("tables")),
                business_context=str(e.get("business_context") or ""),
            )
            for e in data.get("examples") or []
        ],
    }


def _matches_table(ref: str, fqns: Iterable[str]) -> bool:
    """A reference may be an fqn or a bare table name."""
    r = (ref or "").strip().lower()
    for fqn in fqns:
        f = (fqn or "").strip().lower()
        if r == f or r == f.split(".")[-1]:
            return True
    return False


# --------------------------------------------------------------------------
# In-memory implementation
# --------------------------------------------------------------------------


class InMemorySchemaRepository(SchemaRepository):
    """
    Catalog held in memory, loaded from a JSON document.

    Tables without a stored embedding are embedded lazily (once) with the
    configured embedder the first time a similarity search runs.
    """

    def __init__(
        self,
        tables: Sequence[TableDescriptor] = (),
        *,
        business_rules: Sequence[BusinessRule] = (),
        glossary: Sequence[GlossaryTerm] = (),
        relationships: Sequence[TableRelationship] = (),
        examples: Sequence[QueryExample] = (),
        embedder: Any = None,
    ):
        self._tables: List[TableDescriptor] = list(tables)
        self._rules = list(business_rules)
        self._glossary = list(glossary)
        self._relationships = list(relationships)
        self._examples = list(examples)
        self._embedder = embedder
        self._vectors: Dict[str, List[float]] = {}
        self._vector_lock = asyncio.Lock()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, embedder: Any = None) -> "InMemorySchemaRepository":
        parsed = parse_catalog(data)
        return cls(
            parsed["tables"],
            business_rules=parsed["business_rules"],
            glossary=parsed["glossary"],
            relationships=parsed["relationships"],
            examples=parsed["examples"],
            embedder=embedder,
        )

    @classmethod
    def from_json(cls, path: Optional[str] = None, *, embedder: Any = None) -> "InMemorySchemaRepository":
        catalog_path = Path(path) if path else DEFAULT_CATALOG_PATH
        data = json.loads(catalog_path.read_text(encoding="utf-8"))
        repo = cls.from_dict(data, embedder=embedder)
        SmartLogger.log(
            "INFO",
            "context.repository.loaded",
            category="context.repository",
            params={"path": str(catalog_path), "tables": len(repo._tables)},
        )
        return repo

    async def get_active_tables(self) -> List[TableDescriptor]:
        return [t for t in self._tables if t.is_active]

    async def get_table(self, table_id: str) -> Optional[TableDescriptor]:
        key = (table_id or "").strip().lower()
        for t in self._tables:
            if key in {t.id.lower(), t.fqn.lower(), t.name.lower()}:
                return t
        return None

    async def get_business_rules(self, table_fqns: Sequence[str]) -> List[BusinessRule]:
        return [r for r in self._rules if _matches_table(r.table, table_fqns)]

    async def get_glossary_terms(self) -> List[GlossaryTerm]:
        return list(self._glossary)

    async def get_relationships(self, table_fqns: Sequence[str]) -> List[TableRelationship]:
        return [
            r
            for r in self._relationships
            if _matches_table(r.from_table, table_fqns) and _matches_table(r.to_table, table_fqns)
        ]

    async def get_examples(self) -> List[QueryExample]:
        return list(self._examples)

    async def _table_vectors(self, tables: Sequence[TableDescriptor]) -> Dict[str, List[float]]:
        async with self._vector_lock:
            missing = [t for t in tables if t.embedding is None and t.fqn not in self._vectors]
            if missing:
                if self._embedder is None:
                    raise RuntimeError("no embedder configured for tables without stored embeddings")
                vectors = await self._embedder.embed_batch([t.describe_for_embedding() for t in missing])
                for t, v in zip(missing, vectors):
                    self._vectors[t.fqn] = list(v)
            return {
                t.fqn: list(t.embedding) if t.embedding is not None else self._vectors[t.fqn]
                for t in tables
            }

    async def search_similar_tables(
        self, embedding: Sequence[float], top_k: int
    ) -> List[Tuple[TableDescriptor, float]]:
        tables = await self.get_active_tables()
        if not tables:
            return []
        vectors = await self._table_vectors(tables)
        scored = [(t, cosine_similarity(embedding, vectors[t.fqn])) for t in tables]
        scored.sort(key=lambda x: (-x[1], x[0].fqn))
        return scored[: max(0, int(top_k))]
