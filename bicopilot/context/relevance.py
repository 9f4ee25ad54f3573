"""
Schema Relevance Engine

Ranks catalog tables against a ``BusinessContextProfile`` and narrows each
selected table to its relevant columns.

Pipeline:
1) four retrieval strategies run concurrently (semantic, domain, entity, business term);
   a failing strategy is logged and skipped
2) union + additive scoring, domain-exclusion penalty
3) stable ranking (score desc, table name asc), top ``max_tables`` above the threshold
4) fallback to the exclusion-filtered active catalog when nothing clears the threshold
5) column selection, then rules / glossary / relationships scoped to the selected tables
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from bicopilot.config import settings
from bicopilot.context import reference_data as ref
from bicopilot.context.models import (
    BusinessContextProfile,
    ColumnCandidate,
    ColumnDescriptor,
    ContextualBusinessSchema,
    EntityType,
    GlossaryTerm,
    TableCandidate,
    TableDescriptor,
)
from bicopilot.context.reference_data import ReferenceData, default_reference_data
from bicopilot.context.repository import SchemaRepository
from bicopilot.context.text import singular, split_identifier, tokenize
from bicopilot.core.errors import SchemaRetrievalError
from bicopilot.smart_logger import SmartLogger
from bicopilot.utils.log_sanitize import sanitize_for_log

__all__ = [
    "RelevanceWeights",
    "StrategyHit",
    "SchemaRelevanceEngine",
    "is_financial_transaction_query",
    "is_gaming_activity_table",
    "select_relevant_schema",
]

CATEGORY = "context.relevance"

STRATEGY_SEMANTIC = "semantic"
STRATEGY_DOMAIN = "domain"
STRATEGY_ENTITY = "entity"
STRATEGY_TERM = "business_term"

MAX_ENTITY_SCORE_PER_TABLE = 3.0
MAX_TERM_MATCHES_PER_TABLE = 3


@dataclass(frozen=True)
class RelevanceWeights:
    domain: float = 1.0
    term: float = 0.8
    semantic: float = 1.2
    entity: float = 1.5
    prior_bonus: float = 0.3
    prior_threshold: float = 0.8
    semantic_threshold: float = 0.25
    exclusion_penalty: float = 10.0
    min_relevance: float = 0.5

    @classmethod
    def from_settings(cls) -> "RelevanceWeights":
        return cls(
            semantic_threshold=settings.semantic_match_threshold,
            exclusion_penalty=settings.domain_exclusion_penalty,
            min_relevance=settings.min_table_relevance,
        )


@dataclass(frozen=True)
class StrategyHit:
    table: TableDescriptor
    score: float
    reason: str


# --------------------------------------------------------------------------
# Domain exclusion rule
# --------------------------------------------------------------------------


def is_financial_transaction_query(
    profile: BusinessContextProfile, reference: Optional[ReferenceData] = None
) -> bool:
    """Financial domain, or any deposit / payment / transaction term in the question."""
    reference = reference or default_reference_data()
    if profile.domain.name == ref.FINANCIAL:
        return True
    tokens = set(tokenize(profile.original_question))
    return bool(tokens & reference.financial_transaction_terms)


def is_gaming_activity_table(table: TableDescriptor, reference: Optional[ReferenceData] = None) -> bool:
    reference = reference or default_reference_data()
    if (table.domain or "") in reference.gaming_domains:
        return True
    tags = {t.strip().lower() for t in table.semantic_tags}
    return bool(tags & reference.gaming_activity_tags)


# --------------------------------------------------------------------------
# Text helpers
# --------------------------------------------------------------------------


def _words(*texts: str) -> Set[str]:
    out: Set[str] = set()
    for text in texts:
        for tok in tokenize(text):
            out.add(singular(tok))
    return out


def _table_vocabulary(table: TableDescriptor) -> Set[str]:
    words = {singular(w) for w in split_identifier(table.name)}
    words |= _words(table.business_purpose, table.business_context, *table.aliases, *table.semantic_tags)
    return words


def _column_words(column: ColumnDescriptor) -> Set[str]:
    return {singular(w) for w in split_identifier(column.name)} | _words(*column.aliases)


def _term_in(term: str, vocabulary: Set[str]) -> bool:
    parts = [singular(p) for p in tokenize(term)]
    return bool(parts) and all(p in vocabulary for p in parts)


def _glossary_tables(term: GlossaryTerm, tables: Sequence[TableDescriptor]) -> List[TableDescriptor]:
    refs = {m.strip().lower() for m in term.mapped_tables}
    return [t for t in tables if t.fqn.lower() in refs or t.name.lower() in refs]


class SchemaRelevanceEngine:
    """Scores and selects the schema subset relevant to one question."""

    def __init__(
        self,
        *,
        embedder: Any = None,
        reference: Optional[ReferenceData] = None,
        weights: Optional[RelevanceWeights] = None,
        max_columns_per_table: Optional[int] = None,
        strategy_timeout_seconds: Optional[float] = None,
    ):
        self.embedder = embedder
        self.reference = reference or default_reference_data()
        self.weights = weights or RelevanceWeights.from_settings()
        self.max_columns_per_table = int(max_columns_per_table or settings.max_columns_per_table)
        self.strategy_timeout_seconds = float(strategy_timeout_seconds or settings.strategy_timeout_seconds)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _semantic_strategy(
        self,
        profile: BusinessContextProfile,
        repository: SchemaRepository,
        tables: Sequence[TableDescriptor],
        top_k: int,
        question_embedding: Optional[Sequence[float]],
    ) -> List[StrategyHit]:
        embedding = question_embedding
        if embedding is None:
            if self.embedder is None:
                return []
            embedding = await self.embedder.embed_text(profile.original_question)
        hits: List[StrategyHit] = []
        for table, sim in await repository.search_similar_tables(embedding, top_k):
            if sim >= self.weights.semantic_threshold:
                hits.append(StrategyHit(table, self.weights.semantic * sim, f"semantic:{sim:.3f}"))
        return hits

    async def _domain_strategy(
        self, profile: BusinessContextProfile, tables: Sequence[TableDescriptor]
    ) -> List[StrategyHit]:
        if profile.domain.is_general:
            return []
        related = {n.lower() for n in profile.domain.related_tables}
        return [
            StrategyHit(t, self.weights.domain, f"domain:{profile.domain.name}")
            for t in tables
            if t.domain == profile.domain.name or t.name.lower() in related
        ]

    def _entity_tables(
        self, entity_type: EntityType, mapped: str, tables: Sequence[TableDescriptor], glossary: Sequence[GlossaryTerm]
    ) -> List[TableDescriptor]:
        m = mapped.lower()
        if entity_type == EntityType.TABLE:
            return [t for t in tables if t.fqn.lower() == m]
        if entity_type == EntityType.COLUMN:
            return [t for t in tables if m.startswith(t.fqn.lower() + ".")]
        for g in glossary:
            if g.term.lower() == m:
                return _glossary_tables(g, tables)
        return [t for t in tables if any(_term_in(mapped.replace("_", " "), _column_words(c)) for c in t.columns)]

    async def _entity_strategy(
        self,
        profile: BusinessContextProfile,
        tables: Sequence[TableDescriptor],
        glossary: Sequence[GlossaryTerm],
    ) -> List[StrategyHit]:
        per_table: Dict[str, float] = {}
        hits: List[StrategyHit] = []
        for entity in profile.entities:
            weight = 1.0 if entity.type in (EntityType.TABLE, EntityType.COLUMN) else 0.5
            for t in self._entity_tables(entity.type, entity.mapped_name, tables, glossary):
                used = per_table.get(t.fqn, 0.0)
                score = min(self.weights.entity * entity.confidence * weight, MAX_ENTITY_SCORE_PER_TABLE - used)
                if score <= 0:
                    continue
                per_table[t.fqn] = used + score
                hits.append(StrategyHit(t, score, f"entity:{entity.type.value}:{entity.mapped_name}"))
        return hits

    async def _term_strategy(
        self,
        profile: BusinessContextProfile,
        tables: Sequence[TableDescriptor],
        glossary: Sequence[GlossaryTerm],
    ) -> List[StrategyHit]:
        terms = list(profile.business_terms)
        if not terms:
            return []
        by_term = {g.term.lower(): g for g in glossary}
        for g in glossary:
            for s in g.synonyms:
                by_term.setdefault(s.lower(), g)
        counts: Dict[str, int] = {}
        hits: List[StrategyHit] = []
        vocab = {t.fqn: _table_vocabulary(t) for t in tables}
        for term in terms:
            matched: List[TableDescriptor] = []
            g = by_term.get(term.lower())
            if g is not None:
                matched.extend(_glossary_tables(g, tables))
            matched.extend(t for t in tables if _term_in(term, vocab[t.fqn]) and t not in matched)
            for t in matched:
                if counts.get(t.fqn, 0) >= MAX_TERM_MATCHES_PER_TABLE:
                    continue
                counts[t.fqn] = counts.get(t.fqn, 0) + 1
                hits.append(StrategyHit(t, self.weights.term, f"term:{term}"))
        return hits

    async def _run_strategy(
        self, name: str, factory: Callable[[], Awaitable[List[StrategyHit]]]
    ) -> Tuple[str, List[StrategyHit], Optional[str]]:
        started = time.perf_counter()
        try:
            hits = await asyncio.wait_for(factory(), timeout=self.strategy_timeout_seconds)
        except Exception as exc:
            SmartLogger.log(
                "WARNING",
                "context.relevance.strategy.failed",
                category=CATEGORY,
                params=sanitize_for_log({"strategy": name, "error": repr(exc)}),
                max_inline_chars=0,
            )
            return name, [], f"{name}: {exc!r}"
        SmartLogger.log(
            "DEBUG",
            "context.relevance.strategy.done",
            category=CATEGORY,
            params={
                "strategy": name,
                "hits": len(hits),
                "elapsed_ms": round((time.perf_counter() - started) * 1000.0, 2),
            },
        )
        return name, hits, None

    # ------------------------------------------------------------------
    # Scoring / selection
    # ------------------------------------------------------------------

    def score_candidates(
        self,
        profile: BusinessContextProfile,
        hits_by_strategy: Sequence[Tuple[str, List[StrategyHit]]],
    ) -> List[TableCandidate]:
        """Union strategy hits into ranked candidates (score desc, then table name)."""
        candidates: Dict[str, TableCandidate] = {}
        for _, hits in hits_by_strategy:
            for hit in hits:
                cand = candidates.get(hit.table.fqn)
                if cand is None:
                    cand = candidates[hit.table.fqn] = TableCandidate(table=hit.table)
                cand.add(hit.score, hit.reason)

        exclude = is_financial_transaction_query(profile, self.reference)
        for cand in candidates.values():
            if cand.table.relevance_prior >= self.weights.prior_threshold:
                cand.add(self.weights.prior_bonus, "prior")
            if exclude and is_gaming_activity_table(cand.table, self.reference):
                cand.add(-self.weights.exclusion_penalty, "excluded:gaming_activity_for_financial_query")
        return self.rank(candidates.values())

    @staticmethod
    def rank(candidates: Iterable[TableCandidate]) -> List[TableCandidate]:
        return sorted(
            candidates,
            key=lambda c: (-round(c.relevance_score, 6), c.table.name.lower(), c.fqn.lower()),
        )

    def _fallback(
        self, profile: BusinessContextProfile, tables: Sequence[TableDescriptor], max_tables: int
    ) -> List[TableCandidate]:
        exclude = is_financial_transaction_query(profile, self.reference)
        allowed = [t for t in tables if not (exclude and is_gaming_activity_table(t, self.reference))]
        ordered = sorted(allowed, key=lambda t: (-t.relevance_prior, t.name.lower(), t.fqn.lower()))
        return [TableCandidate(table=t, relevance_score=t.relevance_prior, match_reasons=["fallback"]) for t in ordered[:max_tables]]

    def select_columns(
        self, profile: BusinessContextProfile, table: TableDescriptor
    ) -> List[ColumnCandidate]:
        """Key columns first, then text matches, then fill by relevance prior; capped."""
        query_words = {singular(t) for t in tokenize(profile.original_question, drop_stopwords=True)}
        query_words |= {singular(w) for m in profile.identified_metrics for w in m.split("_")}
        query_words |= {singular(w) for d in profile.identified_dimensions for w in d.split("_")}
        entity_columns = {
            e.mapped_name.lower() for e in profile.entities if e.type == EntityType.COLUMN
        }
        wants_time = profile.time_context is not None

        keys: List[ColumnCandidate] = []
        matched: List[ColumnCandidate] = []
        rest: List[ColumnCandidate] = []
        for col in table.columns:
            cand = ColumnCandidate(column=col, table_fqn=table.fqn)
            if f"{table.fqn}.{col.name}".lower() in entity_columns:
                cand.add(2.0, "entity")
            if {singular(w) for w in split_identifier(col.name)} & query_words:
                cand.add(1.5, "name")
            if _words(*col.aliases) & query_words:
                cand.add(1.0, "alias")
            if _words(col.business_meaning) & query_words:
                cand.add(1.2, "meaning")
            if wants_time and ("date" in col.semantic_tags or col.name == table.partition_column):
                cand.add(1.8, "time")
            text_score = cand.relevance_score
            cand.add(col.relevance_prior, "prior")
            if col.is_key:
                keys.append(cand)
            elif text_score > 0:
                matched.append(cand)
            else:
                rest.append(cand)

        def by_score(cands: List[ColumnCandidate]) -> List[ColumnCandidate]:
            return sorted(cands, key=lambda c: (-round(c.relevance_score, 6), c.column.name.lower()))

        ordered = by_score(keys) + by_score(matched) + by_score(rest)
        return ordered[: self.max_columns_per_table]

    @staticmethod
    def complexity_score(table_count: int, relationship_count: int) -> float:
        if table_count <= 1:
            return 0.2
        if table_count <= 3 and relationship_count <= 2:
            return 0.45
        if table_count <= 5 and relationship_count <= 5:
            return 0.7
        return 0.95

    @staticmethod
    def performance_hints(
        tables: Sequence[TableDescriptor], columns: Dict[str, List[ColumnDescriptor]], relationships: Sequence[Any]
    ) -> Tuple[List[str], List[str]]:
        join_columns: Dict[str, Set[str]] = {}
        for r in relationships:
            join_columns.setdefault(r.from_table.lower(), set()).add(r.from_column)
            join_columns.setdefault(r.to_table.lower(), set()).add(r.to_column)
        indexes: List[str] = []
        partitions: List[str] = []
        for t in tables:
            cols = [c.name for c in columns.get(t.fqn, [])]
            wanted = [c for c in cols if c in join_columns.get(t.fqn.lower(), set())]
            if t.partition_column and t.partition_column in cols:
                wanted.insert(0, t.partition_column)
                partitions.append(
                    f"{t.fqn} is partitioned by {t.partition_column}; always filter on a {t.partition_column} range"
                )
            for c in dict.fromkeys(wanted):
                indexes.append(f"{t.fqn}({c})")
        return indexes, partitions

    # ------------------------------------------------------------------

    async def select_relevant_schema(
        self,
        profile: BusinessContextProfile,
        repository: SchemaRepository,
        max_tables: Optional[int] = None,
        *,
        question_embedding: Optional[Sequence[float]] = None,
    ) -> ContextualBusinessSchema:
        limit = max(1, int(max_tables or settings.max_tables))
        started = time.perf_counter()
        try:
            tables = await repository.get_active_tables()
        except Exception as exc:
            SmartLogger.log(
                "ERROR",
                "context.relevance.repository.unavailable",
                category=CATEGORY,
                params=sanitize_for_log({"error": repr(exc)}),
            )
            raise SchemaRetrievalError(f"Schema repository unavailable: {exc}", stage="SchemaRetrieval") from exc
        if not tables:
            raise SchemaRetrievalError("Schema repository has no active tables", stage="SchemaRetrieval")

        try:
            glossary = await repository.get_glossary_terms()
        except Exception as exc:
            SmartLogger.log(
                "WARNING",
                "context.relevance.glossary.failed",
                category=CATEGORY,
                params=sanitize_for_log({"error": repr(exc)}),
            )
            glossary = []

        results = await asyncio.gather(
            self._run_strategy(
                STRATEGY_SEMANTIC,
                lambda: self._semantic_strategy(profile, repository, tables, limit * 3, question_embedding),
            ),
            self._run_strategy(STRATEGY_DOMAIN, lambda: self._domain_strategy(profile, tables)),
            self._run_strategy(STRATEGY_ENTITY, lambda: self._entity_strategy(profile, tables, glossary)),
            self._run_strategy(STRATEGY_TERM, lambda: self._term_strategy(profile, tables, glossary)),
        )
        errors = [err for _, _, err in results if err]
        ranked = self.score_candidates(profile, [(name, hits) for name, hits, _ in results])

        exclude = is_financial_transaction_query(profile, self.reference)
        eligible = [
            c for c in ranked
            if c.relevance_score >= self.weights.min_relevance
            and not (exclude and is_gaming_activity_table(c.table, self.reference))
        ]
        used_fallback = not eligible
        selected = self._fallback(profile, tables, limit) if used_fallback else eligible[:limit]
        if not selected:
            raise SchemaRetrievalError(
                "No tables remain after domain exclusion", stage="SchemaRetrieval"
            )

        chosen = [c.table for c in selected]
        fqns = [t.fqn for t in chosen]
        table_columns = {
            t.fqn: [c.column for c in self.select_columns(profile, t)] for t in chosen
        }
        try:
            rules = sorted(await repository.get_business_rules(fqns), key=lambda r: (r.priority, r.id))
            relationships = await repository.get_relationships(fqns)
        except Exception as exc:
            SmartLogger.log(
                "ERROR",
                "context.relevance.scoped_metadata.failed",
                category=CATEGORY,
                params=sanitize_for_log({"tables": fqns, "error": repr(exc)}),
            )
            raise SchemaRetrievalError(f"Schema repository unavailable: {exc}", stage="SchemaRetrieval") from exc
        scoped_glossary = [g for g in glossary if _glossary_tables(g, chosen)]
        indexes, partitions = self.performance_hints(chosen, table_columns, relationships)

        schema = ContextualBusinessSchema(
            relevant_tables=chosen,
            table_columns=table_columns,
            business_rules=rules,
            glossary_terms=scoped_glossary,
            relationships=relationships,
            table_scores={c.fqn: round(c.relevance_score, 4) for c in selected},
            complexity_score=self.complexity_score(len(chosen), len(relationships)),
            suggested_indexes=indexes,
            partitioning_hints=partitions,
            used_fallback=used_fallback,
            strategy_errors=errors,
        )
        SmartLogger.log(
            "INFO",
            "context.relevance.done",
            category=CATEGORY,
            params={
                "question": profile.original_question[:300],
                "domain": profile.domain.name,
                "exclusion_applied": exclude,
                "candidates": [
                    {"table": c.fqn, "score": round(c.relevance_score, 3), "reasons": c.match_reasons[:8]}
                    for c in ranked[:12]
                ],
                "selected": fqns,
                "used_fallback": used_fallback,
                "strategy_errors": errors,
                "elapsed_ms": round((time.perf_counter() - started) * 1000.0, 2),
            },
            max_inline_chars=0,
        )
        return schema


async def select_relevant_schema(
    profile: BusinessContextProfile,
    repository: SchemaRepository,
    max_tables: Optional[int] = None,
    **engine_kwargs: Any,
) -> ContextualBusinessSchema:
    return await SchemaRelevanceEngine(**engine_kwargs).select_relevant_schema(profile, repository, max_tables)
