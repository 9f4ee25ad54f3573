from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class IntentType(str, Enum):
    ANALYTICAL = "Analytical"
    OPERATIONAL = "Operational"
    EXPLORATORY = "Exploratory"
    COMPARISON = "Comparison"
    AGGREGATION = "Aggregation"
    TREND = "Trend"
    DETAIL = "Detail"


class EntityType(str, Enum):
    TABLE = "Table"
    COLUMN = "Column"
    METRIC = "Metric"
    DIMENSION = "Dimension"


class ComplexityLevel(str, Enum):
    BASIC = "Basic"
    STANDARD = "Standard"
    ADVANCED = "Advanced"
    EXPERT = "Expert"


class TimeGranularity(str, Enum):
    HOUR = "Hour"
    DAY = "Day"
    WEEK = "Week"
    MONTH = "Month"
    QUARTER = "Quarter"
    YEAR = "Year"
    UNKNOWN = "Unknown"


class PipelineStage(str, Enum):
    RECEIVED = "Received"
    CACHE_CHECK = "CacheCheck"
    CLASSIFYING = "Classifying"
    SCHEMA_RETRIEVAL = "SchemaRetrieval"
    BUDGETING = "Budgeting"
    PROMPT_ASSEMBLY = "PromptAssembly"
    GENERATING = "Generating"
    VALIDATING = "Validating"
    EXECUTING = "Executing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStage.COMPLETED, PipelineStage.FAILED)


GENERAL_DOMAIN = "General"


# --------------------------------------------------------------------------
# Business context
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class BusinessDomain:
    name: str
    confidence: float
    label: str = ""
    matched_keywords: Tuple[str, ...] = ()
    related_tables: Tuple[str, ...] = ()
    description: str = ""

    @classmethod
    def general(cls) -> "BusinessDomain":
        return cls(name=GENERAL_DOMAIN, confidence=0.0, label=GENERAL_DOMAIN)

    @property
    def is_general(self) -> bool:
        return self.name == GENERAL_DOMAIN


@dataclass(frozen=True)
class BusinessEntity:
    text: str
    type: EntityType
    mapped_name: str
    confidence: float
    position: int = 0


@dataclass(frozen=True)
class TimeContext:
    expression: str
    granularity: TimeGranularity = TimeGranularity.UNKNOWN
    start: Optional[date] = None
    end: Optional[date] = None

    def describe(self) -> str:
        if self.start and self.end:
            if self.start == self.end:
                return f"{self.expression} ({self.start.isoformat()})"
            return f"{self.expression} ({self.start.isoformat()} to {self.end.isoformat()})"
        return self.expression


@dataclass(frozen=True)
class BusinessContextProfile:
    original_question: str
    intent: IntentType
    domain: BusinessDomain
    intent_confidence: float = 0.0
    entities: Tuple[BusinessEntity, ...] = ()
    time_context: Optional[TimeContext] = None
    identified_metrics: FrozenSet[str] = frozenset()
    identified_dimensions: FrozenSet[str] = frozenset()
    business_terms: Tuple[str, ...] = ()
    comparison_terms: Tuple[str, ...] = ()
    confidence_score: float = 0.0

    def entities_of(self, entity_type: EntityType) -> List[BusinessEntity]:
        return [e for e in self.entities if e.type == entity_type]


# --------------------------------------------------------------------------
# Schema read model
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    data_type: str = ""
    business_meaning: str = ""
    aliases: Tuple[str, ...] = ()
    is_key: bool = False
    semantic_tags: Tuple[str, ...] = ()
    relevance_prior: float = 0.5
    validation_rule: str = ""


@dataclass(frozen=True)
class TableDescriptor:
    id: str
    schema: str
    name: str
    business_purpose: str = ""
    domain: str = ""
    aliases: Tuple[str, ...] = ()
    semantic_tags: Tuple[str, ...] = ()
    relevance_prior: float = 0.5
    columns: Tuple[ColumnDescriptor, ...] = ()
    business_context: str = ""
    partition_column: str = ""
    is_active: bool = True
    embedding: Optional[Tuple[float, ...]] = None

    @property
    def fqn(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name

    @property
    def key_columns(self) -> List[ColumnDescriptor]:
        return [c for c in self.columns if c.is_key]

    def describe_for_embedding(self) -> str:
        parts = [f"Table: {self.name}"]
        if self.business_purpose:
            parts.append(f"Purpose: {self.business_purpose}")
        if self.aliases:
            parts.append(f"Aliases: {', '.join(self.aliases)}")
        if self.columns:
            parts.append(f"Columns: {', '.join(c.name for c in self.columns)}")
        return " | ".join(parts)


@dataclass(frozen=True)
class BusinessRule:
    id: str
    table: str
    description: str
    priority: int = 3
    rule_type: str = ""
    affected_columns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GlossaryTerm:
    term: str
    definition: str
    preferred_calculation: str = ""
    mapped_tables: Tuple[str, ...] = ()
    domain: str = ""
    synonyms: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TableRelationship:
    from_table: str
    from_column: str
    to_table: str
    to_column: str
    business_meaning: str = ""

    def describe(self) -> str:
        link = f"{self.from_table}.{self.from_column} -> {self.to_table}.{self.to_column}"
        return f"{link} ({self.business_meaning})" if self.business_meaning else link


@dataclass(frozen=True)
class QueryExample:
    question: str
    sql: str
    intent: Optional[IntentType] = None
    domain: str = ""
    tables: Tuple[str, ...] = ()
    business_context: str = ""


# --------------------------------------------------------------------------
# Relevance / selection
# --------------------------------------------------------------------------


@dataclass
class TableCandidate:
    table: TableDescriptor
    relevance_score: float = 0.0
    match_reasons: List[str] = field(default_factory=list)

    @property
    def fqn(self) -> str:
        return self.table.fqn

    def add(self, score: float, reason: str) -> None:
        self.relevance_score += float(score)
        self.match_reasons.append(reason)


@dataclass
class ColumnCandidate:
    column: ColumnDescriptor
    table_fqn: str
    relevance_score: float = 0.0
    match_reasons: List[str] = field(default_factory=list)

    def add(self, score: float, reason: str) -> None:
        self.relevance_score += float(score)
        self.match_reasons.append(reason)


@dataclass
class ContextualBusinessSchema:
    relevant_tables: List[TableDescriptor]
    table_columns: Dict[str, List[ColumnDescriptor]] = field(default_factory=dict)
    business_rules: List[BusinessRule] = field(default_factory=list)
    glossary_terms: List[GlossaryTerm] = field(default_factory=list)
    relationships: List[TableRelationship] = field(default_factory=list)
    table_scores: Dict[str, float] = field(default_factory=dict)
    complexity_score: float = 0.0
    suggested_indexes: List[str] = field(default_factory=list)
    partitioning_hints: List[str] = field(default_factory=list)
    used_fallback: bool = False
    strategy_errors: List[str] = field(default_factory=list)

    @property
    def table_names(self) -> List[str]:
        return [t.name for t in self.relevant_tables]

    @property
    def table_fqns(self) -> List[str]:
        return [t.fqn for t in self.relevant_tables]


# --------------------------------------------------------------------------
# Budgeting / prompt
# --------------------------------------------------------------------------


BUDGET_SECTIONS = ("schema", "rules", "glossary", "examples")


@dataclass
class TokenBudget:
    total_budget: int
    allocated: Dict[str, int] = field(default_factory=dict)
    remaining: int = 0

    def __post_init__(self) -> None:
        if sum(self.allocated.values()) > self.total_budget:
            raise ValueError("allocations exceed total budget")
        if not self.remaining:
            self.remaining = self.total_budget

    def consume(self, tokens: int) -> int:
        """Decrease the remaining allowance; never increases it."""
        if tokens < 0:
            raise ValueError("tokens must be non-negative")
        if tokens > self.remaining:
            raise ValueError(f"cannot consume {tokens} tokens, only {self.remaining} remaining")
        self.remaining -= tokens
        return self.remaining

    @property
    def used(self) -> int:
        return self.total_budget - self.remaining


@dataclass
class BudgetedContext:
    schema: ContextualBusinessSchema
    rules: List[BusinessRule]
    glossary: List[GlossaryTerm]
    examples: List[QueryExample]
    budget: TokenBudget
    section_tokens: Dict[str, int] = field(default_factory=dict)
    truncated: bool = False
    warnings: List[str] = field(default_factory=list)
    reserved_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return sum(self.section_tokens.values())


@dataclass(frozen=True)
class PromptTemplate:
    key: str
    body: str
    intents: Tuple[IntentType, ...] = ()
    description: str = ""


# --------------------------------------------------------------------------
# Cache / streaming
# --------------------------------------------------------------------------


@dataclass
class CacheEntry:
    question: str
    question_hash: str
    generated_sql: str
    cached_response: Dict[str, Any]
    question_embedding: Optional[List[float]] = None
    similarity_threshold: float = 0.85
    created_at: float = field(default_factory=time.time)
    expires_at: float = 0.0
    similarity: float = 1.0
    tier: str = "exact"
    hit_count: int = 0

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "question_hash": self.question_hash,
            "generated_sql": self.generated_sql,
            "cached_response": self.cached_response,
            "question_embedding": self.question_embedding,
            "similarity_threshold": self.similarity_threshold,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "hit_count": self.hit_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            question=str(data.get("question") or ""),
            question_hash=str(data.get("question_hash") or ""),
            generated_sql=str(data.get("generated_sql") or ""),
            cached_response=dict(data.get("cached_response") or {}),
            question_embedding=data.get("question_embedding"),
            similarity_threshold=float(data.get("similarity_threshold") or 0.85),
            created_at=float(data.get("created_at") or 0.0),
            expires_at=float(data.get("expires_at") or 0.0),
            hit_count=int(data.get("hit_count") or 0),
        )


@dataclass(frozen=True)
class StreamingProgressEvent:
    stage: PipelineStage
    message: str
    progress_percent: int
    timestamp: float = field(default_factory=time.time)
    payload: Optional[Dict[str, Any]] = None
    kind: str = "progress"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "event": self.kind,
            "stage": self.stage.value,
            "message": self.message,
            "progress_percent": int(self.progress_percent),
            "ts_ms": int(self.timestamp * 1000),
        }
        if self.payload:
            out["payload"] = self.payload
        return out


@dataclass
class PipelineRequest:
    question: str
    user_id: str = ""
    session_id: str = ""
    use_cache: Optional[bool] = None
    execute: bool = False
    max_tables: Optional[int] = None
    total_token_budget: Optional[int] = None
    prior_profile: Optional[BusinessContextProfile] = None


@dataclass
class PipelineResult:
    status: str
    question: str
    sql: str = ""
    rows: List[List[Any]] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    confidence: float = 0.0
    cached: bool = False
    prompt_details: Dict[str, Any] = field(default_factory=dict)
    last_completed_stage: Optional[PipelineStage] = None
    error: Optional[str] = None
    partial_sql: str = ""
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "question": self.question,
            "sql": self.sql,
            "rows": self.rows,
            "columns": self.columns,
            "confidence": round(float(self.confidence), 4),
            "cached": self.cached,
            "prompt_details": self.prompt_details,
            "last_completed_stage": self.last_completed_stage.value if self.last_completed_stage else None,
            "error": self.error,
            "partial_sql": self.partial_sql,
            "warnings": list(self.warnings),
        }
