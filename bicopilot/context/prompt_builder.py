"""
Prompt Assembler

Renders the intent-specific template with the budgeted context and appends the
enrichment sections (rules, glossary, relationships, performance and intent hints).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence

from langchain_core.prompts import PromptTemplate as LCPromptTemplate

from bicopilot.config import settings
from bicopilot.context.budget import (
    estimate_tokens,
    format_example,
    format_glossary_term,
    format_index_hint,
    format_partition_hint,
    format_relationship,
    format_rule,
    format_table,
)
from bicopilot.context.models import (
    BudgetedContext,
    BusinessContextProfile,
    ComplexityLevel,
    ContextualBusinessSchema,
    PromptTemplate,
    QueryExample,
)
from bicopilot.context.reference_data import DEFAULT_TEMPLATE_KEY, ReferenceData, default_reference_data
from bicopilot.context.templates import PromptTemplateStore
from bicopilot.smart_logger import SmartLogger
from bicopilot.utils.log_sanitize import sanitize_for_log

__all__ = ["AssembledPrompt", "PromptAssembler", "DEFAULT_PROMPT_TEMPLATE", "complexity_level_for"]


DEFAULT_PROMPT_TEMPLATE = PromptTemplate(
    key=DEFAULT_TEMPLATE_KEY,
    body=(
        "Write ONE PostgreSQL SELECT statement that answers the question.\n\n"
        "Question: {question}\n"
        "Intent: {intent}\n"
        "Business domain: {domain}\n"
        "Query complexity: {complexity}\n"
        "Current date: {current_date}\n"
        "Time context: {time_context}\n"
        "Metrics: {metrics}\n"
        "Dimensions: {dimensions}\n\n"
        "Use only the tables and columns below. Return the raw SQL only.\n\n"
        "{schema_context}\n\n"
        "Examples:\n{examples}"
    ),
)

_COMPLEXITY_CUTOFFS = (
    (0.3, ComplexityLevel.BASIC),
    (0.55, ComplexityLevel.STANDARD),
    (0.8, ComplexityLevel.ADVANCED),
)
_COMPLEXITY_ORDER = [ComplexityLevel.BASIC, ComplexityLevel.STANDARD, ComplexityLevel.ADVANCED, ComplexityLevel.EXPERT]

# Entity count at which the entity component saturates.
_ENTITY_SATURATION = 5

SCHEMA_HEADING = "## Schema context"
RULES_HEADING = "## Business rules"
GLOSSARY_HEADING = "## Glossary"
RELATIONSHIPS_HEADING = "## Relationships"
PERFORMANCE_HEADING = "## Performance hints"
_SECTION_HEADINGS = (SCHEMA_HEADING, RULES_HEADING, GLOSSARY_HEADING, RELATIONSHIPS_HEADING, PERFORMANCE_HEADING)


def complexity_level_for(score: float) -> ComplexityLevel:
    for cutoff, level in _COMPLEXITY_CUTOFFS:
        if score < cutoff:
            return level
    return ComplexityLevel.EXPERT


@dataclass
class AssembledPrompt:
    text: str
    template_key: str
    complexity: ComplexityLevel
    complexity_score: float
    examples: List[QueryExample] = field(default_factory=list)

    def details(self, budgeted: BudgetedContext) -> Dict[str, object]:
        return {
            "template_key": self.template_key,
            "complexity": self.complexity.value,
            "complexity_score": round(self.complexity_score, 4),
            "selected_tables": budgeted.schema.table_fqns,
            "token_usage": dict(budgeted.section_tokens),
            "token_budget": budgeted.budget.total_budget,
            "reserved_tokens": budgeted.reserved_tokens,
            "truncated": budgeted.truncated,
            "examples": [e.question for e in self.examples],
        }


def _bare(name: str) -> str:
    return (name or "").strip().lower().split(".")[-1]


class PromptAssembler:
    def __init__(
        self,
        *,
        reference: Optional[ReferenceData] = None,
        store: Optional[PromptTemplateStore] = None,
        clock: Callable[[], date] = date.today,
        max_examples: Optional[int] = None,
    ):
        self.reference = reference or default_reference_data()
        self.store = store or PromptTemplateStore(reference=self.reference)
        self.clock = clock
        self.max_examples = int(settings.max_examples if max_examples is None else max_examples)

    # ------------------------------------------------------------------

    def complexity(self, profile: BusinessContextProfile, schema: ContextualBusinessSchema) -> float:
        entity_part = min(1.0, len(profile.entities) / float(_ENTITY_SATURATION))
        intent_part = self.reference.intent_complexity.get(profile.intent, 0.5)
        return 0.4 * schema.complexity_score + 0.3 * entity_part + 0.3 * intent_part

    def select_examples(
        self,
        profile: BusinessContextProfile,
        table_names: Sequence[str],
        candidates: Optional[Sequence[QueryExample]] = None,
    ) -> List[QueryExample]:
        """Up to ``max_examples`` by intent (+2), domain (+1.5) and shared tables (+1 each)."""
        pool = list(candidates) if candidates else list(self.reference.fallback_examples)
        tables = {_bare(t) for t in table_names}
        scored = []
        for example in pool:
            score = 0.0
            if example.intent == profile.intent:
                score += 2.0
            if example.domain and example.domain == profile.domain.name:
                score += 1.5
            score += sum(1.0 for t in example.tables if _bare(t) in tables)
            if score > 0:
                scored.append((score, example))
        scored.sort(key=lambda x: -x[0])
        return [e for _, e in scored[: self.max_examples]]

    def template_for(self, profile: BusinessContextProfile) -> PromptTemplate:
        template = None
        try:
            template = self.store.for_intent(profile.intent)
        except Exception as exc:
            SmartLogger.log(
                "WARNING",
                "context.prompt.template_store_failed",
                category="context.prompt",
                params=sanitize_for_log({"intent": profile.intent.value, "error": repr(exc)}),
            )
        return template or DEFAULT_PROMPT_TEMPLATE

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    @staticmethod
    def schema_section(schema: ContextualBusinessSchema) -> str:
        lines = [SCHEMA_HEADING]
        for t in schema.relevant_tables:
            lines.append(format_table(t, schema.table_columns.get(t.fqn, [])))
        return "\n".join(lines)

    @staticmethod
    def rules_section(budgeted: BudgetedContext) -> str:
        if not budgeted.rules:
            return ""
        rules = sorted(budgeted.rules, key=lambda r: (r.priority, r.id))
        return "\n".join([RULES_HEADING] + [format_rule(r) for r in rules])

    @staticmethod
    def glossary_section(budgeted: BudgetedContext) -> str:
        if not budgeted.glossary:
            return ""
        return "\n".join([GLOSSARY_HEADING] + [format_glossary_term(g) for g in budgeted.glossary])

    @staticmethod
    def relationships_section(schema: ContextualBusinessSchema) -> str:
        if not schema.relationships:
            return ""
        return "\n".join([RELATIONSHIPS_HEADING] + [format_relationship(r) for r in schema.relationships])

    @staticmethod
    def performance_section(schema: ContextualBusinessSchema) -> str:
        lines = [format_index_hint(i) for i in schema.suggested_indexes]
        lines.extend(format_partition_hint(h) for h in schema.partitioning_hints)
        if not lines:
            return ""
        return "\n".join([PERFORMANCE_HEADING] + lines)

    def hints_section(self, profile: BusinessContextProfile) -> str:
        hints = self.reference.intent_hints.get(profile.intent, ())
        if not hints:
            return ""
        return "\n".join(["## Optimization hints"] + [f"- {h}" for h in hints])

    # ------------------------------------------------------------------

    def _render(
        self,
        template: PromptTemplate,
        question: str,
        profile: BusinessContextProfile,
        level: ComplexityLevel,
        schema_text: str,
        examples: Sequence[QueryExample],
    ) -> str:
        values = {
            "question": question.strip(),
            "intent": profile.intent.value,
            "domain": profile.domain.label or profile.domain.name,
            "complexity": level.value,
            "current_date": self.clock().isoformat(),
            "schema_context": schema_text,
            "examples": "\n\n".join(format_example(e) for e in examples) or "No examples available.",
            "time_context": profile.time_context.describe() if profile.time_context else "not specified",
            "metrics": ", ".join(sorted(profile.identified_metrics)) or "none identified",
            "dimensions": ", ".join(sorted(profile.identified_dimensions)) or "none identified",
        }
        return LCPromptTemplate.from_template(template.body).format(**values)

    def overhead_tokens(
        self, question: str, profile: BusinessContextProfile, schema: ContextualBusinessSchema
    ) -> int:
        """Tokens the prompt spends outside the budgeted sections (template text, headings, intent hints)."""
        template = self.template_for(profile)
        level = complexity_level_for(self.complexity(profile, schema))
        fixed = [
            self._render(template, question, profile, level, "", ()),
            *_SECTION_HEADINGS,
            self.hints_section(profile),
        ]
        return estimate_tokens("\n\n".join(s for s in fixed if s))

    def assemble(
        self, question: str, profile: BusinessContextProfile, budgeted: BudgetedContext
    ) -> AssembledPrompt:
        schema = budgeted.schema
        template = self.template_for(profile)
        score = self.complexity(profile, schema)
        level = complexity_level_for(score)
        examples = list(budgeted.examples)
        schema_text = self.schema_section(schema)
        rendered = self._render(template, question, profile, level, schema_text, examples)

        sections = [rendered.strip()]
        if "{schema_context}" not in template.body:
            sections.append(schema_text)
        sections.extend([
            self.rules_section(budgeted),
            self.glossary_section(budgeted),
            self.relationships_section(schema),
        ])
        if _COMPLEXITY_ORDER.index(level) >= _COMPLEXITY_ORDER.index(ComplexityLevel.ADVANCED):
            sections.append(self.performance_section(schema))
        sections.append(self.hints_section(profile))
        text = "\n\n".join(s for s in sections if s)

        SmartLogger.log(
            "DEBUG",
            "context.prompt.assembled",
            category="context.prompt",
            params={
                "template_key": template.key,
                "complexity": level.value,
                "complexity_score": round(score, 4),
                "examples": len(examples),
                "chars": len(text),
            },
        )
        return AssembledPrompt(
            text=text,
            template_key=template.key,
            complexity=level,
            complexity_score=score,
            examples=examples,
        )

    def build_prompt(self, question: str, profile: BusinessContextProfile, budgeted: BudgetedContext) -> str:
        return self.assemble(question, profile, budgeted).text
