"""
Token Budget Manager

Splits a hard token ceiling across the schema / rules / glossary / examples
sections and trims the lowest-ranked items of each section until it fits.

Token counts are a deterministic length-based estimate, not a tokenizer:
    ceil((words + punctuation / 2) * content-type multiplier)
"""

from __future__ import annotations

import math
import re
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from bicopilot.config import settings
from bicopilot.context.models import (
    BUDGET_SECTIONS,
    BudgetedContext,
    BusinessRule,
    ColumnDescriptor,
    ContextualBusinessSchema,
    GlossaryTerm,
    QueryExample,
    TableDescriptor,
    TableRelationship,
    TokenBudget,
)
from bicopilot.smart_logger import SmartLogger

__all__ = [
    "CONTENT_MULTIPLIERS",
    "TokenBudgetManager",
    "estimate_tokens",
    "format_table",
    "format_table_header",
    "format_rule",
    "format_relationship",
    "format_index_hint",
    "format_partition_hint",
    "format_glossary_term",
    "format_example",
]

T = TypeVar("T")

CONTENT_MULTIPLIERS: Dict[str, float] = {
    "schema": 1.1,
    "rules": 1.05,
    "glossary": 1.0,
    "examples": 1.15,
}

_RE_WORD = re.compile(r"\w+")
_RE_PUNCT = re.compile(r"[^\w\s]")


def estimate_tokens(text: str, content_type: str = "schema") -> int:
    if not text:
        return 0
    words = len(_RE_WORD.findall(text))
    punct = len(_RE_PUNCT.findall(text))
    return int(math.ceil((words + punct / 2.0) * CONTENT_MULTIPLIERS.get(content_type, 1.0)))


# --------------------------------------------------------------------------
# Section rendering (shared with the prompt assembler so estimates match output)
# --------------------------------------------------------------------------


def format_table_header(table: TableDescriptor) -> str:
    return f"Table: {table.fqn}"


def _format_column(column: ColumnDescriptor) -> str:
    flags = [column.data_type] if column.data_type else []
    if column.is_key:
        flags.append("key")
    line = f"    - {column.name}"
    if flags:
        line += f" ({', '.join(flags)})"
    if column.business_meaning:
        line += f": {column.business_meaning}"
    return line


def format_table(
    table: TableDescriptor, columns: Sequence[ColumnDescriptor], *, with_purpose: bool = True
) -> str:
    lines = [format_table_header(table)]
    if with_purpose and table.business_purpose:
        lines.append(f"  Purpose: {table.business_purpose}")
    if columns:
        lines.append("  Columns:")
        lines.extend(_format_column(c) for c in columns)
    return "\n".join(lines)


def format_rule(rule: BusinessRule) -> str:
    return f"- [P{rule.priority}] {rule.table}: {rule.description}"


def format_relationship(relationship: TableRelationship) -> str:
    return f"- {relationship.describe()}"


def format_index_hint(index: str) -> str:
    return f"- index: {index}"


def format_partition_hint(hint: str) -> str:
    return f"- {hint}"


def format_glossary_term(term: GlossaryTerm) -> str:
    line = f"- {term.term}: {term.definition}"
    if term.preferred_calculation:
        line += f" (calculation: {term.preferred_calculation})"
    return line


def format_example(example: QueryExample) -> str:
    return f"Q: {example.question}\nSQL:\n{example.sql}"


def _section_cost(items: Sequence[T], render: Callable[[T], str], content_type: str) -> int:
    return estimate_tokens("\n".join(render(i) for i in items), content_type)


def _fit(items: Sequence[T], render: Callable[[T], str], content_type: str, allocation: int) -> Tuple[List[T], int]:
    """Drop items from the tail (lowest ranked) until the section fits."""
    kept = list(items)
    cost = _section_cost(kept, render, content_type)
    while kept and cost > allocation:
        kept.pop()
        cost = _section_cost(kept, render, content_type)
    return kept, cost


class TokenBudgetManager:
    def __init__(self, ratios: Optional[Dict[str, float]] = None):
        self.ratios = dict(ratios) if ratios else {
            "schema": settings.budget_schema_ratio,
            "rules": settings.budget_rules_ratio,
            "glossary": settings.budget_glossary_ratio,
            "examples": settings.budget_examples_ratio,
        }
        missing = [s for s in BUDGET_SECTIONS if s not in self.ratios]
        if missing:
            raise ValueError(f"missing budget ratios: {missing}")
        if any(r < 0 for r in self.ratios.values()) or sum(self.ratios.values()) > 1.0 + 1e-9:
            raise ValueError("budget ratios must be non-negative and sum to at most 1.0")

    def split(self, total_budget: int) -> Dict[str, int]:
        return {s: int(math.floor(total_budget * self.ratios[s])) for s in BUDGET_SECTIONS}

    def _fit_schema(
        self, schema: ContextualBusinessSchema, allocation: int
    ) -> Tuple[List[TableDescriptor], Dict[str, List[ColumnDescriptor]], int]:
        tables = list(schema.relevant_tables)

        def render(t: TableDescriptor) -> str:
            return format_table(t, schema.table_columns.get(t.fqn, []))

        kept, cost = _fit(tables, render, "schema", allocation)
        columns = {t.fqn: list(schema.table_columns.get(t.fqn, [])) for t in kept}
        return kept, columns, cost

    def _minimal_schema(
        self, schema: ContextualBusinessSchema, allocation: int
    ) -> Tuple[TableDescriptor, List[ColumnDescriptor], int]:
        """First table, key columns only, then columns dropped until it fits or only the header remains."""
        first = schema.relevant_tables[0]
        cols = [c for c in schema.table_columns.get(first.fqn, []) if c.is_key]
        cost = estimate_tokens(format_table(first, cols, with_purpose=False), "schema")
        while cols and cost > allocation:
            cols.pop()
            cost = estimate_tokens(format_table(first, cols, with_purpose=False), "schema")
        return first, cols, cost

    def allocate(
        self,
        total_budget: int,
        schema: ContextualBusinessSchema,
        rules: Optional[Sequence[BusinessRule]] = None,
        glossary: Optional[Sequence[GlossaryTerm]] = None,
        examples: Sequence[QueryExample] = (),
        *,
        reserved_tokens: int = 0,
    ) -> BudgetedContext:
        """
        Fit the four sections into ``total_budget - reserved_tokens``.

        ``reserved_tokens`` is the fixed prompt text (template, headings, hints)
        that is rendered regardless of the sections. A budget too small for any
        content yields minimal or empty context with ``truncated=True``.
        """
        total = max(0, int(total_budget))
        reserved = min(total, max(0, int(reserved_tokens)))
        content_budget = total - reserved
        if not schema.relevant_tables:
            raise ValueError("schema has no relevant tables")

        rules = list(schema.business_rules if rules is None else rules)
        rules.sort(key=lambda r: (r.priority, r.id))
        glossary = list(schema.glossary_terms if glossary is None else glossary)
        allocation = self.split(content_budget)
        warnings: List[str] = []
        truncated = False
        index_set = set(schema.suggested_indexes)
        if int(reserved_tokens) > total:
            warnings.append(
                f"prompt template alone needs {int(reserved_tokens)} tokens, over the {total} token budget"
            )

        tables, table_columns, schema_cost = self._fit_schema(schema, allocation["schema"])
        if tables:
            kept_fqns = {t.fqn.lower() for t in tables}
            rels = [
                r for r in schema.relationships
                if r.from_table.lower() in kept_fqns and r.to_table.lower() in kept_fqns
            ]
            spare = allocation["schema"] - schema_cost
            rels, rel_cost = _fit(rels, format_relationship, "schema", spare)
            spare -= rel_cost

            def render_hint(hint: str) -> str:
                return format_index_hint(hint) if hint in index_set else format_partition_hint(hint)

            hints, hint_cost = _fit(
                list(schema.suggested_indexes) + list(schema.partitioning_hints), render_hint, "schema", spare
            )
            schema_cost += rel_cost + hint_cost
            kept_rules, rules_cost = _fit(rules, format_rule, "rules", allocation["rules"])
            kept_glossary, glossary_cost = _fit(glossary, format_glossary_term, "glossary", allocation["glossary"])
            kept_examples, examples_cost = _fit(examples, format_example, "examples", allocation["examples"])
            if len(tables) < len(schema.relevant_tables):
                warnings.append(
                    f"schema trimmed to {len(tables)} of {len(schema.relevant_tables)} tables to fit the token budget"
                )
        else:
            # Not even the top table fits: minimal content gets everything left after the template.
            first, cols, schema_cost = self._minimal_schema(schema, content_budget)
            if schema_cost <= content_budget:
                tables, table_columns = [first], {first.fqn: cols}
                warnings.append(
                    f"minimal context only: {first.fqn} with {len(cols)} key column(s); "
                    "rules, glossary and examples dropped"
                )
            else:
                warnings.append(
                    f"no schema context: {content_budget} token(s) left after the template, "
                    f"{first.fqn} header needs {schema_cost}"
                )
                tables, table_columns, schema_cost = [], {}, 0
            rels, hints = [], []
            kept_rules, kept_glossary, kept_examples = [], [], []
            rules_cost = glossary_cost = examples_cost = 0
            allocation = {"schema": schema_cost, "rules": 0, "glossary": 0, "examples": 0}
            truncated = True

        budget = TokenBudget(total_budget=total, allocated=allocation)
        section_tokens = {
            "schema": schema_cost,
            "rules": rules_cost,
            "glossary": glossary_cost,
            "examples": examples_cost,
        }
        for section in BUDGET_SECTIONS:
            budget.consume(section_tokens[section])

        trimmed_schema = replace(
            schema,
            relevant_tables=tables,
            table_columns=table_columns,
            business_rules=kept_rules,
            glossary_terms=kept_glossary,
            relationships=rels,
            table_scores={t.fqn: schema.table_scores.get(t.fqn, 0.0) for t in tables},
            suggested_indexes=[h for h in hints if h in index_set],
            partitioning_hints=[h for h in hints if h not in index_set],
        )

        dropped = {
            "rules": len(rules) - len(kept_rules),
            "glossary": len(glossary) - len(kept_glossary),
            "examples": len(examples) - len(kept_examples),
        }
        for section, count in dropped.items():
            if count and not truncated:
                warnings.append(f"{section}: dropped {count} lowest-ranked item(s)")

        SmartLogger.log(
            "WARNING" if truncated else "DEBUG",
            "context.budget.allocated",
            category="context.budget",
            params={
                "total_budget": total,
                "reserved_tokens": reserved,
                "allocated": allocation,
                "used": section_tokens,
                "remaining": budget.remaining,
                "truncated": truncated,
                "warnings": warnings,
            },
        )
        return BudgetedContext(
            schema=trimmed_schema,
            rules=kept_rules,
            glossary=kept_glossary,
            examples=kept_examples,
            budget=budget,
            section_tokens=section_tokens,
            truncated=truncated,
            warnings=warnings,
            reserved_tokens=reserved,
        )
