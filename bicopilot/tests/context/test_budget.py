# python -m pytest bicopilot/tests/context/test_budget.py -v

"""Tests for TokenBudgetManager: ceiling, per-section trimming, minimal-content truncation."""

import pytest

from bicopilot.config import settings
from bicopilot.context.budget import (
    TokenBudgetManager,
    estimate_tokens,
    format_example,
    format_rule,
)
from bicopilot.context.models import BUDGET_SECTIONS, ContextualBusinessSchema, TokenBudget
from bicopilot.context.reference_data import default_reference_data


def _schema(catalog, count=None):
    tables = catalog["tables"][:count] if count else list(catalog["tables"])
    fqns = {t.fqn.lower() for t in tables}
    return ContextualBusinessSchema(
        relevant_tables=tables,
        table_columns={t.fqn: list(t.columns) for t in tables},
        business_rules=[r for r in catalog["business_rules"] if r.table.lower() in fqns],
        glossary_terms=list(catalog["glossary"]),
        relationships=[
            r for r in catalog["relationships"]
            if r.from_table.lower() in fqns and r.to_table.lower() in fqns
        ],
        suggested_indexes=[f"{t.fqn}(player_id)" for t in tables[:2]],
    )


class TestEstimate:
    def test_estimate_is_deterministic_and_length_based(self):
        text = "SELECT player_id, SUM(deposits) FROM common.tbl_Daily_actions"
        assert estimate_tokens(text) == estimate_tokens(text)
        assert estimate_tokens(text + " " + text) > estimate_tokens(text)
        assert estimate_tokens("") == 0

    def test_content_type_multiplier(self):
        text = "Depositors are players with deposits greater than zero"
        assert estimate_tokens(text, "examples") >= estimate_tokens(text, "glossary")


class TestAllocate:
    def test_default_split_follows_ratios(self, monkeypatch):
        monkeypatch.setattr(settings, "budget_schema_ratio", 0.6)
        monkeypatch.setattr(settings, "budget_rules_ratio", 0.15)
        monkeypatch.setattr(settings, "budget_glossary_ratio", 0.1)
        monkeypatch.setattr(settings, "budget_examples_ratio", 0.15)

        split = TokenBudgetManager().split(1000)

        assert split == {"schema": 600, "rules": 150, "glossary": 100, "examples": 150}

    def test_roomy_budget_keeps_everything(self, catalog):
        schema = _schema(catalog, 3)
        examples = list(default_reference_data().fallback_examples[:2])

        budgeted = TokenBudgetManager().allocate(20000, schema, examples=examples)

        assert budgeted.truncated is False
        assert budgeted.schema.table_fqns == schema.table_fqns
        assert len(budgeted.examples) == 2
        assert budgeted.total_tokens <= 20000

    @pytest.mark.parametrize("total", [64, 150, 400, 800, 1500, 4000])
    def test_never_exceeds_total_budget(self, catalog, total):
        """Sum of used tokens and sum of allocations both stay under the ceiling"""
        schema = _schema(catalog)
        examples = list(default_reference_data().fallback_examples)

        budgeted = TokenBudgetManager().allocate(total, schema, examples=examples)

        assert budgeted.total_tokens <= total
        assert sum(budgeted.budget.allocated.values()) <= total
        assert budgeted.budget.remaining == total - budgeted.total_tokens
        for section in BUDGET_SECTIONS:
            assert budgeted.section_tokens[section] <= budgeted.budget.allocated[section]

    def test_lowest_ranked_items_are_trimmed_first(self, catalog):
        schema = _schema(catalog)
        examples = list(default_reference_data().fallback_examples)
        first_example_cost = estimate_tokens(format_example(examples[0]), "examples")

        budgeted = TokenBudgetManager().allocate(first_example_cost * 8, schema, examples=examples)

        kept = budgeted.examples
        assert kept == examples[: len(kept)]
        assert len(budgeted.schema.relevant_tables) >= 1
        assert budgeted.schema.relevant_tables == schema.relevant_tables[: len(budgeted.schema.relevant_tables)]

    def test_rules_kept_in_priority_order(self, catalog):
        schema = _schema(catalog)
        budgeted = TokenBudgetManager().allocate(20000, schema)

        priorities = [r.priority for r in budgeted.rules]
        assert priorities == sorted(priorities)
        assert budgeted.section_tokens["rules"] == estimate_tokens(
            "\n".join(format_rule(r) for r in budgeted.rules), "rules"
        )

    def test_minimal_content_when_nothing_fits(self, catalog):
        """Top table alone exceeds its share: one table, key columns, truncation flag"""
        schema = _schema(catalog)

        budgeted = TokenBudgetManager().allocate(64, schema)

        assert budgeted.truncated is True
        assert len(budgeted.schema.relevant_tables) == 1
        first = schema.relevant_tables[0]
        assert budgeted.schema.relevant_tables[0] is first
        assert all(c.is_key for c in budgeted.schema.table_columns[first.fqn])
        assert budgeted.rules == [] and budgeted.glossary == [] and budgeted.examples == []
        assert budgeted.total_tokens <= 64
        assert any("minimal context" in w for w in budgeted.warnings)

    def test_tiny_budget_degrades_to_empty_context(self, catalog):
        """Even the top table header does not fit: empty sections, flagged, no error"""
        budgeted = TokenBudgetManager().allocate(2, _schema(catalog))

        assert budgeted.truncated is True
        assert budgeted.schema.relevant_tables == []
        assert budgeted.total_tokens == 0
        assert any("no schema context" in w for w in budgeted.warnings)

    def test_reserved_tokens_come_off_the_section_split(self, catalog):
        schema = _schema(catalog)
        examples = list(default_reference_data().fallback_examples)

        budgeted = TokenBudgetManager().allocate(1000, schema, examples=examples, reserved_tokens=400)

        assert budgeted.reserved_tokens == 400
        assert sum(budgeted.budget.allocated.values()) <= 600
        assert budgeted.total_tokens <= 600

    def test_reservation_over_the_ceiling_leaves_no_room(self, catalog):
        budgeted = TokenBudgetManager().allocate(100, _schema(catalog), reserved_tokens=250)

        assert budgeted.truncated is True
        assert budgeted.reserved_tokens == 100
        assert budgeted.total_tokens == 0
        assert any("prompt template alone needs 250 tokens" in w for w in budgeted.warnings)

    def test_ratios_over_one_are_rejected(self):
        with pytest.raises(ValueError):
            TokenBudgetManager({"schema": 0.8, "rules": 0.2, "glossary": 0.1, "examples": 0.1})


class TestTokenBudget:
    def test_consume_only_decreases(self):
        budget = TokenBudget(total_budget=100, allocated={"schema": 60, "rules": 40})
        assert budget.consume(30) == 70
        with pytest.raises(ValueError):
            budget.consume(-1)
        with pytest.raises(ValueError):
            budget.consume(71)
        assert budget.remaining == 70

    def test_over_allocation_is_rejected(self):
        with pytest.raises(ValueError):
            TokenBudget(total_budget=10, allocated={"schema": 8, "rules": 8})
