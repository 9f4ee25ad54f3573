# python -m pytest bicopilot/tests/context/test_prompt_builder.py -v

"""Tests for PromptAssembler and PromptTemplateStore."""

from datetime import date

import pytest

from bicopilot.context.budget import TokenBudgetManager
from bicopilot.context.models import ComplexityLevel, IntentType
from bicopilot.context.prompt_builder import (
    DEFAULT_PROMPT_TEMPLATE,
    PromptAssembler,
    complexity_level_for,
)
from bicopilot.context.templates import PromptTemplateStore

FIXED_TODAY = date(2024, 3, 15)


async def _budgeted(classifier, relevance, repository, question, total=6000, max_tables=4):
    profile = classifier.classify(question)
    schema = await relevance.select_relevant_schema(profile, repository, max_tables=max_tables)
    return profile, TokenBudgetManager().allocate(total, schema)


class TestAssemble:
    @pytest.mark.asyncio
    async def test_prompt_contains_placeholders_and_sections(self, classifier, relevance, repository, assembler):
        question = "Top 10 depositors yesterday from UK"
        profile, budgeted = await _budgeted(classifier, relevance, repository, question)
        budgeted.examples = assembler.select_examples(profile, budgeted.schema.table_names)

        prompt = assembler.assemble(question, profile, budgeted)

        text = prompt.text
        assert question in text
        assert "Intent: Aggregation" in text
        assert "Business domain: Banking/Financial" in text
        assert FIXED_TODAY.isoformat() in text
        assert "## Schema context" in text
        assert "Table: common.tbl_Daily_actions" in text
        assert "## Business rules" in text
        assert "## Optimization hints" in text
        assert "{question}" not in text
        assert prompt.template_key == "revenue_aggregation"

    @pytest.mark.asyncio
    async def test_prompt_is_deterministic(self, classifier, relevance, repository, assembler):
        question = "Compare deposits in UK versus Germany"
        profile, budgeted = await _budgeted(classifier, relevance, repository, question)

        first = assembler.build_prompt(question, profile, budgeted)
        second = assembler.build_prompt(question, profile, budgeted)

        assert first == second

    @pytest.mark.asyncio
    async def test_rules_rendered_in_priority_order(self, classifier, relevance, repository, assembler):
        question = "Top 10 depositors yesterday from UK"
        profile, budgeted = await _budgeted(classifier, relevance, repository, question)

        section = assembler.rules_section(budgeted)
        priorities = [int(line.split("]")[0].split("[P")[1]) for line in section.splitlines()[1:]]

        assert priorities == sorted(priorities)

    @pytest.mark.asyncio
    async def test_trend_prompt_carries_window_function_hint(self, classifier, relevance, repository, assembler):
        question = "Monthly deposit trend this year"
        profile, budgeted = await _budgeted(classifier, relevance, repository, question)

        prompt = assembler.assemble(question, profile, budgeted)

        assert profile.intent == IntentType.TREND
        assert prompt.template_key == "trend"
        assert "window functions" in prompt.text

    @pytest.mark.asyncio
    async def test_performance_section_only_for_complex_prompts(self, classifier, relevance, repository, assembler):
        question = "Compare deposits in UK versus Germany"
        profile, budgeted = await _budgeted(classifier, relevance, repository, question, max_tables=6)

        prompt = assembler.assemble(question, profile, budgeted)

        has_hints = bool(budgeted.schema.suggested_indexes or budgeted.schema.partitioning_hints)
        if prompt.complexity in (ComplexityLevel.ADVANCED, ComplexityLevel.EXPERT) and has_hints:
            assert "## Performance hints" in prompt.text
        else:
            assert "## Performance hints" not in prompt.text

    @pytest.mark.asyncio
    async def test_missing_template_store_entry_uses_default(self, classifier, relevance, repository):
        def loader(name):
            raise FileNotFoundError(name)

        assembler = PromptAssembler(store=PromptTemplateStore(loader=loader), clock=lambda: FIXED_TODAY)
        question = "Top 10 depositors yesterday from UK"
        profile, budgeted = await _budgeted(classifier, relevance, repository, question)

        prompt = assembler.assemble(question, profile, budgeted)

        assert prompt.template_key == DEFAULT_PROMPT_TEMPLATE.key
        assert "Write ONE PostgreSQL SELECT statement" in prompt.text
        assert "No examples available." in prompt.text


class TestExamples:
    def test_examples_ranked_by_intent_domain_and_tables(self, classifier, assembler):
        profile = classifier.classify("Top 10 depositors yesterday from UK")

        examples = assembler.select_examples(profile, ["tbl_Daily_actions", "tbl_Daily_actions_players"])

        assert len(examples) == 2
        assert examples[0].question == "Top 10 depositors yesterday"
        assert all(e.intent == IntentType.AGGREGATION or e.domain == "Financial" for e in examples)

    def test_repository_examples_take_precedence(self, classifier, assembler, catalog):
        profile = classifier.classify("Top providers by GGR last month")

        examples = assembler.select_examples(profile, ["tbl_Daily_actions_games", "Games"], catalog["examples"])

        assert examples[0].question == "Top providers by GGR this month"


class TestComplexity:
    @pytest.mark.parametrize(
        "score, level",
        [
            (0.0, ComplexityLevel.BASIC),
            (0.29, ComplexityLevel.BASIC),
            (0.3, ComplexityLevel.STANDARD),
            (0.6, ComplexityLevel.ADVANCED),
            (0.8, ComplexityLevel.EXPERT),
        ],
    )
    def test_levels(self, score, level):
        assert complexity_level_for(score) == level


class TestTemplateStore:
    def test_for_intent_maps_and_falls_back_to_general(self):
        calls = []

        def loader(name):
            calls.append(name)
            if name == "general_query.md":
                return "General {question}"
            raise FileNotFoundError(name)

        store = PromptTemplateStore(loader=loader)
        template = store.for_intent(IntentType.TREND)

        assert template.key == "general_query"
        assert calls == ["trend.md", "general_query.md"]

    def test_templates_are_cached_until_ttl(self):
        now = [0.0]
        calls = []

        def loader(name):
            calls.append(name)
            return "Body {question}"

        store = PromptTemplateStore(loader=loader, ttl_seconds=60, clock=lambda: now[0])
        store.get("trend")
        store.get("trend")
        assert calls == ["trend.md"]

        now[0] = 61.0
        store.get("trend")
        assert calls == ["trend.md", "trend.md"]

    def test_shipped_templates_load(self):
        store = PromptTemplateStore()
        for intent in IntentType:
            template = store.for_intent(intent)
            assert template is not None
            assert "{schema_context}" in template.body
