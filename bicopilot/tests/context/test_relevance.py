# python -m pytest bicopilot/tests/context/test_relevance.py -v

"""Tests for SchemaRelevanceEngine: ranking, domain exclusion, fallback, degraded strategies."""

import pytest

from bicopilot.context.relevance import (
    RelevanceWeights,
    SchemaRelevanceEngine,
    StrategyHit,
    is_financial_transaction_query,
    is_gaming_activity_table,
)
from bicopilot.context.repository import InMemorySchemaRepository
from bicopilot.core.errors import SchemaRetrievalError
from bicopilot.smart_logger import SmartLogger

EXCLUSION_REASON = "excluded:gaming_activity_for_financial_query"


class BrokenVectorRepository(InMemorySchemaRepository):
    async def search_similar_tables(self, embedding, top_k):
        raise ConnectionError("vector index offline")


class UnreachableRepository(InMemorySchemaRepository):
    async def get_active_tables(self):
        raise ConnectionError("metadata store unreachable")


class RulesOutage(InMemorySchemaRepository):
    async def get_business_rules(self, table_fqns):
        raise ConnectionError("rules store unreachable")


class LeakyVectorRepository(InMemorySchemaRepository):
    async def search_similar_tables(self, embedding, top_k):
        raise ConnectionError("upstream rejected key sk-abcdefghijklmnop1234")


def _table(catalog, name):
    return next(t for t in catalog["tables"] if t.name == name)


class TestScenarios:
    @pytest.mark.asyncio
    async def test_financial_question_selects_player_country_tables_without_gaming(
        self, classifier, relevance, repository
    ):
        profile = classifier.classify("Top 10 depositors yesterday from UK")
        schema = await relevance.select_relevant_schema(profile, repository, max_tables=5)

        fqns = schema.table_fqns
        assert "common.tbl_Daily_actions" in fqns
        assert "common.tbl_Daily_actions_players" in fqns
        assert "common.tbl_Countries" in fqns
        assert not any(is_gaming_activity_table(t) for t in schema.relevant_tables)
        for fqn, columns in schema.table_columns.items():
            assert len(columns) <= 8
        assert schema.used_fallback is False

    @pytest.mark.asyncio
    async def test_gaming_question_selects_activity_and_master_tables(self, classifier, relevance, repository):
        profile = classifier.classify("Show me top NetEnt games by revenue")
        schema = await relevance.select_relevant_schema(profile, repository, max_tables=5)

        assert "common.tbl_Daily_actions_games" in schema.table_fqns
        assert "dbo.Games" in schema.table_fqns

    @pytest.mark.asyncio
    async def test_rules_glossary_and_relationships_are_scoped_to_selection(self, classifier, relevance, repository):
        profile = classifier.classify("Top 10 depositors yesterday from UK")
        schema = await relevance.select_relevant_schema(profile, repository, max_tables=3)

        selected = {f.lower() for f in schema.table_fqns}
        assert len(selected) <= 3
        for rule in schema.business_rules:
            assert rule.table.lower() in selected
        for rel in schema.relationships:
            assert rel.from_table.lower() in selected and rel.to_table.lower() in selected
        priorities = [r.priority for r in schema.business_rules]
        assert priorities == sorted(priorities)

    @pytest.mark.asyncio
    async def test_selection_is_deterministic(self, classifier, relevance, repository):
        profile = classifier.classify("Compare deposits in UK versus Germany")
        first = await relevance.select_relevant_schema(profile, repository, max_tables=4)
        second = await relevance.select_relevant_schema(profile, repository, max_tables=4)

        assert first.table_fqns == second.table_fqns
        assert first.table_scores == second.table_scores


class TestDomainExclusion:
    def test_financial_domain_or_transaction_vocabulary_triggers_exclusion(self, classifier):
        assert is_financial_transaction_query(classifier.classify("Top 10 depositors yesterday from UK"))
        assert is_financial_transaction_query(classifier.classify("Total revenue by currency"))
        assert not is_financial_transaction_query(classifier.classify("Show me top NetEnt games by revenue"))

    @pytest.mark.parametrize(
        "question, domain",
        [
            ("Deposit transactions per casino player yesterday", "Financial"),
            ("Which players made deposits and bets yesterday", "Financial"),
            ("List withdrawals for players with casino bonus", None),
        ],
    )
    @pytest.mark.asyncio
    async def test_deposit_questions_with_gaming_words_exclude_gaming_tables(
        self, classifier, relevance, repository, question, domain
    ):
        profile = classifier.classify(question)
        schema = await relevance.select_relevant_schema(profile, repository, max_tables=5)

        if domain:
            assert profile.domain.name == domain
        assert is_financial_transaction_query(profile)
        assert schema.relevant_tables
        assert not any(is_gaming_activity_table(t) for t in schema.relevant_tables)

    def test_gaming_tables_are_recognised_by_domain_or_tags(self, catalog):
        assert is_gaming_activity_table(_table(catalog, "tbl_Daily_actions_games"))
        assert is_gaming_activity_table(_table(catalog, "Games"))
        assert not is_gaming_activity_table(_table(catalog, "tbl_Daily_actions"))

    def test_penalty_pushes_gaming_table_below_financial_tables(self, classifier, catalog):
        """A gaming table with a strong match still ranks last for a deposit question"""
        engine = SchemaRelevanceEngine(weights=RelevanceWeights(exclusion_penalty=10.0))
        profile = classifier.classify("Top 10 depositors yesterday from UK")
        games = _table(catalog, "tbl_Daily_actions_games")
        actions = _table(catalog, "tbl_Daily_actions")

        ranked = engine.score_candidates(
            profile,
            [
                ("semantic", [StrategyHit(games, 5.0, "semantic:0.990")]),
                ("domain", [StrategyHit(actions, 1.0, "domain:Financial")]),
            ],
        )

        assert ranked[0].table is actions
        assert ranked[-1].table is games
        assert ranked[-1].relevance_score < 0
        assert EXCLUSION_REASON in ranked[-1].match_reasons

    def test_no_penalty_for_non_transaction_questions(self, classifier, catalog):
        engine = SchemaRelevanceEngine()
        profile = classifier.classify("Show me top NetEnt games by revenue")
        games = _table(catalog, "tbl_Daily_actions_games")

        ranked = engine.score_candidates(profile, [("semantic", [StrategyHit(games, 1.0, "semantic:0.800")])])

        assert ranked[0].relevance_score > 0
        assert EXCLUSION_REASON not in ranked[0].match_reasons

    def test_ties_break_on_table_name(self, classifier, catalog):
        engine = SchemaRelevanceEngine(weights=RelevanceWeights(prior_bonus=0.0))
        profile = classifier.classify("hello there")
        countries = _table(catalog, "tbl_Countries")
        currencies = _table(catalog, "tbl_Currencies")

        ranked = engine.score_candidates(
            profile,
            [("domain", [StrategyHit(currencies, 1.0, "x"), StrategyHit(countries, 1.0, "x")])],
        )

        assert [c.table.name for c in ranked] == ["tbl_Countries", "tbl_Currencies"]


class TestFallbackAndFailures:
    @pytest.mark.asyncio
    async def test_no_strategy_hits_falls_back_to_catalog(self, classifier, repository):
        """Nothing matches: the active catalog (by relevance prior) replaces an empty selection"""
        engine = SchemaRelevanceEngine(embedder=None)
        profile = classifier.classify("hello there")
        schema = await engine.select_relevant_schema(profile, repository, max_tables=3)

        assert schema.used_fallback is True
        assert len(schema.relevant_tables) == 3
        priors = [t.relevance_prior for t in schema.relevant_tables]
        assert priors == sorted(priors, reverse=True)

    @pytest.mark.asyncio
    async def test_fallback_keeps_domain_exclusion(self, classifier, repository, embedder):
        engine = SchemaRelevanceEngine(embedder=embedder, weights=RelevanceWeights(min_relevance=1000.0))
        profile = classifier.classify("Top 10 depositors yesterday from UK")
        schema = await engine.select_relevant_schema(profile, repository, max_tables=20)

        assert schema.used_fallback is True
        assert schema.relevant_tables
        assert not any(is_gaming_activity_table(t) for t in schema.relevant_tables)

    @pytest.mark.asyncio
    async def test_failing_strategy_is_skipped(self, classifier, embedder):
        repository = BrokenVectorRepository.from_json(embedder=embedder)
        engine = SchemaRelevanceEngine(embedder=embedder)
        profile = classifier.classify("Top 10 depositors yesterday from UK")

        schema = await engine.select_relevant_schema(profile, repository, max_tables=5)

        assert len(schema.strategy_errors) == 1
        assert schema.strategy_errors[0].startswith("semantic")
        assert "common.tbl_Daily_actions" in schema.table_fqns

    @pytest.mark.asyncio
    async def test_empty_catalog_is_fatal(self, classifier):
        engine = SchemaRelevanceEngine()
        with pytest.raises(SchemaRetrievalError):
            await engine.select_relevant_schema(classifier.classify("deposits"), InMemorySchemaRepository())

    @pytest.mark.asyncio
    async def test_unreachable_repository_is_fatal(self, classifier):
        engine = SchemaRelevanceEngine()
        with pytest.raises(SchemaRetrievalError) as excinfo:
            await engine.select_relevant_schema(classifier.classify("deposits"), UnreachableRepository())

        assert "unavailable" in str(excinfo.value)


class TestColumns:
    def test_key_columns_first_and_capped(self, classifier, catalog):
        engine = SchemaRelevanceEngine(max_columns_per_table=5)
        profile = classifier.classify("Top 10 depositors yesterday from UK")
        table = _table(catalog, "tbl_Daily_actions")

        selected = engine.select_columns(profile, table)

        assert len(selected) == 5
        keys = {c.name for c in table.key_columns}
        assert {c.column.name for c in selected[: len(keys)]} == keys

    def test_time_question_pulls_date_column(self, classifier, catalog):
        engine = SchemaRelevanceEngine(max_columns_per_table=4)
        profile = classifier.classify("Top 10 depositors yesterday from UK")
        names = [c.column.name for c in engine.select_columns(profile, _table(catalog, "tbl_Daily_actions"))]

        assert "action_date" in names

    @pytest.mark.parametrize(
        "tables, rels, expected",
        [(1, 0, 0.2), (3, 2, 0.45), (5, 5, 0.7), (6, 1, 0.95)],
    )
    def test_complexity_score_by_table_count(self, tables, rels, expected):
        assert SchemaRelevanceEngine.complexity_score(tables, rels) == expected

    @pytest.mark.asyncio
    async def test_scoped_metadata_failure_is_a_retrieval_error(self, classifier, embedder):
        repository = RulesOutage.from_json(embedder=embedder)
        engine = SchemaRelevanceEngine(embedder=embedder)

        with pytest.raises(SchemaRetrievalError) as excinfo:
            await engine.select_relevant_schema(classifier.classify("Top 10 depositors yesterday from UK"), repository)

        assert "unavailable" in str(excinfo.value)
        assert excinfo.value.stage == "SchemaRetrieval"

    @pytest.mark.asyncio
    async def test_strategy_error_is_redacted_in_logs(self, classifier, embedder, monkeypatch):
        logged = []
        monkeypatch.setattr(SmartLogger, "log", classmethod(lambda cls, level, message, **kw: logged.append((message, kw))))
        repository = LeakyVectorRepository.from_json(embedder=embedder)
        engine = SchemaRelevanceEngine(embedder=embedder)

        schema = await engine.select_relevant_schema(classifier.classify("Top 10 depositors yesterday from UK"), repository)

        failures = [kw["params"] for message, kw in logged if message == "context.relevance.strategy.failed"]
        assert failures
        assert "<REDACTED>" in failures[0]["error"]
        assert "sk-abcdefghijklmnop1234" not in failures[0]["error"]
        assert schema.strategy_errors
