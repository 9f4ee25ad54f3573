# python -m pytest bicopilot/tests/context/test_classifier.py -v

"""Tests for BusinessContextClassifier."""

from datetime import date

import pytest

from bicopilot.context.classifier import AliasIndex, BusinessContextClassifier
from bicopilot.context.models import EntityType, IntentType, TimeGranularity


class TestDomainAndIntent:
    def test_top_depositors_from_uk_is_financial_aggregation(self, classifier):
        """Depositor wording + 'top' is a Banking/Financial aggregation question"""
        profile = classifier.classify("Top 10 depositors yesterday from UK")

        assert profile.domain.name == "Financial"
        assert profile.domain.label == "Banking/Financial"
        assert profile.domain.confidence >= 0.8
        assert profile.intent == IntentType.AGGREGATION
        assert "depositor" in profile.identified_metrics
        assert "country" in profile.identified_dimensions

    def test_netent_games_is_gaming(self, classifier):
        profile = classifier.classify("Show me top NetEnt games by revenue")

        assert profile.domain.name == "Gaming"
        assert "tbl_Daily_actions_games" in profile.domain.related_tables
        assert "Games" in profile.domain.related_tables

    def test_unmatched_question_degrades_to_general_exploratory(self, classifier):
        """No keyword, no pattern: low-confidence defaults instead of an error"""
        profile = classifier.classify("hello there")

        assert profile.domain.is_general
        assert profile.domain.confidence == 0.0
        assert profile.intent == IntentType.EXPLORATORY
        assert profile.intent_confidence == pytest.approx(0.3)
        assert profile.intent is not None and profile.domain is not None

    def test_empty_question_still_yields_profile(self, classifier):
        profile = classifier.classify("   ")

        assert profile.domain.is_general
        assert profile.entities == ()
        assert profile.time_context is None

    @pytest.mark.parametrize(
        "question, intent",
        [
            ("Compare deposits in UK versus Germany", IntentType.COMPARISON),
            ("Monthly deposit trend this year", IntentType.TREND),
            ("How many players registered", IntentType.AGGREGATION),
            ("Why did withdrawals spike", IntentType.ANALYTICAL),
            ("Pending withdrawals status", IntentType.OPERATIONAL),
            ("List brands", IntentType.DETAIL),
        ],
    )
    def test_intent_rules(self, classifier, question, intent):
        assert classifier.classify(question).intent == intent

    def test_comparison_terms_are_collected(self, classifier):
        profile = classifier.classify("Compare deposits in UK versus Germany")

        assert "compare" in profile.comparison_terms
        assert "versus" in profile.comparison_terms

    def test_prior_context_carries_domain_for_follow_up(self, classifier):
        """A follow-up without domain keywords inherits the previous domain at half confidence"""
        first = classifier.classify("Top 10 depositors yesterday from UK")
        follow_up = classifier.classify("and what about last month", first)

        assert follow_up.domain.name == "Financial"
        assert follow_up.domain.confidence == pytest.approx(round(first.domain.confidence * 0.5, 4))

    def test_classification_is_deterministic(self, classifier):
        q = "Top 10 depositors yesterday from UK"
        assert classifier.classify(q) == classifier.classify(q)


class TestEntitiesAndTime:
    def test_yesterday_resolves_against_clock(self, classifier):
        profile = classifier.classify("Top 10 depositors yesterday from UK")

        assert profile.time_context is not None
        assert profile.time_context.granularity == TimeGranularity.DAY
        assert profile.time_context.start == date(2024, 3, 14)
        assert profile.time_context.end == date(2024, 3, 14)

    def test_catalog_aliases_become_column_entities(self, classifier):
        profile = classifier.classify("Top 10 depositors yesterday from UK")

        columns = {e.mapped_name for e in profile.entities_of(EntityType.COLUMN)}
        assert "common.tbl_Countries.country_name" in columns
        for entity in profile.entities:
            assert 0.0 < entity.confidence <= 1.0

    def test_fuzzy_alias_match_is_discounted(self):
        """Near-miss spelling still maps, with confidence below an exact alias hit"""
        index = AliasIndex.build(glossary=())
        exact = index.lookup("withdrawals")
        fuzzy = index.lookup("withdrawls")

        assert exact and exact[0][1] == 1.0
        assert fuzzy
        assert all(sim < 1.0 for _, sim in fuzzy)

    def test_glossary_terms_are_business_terms(self, classifier):
        profile = classifier.classify("Total FTD last week")

        assert "ftd" in profile.business_terms

    def test_overall_confidence_in_unit_range(self, classifier):
        for q in ("Top 10 depositors yesterday from UK", "hello there", "Compare GGR by provider"):
            assert 0.0 <= classifier.classify(q).confidence_score <= 1.0


@pytest.mark.asyncio
async def test_from_repository_indexes_catalog(repository):
    """Catalog table names and aliases are recognised once built from the repository"""
    classifier = await BusinessContextClassifier.from_repository(repository, clock=lambda: date(2024, 3, 15))
    profile = classifier.classify("show the white labels")

    tables = {e.mapped_name for e in profile.entities_of(EntityType.TABLE)}
    assert "common.tbl_White_labels" in tables
