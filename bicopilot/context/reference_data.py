"""
Static reference data for business-context classification and prompt assembly.

Everything here is immutable (tuples, frozensets, MappingProxyType). Build one
``ReferenceData`` at startup and pass it by reference into the classifier,
relevance engine and prompt assembler.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import FrozenSet, Mapping, Tuple

from bicopilot.context.models import IntentType, QueryExample

__all__ = [
    "FINANCIAL",
    "GAMING",
    "CUSTOMER",
    "GEOGRAPHIC",
    "DEFAULT_TEMPLATE_KEY",
    "DomainRule",
    "IntentRule",
    "ReferenceData",
    "default_reference_data",
]

FINANCIAL = "Financial"
GAMING = "Gaming"
CUSTOMER = "Customer"
GEOGRAPHIC = "Geographic"

DEFAULT_TEMPLATE_KEY = "general_query"


def _ro(mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class DomainRule:
    """Keyword table and scoring hints for one business domain."""

    name: str
    label: str
    description: str
    keywords: Tuple[str, ...]
    high_priority: FrozenSet[str] = frozenset()
    # (terms, bonus); a term matches as a word prefix ("game" matches "games").
    bonus_rules: Tuple[Tuple[Tuple[str, ...], float], ...] = ()
    strong_indicators: Tuple[str, ...] = ()
    related_tables: Tuple[str, ...] = ()

    def keyword_weight(self, keyword: str) -> float:
        if keyword in self.high_priority:
            return 3.0
        if len(keyword) > 6 or " " in keyword:
            return 2.0
        return 1.0

    @property
    def total_weight(self) -> float:
        return sum(self.keyword_weight(k) for k in self.keywords)


@dataclass(frozen=True)
class IntentRule:
    intent: IntentType
    pattern: re.Pattern
    confidence: float


# --------------------------------------------------------------------------
# Domains
# --------------------------------------------------------------------------

_FINANCIAL_KEYWORDS = (
    "depositor", "depositors", "deposit", "deposits", "depositing", "deposited",
    "withdrawal", "withdrawals", "withdraw", "ftd", "ftds", "first time deposit",
    "financial", "banking", "payment", "payments", "transaction", "transactions",
    "balance", "balances", "account", "accounts", "money", "currency", "amount",
    "revenue", "profit", "cost", "budget", "roi", "ggr", "ngr", "chargeback",
    "chargebacks", "exchange rate", "payment method", "payment provider",
)

_GAMING_KEYWORDS = (
    "game", "games", "gaming", "play", "playing", "bet", "bets", "betting",
    "win", "wins", "winning", "casino", "live casino", "slot", "slots",
    "session", "sessions", "blackjack", "roulette", "provider", "game provider",
    "rtp", "volatility", "jackpot", "progressive", "bonus gaming",
    "real money gaming", "sports betting", "sportsbook", "activity", "activities",
    "netent", "pragmatic", "evolution", "microgaming", "playtech",
)

_CUSTOMER_KEYWORDS = (
    "customer", "customers", "user", "users", "player", "players", "member",
    "members", "behavior", "behaviour", "engagement", "retention", "churn",
    "segmentation", "segment", "demographics", "vip", "kyc", "registration",
    "registrations", "signup", "signups", "lifetime value", "ltv", "loyalty",
    "active players", "new players",
)

_GEOGRAPHIC_KEYWORDS = (
    "country", "countries", "region", "regions", "location", "locations",
    "market", "markets", "jurisdiction", "uk", "us", "gb", "united kingdom",
    "united states", "europe", "european", "asia", "latam", "germany", "canada",
    "malta", "sweden", "geo", "geographic",
)

_DOMAIN_RULES = (
    DomainRule(
        name=FINANCIAL,
        label="Banking/Financial",
        description="Deposits, withdrawals, payments, currencies and revenue",
        keywords=_FINANCIAL_KEYWORDS,
        high_priority=frozenset({"depositor", "depositors", "deposit", "deposits", "ftd", "withdrawal", "withdrawals"}),
        bonus_rules=(
            (("deposit", "withdraw", "ftd"), 0.2),
            (("transaction", "payment"), 0.1),
            (("revenue", "profit"), 0.1),
        ),
        strong_indicators=(
            "deposit", "deposits", "depositor", "depositors", "deposit amount", "withdrawal", "withdrawals",
            "transaction", "transactions", "ftd", "first time deposit",
        ),
        related_tables=(
            "tbl_Daily_actions",
            "tbl_Daily_actions_players",
            "tbl_Currencies",
            "tbl_Daily_actionsGBP_transactions",
        ),
    ),
    DomainRule(
        name=GAMING,
        label="Gaming",
        description="Games, providers, bets, wins and gameplay activity",
        keywords=_GAMING_KEYWORDS,
        high_priority=frozenset({"game", "games", "casino", "bet", "bets", "slot", "slots"}),
        bonus_rules=(
            (("game", "casino", "bet"), 0.2),
            (("playing", "play session", "session"), 0.1),
        ),
        strong_indicators=("game", "games", "casino", "bet", "slot", "play session"),
        related_tables=("Games", "tbl_Daily_actions_games"),
    ),
    DomainRule(
        name=CUSTOMER,
        label="Customer",
        description="Players, registrations, segments and lifecycle",
        keywords=_CUSTOMER_KEYWORDS,
        high_priority=frozenset({"customer", "customers", "player", "players"}),
        bonus_rules=((("retention", "churn", "engagement"), 0.1),),
        related_tables=("tbl_Daily_actions_players", "tbl_White_labels"),
    ),
    DomainRule(
        name=GEOGRAPHIC,
        label="Geographic",
        description="Countries, regions and markets",
        keywords=_GEOGRAPHIC_KEYWORDS,
        high_priority=frozenset({"country", "countries"}),
        related_tables=("tbl_Countries",),
    ),
)

# Extra boost applied after scoring when "top" appears next to depositor wording.
TOP_DEPOSITOR_FLOOR = 0.8
MAX_DOMAIN_BONUS = 0.3
EXTRA_MATCH_BONUS = 0.05
DISAMBIGUATION_MARGIN = 0.1
DISAMBIGUATION_BOOST = 0.15


# --------------------------------------------------------------------------
# Intent
# --------------------------------------------------------------------------


def _rx(*words: str) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(words) + r")\b", re.IGNORECASE)


# Order matters: first match wins.
_INTENT_RULES = (
    IntentRule(
        IntentType.COMPARISON,
        _rx(r"compare", r"comparing", r"comparison", r"versus", r"vs", r"compared (?:to|with)",
            r"difference between", r"against"),
        0.85,
    ),
    IntentRule(
        IntentType.TREND,
        _rx(r"trend", r"trends", r"trending", r"over time", r"growth", r"grow(?:ing)?",
            r"increase", r"decrease", r"declin(?:e|ing)", r"month over month", r"week over week",
            r"year over year", r"by (?:day|week|month|quarter|year)", r"daily", r"weekly", r"monthly",
            r"trajectory"),
        0.8,
    ),
    IntentRule(
        IntentType.AGGREGATION,
        _rx(r"top", r"bottom", r"total", r"sum", r"count", r"average", r"avg", r"mean",
            r"how many", r"how much", r"number of", r"highest", r"lowest", r"most", r"least",
            r"max(?:imum)?", r"min(?:imum)?", r"rank(?:ing)?", r"aggregate"),
        0.8,
    ),
    IntentRule(
        IntentType.ANALYTICAL,
        _rx(r"why", r"correlat(?:e|ion)", r"ratio", r"impact", r"analy[sz]e", r"analysis",
            r"insight", r"insights", r"breakdown", r"distribution", r"driver", r"drivers", r"conversion"),
        0.7,
    ),
    IntentRule(
        IntentType.OPERATIONAL,
        _rx(r"status", r"pending", r"active", r"failed", r"currently", r"real[- ]time",
            r"monitor(?:ing)?", r"alert", r"alerts", r"stuck", r"processing"),
        0.65,
    ),
    IntentRule(
        IntentType.DETAIL,
        _rx(r"show", r"list", r"details?", r"display", r"find", r"which", r"what is",
            r"what are", r"get", r"lookup", r"look up"),
        0.6,
    ),
)

FALLBACK_INTENT = IntentType.EXPLORATORY
FALLBACK_INTENT_CONFIDENCE = 0.3

COMPARISON_TERMS = (
    "compare", "comparison", "versus", "vs", "against", "difference", "between", "than",
)

# Relative cost of each intent for prompt complexity scoring.
_INTENT_COMPLEXITY = {
    IntentType.DETAIL: 0.2,
    IntentType.OPERATIONAL: 0.3,
    IntentType.EXPLORATORY: 0.4,
    IntentType.AGGREGATION: 0.5,
    IntentType.COMPARISON: 0.7,
    IntentType.TREND: 0.7,
    IntentType.ANALYTICAL: 0.9,
}


# --------------------------------------------------------------------------
# Metric / dimension vocabulary
# --------------------------------------------------------------------------

_METRIC_VOCABULARY = {
    "deposit": "deposits",
    "deposits": "deposits",
    "depositor": "deposits",
    "depositors": "deposits",
    "deposit amount": "deposits",
    "withdrawal": "withdrawals",
    "withdrawals": "withdrawals",
    "ftd": "first_time_deposits",
    "first time deposit": "first_time_deposits",
    "revenue": "revenue",
    "ggr": "gross_gaming_revenue",
    "ngr": "net_gaming_revenue",
    "profit": "profit",
    "bets": "bets",
    "bet": "bets",
    "wins": "wins",
    "bonus": "bonuses",
    "bonuses": "bonuses",
    "sessions": "sessions",
    "rtp": "return_to_player",
    "chargeback": "chargebacks",
    "chargebacks": "chargebacks",
    "balance": "balance",
    "registrations": "registrations",
    "count": "count",
    "amount": "amount",
}

_DIMENSION_VOCABULARY = {
    "country": "country",
    "countries": "country",
    "uk": "country",
    "united kingdom": "country",
    "region": "country",
    "currency": "currency",
    "currencies": "currency",
    "provider": "game_provider",
    "providers": "game_provider",
    "game": "game",
    "games": "game",
    "player": "player",
    "players": "player",
    "depositor": "player",
    "depositors": "player",
    "customer": "player",
    "customers": "player",
    "white label": "white_label",
    "brand": "white_label",
    "brands": "white_label",
    "platform": "platform",
    "day": "date",
    "date": "date",
    "month": "date",
    "week": "date",
    "segment": "segment",
    "vip": "segment",
    "gender": "gender",
}


# --------------------------------------------------------------------------
# Schema relevance: domain exclusion
# --------------------------------------------------------------------------

FINANCIAL_TRANSACTION_TERMS = frozenset({
    "deposit", "deposits", "depositor", "depositors", "depositing", "deposited",
    "payment", "payments", "transaction", "transactions", "withdrawal", "withdrawals",
    "withdraw", "ftd", "ftds", "chargeback", "chargebacks",
})

GAMING_ACTIVITY_TAGS = frozenset({"gaming", "game_activity", "casino", "betting", "game"})
GAMING_DOMAINS = frozenset({GAMING})


# --------------------------------------------------------------------------
# Prompt templates
# --------------------------------------------------------------------------

_INTENT_TEMPLATE_KEYS = {
    IntentType.ANALYTICAL: "analytical",
    IntentType.OPERATIONAL: "operational_efficiency",
    IntentType.EXPLORATORY: "player_behavior",
    IntentType.COMPARISON: "comparison",
    IntentType.AGGREGATION: "revenue_aggregation",
    IntentType.TREND: "trend",
    IntentType.DETAIL: "performance_monitoring",
}

_INTENT_HINTS = {
    IntentType.AGGREGATION: (
        "Use GROUP BY with the appropriate aggregate functions (SUM, COUNT, AVG).",
        "Apply ORDER BY with LIMIT for top-N questions.",
    ),
    IntentType.TREND: (
        "Use date truncation on the time column and window functions for trend analysis.",
        "Order results chronologically.",
    ),
    IntentType.COMPARISON: (
        "Use CASE WHEN or conditional aggregation to compare segments side by side.",
        "Keep the compared groups on the same grain.",
    ),
    IntentType.ANALYTICAL: (
        "Prefer CTEs to stage intermediate aggregates before computing ratios.",
        "Guard divisions with NULLIF to avoid division by zero.",
    ),
    IntentType.OPERATIONAL: (
        "Filter on status and the most recent date first to keep the scan small.",
    ),
    IntentType.DETAIL: (
        "Select only the columns needed and filter on indexed key columns.",
    ),
    IntentType.EXPLORATORY: (
        "Start from the primary fact table and join dimensions only as needed.",
    ),
}

_FALLBACK_EXAMPLES = (
    QueryExample(
        question="Top 10 depositors yesterday",
        sql=(
            "SELECT p.player_id, SUM(a.deposits) AS total_deposits\n"
            "FROM common.tbl_Daily_actions a\n"
            "JOIN common.tbl_Daily_actions_players p ON p.player_id = a.player_id\n"
            "WHERE a.action_date = CURRENT_DATE - INTERVAL '1 day'\n"
            "GROUP BY p.player_id\nORDER BY total_deposits DESC\nLIMIT 10"
        ),
        intent=IntentType.AGGREGATION,
        domain=FINANCIAL,
        tables=("tbl_Daily_actions", "tbl_Daily_actions_players"),
    ),
    QueryExample(
        question="Daily deposit trend for the last 30 days",
        sql=(
            "SELECT a.action_date, SUM(a.deposits) AS deposits\n"
            "FROM common.tbl_Daily_actions a\n"
            "WHERE a.action_date >= CURRENT_DATE - INTERVAL '30 days'\n"
            "GROUP BY a.action_date\nORDER BY a.action_date"
        ),
        intent=IntentType.TREND,
        domain=FINANCIAL,
        tables=("tbl_Daily_actions",),
    ),
    QueryExample(
        question="Compare deposits between UK and Germany this month",
        sql=(
            "SELECT c.country_name, SUM(a.deposits) AS deposits\n"
            "FROM common.tbl_Daily_actions a\n"
            "JOIN common.tbl_Daily_actions_players p ON p.player_id = a.player_id\n"
            "JOIN common.tbl_Countries c ON c.country_id = p.country_id\n"
            "WHERE c.country_name IN ('United Kingdom', 'Germany')\n"
            "  AND a.action_date >= DATE_TRUNC('month', CURRENT_DATE)\n"
            "GROUP BY c.country_name"
        ),
        intent=IntentType.COMPARISON,
        domain=FINANCIAL,
        tables=("tbl_Daily_actions", "tbl_Daily_actions_players", "tbl_Countries"),
    ),
    QueryExample(
        question="Top games by bets last week",
        sql=(
            "SELECT g.game_name, SUM(ag.real_bet_amount) AS bets\n"
            "FROM common.tbl_Daily_actions_games ag\n"
            "JOIN dbo.Games g ON g.game_id = ag.game_id\n"
            "WHERE ag.game_date >= CURRENT_DATE - INTERVAL '7 days'\n"
            "GROUP BY g.game_name\nORDER BY bets DESC\nLIMIT 10"
        ),
        intent=IntentType.AGGREGATION,
        domain=GAMING,
        tables=("tbl_Daily_actions_games", "Games"),
    ),
    QueryExample(
        question="Why did net cash drop for VIP players",
        sql=(
            "WITH vip AS (SELECT player_id FROM common.tbl_Daily_actions_players WHERE vip_level > 0)\n"
            "SELECT a.action_date, SUM(a.deposits) - SUM(a.withdrawals) AS net_cash\n"
            "FROM common.tbl_Daily_actions a JOIN vip ON vip.player_id = a.player_id\n"
            "GROUP BY a.action_date ORDER BY a.action_date"
        ),
        intent=IntentType.ANALYTICAL,
        domain=CUSTOMER,
        tables=("tbl_Daily_actions", "tbl_Daily_actions_players"),
    ),
    QueryExample(
        question="List players registered today with their country",
        sql=(
            "SELECT p.player_id, p.registered_date, c.country_name\n"
            "FROM common.tbl_Daily_actions_players p\n"
            "JOIN common.tbl_Countries c ON c.country_id = p.country_id\n"
            "WHERE p.registered_date = CURRENT_DATE"
        ),
        intent=IntentType.DETAIL,
        domain=CUSTOMER,
        tables=("tbl_Daily_actions_players", "tbl_Countries"),
    ),
)


@dataclass(frozen=True)
class ReferenceData:
    domains: Tuple[DomainRule, ...] = _DOMAIN_RULES
    intent_rules: Tuple[IntentRule, ...] = _INTENT_RULES
    intent_complexity: Mapping[IntentType, float] = field(default_factory=lambda: _ro(_INTENT_COMPLEXITY))
    metric_vocabulary: Mapping[str, str] = field(default_factory=lambda: _ro(_METRIC_VOCABULARY))
    dimension_vocabulary: Mapping[str, str] = field(default_factory=lambda: _ro(_DIMENSION_VOCABULARY))
    intent_template_keys: Mapping[IntentType, str] = field(default_factory=lambda: _ro(_INTENT_TEMPLATE_KEYS))
    intent_hints: Mapping[IntentType, Tuple[str, ...]] = field(default_factory=lambda: _ro(_INTENT_HINTS))
    fallback_examples: Tuple[QueryExample, ...] = _FALLBACK_EXAMPLES
    financial_transaction_terms: frozenset = FINANCIAL_TRANSACTION_TERMS
    gaming_activity_tags: frozenset = GAMING_ACTIVITY_TAGS
    gaming_domains: frozenset = GAMING_DOMAINS

    def domain(self, name: str) -> DomainRule | None:
        for rule in self.domains:
            if rule.name == name:
                return rule
        return None

    def template_key_for(self, intent: IntentType) -> str:
        return self.intent_template_keys.get(intent, DEFAULT_TEMPLATE_KEY)


_DEFAULT: ReferenceData | None = None


def default_reference_data() -> ReferenceData:
    """Process-wide reference data instance (built once, read-only)."""
    global _DEFAULT
    if _DEFAULT is None:
        _DEFAULT = ReferenceData()
    return _DEFAULT
