"""
Business Context Classifier

Turns a raw question into a ``BusinessContextProfile``:
1) weighted keyword domain scoring
2) rule-based intent detection
3) entity extraction against catalog aliases, glossary and metric vocabulary
4) time context extraction

Classification never fails closed: unmatched input yields the General domain
with zero confidence and the fallback intent.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from bicopilot.context import reference_data as ref
from bicopilot.context.models import (
    BusinessContextProfile,
    BusinessDomain,
    BusinessEntity,
    EntityType,
    GlossaryTerm,
    IntentType,
    TableDescriptor,
)
from bicopilot.context.reference_data import ReferenceData, default_reference_data
from bicopilot.context.repository import SchemaRepository
from bicopilot.context.text import (
    contains_phrase,
    contains_prefix,
    dedupe_keep_order,
    ngrams,
    similarity,
    singular,
    split_identifier,
    tokenize,
)
from bicopilot.context.time_context import extract_time_context
from bicopilot.smart_logger import SmartLogger

__all__ = ["AliasEntry", "AliasIndex", "BusinessContextClassifier"]

# Alias priority by source.
PRIORITY_NAME = 1.0
PRIORITY_ALIAS = 0.9
PRIORITY_GLOSSARY = 0.85
PRIORITY_VOCABULARY = 0.8

MIN_FUZZY_SIMILARITY = 0.85
_STOP_TOKENS = {
    "a", "an", "the", "of", "for", "from", "in", "on", "by", "to", "and", "or", "me",
    "show", "top", "what", "which", "is", "are", "with", "per", "all", "give", "list",
    "name", "type", "date", "day", "status",
}


@dataclass(frozen=True)
class AliasEntry:
    alias: str
    entity_type: EntityType
    mapped_name: str
    priority: float


class AliasIndex:
    """Immutable lookup of business aliases -> schema / glossary / vocabulary names."""

    def __init__(self, entries: Iterable[AliasEntry] = ()):
        exact: Dict[str, List[AliasEntry]] = {}
        buckets: Dict[str, List[AliasEntry]] = {}
        for e in entries:
            key = singular(e.alias.strip().lower())
            if not key or key in _STOP_TOKENS:
                continue
            exact.setdefault(key, []).append(e)
            if len(key) >= 5:
                buckets.setdefault(key[:3], []).append(e)
        self._exact = {k: tuple(v) for k, v in exact.items()}
        self._buckets = {k: tuple(v) for k, v in buckets.items()}

    def __len__(self) -> int:
        return sum(len(v) for v in self._exact.values())

    @classmethod
    def build(
        cls,
        tables: Sequence[TableDescriptor] = (),
        glossary: Sequence[GlossaryTerm] = (),
        reference: Optional[ReferenceData] = None,
    ) -> "AliasIndex":
        reference = reference or default_reference_data()
        entries: List[AliasEntry] = []
        for t in tables:
            entries.append(AliasEntry(t.name.lower(), EntityType.TABLE, t.fqn, PRIORITY_NAME))
            words = " ".join(split_identifier(t.name))
            if words:
                entries.append(AliasEntry(words, EntityType.TABLE, t.fqn, PRIORITY_NAME))
            for a in t.aliases:
                entries.append(AliasEntry(a.lower(), EntityType.TABLE, t.fqn, PRIORITY_ALIAS))
            for c in t.columns:
                col_fqn = f"{t.fqn}.{c.name}"
                entries.append(AliasEntry(c.name.lower(), EntityType.COLUMN, col_fqn, PRIORITY_NAME))
                spaced = c.name.replace("_", " ").lower()
                if spaced != c.name.lower():
                    entries.append(AliasEntry(spaced, EntityType.COLUMN, col_fqn, PRIORITY_NAME))
                for a in c.aliases:
                    entries.append(AliasEntry(a.lower(), EntityType.COLUMN, col_fqn, PRIORITY_ALIAS))
        for g in glossary:
            for term in (g.term, *g.synonyms):
                entries.append(AliasEntry(term.lower(), EntityType.METRIC, g.term.lower(), PRIORITY_GLOSSARY))
        for phrase, metric in reference.metric_vocabulary.items():
            entries.append(AliasEntry(phrase, EntityType.METRIC, metric, PRIORITY_VOCABULARY))
        for phrase, dim in reference.dimension_vocabulary.items():
            entries.append(AliasEntry(phrase, EntityType.DIMENSION, dim, PRIORITY_VOCABULARY))
        return cls(entries)

    def lookup(self, phrase: str) -> List[Tuple[AliasEntry, float]]:
        """Alias entries matching ``phrase`` with their string similarity."""
        key = singular(phrase.strip().lower())
        if not key or key in _STOP_TOKENS:
            return []
        hits = [(e, 1.0) for e in self._exact.get(key, ())]
        if hits or len(key) < 5:
            return hits
        out: List[Tuple[AliasEntry, float]] = []
        for e in self._buckets.get(key[:3], ()):
            sim = similarity(key, singular(e.alias))
            if sim >= MIN_FUZZY_SIMILARITY:
                out.append((e, sim))
        return out


class BusinessContextClassifier:
    """Pure function of (question, prior profile) over immutable reference data."""

    def __init__(
        self,
        reference: Optional[ReferenceData] = None,
        *,
        aliases: Optional[AliasIndex] = None,
        glossary: Sequence[GlossaryTerm] = (),
        clock: Optional[Callable[[], date]] = None,
    ):
        self.reference = reference or default_reference_data()
        self.aliases = aliases if aliases is not None else AliasIndex.build(glossary=glossary, reference=self.reference)
        self.glossary = tuple(glossary)
        self.clock = clock

    @classmethod
    async def from_repository(
        cls,
        repository: SchemaRepository,
        reference: Optional[ReferenceData] = None,
        *,
        clock: Optional[Callable[[], date]] = None,
    ) -> "BusinessContextClassifier":
        """Classifier whose alias index covers the repository's active tables and glossary."""
        reference = reference or default_reference_data()
        tables = await repository.get_active_tables()
        glossary = await repository.get_glossary_terms()
        aliases = AliasIndex.build(tables, glossary, reference)
        SmartLogger.log(
            "INFO",
            "context.classifier.aliases_built",
            category="context.classifier",
            params={"tables": len(tables), "glossary": len(glossary), "aliases": len(aliases)},
        )
        return cls(reference, aliases=aliases, glossary=glossary, clock=clock)

    # ------------------------------------------------------------------
    # Domain
    # ------------------------------------------------------------------

    def score_domains(self, question: str) -> Dict[str, Tuple[float, List[str]]]:
        """domain name -> (score in [0, 1], matched keywords in question order)"""
        text = (question or "").lower()
        scores: Dict[str, Tuple[float, List[str]]] = {}
        for rule in self.reference.domains:
            matched = [k for k in rule.keywords if contains_phrase(text, k)]
            if not matched:
                scores[rule.name] = (0.0, [])
                continue
            matched.sort(key=lambda k: text.find(k))
            base = sum(rule.keyword_weight(k) for k in matched) / max(rule.total_weight, 1.0)
            bonus = 0.0
            for terms, value in rule.bonus_rules:
                if any(contains_prefix(text, t) for t in terms):
                    bonus += value
            if len(matched) > 2:
                bonus += ref.EXTRA_MATCH_BONUS * (len(matched) - 2)
            bonus = min(bonus, ref.MAX_DOMAIN_BONUS)
            scores[rule.name] = (min(1.0, base + bonus), matched)

        fin_score, fin_matched = scores.get(ref.FINANCIAL, (0.0, []))
        if fin_matched and contains_phrase(text, "top") and contains_prefix(text, "depositor"):
            scores[ref.FINANCIAL] = (max(min(1.0, fin_score + 0.3), ref.TOP_DEPOSITOR_FLOOR), fin_matched)

        self._disambiguate(text, scores)
        return scores

    def _disambiguate(self, text: str, scores: Dict[str, Tuple[float, List[str]]]) -> None:
        ranked = sorted((s for s in scores.items() if s[1][0] > 0), key=lambda kv: -kv[1][0])
        if len(ranked) < 2:
            return
        (first, (s1, _)), (second, (s2, _)) = ranked[0], ranked[1]
        if s1 - s2 >= ref.DISAMBIGUATION_MARGIN:
            return
        for name in (first, second):
            rule = self.reference.domain(name)
            if rule is None or not rule.strong_indicators:
                continue
            if any(contains_phrase(text, ind) for ind in rule.strong_indicators):
                score, matched = scores[name]
                scores[name] = (min(1.0, score + ref.DISAMBIGUATION_BOOST), matched)

    def detect_domain(
        self, question: str, prior: Optional[BusinessContextProfile] = None
    ) -> Tuple[BusinessDomain, List[str]]:
        scores = self.score_domains(question)
        order = {rule.name: i for i, rule in enumerate(self.reference.domains)}
        ranked = sorted(scores.items(), key=lambda kv: (-kv[1][0], order.get(kv[0], 99)))
        all_matched = dedupe_keep_order(k for _, (_, m) in ranked for k in m)
        if not ranked or ranked[0][1][0] <= 0.0:
            if prior is not None and not prior.domain.is_general:
                inherited = prior.domain
                return (
                    BusinessDomain(
                        name=inherited.name,
                        confidence=round(inherited.confidence * 0.5, 4),
                        label=inherited.label,
                        related_tables=inherited.related_tables,
                        description=inherited.description,
                    ),
                    all_matched,
                )
            return BusinessDomain.general(), all_matched

        name, (score, matched) = ranked[0]
        rule = self.reference.domain(name)
        return (
            BusinessDomain(
                name=name,
                confidence=round(score, 4),
                label=rule.label if rule else name,
                matched_keywords=tuple(matched),
                related_tables=rule.related_tables if rule else (),
                description=rule.description if rule else "",
            ),
            all_matched,
        )

    # ------------------------------------------------------------------
    # Intent
    # ------------------------------------------------------------------

    def detect_intent(self, question: str) -> Tuple[IntentType, float]:
        for rule in self.reference.intent_rules:
            if rule.pattern.search(question or ""):
                return rule.intent, rule.confidence
        return ref.FALLBACK_INTENT, ref.FALLBACK_INTENT_CONFIDENCE

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def extract_entities(self, question: str) -> List[BusinessEntity]:
        tokens = tokenize(question)
        consumed_by_type: Dict[EntityType, set] = {}
        best: Dict[Tuple[EntityType, str], BusinessEntity] = {}
        for phrase, pos in ngrams(tokens, 3):
            if phrase.isdigit():
                continue
            for entry, sim in self.aliases.lookup(phrase):
                span = set(range(pos, pos + len(phrase.split())))
                taken = consumed_by_type.setdefault(entry.entity_type, set())
                key = (entry.entity_type, entry.mapped_name)
                conf = round(sim * entry.priority, 4)
                existing = best.get(key)
                if existing is not None:
                    if conf > existing.confidence:
                        best[key] = BusinessEntity(existing.text, entry.entity_type, entry.mapped_name, conf, existing.position)
                    continue
                # Longer phrases win the tokens they cover for the same entity type.
                if span & taken and len(span) == 1:
                    continue
                taken.update(span)
                best[key] = BusinessEntity(
                    text=phrase,
                    type=entry.entity_type,
                    mapped_name=entry.mapped_name,
                    confidence=conf,
                    position=pos,
                )
        return sorted(best.values(), key=lambda e: (e.position, e.type.value, e.mapped_name))

    # ------------------------------------------------------------------

    def classify(
        self, question: str, prior_session_context: Optional[BusinessContextProfile] = None
    ) -> BusinessContextProfile:
        q = (question or "").strip()
        domain, domain_terms = self.detect_domain(q, prior_session_context)
        intent, intent_conf = self.detect_intent(q)
        entities = self.extract_entities(q)
        time_ctx = extract_time_context(q, clock=self.clock)

        glossary_terms = [
            g.term for g in self.glossary
            if any(contains_phrase(q, t) for t in (g.term, *g.synonyms))
        ]
        metrics = frozenset(e.mapped_name for e in entities if e.type == EntityType.METRIC)
        dimensions = frozenset(e.mapped_name for e in entities if e.type == EntityType.DIMENSION)
        comparison = tuple(t for t in tokenize(q) if t in ref.COMPARISON_TERMS)

        entity_conf = sum(e.confidence for e in entities) / len(entities) if entities else 0.0
        overall = 0.3 * intent_conf + 0.3 * domain.confidence + 0.4 * entity_conf

        profile = BusinessContextProfile(
            original_question=q,
            intent=intent,
            intent_confidence=intent_conf,
            domain=domain,
            entities=tuple(entities),
            time_context=time_ctx,
            identified_metrics=metrics,
            identified_dimensions=dimensions,
            business_terms=tuple(dedupe_keep_order([*domain_terms, *(t.lower() for t in glossary_terms)])),
            comparison_terms=comparison,
            confidence_score=round(min(1.0, overall), 4),
        )
        SmartLogger.log(
            "DEBUG",
            "context.classifier.done",
            category="context.classifier",
            params={
                "question": q[:500],
                "intent": intent.value,
                "domain": domain.name,
                "domain_confidence": domain.confidence,
                "entities": [f"{e.type.value}:{e.mapped_name}" for e in entities][:30],
                "time_context": time_ctx.describe() if time_ctx else None,
                "confidence": profile.confidence_score,
            },
            max_inline_chars=0,
        )
        return profile
