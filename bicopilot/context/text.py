from __future__ import annotations

import re
from difflib import SequenceMatcher
from typing import Iterable, List, Sequence

_STOPWORDS = {
    "a", "an", "the", "of", "for", "from", "in", "on", "by", "to", "and", "or",
    "me", "my", "show", "give", "get", "list", "what", "which", "who", "how",
    "is", "are", "was", "were", "with", "per", "all", "please", "find", "display",
    "that", "this", "at", "as", "be", "do", "does", "did",
}

_RE_WORD = re.compile(r"[a-z0-9_]+")
_RE_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def compact_ws(text: str) -> str:
    return re.sub(r"\s+", " ", str(text or "")).strip()


def normalize_question(question: str) -> str:
    """trim + lowercase + collapsed whitespace"""
    return compact_ws(question).lower()


def tokenize(text: str, *, drop_stopwords: bool = False) -> List[str]:
    tokens = _RE_WORD.findall(str(text or "").lower())
    if drop_stopwords:
        tokens = [t for t in tokens if t not in _STOPWORDS]
    return tokens


def ngrams(tokens: Sequence[str], max_n: int = 3) -> List[tuple]:
    """(phrase, start_index) for every n-gram up to ``max_n``, longest first per position."""
    out: List[tuple] = []
    for i in range(len(tokens)):
        for n in range(min(max_n, len(tokens) - i), 0, -1):
            out.append((" ".join(tokens[i : i + n]), i))
    return out


def split_identifier(identifier: str) -> List[str]:
    """tbl_Daily_actionsGBP_transactions -> [daily, actions, gbp, transactions]"""
    parts: List[str] = []
    for chunk in re.split(r"[_\W]+", str(identifier or "")):
        if not chunk:
            continue
        parts.extend(p.lower() for p in _RE_CAMEL.split(chunk) if p)
    return [p for p in parts if p not in {"tbl", "dbo", "common"}]


def contains_phrase(text: str, phrase: str) -> bool:
    p = str(phrase or "").strip().lower()
    if not p:
        return False
    return re.search(r"\b" + re.escape(p) + r"\b", str(text or "").lower()) is not None


def contains_prefix(text: str, prefix: str) -> bool:
    p = str(prefix or "").strip().lower()
    if not p:
        return False
    return re.search(r"\b" + re.escape(p), str(text or "").lower()) is not None


def similarity(a: str, b: str) -> float:
    a2 = str(a or "").strip().lower()
    b2 = str(b or "").strip().lower()
    if not a2 or not b2:
        return 0.0
    if a2 == b2:
        return 1.0
    return SequenceMatcher(None, a2, b2).ratio()


def singular(token: str) -> str:
    t = str(token or "")
    if len(t) > 4 and t.endswith("ies"):
        return t[:-3] + "y"
    if len(t) > 3 and t.endswith("s") and not t.endswith("ss"):
        return t[:-1]
    return t


def dedupe_keep_order(values: Iterable[str], *, limit: int = 0) -> List[str]:
    out: List[str] = []
    seen = set()
    for v in values or []:
        s = str(v or "").strip()
        if not s:
            continue
        key = s.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(s)
        if limit and len(out) >= limit:
            break
    return out
