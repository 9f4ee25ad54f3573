"""Read-only prompt template store backed by ``context/prompts/*.md`` with time-based expiry"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from bicopilot.config import settings
from bicopilot.context.models import IntentType, PromptTemplate
from bicopilot.context.prompts import get_prompt_text
from bicopilot.context.reference_data import DEFAULT_TEMPLATE_KEY, ReferenceData, default_reference_data
from bicopilot.smart_logger import SmartLogger
from bicopilot.utils.log_sanitize import sanitize_for_log

__all__ = ["PromptTemplateStore"]


class PromptTemplateStore:
    """
    Loads templates lazily by key; a loaded template is reused until its TTL
    elapses, after which the next ``get`` reloads it from disk.
    Missing templates are not cached so a later deploy can add them.
    """

    def __init__(
        self,
        *,
        reference: Optional[ReferenceData] = None,
        ttl_seconds: Optional[int] = None,
        loader: Callable[[str], str] = get_prompt_text,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reference = reference or default_reference_data()
        self.ttl_seconds = int(settings.template_cache_ttl_seconds if ttl_seconds is None else ttl_seconds)
        self._loader = loader
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Dict[str, Tuple[PromptTemplate, float]] = {}

    def _intents_for(self, key: str) -> Tuple[IntentType, ...]:
        return tuple(i for i, k in self.reference.intent_template_keys.items() if k == key)

    def _load(self, key: str) -> Optional[PromptTemplate]:
        try:
            body = self._loader(f"{key}.md")
        except (OSError, ValueError) as exc:
            SmartLogger.log(
                "WARNING",
                "context.templates.load_failed",
                category="context.templates",
                params=sanitize_for_log({"key": key, "error": repr(exc)}),
            )
            return None
        body = body.strip()
        if not body:
            return None
        return PromptTemplate(key=key, body=body, intents=self._intents_for(key))

    def get(self, key: str) -> Optional[PromptTemplate]:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and cached[1] > now:
                return cached[0]
            self._cache.pop(key, None)
        template = self._load(key)
        if template is not None:
            with self._lock:
                self._cache[key] = (template, now + self.ttl_seconds)
        return template

    def for_intent(self, intent: IntentType) -> Optional[PromptTemplate]:
        """Intent-mapped template, then the general template."""
        key = self.reference.template_key_for(intent)
        return self.get(key) or (self.get(DEFAULT_TEMPLATE_KEY) if key != DEFAULT_TEMPLATE_KEY else None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
