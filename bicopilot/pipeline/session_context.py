"""Last classified profile per conversation, used as prior context for follow-up questions"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from bicopilot.config import settings
from bicopilot.context.models import BusinessContextProfile
from bicopilot.smart_logger import SmartLogger

__all__ = ["SessionContextStore"]

SessionKey = Tuple[str, str]


class SessionContextStore:
    """
    Bounded in-process map ``(user_id, session_id) -> profile``.

    Entries expire ``ttl_seconds`` after the last write; the least recently
    used entry is evicted once ``max_entries`` is reached.
    """

    def __init__(
        self,
        *,
        ttl_seconds: Optional[int] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = int(settings.session_context_ttl_seconds if ttl_seconds is None else ttl_seconds)
        self.max_entries = max(1, int(settings.session_context_max_entries if max_entries is None else max_entries))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[SessionKey, Tuple[BusinessContextProfile, float]]" = OrderedDict()

    @staticmethod
    def _key(user_id: str, session_id: str) -> Optional[SessionKey]:
        sid = (session_id or "").strip()
        if not sid:
            return None
        return (user_id or "").strip(), sid

    def get(self, user_id: str, session_id: str) -> Optional[BusinessContextProfile]:
        key = self._key(user_id, session_id)
        if key is None:
            return None
        now = self._clock()
        with self._lock:
            cached = self._entries.get(key)
            if cached is None:
                return None
            if cached[1] <= now:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return cached[0]

    def put(self, user_id: str, session_id: str, profile: BusinessContextProfile) -> None:
        key = self._key(user_id, session_id)
        if key is None:
            return
        expires_at = self._clock() + self.ttl_seconds
        evicted = 0
        with self._lock:
            self._entries[key] = (profile, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                evicted += 1
        if evicted:
            SmartLogger.log(
                "DEBUG",
                "pipeline.session_context.evicted",
                category="pipeline.session",
                params={"evicted": evicted, "size": len(self)},
            )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
