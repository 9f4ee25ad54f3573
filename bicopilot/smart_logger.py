"""Structured JSONL logger shared by every pipeline component.

Configured through ``SMART_LOGGER_*`` environment variables:

- MAIN_LOG_PATH: JSONL file receiving one entry per log call
- DETAIL_LOG_DIR: directory for oversized ``params`` payloads
- MIN_LEVEL / INCLUDE_ALL_MIN_LEVEL: level filters
- CONSOLE_OUTPUT / FILE_OUTPUT / REMOVE_LOG_ON_CREATE: "True" / "False"
- BLACKLIST_MESSAGES: JSON array (or comma list) of substrings to drop
"""
import json
import os
import shutil
import threading
import time
from datetime import datetime
from typing import Any, List, Optional


class SmartLogger:
    LEVEL_PRIORITY = {
        "DEBUG": 0,
        "INFO": 1,
        "WARNING": 2,
        "ERROR": 3,
        "CRITICAL": 4,
    }
    _instance = None

    @classmethod
    def instance(cls):
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls):
        """Drop the singleton so the next call re-reads the environment."""
        cls._instance = None

    @classmethod
    def log(cls, level, message, category=None, params=None, max_inline_chars=100):
        cls.instance()._log(level, message, category, params, max_inline_chars)

    def __init__(
        self,
        main_log_path=None,
        detail_log_dir=None,
        min_level=None,
        include_all_min_level=None,
        console_output=None,
        file_output=None,
        remove_log_on_create=None,
        blacklist_messages=None,
    ):
        self.main_log_path = self._env(main_log_path, "MAIN_LOG_PATH", "logs/bicopilot_flow.jsonl")
        self.detail_log_dir = self._env(detail_log_dir, "DETAIL_LOG_DIR", "logs/details")
        self.min_level = self._env(min_level, "MIN_LEVEL", "ERROR")
        self.include_all_min_level = self._env(include_all_min_level, "INCLUDE_ALL_MIN_LEVEL", "ERROR")
        self.console_output = self._env_flag(console_output, "CONSOLE_OUTPUT", True)
        self.file_output = self._env_flag(file_output, "FILE_OUTPUT", False)
        self.remove_log_on_create = self._env_flag(remove_log_on_create, "REMOVE_LOG_ON_CREATE", False)

        self._lock = threading.Lock()
        self._last_second: Optional[str] = None
        self._second_counter = 0
        self.blacklist_messages = self._parse_blacklist(blacklist_messages)

        if self.file_output:
            dirs = [d for d in (os.path.dirname(self.main_log_path), self.detail_log_dir) if d]
            if self.remove_log_on_create:
                for d in dirs:
                    if os.path.exists(d):
                        shutil.rmtree(d)
            for d in dirs:
                os.makedirs(d, exist_ok=True)

    @staticmethod
    def _env(direct_value: Optional[str], key: str, default: str) -> str:
        if direct_value is not None:
            return direct_value
        return os.environ.get(f"SMART_LOGGER_{key}", default)

    @staticmethod
    def _env_flag(direct_value: Optional[bool], key: str, default: bool) -> bool:
        if direct_value is not None:
            return bool(direct_value)
        raw = os.environ.get(f"SMART_LOGGER_{key}")
        if raw is None:
            return default
        return raw.strip().lower() in {"true", "1", "yes"}

    @staticmethod
    def _parse_blacklist(direct_value: Optional[Any]) -> List[str]:
        raw = direct_value
        if raw is None:
            raw = os.environ.get("SMART_LOGGER_BLACKLIST_MESSAGES")
            if raw is None:
                return []
        if isinstance(raw, str):
            text = raw.strip()
            if not text:
                return []
            try:
                parsed = json.loads(text)
                items = parsed if isinstance(parsed, list) else []
            except ValueError:
                items = text.split(",")
        else:
            items = list(raw)
        return [str(i).strip() for i in items if i is not None and str(i).strip()]

    def _is_blacklisted(self, text: str) -> bool:
        return any(needle in text for needle in self.blacklist_messages)

    def _next_trace_id(self) -> str:
        # Suffix keeps ids unique when several payloads land in the same second.
        now = str(int(time.time()))
        if now == self._last_second:
            self._second_counter += 1
        else:
            self._last_second = now
            self._second_counter = 1
        return f"{now}_{self._second_counter}"

    def _save_detail_payload(self, trace_id: str, payload: Any) -> Optional[str]:
        if not self.file_output:
            return None
        filename = f"{trace_id}.json"
        try:
            with open(os.path.join(self.detail_log_dir, filename), "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
        except OSError as e:
            return f"Error saving detail: {e}"
        return filename

    def _priority(self, level: str, default: int) -> int:
        return self.LEVEL_PRIORITY.get((level or "").upper(), default)

    def _should_log(self, level: str) -> bool:
        return self._priority(level, 1) >= self._priority(self.min_level, 0)

    def _should_include_all(self, level: str) -> bool:
        return self._priority(level, 1) >= self._priority(self.include_all_min_level, 3)

    def _log(self, level, message, category=None, params=None, max_inline_chars=100):
        """
        Args:
            level (str): DEBUG, INFO, WARNING, ERROR, CRITICAL
            message (str): dotted event key, e.g. ``pipeline.stage.done``
            category (str): component category, e.g. ``context.relevance``
            params (dict): structured detail
            max_inline_chars (int): params longer than this go to a detail file
        """
        msg = "" if message is None else str(message)
        if self._is_blacklisted(msg + (category or "")):
            return
        if not self._should_log(level):
            return

        entry = {"timestamp": datetime.now().isoformat(), "level": level, "message": msg}
        if category:
            entry["category"] = category

        if params:
            if len(str(params)) <= max_inline_chars or self._should_include_all(level):
                entry["params_summary"] = params
            else:
                detail = self._save_detail_payload(self._next_trace_id(), params)
                if detail is None:
                    entry["detail_save_error"] = "file_output_disabled"
                elif detail.startswith("Error"):
                    entry["detail_save_error"] = detail
                else:
                    entry["has_detail_file"] = True
                    entry["detail_ref"] = detail
                if isinstance(params, dict):
                    entry["params_summary"] = {"keys": list(params.keys())}
                elif isinstance(params, (list, tuple)):
                    entry["params_summary"] = {"type": type(params).__name__, "length": len(params)}
                else:
                    entry["params_summary"] = {"type": type(params).__name__}

        if self.file_output:
            with self._lock:
                with open(self.main_log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

        if self.console_output:
            category_str = f"[{category}]" if category else ""
            if self._should_include_all(level):
                print(f"[{level}]{category_str} {msg} {params}")
            else:
                print(f"[{level}]{category_str} {msg}")
