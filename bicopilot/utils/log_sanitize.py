import re
from typing import Any, Dict, Iterable


_REDACTED = "<REDACTED>"


# Only obvious secrets are masked; questions and SQL stay readable in the logs.
_SENSITIVE_KEY_FRAGMENTS = {
    "api_key",
    "apikey",
    "authorization",
    "access_token",
    "refresh_token",
    "password",
    "secret",
    "client_secret",
    "neo4j_auth",
}


_SECRET_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9\-_]{10,}\b"),
    re.compile(r"\bAIza[0-9A-Za-z\-_]{20,}\b"),
    re.compile(r"\bBearer\s+[A-Za-z0-9\-\._=]{10,}\b", re.IGNORECASE),
    re.compile(r"(postgres(?:ql)?://[^:\s/]+:)[^@\s]+(@)", re.IGNORECASE),
]


def _sanitize_string(value: str) -> str:
    if not value:
        return value
    result = value
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            result = pattern.sub(lambda m: f"{m.group(1)}{_REDACTED}{m.group(2)}", result)
        else:
            result = pattern.sub(_REDACTED, result)
    return result


def _is_sensitive_key(key: Any) -> bool:
    k = str(key or "").strip().lower()
    if not k:
        return False
    return any(frag in k for frag in _SENSITIVE_KEY_FRAGMENTS)


def sanitize_for_log(obj: Any, *, _depth: int = 0, _max_depth: int = 50) -> Any:
    """
    Mask secrets in data passed to SmartLogger.

    - dict: values under sensitive keys become <REDACTED>
    - str: API keys, bearer tokens and DSN passwords are replaced in place
    - list/tuple/set: sanitized element-wise
    - anything else is returned unchanged
    """
    if _depth >= _max_depth or obj is None:
        return obj

    if isinstance(obj, str):
        return _sanitize_string(obj)

    if isinstance(obj, (int, float, bool, bytes, bytearray)):
        return obj

    if isinstance(obj, dict):
        sanitized: Dict[Any, Any] = {}
        for k, v in obj.items():
            if _is_sensitive_key(k):
                sanitized[k] = _REDACTED
            else:
                sanitized[k] = sanitize_for_log(v, _depth=_depth + 1, _max_depth=_max_depth)
        return sanitized

    if isinstance(obj, (list, tuple, set, frozenset)):
        items = [sanitize_for_log(v, _depth=_depth + 1, _max_depth=_max_depth) for v in obj]
        if isinstance(obj, tuple):
            return tuple(items)
        if isinstance(obj, (set, frozenset)):
            return type(obj)(items)
        return items

    if isinstance(obj, Iterable):
        return [sanitize_for_log(v, _depth=_depth + 1, _max_depth=_max_depth) for v in obj]

    return obj
