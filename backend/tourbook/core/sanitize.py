"""
Input scrubbing applied to every request body before validation.
"""
import html
from typing import Any

# never altered: they are hashed, not rendered
RAW_KEYS = frozenset({"password", "passwordConfirm", "passwordCurrent"})


def is_operator_key(key: str) -> bool:
    """Keys that look like query operators (``$gt``) or path traversal (``a.b``)."""
    return key.startswith("$") or "." in key


def strip_operator_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: strip_operator_keys(v) for k, v in value.items() if not is_operator_key(str(k))}
    if isinstance(value, list):
        return [strip_operator_keys(v) for v in value]
    return value


def escape_markup(value: Any, key: Any = None) -> Any:
    if isinstance(value, str):
        return value if key in RAW_KEYS else html.escape(value, quote=False)
    if isinstance(value, dict):
        return {k: escape_markup(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [escape_markup(v, key) for v in value]
    return value


def sanitize_payload(value: Any) -> Any:
    return escape_markup(strip_operator_keys(value))
