from __future__ import annotations

import re
from typing import Any, Mapping

__all__ = ["sanitize", "sanitize_value"]

_INVALID_SURROGATE_RE = re.compile(r"[\ud800-\udfff]")
_TAG_RE = re.compile(r"<[^>]*>")
_MARKUP_CHARS_RE = re.compile(r"[<>]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def _strip_invalid(text: str) -> str:
    return _INVALID_SURROGATE_RE.sub("", text)


def sanitize(value: str) -> str:
    """Strip markup and control characters from a free-form string."""

    text = _strip_invalid(str(value or ""))
    text = _TAG_RE.sub("", text)
    text = _MARKUP_CHARS_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    return text.strip()


def sanitize_value(value: Any) -> Any:
    """Apply :func:`sanitize` to strings, recursing into containers."""

    if isinstance(value, str):
        return sanitize(value)
    if isinstance(value, Mapping):
        return {sanitize(str(key)): sanitize_value(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_value(item) for item in value]
    return value
