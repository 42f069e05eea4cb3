"""
Canonical JSON serialization for witness documents.

The canonical form is the only representation that is ever hashed or
signed. The pretty-printed files on disk are for humans; they must
re-canonicalize to the same bytes.

Rules:
- Object keys sorted lexicographically by Unicode code point
- No whitespace between tokens
- Integers without exponent or decimal point
- Strings: minimal escaping (control chars, backslash, double-quote)
- null, true, false as literals
- Anything else (NaN, Infinity, non-string keys, unknown types) is an
  error, never a silent substitution
"""

import json
import math
from typing import Any

from .errors import CanonicalizationError


def canonical_json(value: Any) -> str:
    """
    Serialize a value to canonical JSON.

    Args:
        value: Any JSON-compatible value (dict, list, tuple, str, int,
            float, bool, None)

    Returns:
        Canonical JSON string with sorted keys and no whitespace

    Raises:
        CanonicalizationError: If the value contains anything that has
            no single canonical JSON encoding
    """
    return _serialize_value(value, "$")


def canonical_bytes(value: Any) -> bytes:
    """UTF-8 bytes of canonical_json(value). This is what gets hashed and signed."""
    return canonical_json(value).encode("utf-8")


def pretty_json(value: Any) -> str:
    """
    Human-readable on-disk form: sorted keys, two-space indent, trailing newline.

    The value is canonicalized first so that anything pretty_json accepts
    is guaranteed to round-trip through canonical_json.
    """
    canonical_json(value)
    return json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def _serialize_value(value: Any, path: str) -> str:
    if value is None:
        return "null"

    if isinstance(value, bool):
        # Must check bool before int (bool is subclass of int in Python)
        return "true" if value else "false"

    if isinstance(value, (int, float)):
        return _serialize_number(value, path)

    if isinstance(value, str):
        return _serialize_string(value)

    if isinstance(value, (list, tuple)):
        items = [_serialize_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
        return "[" + ",".join(items) + "]"

    if isinstance(value, dict):
        return _serialize_object(value, path)

    raise CanonicalizationError(
        f"Unsupported type {type(value).__name__} at {path}",
        details={"path": path, "type": type(value).__name__},
    )


def _serialize_number(num: float | int, path: str) -> str:
    if isinstance(num, float):
        if math.isnan(num) or math.isinf(num):
            raise CanonicalizationError(
                f"Non-finite number at {path}",
                details={"path": path},
            )
        if num.is_integer() and abs(num) < 10**20:
            return str(int(num))
        # repr gives the shortest round-trip representation
        return repr(num)

    return str(num)


def _serialize_string(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _serialize_object(obj: dict, path: str) -> str:
    for key in obj:
        if not isinstance(key, str):
            raise CanonicalizationError(
                f"Non-string object key {key!r} at {path}",
                details={"path": path, "key": repr(key)},
            )

    pairs = [
        _serialize_string(key) + ":" + _serialize_value(obj[key], f"{path}.{key}")
        for key in sorted(obj)
    ]
    return "{" + ",".join(pairs) + "}"
