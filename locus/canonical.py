"""Canonical bytes and content hashes for Locus.

Every signature in the system is made over the SHA-256 digest of a canonical
JSON encoding, so the encoding has to be byte-for-byte identical no matter
which client produced the value or in which order it emitted the keys.

Properties:
- keys sorted by code point (the same order as comparing UTF-8 bytes)
- no insignificant whitespace
- UTF-8, non-ASCII characters emitted as-is
- numbers printed the way ECMAScript ``Number.prototype.toString`` prints them,
  so a float that is integral (``80.0``) encodes as ``80``
- NaN / Infinity rejected
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from decimal import Decimal
from typing import Any

SHA256_RE = re.compile(r"^[0-9a-f]{64}$")

# ECMAScript switches to exponent notation outside [1e-6, 1e21).
_EXP_LOWER = 1e-6
_EXP_UPPER = 1e21


def sha256_hex(data: bytes) -> str:
    """Compute SHA-256 of bytes, returning a 64-char lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def format_number(value: Any) -> str:
    """Return the canonical text of an int or float."""
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    if isinstance(value, int):
        return str(value)
    if not isinstance(value, float):
        raise ValueError(f"Unsupported number type: {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError("Non-finite numbers are not allowed in canonical JSON")

    magnitude = abs(value)
    if magnitude == 0.0:
        return "0"

    text = repr(value)
    if _EXP_LOWER <= magnitude < _EXP_UPPER:
        if "e" in text:
            # repr() goes exponential below 1e-4 and from 1e16; ECMAScript only outside [1e-6, 1e21).
            text = format(Decimal(text), "f")
        if text.endswith(".0"):
            text = text[:-2]
        return text

    mantissa, _, exponent = text.partition("e")
    sign = "-" if exponent.startswith("-") else "+"
    digits = exponent.lstrip("+-").lstrip("0") or "0"
    return f"{mantissa}e{sign}{digits}"


def _encode(value: Any, path: str) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (int, float)):
        try:
            return format_number(value)
        except ValueError as ex:
            raise ValueError(f"{ex} at {path or '$'}") from ex
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(item, f"{path}[{i}]") for i, item in enumerate(value)) + "]"
    if isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise ValueError(f"Mapping keys must be strings, got {type(key).__name__} at {path or '$'}")
        parts = [
            json.dumps(key, ensure_ascii=False) + ":" + _encode(value[key], f"{path}.{key}")
            for key in sorted(value)
        ]
        return "{" + ",".join(parts) + "}"
    raise ValueError(f"Unsupported type for canonical JSON: {type(value).__name__} at {path or '$'}")


def canonical_json_text(value: Any) -> str:
    """Serialize a JSON-compatible value to its canonical text."""
    return _encode(value, "")


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize a JSON-compatible value to canonical UTF-8 bytes.

    Raises:
        ValueError: for non-finite numbers, non-string keys, unsupported
            types, or strings that cannot be encoded as UTF-8.
    """
    return canonical_json_text(value).encode("utf-8")


def content_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical encoding of ``value``."""
    return sha256_hex(canonical_json_bytes(value))


def is_sha256_hex(value: Any) -> bool:
    return isinstance(value, str) and bool(SHA256_RE.match(value))


def loads_strict(text: str) -> Any:
    """Parse JSON text, refusing the NaN/Infinity literals Python accepts by default."""

    def _reject_constant(name: str) -> Any:
        raise ValueError(f"Non-finite number literal not allowed: {name}")

    return json.loads(text, parse_constant=_reject_constant)