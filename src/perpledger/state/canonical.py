"""
Canonical JSON encoding for ledger snapshot commitments.

Two ledgers holding the same state must encode to the same bytes and therefore
commit to the same digest. The encoder accepts only the JSON subset snapshots
are built from: ints, bools, strings, None, lists and str-keyed dicts. Amounts
are fixed-point ints, so floats are refused outright.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

CANONICAL_ENCODING_VERSION = 1

DOMAIN_PREFIX = b"perpledger"


def _check_text(text: str, path: str) -> None:
    # Lone surrogates have no UTF-8 encoding.
    if any(0xD800 <= ord(ch) <= 0xDFFF for ch in text):
        raise TypeError(f"{path}: surrogate code point in string")


def _check_encodable(value: Any, path: str = "$") -> None:
    if isinstance(value, float):
        raise TypeError(f"{path}: floats are not allowed, use fixed-point ints")
    if isinstance(value, str):
        _check_text(value, path)
    elif isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path}: dict keys must be str, got {type(key).__name__}")
            _check_text(key, path)
            _check_encodable(item, f"{path}.{key}")
    elif isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check_encodable(item, f"{path}[{i}]")
    elif value is not None and not isinstance(value, int):
        raise TypeError(f"{path}: {type(value).__name__} is not snapshot-encodable")


def canonical_json_bytes(value: Any) -> bytes:
    """UTF-8 JSON with sorted keys and no whitespace."""
    _check_encodable(value)
    text = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    return text.encode("utf-8")


def domain_sep_bytes(label: str, version: int = 1) -> bytes:
    """``perpledger:<label>:v<version>`` followed by NUL, so prefixes never collide."""
    if not isinstance(label, str) or not label:
        raise TypeError("label must be a non-empty str")
    if not label.isascii() or "\x00" in label or ":" in label:
        raise ValueError(f"label must be ASCII without ':' or NUL: {label!r}")
    if not isinstance(version, int) or isinstance(version, bool) or version <= 0:
        raise ValueError("version must be a positive int")
    return b"%s:%s:v%d\x00" % (DOMAIN_PREFIX, label.encode("ascii"), version)


def commitment(label: str, version: int, value: Any) -> bytes:
    """SHA-256 over the domain prefix and the canonical encoding of *value*."""
    return hashlib.sha256(domain_sep_bytes(label, version) + canonical_json_bytes(value)).digest()
