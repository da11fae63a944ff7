"""Sensitive-data redaction for audit records.

A leaf is masked when its key name contains a sensitive token, or, failing
that, when its value looks like an email, card number, phone number or
SSN. Key names are compared case- and separator-insensitively, so
``apiKey``, ``api_key`` and ``API-KEY`` all match ``apikey``.

Every mask is a fixed point of itself, which makes ``redact`` idempotent:
``redact(redact(x)) == redact(x)``.
"""

import re
from enum import Enum
from typing import Any

from sessionguard.core.traversal import transform_leaves

MASK_CHAR = "*"
KEEP_LAST = 4


class MaskKind(str, Enum):
    FULL = "full"
    EMAIL = "email"
    LAST_FOUR = "last_four"


# Checked in order; the first token found in the key name decides the mask
SENSITIVE_KEY_TOKENS: tuple[tuple[str, MaskKind], ...] = (
    ("password", MaskKind.FULL),
    ("secret", MaskKind.FULL),
    ("apikey", MaskKind.FULL),
    ("token", MaskKind.FULL),
    ("creditcard", MaskKind.LAST_FOUR),
    ("cardnumber", MaskKind.LAST_FOUR),
    ("ssn", MaskKind.LAST_FOUR),
    ("phone", MaskKind.LAST_FOUR),
    ("email", MaskKind.EMAIL),
)

SENSITIVE_VALUE_PATTERNS: tuple[tuple[re.Pattern[str], MaskKind], ...] = (
    (re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$"), MaskKind.EMAIL),
    (re.compile(r"^\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}$"), MaskKind.LAST_FOUR),
    (re.compile(r"^\+?\d{10,}$"), MaskKind.LAST_FOUR),
    (re.compile(r"^\d{3}-?\d{2}-?\d{4}$"), MaskKind.LAST_FOUR),
)

_KEY_SEPARATORS = re.compile(r"[\s_\-.]")


def normalize_key(key: str) -> str:
    return _KEY_SEPARATORS.sub("", key).lower()


def mask_kind_for_key(key: str | None) -> MaskKind | None:
    if not key:
        return None
    normalized = normalize_key(key)
    for token, kind in SENSITIVE_KEY_TOKENS:
        if token in normalized:
            return kind
    return None


def mask_kind_for_value(value: str) -> MaskKind | None:
    for pattern, kind in SENSITIVE_VALUE_PATTERNS:
        if pattern.match(value):
            return kind
    return None


def mask(value: str, kind: MaskKind) -> str:
    """Apply a type-specific mask. Values of four characters or fewer are fully masked."""
    if kind == MaskKind.EMAIL:
        local, sep, domain = value.partition("@")
        if sep and local and domain:
            return MASK_CHAR * len(local) + "@" + domain
        return MASK_CHAR * len(value)
    if kind == MaskKind.LAST_FOUR and len(value) > KEEP_LAST:
        return MASK_CHAR * (len(value) - KEEP_LAST) + value[-KEEP_LAST:]
    return MASK_CHAR * len(value)


def _redact_leaf(key: str | None, value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value

    key_kind = mask_kind_for_key(key)
    if isinstance(value, (int, float)):
        # Numeric phone or card values under a sensitive key are masked as text
        return mask(str(value), key_kind) if key_kind is not None else value
    if not isinstance(value, str):
        return value

    if key_kind is not None:
        return mask(value, key_kind)
    value_kind = mask_kind_for_value(value)
    if value_kind is not None:
        return mask(value, value_kind)
    return value


def redact(data: Any) -> Any:
    """Return a redacted copy of ``data``; the input is not modified."""
    return transform_leaves(data, _redact_leaf)
