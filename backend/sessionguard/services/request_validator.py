"""Request validation, injection signature scanning and output sanitization."""

import html
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.core.logging import get_logger
from sessionguard.core.traversal import transform_leaves, walk_leaves
from sessionguard.domain.entities import SecurityEventType, Severity
from sessionguard.services.event_sink import SecurityEventSink

logger = get_logger("request_validator")


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


class ValidationRule(BaseModel):
    """Rule for one payload field.

    Accepts both snake_case and camelCase length keys
    (``min_length`` / ``minLength``).
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    type: FieldType | None = None
    required: bool = False
    min_length: int | None = Field(default=None, alias="minLength", ge=0)
    max_length: int | None = Field(default=None, alias="maxLength", ge=0)
    pattern: str | None = None

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid pattern: {e}") from e
        return v


class ValidationResult(BaseModel):
    """Outcome of validating one payload. ``errors`` lists every violation."""

    is_valid: bool
    errors: list[str] = Field(default_factory=list)


@dataclass(frozen=True)
class InjectionSignature:
    name: str
    category: str  # "xss" or "sql"
    pattern: re.Pattern[str]


_FLAGS = re.IGNORECASE | re.DOTALL

INJECTION_SIGNATURES: tuple[InjectionSignature, ...] = (
    InjectionSignature("script_tag", "xss", re.compile(r"<\s*script\b[^>]*>", _FLAGS)),
    InjectionSignature("javascript_uri", "xss", re.compile(r"javascript\s*:", _FLAGS)),
    InjectionSignature("html_data_uri", "xss", re.compile(r"data\s*:\s*text/html", _FLAGS)),
    InjectionSignature("inline_event_handler", "xss", re.compile(r"<[^>]*\bon\w+\s*=", _FLAGS)),
    InjectionSignature("union_select", "sql", re.compile(r"\bunion\b.*\bselect\b", _FLAGS)),
    InjectionSignature(
        "sql_statement",
        "sql",
        re.compile(r"\b(select|insert|update|delete|drop|alter)\b.*\b(from|into|table)\b", _FLAGS),
    ),
    InjectionSignature(
        "quoted_tautology", "sql", re.compile(r"'\s*(or|and)\s+\S+\s*=\s*\S+", _FLAGS)
    ),
    InjectionSignature("comment_terminator", "sql", re.compile(r"['\";]\s*(--|#|/\*)", _FLAGS)),
    InjectionSignature(
        "stacked_statement",
        "sql",
        re.compile(r";\s*(select|insert|update|delete|drop|alter|exec)\b", _FLAGS),
    ),
)

_CATEGORY_REASONS = {"xss": "xss_attempt", "sql": "sql_injection_attempt"}


@lru_cache(maxsize=256)
def _compiled(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def _matches_type(value: Any, expected: FieldType) -> bool:
    # bool is an int subclass; keep it out of the numeric types
    if expected == FieldType.STRING:
        return isinstance(value, str)
    if expected == FieldType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == FieldType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == FieldType.BOOLEAN:
        return isinstance(value, bool)
    if expected == FieldType.OBJECT:
        return isinstance(value, dict)
    if expected == FieldType.ARRAY:
        return isinstance(value, (list, tuple))
    return True


def detect_signatures(value: str) -> list[InjectionSignature]:
    """Return every signature that matches ``value``."""
    return [sig for sig in INJECTION_SIGNATURES if sig.pattern.search(value)]


def sanitize(value: Any) -> Any:
    """HTML-entity-encode every string leaf; other leaves and None pass through."""
    return transform_leaves(
        value,
        lambda _key, leaf: html.escape(leaf, quote=True) if isinstance(leaf, str) else leaf,
    )


class RequestValidator:
    """Validates payloads against field rules and scans them for injection attempts.

    Signature matches never fail validation; they are reported as
    ``suspicious_activity``/high events so the caller gets no feedback
    about which pattern was noticed.
    """

    def __init__(self, event_sink: SecurityEventSink):
        self._events = event_sink

    async def validate(
        self,
        endpoint: str,
        method: str,
        payload: dict[str, Any] | None,
        rules: dict[str, ValidationRule | dict[str, Any]],
        user_id: str | None = None,
        ip: str | None = None,
    ) -> ValidationResult:
        """Validate ``payload`` against ``rules``.

        Validation is non-short-circuiting: every violation of every field
        is reported.
        """
        payload = payload or {}
        errors: list[str] = []

        for field_name, raw_rule in rules.items():
            rule = (
                raw_rule
                if isinstance(raw_rule, ValidationRule)
                else ValidationRule.model_validate(raw_rule)
            )
            errors.extend(self._check_field(field_name, payload.get(field_name), rule))

        await self._scan_payload(endpoint, method, payload, user_id, ip)

        if errors:
            logger.debug(f"Validation failed for {method} {endpoint}: {len(errors)} error(s)")
        return ValidationResult(is_valid=not errors, errors=errors)

    def _check_field(self, field_name: str, value: Any, rule: ValidationRule) -> list[str]:
        if value is None or value == "":
            return [f"{field_name} is required"] if rule.required else []

        errors = []
        if rule.type is not None and not _matches_type(value, rule.type):
            errors.append(f"{field_name} must be of type {rule.type.value}")

        if isinstance(value, (str, list, tuple)):
            if rule.min_length is not None and len(value) < rule.min_length:
                errors.append(f"{field_name} must be at least {rule.min_length} characters")
            if rule.max_length is not None and len(value) > rule.max_length:
                errors.append(f"{field_name} must not exceed {rule.max_length} characters")

        if rule.pattern is not None and isinstance(value, str):
            if not _compiled(rule.pattern).search(value):
                errors.append(f"{field_name} has an invalid format")

        return errors

    async def _scan_payload(
        self,
        endpoint: str,
        method: str,
        payload: dict[str, Any],
        user_id: str | None,
        ip: str | None,
    ) -> None:
        hits: dict[tuple[str, str], list[str]] = {}

        def _visit(key: str | None, leaf: Any) -> None:
            if not isinstance(leaf, str):
                return
            for sig in detect_signatures(leaf):
                names = hits.setdefault((key or "<root>", sig.category), [])
                if sig.name not in names:
                    names.append(sig.name)

        walk_leaves(payload, _visit)

        for (field_name, category), signature_names in hits.items():
            await self._events.record(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                Severity.HIGH,
                {
                    "reason": _CATEGORY_REASONS[category],
                    "endpoint": endpoint,
                    "method": method.upper(),
                    "field": field_name,
                    "signatures": signature_names,
                },
                user_id=user_id,
                ip=ip,
            )

    def sanitize(self, value: Any) -> Any:
        return sanitize(value)
