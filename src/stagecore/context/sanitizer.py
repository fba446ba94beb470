"""Redaction of secrets from values shared between stages."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from jinja2 import Template

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Checked in order; more specific formats come before generic ones.
DEFAULT_PATTERNS: list[tuple[str, str]] = [
    ("AWS Access Key", r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"),
    ("GitHub Token", r"\bgh[pousr]_[A-Za-z0-9]{36,}\b"),
    (
        "Private Key",
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----",
    ),
    ("API Key", r"(?i)\b(?:api[_-]?key|apikey)\s*[:=]\s*['\"]?[A-Za-z0-9_\-]{16,}['\"]?"),
    ("Token", r"(?i)\b(?:bearer|token)\s*[:=]?\s*[A-Za-z0-9_\-.]{20,}"),
    ("Password", r"(?i)\b(?:password|passwd|pwd)\s*[:=]\s*['\"]?[^\s'\"]+['\"]?"),
]

SENSITIVE_KEY_PARTS = (
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "access_key",
    "private_key",
    "credential",
)

SENSITIVE_ENV_PARTS = ("KEY", "SECRET", "TOKEN", "PASSWORD", "PASSWD", "CREDENTIAL")

_HOME_PATTERNS = [
    (re.compile(r"^(/Users/)[^/]+"), r"\1<user>"),
    (re.compile(r"^(/home/)[^/]+"), r"\1<user>"),
    (re.compile(r"^([A-Za-z]:\\Users\\)[^\\]+"), r"\1<user>"),
]

REPORT_TEMPLATE = Template(
    """=== Sanitization Report ===

Redacted: {{ redacted | length }}
{% for item in redacted %}  - {{ item }}
{% endfor %}
Warnings: {{ warnings | length }}
{% for warning in warnings %}  - {{ warning }}
{% endfor %}"""
)


@dataclass
class SanitizationResult:
    """Outcome of sanitizing a value.

    Attributes:
        sanitized: Copy of the input with secrets replaced.
        redacted: One description per redaction performed.
        warnings: Human-readable notes about what was found.
    """

    sanitized: Any
    redacted: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class DataSanitizer:
    """Replaces secrets in strings, mappings and sequences.

    Strings are scanned with named regex patterns. Mapping values whose key
    looks sensitive (``password``, ``api_key``, ...) are replaced wholesale.
    Inputs are never mutated.
    """

    def __init__(self) -> None:
        self._patterns: list[tuple[str, re.Pattern[str]]] = [
            (name, re.compile(pattern)) for name, pattern in DEFAULT_PATTERNS
        ]

    def add_pattern(self, name: str, pattern: str | re.Pattern[str]) -> None:
        """Register an extra pattern, checked after the built-in ones."""
        compiled = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern)
        self._patterns.append((name, compiled))

    def sanitize(self, value: Any) -> SanitizationResult:
        result = SanitizationResult(sanitized=None)
        result.sanitized = self._sanitize_value(value, result)
        return result

    def _sanitize_value(self, value: Any, result: SanitizationResult) -> Any:
        if isinstance(value, str):
            return self._sanitize_string(value, result)
        if isinstance(value, Mapping):
            cleaned = {}
            for key, item in value.items():
                if isinstance(key, str) and self.is_sensitive_key(key):
                    cleaned[key] = REDACTED
                    result.redacted.append(f"{key} (key name)")
                else:
                    cleaned[key] = self._sanitize_value(item, result)
            return cleaned
        if isinstance(value, list):
            return [self._sanitize_value(item, result) for item in value]
        if isinstance(value, tuple):
            return tuple(self._sanitize_value(item, result) for item in value)
        return value

    def _sanitize_string(self, text: str, result: SanitizationResult) -> str:
        for name, pattern in self._patterns:
            text, count = pattern.subn(f"[REDACTED {name}]", text)
            if count:
                result.redacted.extend([name] * count)
                result.warnings.append(f"Found {count} {name} pattern(s)")
        return text

    @staticmethod
    def is_sensitive_key(key: str) -> bool:
        lowered = key.lower().replace("-", "_")
        return any(part in lowered for part in SENSITIVE_KEY_PARTS)

    def sanitize_file_path(self, path: str) -> str:
        """Mask the user name in home-directory paths."""
        for pattern, replacement in _HOME_PATTERNS:
            path = pattern.sub(replacement, path)
        return path

    def sanitize_env(self, env: Mapping[str, str]) -> dict[str, str]:
        """Copy of env with sensitive variables redacted."""
        return {
            name: REDACTED if any(part in name.upper() for part in SENSITIVE_ENV_PARTS) else value
            for name, value in env.items()
        }

    def generate_report(self, result: SanitizationResult) -> str:
        return REPORT_TEMPLATE.render(redacted=result.redacted, warnings=result.warnings)
