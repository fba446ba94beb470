"""Rule-based validation of untrusted text handed to stages."""

from __future__ import annotations

import html
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlparse

from jinja2 import Template

logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 10000

DANGEROUS_COMMANDS = (
    "rm -rf",
    "dd if=",
    "mkfs",
    ":(){:|:&};:",
    "chmod 777",
    "> /dev/sda",
)

SHELL_META_CHARS = ("|", "&", ";", ">", "<", "`", "$", "(", ")")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")
_WINDOWS_ABSOLUTE = re.compile(r"^[A-Za-z]:\\")
_ENV_VAR_NAME = re.compile(r"^[A-Z_][A-Z0-9_]*$")

REPORT_TEMPLATE = Template(
    """=== Validation Report ===

Status: {{ 'VALID' if result.valid else 'INVALID' }}
Errors: {{ result.errors | length }}
Warnings: {{ result.warnings | length }}
{% if result.errors %}
Errors:
{% for error in result.errors %}  - {{ error }}
{% endfor %}{% endif %}{% if result.warnings %}
Warnings:
{% for warning in result.warnings %}  - {{ warning }}
{% endfor %}{% endif %}{% if result.sanitized %}
Sanitized Input:
  {{ result.sanitized }}
{% endif %}"""
)


@dataclass
class ValidationRule:
    name: str
    check: Callable[[str], bool]
    message: str


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    sanitized: str | None = None


def _no_match(*patterns: str, flags: int = 0) -> Callable[[str], bool]:
    compiled = [re.compile(pattern, flags) for pattern in patterns]
    return lambda text: not any(pattern.search(text) for pattern in compiled)


def _is_absolute(path: str) -> bool:
    return path.startswith("/") or _WINDOWS_ABSOLUTE.match(path) is not None


class InputValidator:
    """Screens free text for injection patterns before it reaches a stage.

    ``validate`` runs every rule and, when the input passes, also returns
    an HTML-escaped, whitespace-normalized copy. Specialized validators
    cover file paths, shell commands, JSON, environment variable names and
    URLs.
    """

    def __init__(self) -> None:
        self._rules: list[ValidationRule] = [
            ValidationRule(
                "no-command-injection",
                _no_match(r";.*rm\s+-rf", r"\|\|", r"&&", r"`[^`]+`", r"\$\([^)]+\)", flags=re.I),
                "Input contains potentially dangerous command patterns",
            ),
            ValidationRule(
                "no-path-traversal",
                lambda text: "../" not in text and "..\\" not in text,
                "Input contains path traversal patterns",
            ),
            ValidationRule(
                "no-sql-injection",
                _no_match(
                    r"'\s*OR\s+'1'\s*=\s*'1",
                    r"'\s*OR\s+1\s*=\s*1",
                    r"--",
                    r";\s*DROP\s+TABLE",
                    r"UNION\s+SELECT",
                    flags=re.I,
                ),
                "Input contains SQL injection patterns",
            ),
            ValidationRule(
                "no-xss",
                _no_match(r"<script[^>]*>.*</script>", r"javascript:", r"on\w+\s*=", r"<iframe", flags=re.I),
                "Input contains XSS patterns",
            ),
        ]

    def add_rule(self, rule: ValidationRule) -> None:
        self._rules.append(rule)

    def validate(self, text: str) -> ValidationResult:
        if not text or not text.strip():
            return ValidationResult(valid=False, errors=["Input is empty"])

        result = ValidationResult(valid=True)
        if len(text) > MAX_INPUT_LENGTH:
            result.warnings.append(f"Input is very long (>{MAX_INPUT_LENGTH} characters)")

        for rule in self._rules:
            if not rule.check(text):
                result.errors.append(f"{rule.name}: {rule.message}")

        result.valid = not result.errors
        if result.valid:
            result.sanitized = self.sanitize(text)
        else:
            logger.debug(f"Input rejected by {len(result.errors)} rule(s)")
        return result

    def sanitize(self, text: str) -> str:
        """HTML-escape, strip control characters and collapse whitespace."""
        text = html.escape(text, quote=True).replace("/", "&#x2F;")
        text = _WHITESPACE.sub(" ", text)
        text = _CONTROL_CHARS.sub("", text)
        return text.strip()

    def validate_file_path(self, path: str) -> ValidationResult:
        result = self.validate(path)
        if not result.valid:
            return result
        if not _is_absolute(path):
            result.errors.append("Path must be absolute")
        if re.search(r"[;|&$`]", path):
            result.errors.append("Path contains dangerous characters")
        result.valid = not result.errors
        return result

    def validate_command(self, command: str) -> ValidationResult:
        result = self.validate(command)
        if not result.valid:
            return result
        lowered = command.lower()
        for dangerous in DANGEROUS_COMMANDS:
            if dangerous in lowered:
                result.errors.append(f"Dangerous command detected: {dangerous}")
        if any(char in command for char in SHELL_META_CHARS):
            result.warnings.append("Command contains shell meta-characters")
        result.valid = not result.errors
        return result

    def validate_json(self, text: str) -> ValidationResult:
        try:
            json.loads(text)
        except ValueError:
            return ValidationResult(valid=False, errors=["Invalid JSON format"])
        return ValidationResult(valid=True)

    def validate_env_var_name(self, name: str) -> ValidationResult:
        if _ENV_VAR_NAME.match(name):
            return ValidationResult(valid=True)
        return ValidationResult(
            valid=False,
            errors=["Environment variable name must contain only A-Z, 0-9 and _, and not start with a digit"],
        )

    def validate_url(self, url: str) -> ValidationResult:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            return ValidationResult(valid=False, errors=["Invalid URL format"])

        result = ValidationResult(valid=True)
        if parsed.scheme not in ("http", "https"):
            result.warnings.append(f"Non-standard protocol: {parsed.scheme}")
        if parsed.hostname in ("localhost", "127.0.0.1"):
            result.warnings.append("URL points to localhost")
        return result

    def generate_report(self, result: ValidationResult) -> str:
        return REPORT_TEMPLATE.render(result=result)
