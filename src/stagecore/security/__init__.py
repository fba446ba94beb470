"""Access policy between stages and screening of untrusted input."""

from stagecore.security.patterns import compile_pattern, match_resource
from stagecore.security.permissions import (
    ACTIONS,
    DEFAULT_ROLE,
    Permission,
    PermissionChecker,
    PermissionDeniedError,
    Role,
)
from stagecore.security.validator import InputValidator, ValidationResult, ValidationRule

__all__ = [
    "PermissionChecker",
    "Permission",
    "Role",
    "PermissionDeniedError",
    "ACTIONS",
    "DEFAULT_ROLE",
    "compile_pattern",
    "match_resource",
    "InputValidator",
    "ValidationResult",
    "ValidationRule",
]
