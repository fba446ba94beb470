"""Role-based resource/action authorization between stages."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from stagecore.core.errors import StagecoreError
from stagecore.security.patterns import match_resource

if TYPE_CHECKING:
    from stagecore.resources.loader import ResourceLoader

logger = logging.getLogger(__name__)

Action = Literal["read", "write", "delete", "execute"]
ACTIONS: tuple[str, ...] = ("read", "write", "delete", "execute")

DEFAULT_ROLE = "readonly"

MetadataPredicate = Callable[[Mapping[str, Any]], bool]


class PermissionDeniedError(StagecoreError, PermissionError):
    """Raised by callers that turn a denied check into a hard failure."""

    def __init__(self, reason: str, agent: str = "", resource: str = "", action: str = ""):
        self.agent = agent
        self.resource = resource
        self.action = action
        super().__init__(reason)


class Permission(BaseModel):
    """One grant: an action on resources matching a glob pattern.

    ``condition`` is either a predicate over the request metadata or a
    mapping of metadata keys to required values (the form used in YAML
    role files). Boolean requirements match only the same boolean.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    resource: str
    action: Action
    condition: Union[MetadataPredicate, dict[str, Any], None] = None

    @property
    def is_conditional(self) -> bool:
        return self.condition is not None

    def matches(self, resource: str, action: str) -> bool:
        """Check action and pattern, ignoring the condition."""
        return self.action == action and match_resource(self.resource, resource)

    def condition_met(self, metadata: Mapping[str, Any]) -> bool:
        if self.condition is None:
            return True
        if isinstance(self.condition, dict):
            for key, expected in self.condition.items():
                actual = metadata.get(key)
                if isinstance(expected, bool):
                    if actual is not expected:
                        return False
                elif actual != expected:
                    return False
            return True
        try:
            return bool(self.condition(metadata))
        except Exception as e:
            # A broken predicate denies rather than aborting the check.
            logger.warning(f"Permission condition on '{self.resource}' raised: {e}")
            return False

    def describe_condition(self) -> str:
        if self.condition is None:
            return ""
        if isinstance(self.condition, dict):
            return ", ".join(f"{key}={value!r}" for key, value in self.condition.items())
        return getattr(self.condition, "__name__", "custom condition")


class Role(BaseModel):
    """Named bundle of permissions."""

    name: str
    description: str = ""
    permissions: list[Permission] = Field(default_factory=list)


def _confirmed(**extra: Any) -> dict[str, Any]:
    return {"confirmed": True, **extra}


BUILTIN_ROLES: list[dict[str, Any]] = [
    {
        "name": "admin",
        "description": "Full access; deletes require confirmation",
        "permissions": [
            {"resource": "**", "action": "read"},
            {"resource": "**", "action": "write"},
            {"resource": "**", "action": "execute"},
            {"resource": "**", "action": "delete", "condition": _confirmed()},
        ],
    },
    {
        "name": "developer",
        "description": "Reads everything, edits sources and tests",
        "permissions": [
            {"resource": "**", "action": "read"},
            {"resource": "src/**", "action": "read"},
            {"resource": "src/**", "action": "write"},
            {"resource": "tests/**", "action": "read"},
            {"resource": "tests/**", "action": "write"},
            {"resource": "scripts/**", "action": "execute"},
        ],
    },
    {
        "name": "implementer",
        "description": "Reads everything, edits sources, tests and docs",
        "permissions": [
            {"resource": "**", "action": "read"},
            {"resource": "src/**", "action": "write"},
            {"resource": "tests/**", "action": "write"},
            {"resource": "docs/**", "action": "write"},
        ],
    },
    {
        "name": "quality-checker",
        "description": "Reads everything and runs checks",
        "permissions": [
            {"resource": "**", "action": "read"},
            {"resource": "**", "action": "execute"},
        ],
    },
    {
        "name": DEFAULT_ROLE,
        "description": "Read-only access to every resource",
        "permissions": [
            {"resource": "**", "action": "read"},
        ],
    },
]


class PermissionChecker:
    """Decides whether an agent may perform an action on a resource.

    An agent's permissions are the union of its roles. Agents without any
    assigned role are treated as holding ``readonly``. Access is denied
    unless some permission matches the action, the resource pattern and,
    if present, the metadata condition.

    Role tables are meant to be set up before checks start. Every public
    method holds an internal lock, so occasional role changes during
    concurrent checks are safe.

    Example:
        checker = PermissionChecker()
        checker.assign_role("implementer", "developer")
        checker.check_access("implementer", "src/app.py", "write")  # True
    """

    def __init__(self, include_builtin_roles: bool = True):
        self._include_builtin = include_builtin_roles
        self._roles: dict[str, Role] = {}
        self._assignments: dict[str, list[str]] = {}
        self._lock = threading.RLock()
        self.reset()

    def reset(self) -> None:
        """Restore the built-in roles and drop every assignment."""
        with self._lock:
            self._roles.clear()
            self._assignments.clear()
            if self._include_builtin:
                for definition in BUILTIN_ROLES:
                    role = Role.model_validate(definition)
                    self._roles[role.name] = role
            else:
                # The fallback role must always exist.
                self._roles[DEFAULT_ROLE] = Role.model_validate(BUILTIN_ROLES[-1])

    def define_role(
        self,
        name: str,
        permissions: Iterable[Permission | Mapping[str, Any]],
        description: str = "",
    ) -> Role:
        """Define or replace a role.

        Raises:
            pydantic.ValidationError: If a permission is malformed.
        """
        role = Role.model_validate(
            {"name": name, "description": description, "permissions": list(permissions)}
        )
        with self._lock:
            replaced = name in self._roles
            self._roles[name] = role
        logger.debug(f"{'Replaced' if replaced else 'Defined'} role '{name}' with {len(role.permissions)} permissions")
        return role

    def get_role(self, name: str) -> Role | None:
        with self._lock:
            return self._roles.get(name)

    def get_all_roles(self) -> list[Role]:
        with self._lock:
            return list(self._roles.values())

    def assign_role(self, agent: str, role_name: str) -> None:
        """Give agent a role. Assigning a held role again is a no-op.

        Raises:
            ValueError: If the role is not defined.
        """
        with self._lock:
            if role_name not in self._roles:
                raise ValueError(f"Unknown role '{role_name}'")
            roles = self._assignments.setdefault(agent, [])
            if role_name not in roles:
                roles.append(role_name)
        logger.debug(f"Assigned role '{role_name}' to {agent}")

    def revoke_role(self, agent: str, role_name: str) -> bool:
        """Take a role away. Returns False if the agent did not hold it."""
        with self._lock:
            roles = self._assignments.get(agent)
            if not roles or role_name not in roles:
                return False
            roles.remove(role_name)
            if not roles:
                del self._assignments[agent]
        logger.debug(f"Revoked role '{role_name}' from {agent}")
        return True

    def get_agent_roles(self, agent: str) -> list[str]:
        """Roles explicitly assigned to agent."""
        with self._lock:
            return list(self._assignments.get(agent, []))

    def effective_roles(self, agent: str) -> list[str]:
        """Assigned roles, or the default role when none are assigned."""
        roles = self.get_agent_roles(agent)
        return roles or [DEFAULT_ROLE]

    def _permissions_for(self, agent: str) -> list[Permission]:
        with self._lock:
            permissions: list[Permission] = []
            for role_name in self.effective_roles(agent):
                role = self._roles.get(role_name)
                if role is not None:
                    permissions.extend(role.permissions)
            return permissions

    def check_access(
        self,
        agent: str,
        resource: str,
        action: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """Check whether agent may perform action on resource."""
        metadata = metadata or {}
        for permission in self._permissions_for(agent):
            if permission.matches(resource, action) and permission.condition_met(metadata):
                return True

        logger.info(self.get_access_denial_reason(agent, resource, action, metadata))
        return False

    def get_access_denial_reason(
        self,
        agent: str,
        resource: str,
        action: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        """Explain why a request is (or would be) denied.

        Names the agent, its roles and the requested action and resource,
        plus any rule that matched but whose condition was not met.
        """
        metadata = metadata or {}
        assigned = self.get_agent_roles(agent)
        roles = ", ".join(assigned) if assigned else f"{DEFAULT_ROLE} (default)"

        unmet: list[Permission] = []
        for permission in self._permissions_for(agent):
            if not permission.matches(resource, action):
                continue
            if permission.condition_met(metadata):
                return f"Agent '{agent}' with roles [{roles}] may {action} '{resource}'"
            unmet.append(permission)

        reason = f"Agent '{agent}' with roles [{roles}] is not permitted to {action} '{resource}'"
        if unmet:
            conditions = "; ".join(
                f"'{p.resource}' requires {p.describe_condition()}" for p in unmet
            )
            reason += f" (condition not met: {conditions})"
        elif action not in ACTIONS:
            reason += f" (unknown action '{action}')"
        return reason

    def get_accessible_resources(self, agent: str, action: str) -> list[str]:
        """Resource patterns agent may act on, conditional grants included."""
        patterns: list[str] = []
        for permission in self._permissions_for(agent):
            if permission.action == action and permission.resource not in patterns:
                patterns.append(permission.resource)
        return patterns

    def require_access(
        self,
        agent: str,
        resource: str,
        action: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Like ``check_access`` but raises on denial.

        Raises:
            PermissionDeniedError: With the denial reason as message.
        """
        if not self.check_access(agent, resource, action, metadata):
            reason = self.get_access_denial_reason(agent, resource, action, metadata)
            raise PermissionDeniedError(reason, agent=agent, resource=resource, action=action)

    def load_roles(self, data: Mapping[str, Any]) -> list[Role]:
        """Apply a role table of the form used in role YAML files.

        Expected shape::

            roles:
              - name: reviewer
                permissions:
                  - {resource: "docs/**", action: write}
            assignments:
              qa: [reviewer, readonly]

        Returns:
            The roles defined.
        """
        defined = [
            self.define_role(
                entry["name"],
                entry.get("permissions", []),
                description=entry.get("description", ""),
            )
            for entry in data.get("roles", [])
        ]
        for agent, role_names in (data.get("assignments") or {}).items():
            if isinstance(role_names, str):
                role_names = [role_names]
            for role_name in role_names:
                self.assign_role(agent, role_name)
        logger.info(f"Loaded {len(defined)} role(s)")
        return defined

    def load_roles_from(self, loader: ResourceLoader, name: str) -> list[Role]:
        """Load a role table by name through a layered resource loader."""
        return self.load_roles(loader.load(name))
