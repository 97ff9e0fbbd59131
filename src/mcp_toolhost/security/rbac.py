"""
Role-Based Access Control (RBAC) for the MCP tool host.

This module decides whether an identity with a given role may perform a
protocol operation, optionally on a specific resource (the tool name for
``tools/call``). Authentication providers delegate ``authorize`` to it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mcp_toolhost.config import AuthConfig

# Role hierarchy: higher index = higher privilege
ROLE_HIERARCHY = ["viewer", "operator", "admin"]

# Minimum role per built-in protocol method
DEFAULT_OPERATION_ROLES: dict[str, str] = {
    "initialize": "viewer",
    "notifications/initialized": "viewer",
    "ping": "viewer",
    "tools/list": "viewer",
    "tools/call": "viewer",
}


def role_level(role: str) -> int:
    """
    Get the privilege level for a role.

    Args:
        role: Role name.

    Returns:
        Privilege level (higher = more privilege), -1 for unknown roles.
    """
    try:
        return ROLE_HIERARCHY.index(role)
    except ValueError:
        return -1


def has_role(user_role: str, required_role: str) -> bool:
    """
    Check if user role meets the required role level.

    Args:
        user_role: The user's assigned role.
        required_role: The required role for the operation.

    Returns:
        True if user has sufficient privileges.
    """
    return role_level(user_role) >= role_level(required_role)


class RBACEnforcer:
    """
    Enforces role requirements on protocol operations and tools.

    Resolution order for the required role:
    1. ``tool_roles[resource]`` when a resource is given
    2. ``tool_roles["<prefix>*"]`` for the longest matching wildcard prefix
    3. ``operation_roles[operation]``
    4. ``default_role``

    Example:
        >>> enforcer = RBACEnforcer(tool_roles={"system_info": "operator"})
        >>> enforcer.is_allowed("viewer", "tools/call", "echo")
        True
        >>> enforcer.is_allowed("viewer", "tools/call", "system_info")
        False
    """

    def __init__(
        self,
        operation_roles: dict[str, str] | None = None,
        tool_roles: dict[str, str] | None = None,
        default_role: str = "viewer",
    ) -> None:
        """
        Initialize the RBAC enforcer.

        Args:
            operation_roles: Minimum role per protocol method, merged over
                DEFAULT_OPERATION_ROLES.
            tool_roles: Minimum role per tool name or ``prefix*`` pattern.
            default_role: Role required when nothing else matches.
        """
        self._operation_roles = {**DEFAULT_OPERATION_ROLES, **(operation_roles or {})}
        self._tool_roles = dict(tool_roles or {})
        self._default_role = default_role

    @classmethod
    def from_config(cls, config: AuthConfig) -> RBACEnforcer:
        """
        Create an RBACEnforcer from configuration.

        Args:
            config: AuthConfig with role settings.

        Returns:
            Configured RBACEnforcer instance.
        """
        return cls(
            operation_roles=dict(config.operation_roles),
            tool_roles=dict(config.tool_roles),
            default_role=config.default_role,
        )

    def get_required_role(self, operation: str, resource: str | None = None) -> str:
        """
        Get the role required for an operation.

        Args:
            operation: Protocol method name (e.g., "tools/call").
            resource: Optional resource name (tool name for "tools/call").

        Returns:
            Required role name.
        """
        if resource is not None:
            if resource in self._tool_roles:
                return self._tool_roles[resource]

            best_prefix = ""
            best_role: str | None = None
            for pattern, required in self._tool_roles.items():
                if not pattern.endswith("*"):
                    continue
                prefix = pattern[:-1]
                if resource.startswith(prefix) and len(prefix) >= len(best_prefix):
                    best_prefix = prefix
                    best_role = required
            if best_role is not None:
                return best_role

        return self._operation_roles.get(operation, self._default_role)

    def is_allowed(
        self, user_role: str, operation: str, resource: str | None = None
    ) -> bool:
        """
        Check whether a role may perform an operation. Side-effect free.

        Args:
            user_role: The caller's role.
            operation: Protocol method name.
            resource: Optional resource name.

        Returns:
            True if allowed.
        """
        return has_role(user_role, self.get_required_role(operation, resource))
