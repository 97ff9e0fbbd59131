"""
Security module for the MCP tool host.

Components:
- AuthenticationProvider: pluggable credential check and authorization contract
- StaticTokenAuthProvider: fixed token table from configuration
- JWTAuthProvider: signed, revocable tokens (PyJWT)
- RBACEnforcer: role hierarchy and per-operation/per-tool minimum roles
- AuditLogger: structured audit logging for tool calls and auth events
"""

from mcp_toolhost.security.audit_logger import AuditLogger
from mcp_toolhost.security.auth import (
    AuthenticationProvider,
    Identity,
    JWTAuthProvider,
    StaticTokenAuthProvider,
    create_auth_provider,
)
from mcp_toolhost.security.rbac import RBACEnforcer

__all__ = [
    "AuthenticationProvider",
    "StaticTokenAuthProvider",
    "JWTAuthProvider",
    "Identity",
    "RBACEnforcer",
    "AuditLogger",
    "create_auth_provider",
]
