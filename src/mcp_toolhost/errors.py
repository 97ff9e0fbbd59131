"""
Error types for the MCP tool host.

This module defines the ToolHostError base class and the subclasses used for
every expected failure in the protocol engine. Domain code raises these
instead of building JSON-RPC error objects directly; the message processor
maps them to JSON-RPC errors at the protocol boundary (see
``mcp_toolhost.protocol.ERROR_CODE_MAP``).

Error codes:
- invalid_request: well-formed JSON with an invalid protocol shape
- method_not_found: unknown method or unresolvable tool name
- invalid_params: missing or malformed method/tool arguments
- unauthenticated: the connection has not passed authentication
- permission_denied: the authenticated caller may not perform the operation
- not_initialized: a session method arrived before ``initialize``
- timeout: a tool call exceeded the request deadline
- internal: everything else
"""

from __future__ import annotations

from typing import Any


class ToolHostError(Exception):
    """
    Base class for every expected failure in the tool host.

    Attributes:
        error_code: Machine-readable category, mapped to a JSON-RPC code at
            the protocol boundary.
        message: Human-readable error message.
        details: Structured context (tool name, method, reason).

    Example:
        >>> raise ToolHostError(
        ...     error_code="invalid_params",
        ...     message="Missing 'name' in tools/call params",
        ...     details={"method": "tools/call"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(error_code={self.error_code!r}, "
            f"message={self.message!r}, details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serializable form ``{error_code, message, details}``."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class _CodedError(ToolHostError):
    """ToolHostError whose error_code is fixed by the subclass."""

    error_code = "internal"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code=type(self).error_code, message=message, details=details)


class InvalidRequestError(_CodedError):
    """Well-formed JSON that breaks the protocol shape."""

    error_code = "invalid_request"


class MethodNotFoundError(_CodedError):
    """
    A method or tool name that cannot be resolved.

    Used both for unknown JSON-RPC methods and for ``tools/call`` requests
    naming a tool that no registered provider exposes.
    """

    error_code = "method_not_found"


class InvalidParamsError(_CodedError):
    """Missing or malformed method or tool arguments."""

    error_code = "invalid_params"


class UnauthenticatedError(_CodedError):
    """A gated method called on an unauthenticated connection."""

    error_code = "unauthenticated"


class PermissionDeniedError(_CodedError):
    """
    An authenticated caller lacking permission for an operation.

    The authentication provider makes the decision; this error only carries
    the outcome to the protocol layer.
    """

    error_code = "permission_denied"


class NotInitializedError(_CodedError):
    """A session method that arrived before ``initialize``."""

    error_code = "not_initialized"


class ToolTimeoutError(_CodedError):
    """A tool execution that exceeded the request deadline."""

    error_code = "timeout"


class InternalError(_CodedError):
    """
    Anything unexpected.

    The registry wraps provider exceptions in this error, keeping the
    provider's message.
    """

    error_code = "internal"


class ConfigurationError(_CodedError):
    """A server configuration snapshot that fails validation."""

    error_code = "invalid_configuration"


class ToolCollisionError(_CodedError):
    """A provider exposing a tool name that is already registered."""

    error_code = "tool_collision"


class ProviderInitializationError(_CodedError):
    """A tool provider whose ``initialize`` failed during registration."""

    error_code = "provider_initialization_failed"
