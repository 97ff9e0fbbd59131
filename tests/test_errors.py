"""
Tests for the errors module.

This test module validates:
- ToolHostError base behavior (message, details, repr, to_dict)
- Each subclass carries its machine error code
- Error codes map to the expected JSON-RPC codes
"""

from __future__ import annotations

import pytest

from mcp_toolhost.errors import (
    ConfigurationError,
    InternalError,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    NotInitializedError,
    PermissionDeniedError,
    ProviderInitializationError,
    ToolCollisionError,
    ToolHostError,
    ToolTimeoutError,
    UnauthenticatedError,
)
from mcp_toolhost.protocol import ERROR_CODE_MAP, tool_error_to_jsonrpc_error

# =============================================================================
# Tests for ToolHostError
# =============================================================================


class TestToolHostError:
    """Tests for the ToolHostError base class."""

    def test_attributes(self) -> None:
        """Test that error_code, message and details are stored."""
        error = ToolHostError(
            error_code="invalid_params",
            message="Missing 'name'",
            details={"method": "tools/call"},
        )

        assert error.error_code == "invalid_params"
        assert error.message == "Missing 'name'"
        assert error.details == {"method": "tools/call"}
        assert str(error) == "Missing 'name'"

    def test_details_default_to_empty_dict(self) -> None:
        """Test that details default to an empty dict."""
        error = ToolHostError(error_code="internal", message="boom")
        assert error.details == {}

    def test_to_dict(self) -> None:
        """Test dictionary conversion."""
        error = ToolHostError("internal", "boom", {"k": "v"})
        assert error.to_dict() == {
            "error_code": "internal",
            "message": "boom",
            "details": {"k": "v"},
        }

    def test_repr(self) -> None:
        """Test repr includes the class name and fields."""
        error = InvalidParamsError(message="bad")
        text = repr(error)
        assert text.startswith("InvalidParamsError(")
        assert "error_code='invalid_params'" in text
        assert "message='bad'" in text

    def test_can_be_raised_and_caught(self) -> None:
        """Test that subclasses are caught as ToolHostError."""
        with pytest.raises(ToolHostError) as exc_info:
            raise MethodNotFoundError(message="Tool 'x' is not registered")
        assert exc_info.value.error_code == "method_not_found"


# =============================================================================
# Tests for Subclass Error Codes
# =============================================================================


class TestSubclassErrorCodes:
    """Tests that each subclass carries the right error code."""

    @pytest.mark.parametrize(
        ("error_class", "error_code"),
        [
            (InvalidRequestError, "invalid_request"),
            (MethodNotFoundError, "method_not_found"),
            (InvalidParamsError, "invalid_params"),
            (UnauthenticatedError, "unauthenticated"),
            (PermissionDeniedError, "permission_denied"),
            (NotInitializedError, "not_initialized"),
            (ToolTimeoutError, "timeout"),
            (InternalError, "internal"),
            (ConfigurationError, "invalid_configuration"),
            (ToolCollisionError, "tool_collision"),
            (ProviderInitializationError, "provider_initialization_failed"),
        ],
    )
    def test_error_code(self, error_class: type[ToolHostError], error_code: str) -> None:
        """Test the error code of each subclass."""
        error = error_class(message="msg", details={"a": 1})
        assert error.error_code == error_code
        assert error.details == {"a": 1}


# =============================================================================
# Tests for JSON-RPC Mapping
# =============================================================================


class TestJSONRPCMapping:
    """Tests for mapping error codes to JSON-RPC codes."""

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (InvalidRequestError("x"), -32600),
            (UnauthenticatedError("x"), -32600),
            (PermissionDeniedError("x"), -32600),
            (NotInitializedError("x"), -32600),
            (MethodNotFoundError("x"), -32601),
            (InvalidParamsError("x"), -32602),
            (InternalError("x"), -32603),
            (ToolTimeoutError("x"), -32603),
        ],
    )
    def test_mapped_code(self, error: ToolHostError, code: int) -> None:
        """Test that protocol errors map to their JSON-RPC codes."""
        assert tool_error_to_jsonrpc_error(error).code == code

    def test_unmapped_code_is_internal(self) -> None:
        """Test that codes outside the map become internal errors."""
        error = ToolCollisionError("collision")
        assert "tool_collision" not in ERROR_CODE_MAP
        assert tool_error_to_jsonrpc_error(error).code == -32603

    def test_data_carries_error_code(self) -> None:
        """Test that the JSON-RPC error data keeps the machine code."""
        jsonrpc_error = tool_error_to_jsonrpc_error(
            UnauthenticatedError("Authentication required", {"method": "tools/list"})
        )
        assert jsonrpc_error.data == {
            "error_code": "unauthenticated",
            "message": "Authentication required",
            "details": {"method": "tools/list"},
        }
