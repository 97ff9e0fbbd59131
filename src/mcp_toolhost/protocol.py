"""
JSON-RPC 2.0 envelope handling for the MCP tool host.

Parses and validates request envelopes and builds response objects for the
tool-invocation protocol. The codec never touches a socket; it works on
message text and decoded mappings.

Features:
- Envelope validation (``validate_message``) and request extraction
  (``parse_request``)
- Success and error response formatting
- ToolHostError to JSON-RPC error code mapping
- Verbatim pass-through of pre-serialized results from method handlers

Error Code Mapping:
- -32700: Parse error (malformed JSON)
- -32600: Invalid Request (invalid envelope, failed auth gate, not initialized)
- -32601: Method not found (unknown method or tool)
- -32602: Invalid params (missing/malformed arguments)
- -32603: Internal error (provider failures, timeouts, anything else)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from mcp_toolhost.errors import ToolHostError

# =============================================================================
# JSON-RPC Error Codes
# =============================================================================

JSONRPC_VERSION = "2.0"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

ERROR_CODE_MAP: dict[str, int] = {
    "parse_error": PARSE_ERROR,
    "invalid_request": INVALID_REQUEST,
    "unauthenticated": INVALID_REQUEST,
    "permission_denied": INVALID_REQUEST,
    "not_initialized": INVALID_REQUEST,
    "method_not_found": METHOD_NOT_FOUND,
    "invalid_params": INVALID_PARAMS,
    "timeout": INTERNAL_ERROR,
    "internal": INTERNAL_ERROR,
}

# Default message size limit (1 MiB)
MAX_MESSAGE_SIZE = 1024 * 1024

RequestId = str | int | None


# =============================================================================
# Data Classes
# =============================================================================


class JSONRPCError(Exception):
    """
    Error object of a JSON-RPC response, raisable from the codec.

    Attributes:
        code: JSON-RPC error code.
        message: Short description sent to the client.
        data: Structured error data (omitted from the wire when None).
    """

    def __init__(self, code: int, message: str, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        """Wire form: ``{"code", "message"[, "data"]}``."""
        wire: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            wire["data"] = self.data
        return wire

    def __repr__(self) -> str:
        return f"JSONRPCError(code={self.code}, message={self.message!r}, data={self.data!r})"


@dataclass
class JSONRPCRequest:
    """
    A request that passed envelope validation.

    Attributes:
        jsonrpc: Always "2.0".
        id: Echoed verbatim in the response; None marks a notification.
        method: Protocol method name.
        params: Named parameters; positional ones sit under ``"_args"``.
    """

    jsonrpc: str
    id: RequestId
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def is_notification(self) -> bool:
        return self.id is None


@dataclass
class JSONRPCResponse:
    """
    A response ready for serialization.

    Carries either ``error`` or a result, never both. The result is either a
    Python value (``result``; None is sent as ``{}``) or JSON text produced
    by a method handler (``raw_result``), which is spliced into the output
    without re-encoding.

    Attributes:
        jsonrpc: Always "2.0".
        id: The request's id, or None when it could not be recovered.
        result: Result value.
        error: Error object.
        raw_result: Pre-serialized result text.
    """

    jsonrpc: str
    id: RequestId
    result: Any | None = None
    error: JSONRPCError | None = None
    raw_result: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        """Decoded wire form (``raw_result`` is parsed back into a value)."""
        wire: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            wire["error"] = self.error.to_dict()
        elif self.raw_result is not None:
            wire["result"] = json.loads(self.raw_result)
        else:
            wire["result"] = {} if self.result is None else self.result
        return wire

    def to_json(self) -> str:
        """Compact JSON text of the response."""
        if self.error is None and self.raw_result is not None:
            envelope = json.dumps(
                {"jsonrpc": self.jsonrpc, "id": self.id}, separators=(",", ":")
            )
            return f'{envelope[:-1]},"result":{self.raw_result}}}'
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)


# =============================================================================
# Request Parsing
# =============================================================================


def _invalid_request(reason: str, data: dict[str, Any] | None = None) -> JSONRPCError:
    return JSONRPCError(code=INVALID_REQUEST, message=f"Invalid Request: {reason}", data=data)


def _decode(message: str | bytes, max_size: int) -> Any:
    if isinstance(message, bytes):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError as e:
            raise JSONRPCError(
                code=PARSE_ERROR,
                message="Parse error: message is not valid UTF-8",
            ) from e

    if len(message.encode("utf-8")) > max_size:
        raise _invalid_request(
            f"Message exceeds {max_size} bytes", data={"max_size": max_size}
        )

    try:
        return json.loads(message)
    except json.JSONDecodeError as e:
        raise JSONRPCError(code=PARSE_ERROR, message=f"Parse error: {e.msg}") from e


def validate_message(
    message: str | bytes,
    max_size: int = MAX_MESSAGE_SIZE,
) -> dict[str, Any]:
    """
    Decode a raw message and check its JSON-RPC envelope.

    Args:
        message: Raw message text (or UTF-8 bytes).
        max_size: Largest accepted message in bytes.

    Returns:
        The decoded message object.

    Raises:
        JSONRPCError: PARSE_ERROR when the input is not JSON, INVALID_REQUEST
            when it is JSON but not a single well-formed request.
    """
    data = _decode(message, max_size)

    if isinstance(data, list):
        raise _invalid_request("Batch requests are not supported")
    if not isinstance(data, dict):
        raise _invalid_request("message must be a JSON object")

    if "jsonrpc" not in data:
        raise _invalid_request("'jsonrpc' member is required")
    if data["jsonrpc"] != JSONRPC_VERSION:
        raise _invalid_request(f"'jsonrpc' must be \"2.0\", got {data['jsonrpc']!r}")

    method = data.get("method")
    if not isinstance(method, str) or not method:
        raise _invalid_request("'method' must be a non-empty string")

    request_id = data.get("id")
    if request_id is not None and not _is_valid_id(request_id):
        raise _invalid_request("'id' must be a string or an integer")

    return data


def _is_valid_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def parse_request(data: dict[str, Any] | str) -> JSONRPCRequest:
    """
    Extract a JSON-RPC 2.0 request from a validated message.

    Args:
        data: Decoded message object, or a raw JSON string (validated first).

    Returns:
        Parsed JSONRPCRequest object.

    Raises:
        JSONRPCError: If the message is malformed or params are invalid.

    Example:
        >>> request = parse_request('{"jsonrpc":"2.0","id":"1","method":"ping"}')
        >>> print(request.method)
        ping
    """
    if isinstance(data, str):
        data = validate_message(data)

    params = data.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, (dict, list)):
        raise JSONRPCError(
            code=INVALID_PARAMS,
            message="Invalid params: 'params' must be an object or array",
        )
    # Positional params are exposed to handlers under the '_args' key.
    if isinstance(params, list):
        params = {"_args": params}

    return JSONRPCRequest(
        jsonrpc=JSONRPC_VERSION,
        id=data.get("id"),
        method=data["method"],
        params=params,
    )


def extract_request_id(message: str | bytes) -> RequestId:
    """
    Best-effort extraction of the id from a message that failed validation.

    Args:
        message: Raw message text.

    Returns:
        The id if it can be recovered, else None.
    """
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        return None
    if isinstance(data, dict):
        request_id = data.get("id")
        if _is_valid_id(request_id):
            return request_id
    return None


# =============================================================================
# Response Formatting
# =============================================================================


def format_success_response(request_id: RequestId, result: Any) -> JSONRPCResponse:
    """
    Wrap a handler result. ``None`` becomes the empty object.

    Example:
        >>> format_success_response("req-1", {"tools": []}).to_json()
        '{"jsonrpc":"2.0","id":"req-1","result":{"tools":[]}}'
    """
    return JSONRPCResponse(
        jsonrpc=JSONRPC_VERSION,
        id=request_id,
        result={} if result is None else result,
    )


def format_raw_response(request_id: RequestId, raw_result: str) -> JSONRPCResponse:
    """
    Wrap already-serialized JSON so it is emitted verbatim as the result.

    Blank text stands for the empty object.

    Raises:
        ValueError: If raw_result is not well-formed JSON.
    """
    text = raw_result.strip() or "{}"
    json.loads(text)
    return JSONRPCResponse(jsonrpc=JSONRPC_VERSION, id=request_id, raw_result=text)


def format_error_response(request_id: RequestId, error: JSONRPCError) -> JSONRPCResponse:
    """Wrap an error. ``request_id`` is None when the id could not be read."""
    return JSONRPCResponse(jsonrpc=JSONRPC_VERSION, id=request_id, error=error)


# =============================================================================
# Error Builders
# =============================================================================


def _error_data(
    error_code: str, message: str, details: dict[str, Any] | None
) -> dict[str, Any]:
    return {"error_code": error_code, "message": message, "details": details or {}}


def tool_error_to_jsonrpc_error(tool_error: ToolHostError) -> JSONRPCError:
    """
    Map a ToolHostError onto the JSON-RPC code table.

    Codes missing from ``ERROR_CODE_MAP`` become INTERNAL_ERROR. The machine
    code, message and details travel in ``data``.

    Example:
        >>> from mcp_toolhost.errors import InvalidParamsError
        >>> tool_error_to_jsonrpc_error(InvalidParamsError("Missing 'name'")).code
        -32602
    """
    return JSONRPCError(
        code=ERROR_CODE_MAP.get(tool_error.error_code, INTERNAL_ERROR),
        message=tool_error.message,
        data=_error_data(tool_error.error_code, tool_error.message, tool_error.details),
    )


def create_method_not_found_error(method: str) -> JSONRPCError:
    """METHOD_NOT_FOUND for a method with no built-in or custom handler."""
    return JSONRPCError(
        code=METHOD_NOT_FOUND,
        message=f"Method not found: {method}",
        data=_error_data(
            "method_not_found", f"Method '{method}' is not supported", {"method": method}
        ),
    )


def create_internal_error(
    message: str, details: dict[str, Any] | None = None
) -> JSONRPCError:
    """INTERNAL_ERROR for failures outside the ToolHostError taxonomy."""
    return JSONRPCError(
        code=INTERNAL_ERROR,
        message=message,
        data=_error_data("internal", message, details),
    )
