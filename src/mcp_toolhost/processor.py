"""
Message processor for the MCP tool host.

This module is the protocol core. ``MessageProcessor.process_message`` takes
one raw JSON-RPC message and the connection it arrived on and returns the
serialized response (or None for notifications):

1. Record activity, validate the envelope and parse the request
2. Enforce the session handshake (``initialize`` first)
3. Enforce the authentication gate and authorization
4. Dispatch to a built-in method, a registered MethodHandler or the registry
5. Wrap the result or error in a response carrying the request id
6. Record activity again and update statistics

Every failure becomes a JSON-RPC error response; no exception escapes.
The processor keeps no session state of its own: handshake and identity
state live on the ClientConnection.
"""

from __future__ import annotations

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from mcp_toolhost.errors import (
    InternalError,
    InvalidParamsError,
    NotInitializedError,
    PermissionDeniedError,
    ToolHostError,
    ToolTimeoutError,
    UnauthenticatedError,
)
from mcp_toolhost.logging import get_logger
from mcp_toolhost.protocol import (
    JSONRPCError,
    JSONRPCRequest,
    JSONRPCResponse,
    create_internal_error,
    create_method_not_found_error,
    extract_request_id,
    format_error_response,
    format_raw_response,
    format_success_response,
    parse_request,
    tool_error_to_jsonrpc_error,
    validate_message,
)

if TYPE_CHECKING:
    from mcp_toolhost.config import ServerConfig
    from mcp_toolhost.connection import ClientConnection
    from mcp_toolhost.providers.registry import ToolProviderRegistry
    from mcp_toolhost.security.audit_logger import AuditLogger
    from mcp_toolhost.security.auth import AuthenticationProvider

logger = get_logger(__name__)

# Newest first
SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notifications/initialized"
METHOD_PING = "ping"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"

BUILTIN_METHODS = frozenset(
    {
        METHOD_INITIALIZE,
        METHOD_INITIALIZED,
        METHOD_PING,
        METHOD_TOOLS_LIST,
        METHOD_TOOLS_CALL,
    }
)

# Methods accepted before the handshake completes
PRE_INITIALIZE_METHODS = frozenset({METHOD_INITIALIZE, METHOD_PING})

# Statistics key for methods that are neither built in nor registered
UNKNOWN_METHOD_KEY = "<unknown>"


# =============================================================================
# Method Handler extension point
# =============================================================================


class MethodHandler(ABC):
    """
    Handler for a protocol method beyond the built-in set.

    ``handle_method`` may return a ``str`` holding already-serialized JSON,
    which is placed in the response verbatim, or any JSON-serializable value.

    Example:
        >>> class EchoParamsHandler(MethodHandler):
        ...     method_name = "debug/echo"
        ...
        ...     async def handle_method(self, connection, request):
        ...         return request.params
    """

    method_name: str = ""

    def can_handle(self, request: JSONRPCRequest) -> bool:
        """Return False to decline a request; it is then reported as not found."""
        return True

    @abstractmethod
    async def handle_method(
        self, connection: ClientConnection, request: JSONRPCRequest
    ) -> Any:
        """
        Handle one request.

        Args:
            connection: The calling connection.
            request: The parsed request.

        Returns:
            Serialized JSON text or a JSON-serializable value.
        """


# =============================================================================
# Statistics
# =============================================================================


class ProcessorStatistics:
    """Request counters and latency totals. Reads return copies."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset()

    def _reset(self) -> None:
        self._request_count = 0
        self._error_count = 0
        self._notification_count = 0
        self._method_counts: dict[str, int] = {}
        self._method_errors: dict[str, int] = {}
        self._total_latency_ms = 0.0

    def record(
        self, method: str, success: bool, latency_ms: float, notification: bool = False
    ) -> None:
        with self._lock:
            self._request_count += 1
            if notification:
                self._notification_count += 1
            self._method_counts[method] = self._method_counts.get(method, 0) + 1
            if not success:
                self._error_count += 1
                self._method_errors[method] = self._method_errors.get(method, 0) + 1
            self._total_latency_ms += latency_ms

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            average = (
                self._total_latency_ms / self._request_count if self._request_count else 0.0
            )
            return {
                "request_count": self._request_count,
                "error_count": self._error_count,
                "notification_count": self._notification_count,
                "method_counts": dict(self._method_counts),
                "method_errors": dict(self._method_errors),
                "total_latency_ms": round(self._total_latency_ms, 3),
                "average_latency_ms": round(average, 3),
            }

    def reset(self) -> None:
        with self._lock:
            self._reset()


# =============================================================================
# Message Processor
# =============================================================================


class MessageProcessor:
    """
    Validates, authorizes and dispatches JSON-RPC messages.

    Example:
        >>> processor = MessageProcessor(registry, config)
        >>> response = await processor.process_message(
        ...     connection, '{"jsonrpc":"2.0","id":1,"method":"ping"}'
        ... )
        >>> response
        '{"jsonrpc":"2.0","id":1,"result":{}}'
    """

    def __init__(
        self,
        registry: ToolProviderRegistry,
        config: ServerConfig,
        auth_provider: AuthenticationProvider | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        """
        Initialize the processor.

        Args:
            registry: Tool provider registry used for tools/list and tools/call.
            config: Configuration snapshot (replaced by ``update_config``).
            auth_provider: Provider consulted by the authentication gate.
            audit_logger: Optional audit sink for tool calls and auth events.
        """
        self._registry = registry
        self._config = config
        self._auth_provider = auth_provider
        self._audit_logger = audit_logger
        self._handlers: dict[str, MethodHandler] = {}
        self._handlers_lock = threading.Lock()
        self._statistics = ProcessorStatistics()

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ServerConfig:
        return self._config

    def update_config(self, config: ServerConfig) -> None:
        """Use a new configuration snapshot for subsequent messages."""
        self._config = config

    @property
    def auth_provider(self) -> AuthenticationProvider | None:
        return self._auth_provider

    def set_authentication_provider(
        self, auth_provider: AuthenticationProvider | None
    ) -> None:
        """Replace the authentication provider (None disables the gate)."""
        self._auth_provider = auth_provider

    @property
    def audit_logger(self) -> AuditLogger | None:
        return self._audit_logger

    def set_audit_logger(self, audit_logger: AuditLogger | None) -> None:
        self._audit_logger = audit_logger

    def register_method_handler(self, name: str, handler: MethodHandler) -> None:
        """
        Register a handler for a custom method, replacing any existing one.

        Args:
            name: Method name.
            handler: Handler instance.

        Raises:
            ValueError: If the name is empty or a built-in method.
        """
        if not name:
            raise ValueError("Method name must be a non-empty string")
        if name in BUILTIN_METHODS:
            raise ValueError(f"Cannot override built-in method '{name}'")

        with self._handlers_lock:
            handlers = dict(self._handlers)
            replaced = name in handlers
            handlers[name] = handler
            self._handlers = handlers

        logger.info(
            "Method handler registered",
            extra={"method": name, "replaced": replaced},
        )

    def unregister_method_handler(self, name: str) -> bool:
        """
        Remove a custom method handler. Unknown names are ignored.

        Returns:
            True if a handler was removed.
        """
        with self._handlers_lock:
            if name not in self._handlers:
                return False
            handlers = dict(self._handlers)
            del handlers[name]
            self._handlers = handlers

        logger.info("Method handler unregistered", extra={"method": name})
        return True

    def get_method_handler(self, name: str) -> MethodHandler | None:
        return self._handlers.get(name)

    @property
    def custom_methods(self) -> list[str]:
        """Registered custom method names, sorted."""
        return sorted(self._handlers)

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_statistics(self) -> dict[str, Any]:
        """Return a snapshot of the processing counters."""
        return self._statistics.snapshot()

    def reset_statistics(self) -> None:
        self._statistics.reset()

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def process_message(
        self, connection: ClientConnection, message: str | bytes
    ) -> str | None:
        """
        Process one raw message from a connection.

        Args:
            connection: The connection the message arrived on.
            message: Raw JSON-RPC message.

        Returns:
            The serialized response, or None for notifications.
        """
        started = time.perf_counter()
        request: JSONRPCRequest | None = None
        request_id: Any = None
        data: dict[str, Any] | None = None
        connection.touch()

        try:
            data = validate_message(message, self._config.max_message_size)
            request = parse_request(data)
            request_id = request.id
            response = await self._dispatch(connection, request)

        except JSONRPCError as e:
            if request is None and len(message) <= self._config.max_message_size:
                request_id = extract_request_id(message)
            response = format_error_response(request_id, e)

        except ToolHostError as e:
            response = format_error_response(request_id, tool_error_to_jsonrpc_error(e))

        except Exception as e:
            logger.exception(
                "Unexpected error processing request",
                extra={
                    "connection_id": connection.connection_id,
                    "request_id": request_id,
                    "error": str(e),
                },
            )
            response = format_error_response(
                request_id,
                create_internal_error(
                    message=f"Internal server error: {type(e).__name__}",
                    details={"exception": str(e)},
                ),
            )

        finally:
            connection.touch()

        if request is not None:
            notification = request.is_notification
        else:
            # a well-formed envelope without an id whose params were rejected
            notification = data is not None and data.get("id") is None
        self._statistics.record(
            self._method_key(request),
            success=not response.is_error,
            latency_ms=(time.perf_counter() - started) * 1000,
            notification=notification,
        )

        if response.is_error:
            logger.debug(
                "Request failed",
                extra={
                    "connection_id": connection.connection_id,
                    "request_id": request_id,
                    "method": request.method if request else None,
                    "code": response.error.code if response.error else None,
                },
            )

        if notification:
            return None
        return self._serialize(response)

    def _serialize(self, response: JSONRPCResponse) -> str:
        try:
            return response.to_json()
        except (TypeError, ValueError) as e:
            logger.error(
                "Failed to serialize response",
                extra={"request_id": response.id, "error": str(e)},
            )
            return format_error_response(
                response.id,
                create_internal_error("Internal server error: unserializable result"),
            ).to_json()

    def _method_key(self, request: JSONRPCRequest | None) -> str:
        if request is None:
            return UNKNOWN_METHOD_KEY
        if request.method in BUILTIN_METHODS or request.method in self._handlers:
            return request.method
        return UNKNOWN_METHOD_KEY

    async def _dispatch(
        self, connection: ClientConnection, request: JSONRPCRequest
    ) -> JSONRPCResponse:
        method = request.method

        self._check_initialized(connection, method)
        self._check_access(connection, request)

        if method == METHOD_INITIALIZE:
            return format_success_response(
                request.id, self._handle_initialize(connection, request)
            )
        if method == METHOD_INITIALIZED:
            connection.metadata["client_ready"] = True
            return format_success_response(request.id, {})
        if method == METHOD_PING:
            return format_success_response(request.id, {})
        if method == METHOD_TOOLS_LIST:
            return format_success_response(request.id, self._handle_tools_list())
        if method == METHOD_TOOLS_CALL:
            result = await self._handle_tools_call(connection, request)
            return format_success_response(request.id, result)

        return await self._handle_custom(connection, request)

    # -------------------------------------------------------------------------
    # Gates
    # -------------------------------------------------------------------------

    def _check_initialized(self, connection: ClientConnection, method: str) -> None:
        if not self._config.require_initialize or connection.initialized:
            return
        if method in PRE_INITIALIZE_METHODS:
            return
        raise NotInitializedError(
            message=f"Session not initialized: call 'initialize' before '{method}'",
            details={"method": method},
        )

    def _check_access(
        self, connection: ClientConnection, request: JSONRPCRequest
    ) -> None:
        if not self._config.enable_authentication:
            return
        method = request.method
        if method in self._config.auth_exempt_methods:
            return

        provider = self._auth_provider
        if provider is None:
            return

        if connection.authenticated and connection.credentials:
            if not provider.validate_token(connection.credentials):
                connection.authenticated = False
                self._audit_auth(connection, "credentials_expired", success=False)
            elif provider.get_identity(connection.credentials) is None:
                connection.authenticated = False
                logger.debug(
                    "Session ended, re-authenticating",
                    extra={"connection_id": connection.connection_id},
                )

        if not connection.authenticated and not self.authenticate_connection(connection):
            raise UnauthenticatedError(
                message=f"Authentication required for '{method}'",
                details={"method": method},
            )

        resource = None
        if method == METHOD_TOOLS_CALL:
            name = request.params.get("name")
            resource = name if isinstance(name, str) else None

        if not provider.authorize(connection.credentials, method, resource):
            self._audit_auth(
                connection,
                "permission_denied",
                success=False,
                details={"method": method, "resource": resource},
            )
            raise PermissionDeniedError(
                message=f"Not authorized to call '{resource or method}'",
                details={"method": method, "resource": resource},
            )

    def authenticate_connection(
        self, connection: ClientConnection, credentials: str | None = None
    ) -> bool:
        """
        Authenticate a connection with its (or the given) credentials.

        On success the connection is marked authenticated and the identity is
        recorded in its metadata.

        Args:
            connection: Connection to authenticate.
            credentials: Replacement credentials; the connection's own are
                used when omitted.

        Returns:
            True if the provider accepted the credentials.
        """
        if credentials is not None:
            connection.set_credentials(credentials)

        provider = self._auth_provider
        if provider is None or not connection.credentials:
            self._audit_auth(connection, "auth_failure", success=False)
            return False

        if not provider.authenticate(connection.credentials, connection.client_info()):
            self._audit_auth(connection, "auth_failure", success=False)
            return False

        connection.authenticated = True
        identity = provider.get_identity(connection.credentials)
        if identity is not None:
            connection.metadata["user_id"] = identity.user_id
            connection.metadata["role"] = identity.role
        self._audit_auth(connection, "auth_success", success=True)
        return True

    def _audit_auth(
        self,
        connection: ClientConnection,
        event_type: str,
        success: bool,
        details: dict[str, Any] | None = None,
    ) -> None:
        if self._audit_logger is None:
            return
        self._audit_logger.log_auth_event(
            event_type=event_type,
            success=success,
            user_id=connection.metadata.get("user_id"),
            source_ip=connection.remote_address or None,
            details={"connection_id": connection.connection_id, **(details or {})},
        )

    # -------------------------------------------------------------------------
    # Built-in methods
    # -------------------------------------------------------------------------

    def _handle_initialize(
        self, connection: ClientConnection, request: JSONRPCRequest
    ) -> dict[str, Any]:
        requested = request.params.get("protocolVersion")
        if requested in SUPPORTED_PROTOCOL_VERSIONS:
            version = requested
        else:
            version = LATEST_PROTOCOL_VERSION

        client_info = request.params.get("clientInfo")
        connection.metadata["initialized"] = True
        connection.metadata["protocol_version"] = version
        if isinstance(client_info, dict):
            connection.metadata["client_info"] = client_info

        capabilities: dict[str, Any] = {"tools": {"listChanged": False}}
        custom_methods = self.custom_methods
        if custom_methods:
            capabilities["experimental"] = {"methods": custom_methods}

        logger.info(
            "Session initialized",
            extra={
                "connection_id": connection.connection_id,
                "requested_version": requested,
                "protocol_version": version,
            },
        )
        return {
            "protocolVersion": version,
            "capabilities": capabilities,
            "serverInfo": {
                "name": self._config.server_name,
                "version": self._config.version,
            },
        }

    def _handle_tools_list(self) -> dict[str, Any]:
        return {"tools": [tool.to_dict() for tool in self._registry.get_all_tools()]}

    async def _handle_tools_call(
        self, connection: ClientConnection, request: JSONRPCRequest
    ) -> dict[str, Any]:
        params = request.params
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidParamsError(
                message="Invalid params: 'name' is required and must be a string",
                details={"method": METHOD_TOOLS_CALL},
            )

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidParamsError(
                message="Invalid params: 'arguments' must be an object",
                details={"method": METHOD_TOOLS_CALL, "tool": name},
            )

        validation = self._registry.validate_tool(name, arguments)
        if not validation:
            raise validation.to_error()

        timeout = connection.request_timeout_seconds
        started = time.perf_counter()
        try:
            contents = await asyncio.wait_for(
                self._registry.execute_tool(name, arguments), timeout=timeout
            )
        except TimeoutError as e:
            error = ToolTimeoutError(
                message=f"Tool '{name}' timed out after {timeout}s",
                details={"tool": name, "timeout_seconds": timeout},
            )
            self._audit_tool_call(connection, request, name, arguments, started, error)
            raise error from e
        except ToolHostError as e:
            self._audit_tool_call(connection, request, name, arguments, started, e)
            raise

        self._audit_tool_call(connection, request, name, arguments, started, None)
        return {
            "content": [content.to_dict() for content in contents],
            "isError": False,
        }

    def _audit_tool_call(
        self,
        connection: ClientConnection,
        request: JSONRPCRequest,
        name: str,
        arguments: dict[str, Any],
        started: float,
        error: ToolHostError | None,
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Tool call completed" if error is None else "Tool call failed",
            extra={
                "connection_id": connection.connection_id,
                "request_id": request.id,
                "tool": name,
                "duration_ms": round(duration_ms, 2),
                "error_code": error.error_code if error else None,
            },
        )
        if self._audit_logger is None:
            return
        self._audit_logger.log_tool_call(
            connection,
            name,
            status="success" if error is None else "error",
            error_code=error.error_code if error else None,
            params=arguments,
            duration_ms=duration_ms,
            request_id=request.id,
        )

    # -------------------------------------------------------------------------
    # Custom methods
    # -------------------------------------------------------------------------

    async def _handle_custom(
        self, connection: ClientConnection, request: JSONRPCRequest
    ) -> JSONRPCResponse:
        method = request.method
        handler = self._handlers.get(method)
        if handler is None or not handler.can_handle(request):
            raise create_method_not_found_error(method)

        timeout = connection.request_timeout_seconds
        try:
            result = await asyncio.wait_for(
                handler.handle_method(connection, request), timeout=timeout
            )
        except TimeoutError as e:
            raise ToolTimeoutError(
                message=f"Method '{method}' timed out after {timeout}s",
                details={"method": method, "timeout_seconds": timeout},
            ) from e
        except (ToolHostError, JSONRPCError):
            raise
        except Exception as e:
            logger.warning(
                "Method handler failed",
                extra={"method": method, "error": str(e)},
            )
            raise InternalError(
                message=f"Method '{method}' failed: {e}",
                details={"method": method, "exception_type": type(e).__name__},
            ) from e

        if isinstance(result, str):
            try:
                return format_raw_response(request.id, result)
            except ValueError as e:
                raise InternalError(
                    message=f"Method '{method}' returned malformed JSON",
                    details={"method": method},
                ) from e
        return format_success_response(request.id, result)

