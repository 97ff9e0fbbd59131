"""
Tests for the message processor.

This test module validates:
- Envelope errors become JSON-RPC error responses with the recovered id
- The initialize handshake and version negotiation
- tools/list and tools/call through the registry
- Argument validation, tool failures and execution timeouts
- The authentication gate and per-tool authorization
- Custom method handlers (raw JSON pass-through, failures, timeouts)
- Notifications, activity tracking and statistics
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest import mock

import pytest

from mcp_toolhost.config import AuthConfig, ServerConfig
from mcp_toolhost.connection import ClientConnection
from mcp_toolhost.errors import InvalidParamsError
from mcp_toolhost.models import Content, Tool
from mcp_toolhost.processor import (
    LATEST_PROTOCOL_VERSION,
    UNKNOWN_METHOD_KEY,
    MessageProcessor,
    MethodHandler,
)
from mcp_toolhost.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    JSONRPCRequest,
)
from mcp_toolhost.providers import EchoToolProvider, ToolProvider, ToolProviderRegistry
from mcp_toolhost.security.audit_logger import AuditLogger
from mcp_toolhost.security.auth import StaticTokenAuthProvider
from mcp_toolhost.security.rbac import RBACEnforcer

# =============================================================================
# Test Doubles
# =============================================================================


class SlowProvider(ToolProvider):
    """Provider whose tools block or fail."""

    provider_id = "slow"

    def get_tools(self) -> list[Tool]:
        return [Tool("sleepy", "Sleep for a while"), Tool("crashy", "Always fails")]

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> Content:
        if name == "crashy":
            raise RuntimeError("sensor offline")
        await asyncio.sleep(10)
        return Content.text_content("woke up")


class StaticResultHandler(MethodHandler):
    """Custom handler returning a fixed result."""

    def __init__(self, result: Any = None, error: Exception | None = None, delay: float = 0) -> None:
        self.result = result
        self.error = error
        self.delay = delay
        self.requests: list[JSONRPCRequest] = []

    async def handle_method(
        self, connection: ClientConnection, request: JSONRPCRequest
    ) -> Any:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class ActivityRecordingHandler(MethodHandler):
    """Handler that records the connection's last activity while it runs."""

    def __init__(self) -> None:
        self.seen: list[float] = []

    async def handle_method(
        self, connection: ClientConnection, request: JSONRPCRequest
    ) -> Any:
        self.seen.append(connection.last_activity_at)
        return {}


class DecliningHandler(MethodHandler):
    """Handler that declines every request."""

    def can_handle(self, request: JSONRPCRequest) -> bool:
        return False

    async def handle_method(
        self, connection: ClientConnection, request: JSONRPCRequest
    ) -> Any:
        raise AssertionError("must not be called")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config() -> ServerConfig:
    return ServerConfig(server_name="test-host", version="9.9.9")


@pytest.fixture
def registry(config: ServerConfig) -> ToolProviderRegistry:
    registry = ToolProviderRegistry(config)
    registry.register(EchoToolProvider())
    return registry


@pytest.fixture
def processor(registry: ToolProviderRegistry, config: ServerConfig) -> MessageProcessor:
    return MessageProcessor(registry, config)


@pytest.fixture
def connection() -> ClientConnection:
    return ClientConnection("127.0.0.1", 40000)


@pytest.fixture
def auth_processor(registry: ToolProviderRegistry) -> MessageProcessor:
    """Processor with the authentication gate enabled."""
    config = ServerConfig(enable_authentication=True)
    provider = StaticTokenAuthProvider(
        {"viewer-token": ("victor", "viewer"), "admin-token": ("ada", "admin")},
        rbac=RBACEnforcer(tool_roles={"reverse": "admin"}),
    )
    return MessageProcessor(registry, config, auth_provider=provider)


def _request(method: str, request_id: Any = 1, params: Any = None) -> str:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if request_id is not None:
        message["id"] = request_id
    if params is not None:
        message["params"] = params
    return json.dumps(message)


async def _call(
    processor: MessageProcessor,
    connection: ClientConnection,
    method: str,
    request_id: Any = 1,
    params: Any = None,
) -> dict[str, Any]:
    response = await processor.process_message(connection, _request(method, request_id, params))
    assert response is not None
    return json.loads(response)


async def _initialize(processor: MessageProcessor, connection: ClientConnection) -> None:
    response = await _call(processor, connection, "initialize", "init")
    assert "result" in response


# =============================================================================
# Tests for Envelope Errors
# =============================================================================


class TestEnvelopeErrors:
    """Tests for malformed messages."""

    @pytest.mark.asyncio
    async def test_parse_error_has_null_id(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that malformed JSON yields a parse error with id null."""
        response = json.loads(await processor.process_message(connection, "{not json"))

        assert response["id"] is None
        assert response["error"]["code"] == PARSE_ERROR
        assert "result" not in response

    @pytest.mark.asyncio
    async def test_invalid_request_recovers_id(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that the id is echoed when the envelope is invalid."""
        response = json.loads(
            await processor.process_message(connection, '{"jsonrpc":"1.0","id":"x","method":"ping"}')
        )

        assert response["id"] == "x"
        assert response["error"]["code"] == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_batch_rejected(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that batches are answered with a single error."""
        response = json.loads(
            await processor.process_message(connection, "[" + _request("ping") + "]")
        )
        assert response["error"]["code"] == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_oversized_message(
        self, registry: ToolProviderRegistry, connection: ClientConnection
    ) -> None:
        """Test that oversized messages are rejected without parsing."""
        processor = MessageProcessor(registry, ServerConfig(max_message_size=64))
        message = _request("ping", params={"padding": "x" * 200})

        response = json.loads(await processor.process_message(connection, message))

        assert response["error"]["code"] == INVALID_REQUEST
        assert response["id"] is None

    @pytest.mark.asyncio
    async def test_unknown_method(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that unknown methods are method-not-found."""
        await _initialize(processor, connection)
        response = await _call(processor, connection, "resources/list", "r1")

        assert response["id"] == "r1"
        assert response["error"]["code"] == METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_activity_recorded_on_errors(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that even failed messages count as activity."""
        with mock.patch.object(connection, "touch") as touch:
            await processor.process_message(connection, "{oops")
        touch.assert_called()

    @pytest.mark.asyncio
    async def test_activity_recorded_on_arrival(
        self, registry: ToolProviderRegistry
    ) -> None:
        """Test that a message counts as activity before it is handled."""
        clock = [1000.0]
        connection = ClientConnection("127.0.0.1", 40001, clock=lambda: clock[0])
        processor = MessageProcessor(registry, ServerConfig(require_initialize=False))
        handler = ActivityRecordingHandler()
        processor.register_method_handler("debug/activity", handler)

        clock[0] = 1500.0
        await _call(processor, connection, "debug/activity")

        assert handler.seen == [1500.0]

    @pytest.mark.asyncio
    async def test_notification_with_bad_params_is_silent(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that a notification with scalar params gets no response."""
        message = '{"jsonrpc":"2.0","method":"ping","params":5}'

        assert await processor.process_message(connection, message) is None
        assert processor.get_statistics()["notification_count"] == 1

    @pytest.mark.asyncio
    async def test_request_with_bad_params_is_answered(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that the same params error on a request is answered with its id."""
        message = '{"jsonrpc":"2.0","id":4,"method":"ping","params":5}'

        response = json.loads(await processor.process_message(connection, message))

        assert response["id"] == 4
        assert response["error"]["code"] == INVALID_PARAMS


# =============================================================================
# Tests for the Handshake
# =============================================================================


class TestInitialize:
    """Tests for initialize, ping and the handshake gate."""

    @pytest.mark.asyncio
    async def test_initialize_result(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test the initialize response and session metadata."""
        response = await _call(
            processor,
            connection,
            "initialize",
            params={"protocolVersion": "2024-11-05", "clientInfo": {"name": "cli"}},
        )

        result = response["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert result["serverInfo"] == {"name": "test-host", "version": "9.9.9"}
        assert result["capabilities"]["tools"] == {"listChanged": False}
        assert "experimental" not in result["capabilities"]
        assert connection.initialized
        assert connection.metadata["client_info"] == {"name": "cli"}

    @pytest.mark.asyncio
    async def test_unknown_version_negotiates_latest(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that unsupported versions get the newest supported one."""
        response = await _call(
            processor, connection, "initialize", params={"protocolVersion": "1999-01-01"}
        )
        assert response["result"]["protocolVersion"] == LATEST_PROTOCOL_VERSION

    @pytest.mark.asyncio
    async def test_custom_methods_advertised(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that custom methods appear under experimental capabilities."""
        processor.register_method_handler("debug/echo", StaticResultHandler({}))

        response = await _call(processor, connection, "initialize")

        assert response["result"]["capabilities"]["experimental"] == {
            "methods": ["debug/echo"]
        }

    @pytest.mark.asyncio
    async def test_ping_before_initialize(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that ping is allowed before the handshake."""
        response = await processor.process_message(connection, _request("ping", 5))
        assert response == '{"jsonrpc":"2.0","id":5,"result":{}}'

    @pytest.mark.asyncio
    async def test_tools_list_before_initialize(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that session methods require initialize first."""
        response = await _call(processor, connection, "tools/list")

        assert response["error"]["code"] == INVALID_REQUEST
        assert response["error"]["data"]["error_code"] == "not_initialized"

    @pytest.mark.asyncio
    async def test_handshake_can_be_disabled(
        self, registry: ToolProviderRegistry, connection: ClientConnection
    ) -> None:
        """Test require_initialize=False."""
        processor = MessageProcessor(registry, ServerConfig(require_initialize=False))
        response = await _call(processor, connection, "tools/list")
        assert "result" in response

    @pytest.mark.asyncio
    async def test_initialized_notification(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that notifications get no response."""
        await _initialize(processor, connection)

        response = await processor.process_message(
            connection, _request("notifications/initialized", request_id=None)
        )

        assert response is None
        assert connection.metadata["client_ready"] is True

    @pytest.mark.asyncio
    async def test_failed_notification_is_silent(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that notifications never produce a response, even on error."""
        response = await processor.process_message(
            connection, _request("no/such/method", request_id=None)
        )
        assert response is None


# =============================================================================
# Tests for Tools
# =============================================================================


class TestTools:
    """Tests for tools/list and tools/call."""

    @pytest.mark.asyncio
    async def test_list_then_call(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test listing the catalog and calling a tool."""
        await _initialize(processor, connection)

        listing = await _call(processor, connection, "tools/list", "1")
        names = [tool["name"] for tool in listing["result"]["tools"]]
        assert names == ["echo", "reverse"]
        assert listing["result"]["tools"][0]["inputSchema"]["type"] == "object"

        response = await _call(
            processor,
            connection,
            "tools/call",
            "2",
            {"name": "echo", "arguments": {"message": "hi"}},
        )
        assert response == {
            "jsonrpc": "2.0",
            "id": "2",
            "result": {"content": [{"type": "text", "text": "hi"}], "isError": False},
        }

    @pytest.mark.asyncio
    async def test_single_provider_catalog(
        self, config: ServerConfig, connection: ClientConnection
    ) -> None:
        """Test a registry holding exactly one echo tool."""

        class OnlyEcho(EchoToolProvider):
            def get_tools(self) -> list[Tool]:
                return super().get_tools()[:1]

        registry = ToolProviderRegistry(config)
        registry.register(OnlyEcho())
        processor = MessageProcessor(registry, config)
        await _initialize(processor, connection)

        listing = await _call(processor, connection, "tools/list")
        assert [tool["name"] for tool in listing["result"]["tools"]] == ["echo"]

    @pytest.mark.asyncio
    async def test_missing_tool(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that calling an unregistered tool is method-not-found."""
        await _initialize(processor, connection)

        response = await _call(processor, connection, "tools/call", "1", {"name": "missing"})

        assert response["id"] == "1"
        assert response["error"]["code"] == METHOD_NOT_FOUND
        assert "result" not in response

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params",
        [
            {},
            {"name": 5},
            {"name": "echo", "arguments": "message=hi"},
            {"name": "echo", "arguments": {}},
            {"name": "echo", "arguments": {"message": 1}},
        ],
    )
    async def test_invalid_params(
        self,
        processor: MessageProcessor,
        connection: ClientConnection,
        params: dict[str, Any],
    ) -> None:
        """Test malformed tools/call parameters."""
        await _initialize(processor, connection)

        response = await _call(processor, connection, "tools/call", 1, params)

        assert response["error"]["code"] == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_provider_failure(
        self,
        registry: ToolProviderRegistry,
        processor: MessageProcessor,
        connection: ClientConnection,
    ) -> None:
        """Test that provider exceptions become internal errors."""
        registry.register(SlowProvider())
        await _initialize(processor, connection)

        response = await _call(processor, connection, "tools/call", 1, {"name": "crashy"})

        assert response["error"]["code"] == INTERNAL_ERROR
        assert "sensor offline" in response["error"]["message"]

    @pytest.mark.asyncio
    async def test_tool_timeout(
        self,
        registry: ToolProviderRegistry,
        processor: MessageProcessor,
        connection: ClientConnection,
    ) -> None:
        """Test that slow tools are cut off at the request timeout."""
        registry.register(SlowProvider())
        connection.request_timeout_seconds = 0.05
        await _initialize(processor, connection)

        response = await _call(processor, connection, "tools/call", 1, {"name": "sleepy"})

        assert response["error"]["code"] == INTERNAL_ERROR
        assert response["error"]["data"]["error_code"] == "timeout"

    @pytest.mark.asyncio
    async def test_tool_calls_are_audited(
        self,
        registry: ToolProviderRegistry,
        config: ServerConfig,
        connection: ClientConnection,
    ) -> None:
        """Test that successful and failed calls reach the audit logger."""
        audit = mock.Mock(spec=AuditLogger)
        processor = MessageProcessor(registry, config, audit_logger=audit)
        await _initialize(processor, connection)

        await _call(processor, connection, "tools/call", 1, {"name": "echo", "arguments": {"message": "a"}})
        await _call(processor, connection, "tools/call", 2, {"name": "missing"})

        audit.log_tool_call.assert_called_once()
        kwargs = audit.log_tool_call.call_args.kwargs
        assert kwargs["status"] == "success"
        assert kwargs["request_id"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_keep_their_ids(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that concurrent requests each get their own response."""
        await _initialize(processor, connection)

        responses = await asyncio.gather(
            *(
                _call(
                    processor,
                    connection,
                    "tools/call",
                    f"req-{i}",
                    {"name": "echo", "arguments": {"message": str(i)}},
                )
                for i in range(20)
            )
        )

        for i, response in enumerate(responses):
            assert response["id"] == f"req-{i}"
            assert response["result"]["content"][0]["text"] == str(i)


# =============================================================================
# Tests for Authentication
# =============================================================================


class TestAuthenticationGate:
    """Tests for the authentication gate and authorization."""

    @pytest.mark.asyncio
    async def test_unauthenticated_rejected_then_allowed(
        self, auth_processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test rejection before authentication and success after."""
        await _initialize(auth_processor, connection)

        rejected = await _call(auth_processor, connection, "tools/list")
        assert rejected["error"]["code"] == INVALID_REQUEST
        assert rejected["error"]["data"]["error_code"] == "unauthenticated"

        assert auth_processor.authenticate_connection(connection, "Bearer viewer-token")
        assert connection.metadata["user_id"] == "victor"

        allowed = await _call(auth_processor, connection, "tools/list")
        assert "result" in allowed

    @pytest.mark.asyncio
    async def test_exempt_methods(
        self, auth_processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that initialize and ping bypass the gate."""
        assert "result" in await _call(auth_processor, connection, "initialize")
        assert "result" in await _call(auth_processor, connection, "ping")

    @pytest.mark.asyncio
    async def test_credentials_authenticate_on_first_use(
        self, auth_processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that attached credentials are checked on the first gated call."""
        connection.set_credentials("Bearer viewer-token")
        await _initialize(auth_processor, connection)

        response = await _call(auth_processor, connection, "tools/list")

        assert "result" in response
        assert connection.authenticated

    @pytest.mark.asyncio
    async def test_bad_credentials(
        self, auth_processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that wrong credentials are rejected."""
        assert not auth_processor.authenticate_connection(connection, "Bearer nope")
        await _initialize(auth_processor, connection)

        response = await _call(auth_processor, connection, "tools/list")
        assert response["error"]["data"]["error_code"] == "unauthenticated"

    @pytest.mark.asyncio
    async def test_tool_requires_role(
        self, auth_processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test per-tool authorization."""
        auth_processor.authenticate_connection(connection, "viewer-token")
        await _initialize(auth_processor, connection)

        denied = await _call(
            auth_processor, connection, "tools/call", 1,
            {"name": "reverse", "arguments": {"message": "abc"}},
        )
        assert denied["error"]["code"] == INVALID_REQUEST
        assert denied["error"]["data"]["error_code"] == "permission_denied"

        auth_processor.authenticate_connection(connection, "admin-token")
        allowed = await _call(
            auth_processor, connection, "tools/call", 2,
            {"name": "reverse", "arguments": {"message": "abc"}},
        )
        assert allowed["result"]["content"][0]["text"] == "cba"

    @pytest.mark.asyncio
    async def test_revoked_credentials(
        self, auth_processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that credentials that stop validating drop the session."""
        auth_processor.authenticate_connection(connection, "viewer-token")
        await _initialize(auth_processor, connection)

        with mock.patch.object(auth_processor.auth_provider, "validate_token", return_value=False):
            with mock.patch.object(auth_processor.auth_provider, "authenticate", return_value=False):
                response = await _call(auth_processor, connection, "tools/list")

        assert response["error"]["data"]["error_code"] == "unauthenticated"
        assert not connection.authenticated

    @pytest.mark.asyncio
    async def test_ended_session_reauthenticates(
        self, auth_processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that a connection whose session was ended signs in again."""
        connection.set_credentials("Bearer viewer-token")
        await _initialize(auth_processor, connection)
        assert "result" in await _call(auth_processor, connection, "tools/list", 1)

        assert auth_processor.auth_provider.logout("Bearer viewer-token")
        response = await _call(auth_processor, connection, "tools/list", 2)

        assert "result" in response
        assert connection.authenticated
        assert auth_processor.auth_provider.session_count == 1

    @pytest.mark.asyncio
    async def test_gate_disabled_ignores_provider(
        self, registry: ToolProviderRegistry, connection: ClientConnection
    ) -> None:
        """Test that a provider is not consulted when authentication is off."""
        provider = mock.Mock()
        processor = MessageProcessor(registry, ServerConfig(), auth_provider=provider)
        await _initialize(processor, connection)

        assert "result" in await _call(processor, connection, "tools/list")
        provider.authorize.assert_not_called()

    @pytest.mark.asyncio
    async def test_auth_events_audited(
        self, auth_processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that authentication outcomes reach the audit logger."""
        audit = mock.Mock(spec=AuditLogger)
        auth_processor.set_audit_logger(audit)

        auth_processor.authenticate_connection(connection, "nope")
        auth_processor.authenticate_connection(connection, "viewer-token")

        events = [c.kwargs["event_type"] for c in audit.log_auth_event.call_args_list]
        assert events == ["auth_failure", "auth_success"]


# =============================================================================
# Tests for Custom Method Handlers
# =============================================================================


class TestCustomMethods:
    """Tests for registered MethodHandlers."""

    @pytest.mark.asyncio
    async def test_raw_json_passthrough(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that string results are emitted verbatim."""
        processor.register_method_handler("debug/raw", StaticResultHandler('{"a": [1, 2]}'))
        await _initialize(processor, connection)

        response = await processor.process_message(connection, _request("debug/raw", 3))

        assert response == '{"jsonrpc":"2.0","id":3,"result":{"a": [1, 2]}}'

    @pytest.mark.asyncio
    async def test_object_result(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that non-string results are serialized."""
        handler = StaticResultHandler({"ok": True})
        processor.register_method_handler("debug/obj", handler)
        await _initialize(processor, connection)

        response = await _call(processor, connection, "debug/obj", 1, [1, 2])

        assert response["result"] == {"ok": True}
        assert handler.requests[0].params == {"_args": [1, 2]}

    @pytest.mark.asyncio
    async def test_malformed_raw_json(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that malformed raw results become internal errors."""
        processor.register_method_handler("debug/bad", StaticResultHandler("{nope"))
        await _initialize(processor, connection)

        response = await _call(processor, connection, "debug/bad")
        assert response["error"]["code"] == INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_handler_exceptions(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that ToolHostErrors keep their code and others become internal."""
        processor.register_method_handler(
            "debug/params", StaticResultHandler(error=InvalidParamsError("bad input"))
        )
        processor.register_method_handler(
            "debug/crash", StaticResultHandler(error=KeyError("k"))
        )
        await _initialize(processor, connection)

        assert (await _call(processor, connection, "debug/params"))["error"]["code"] == INVALID_PARAMS
        crash = await _call(processor, connection, "debug/crash")
        assert crash["error"]["code"] == INTERNAL_ERROR
        assert crash["error"]["message"].startswith("Method 'debug/crash' failed")

    @pytest.mark.asyncio
    async def test_handler_timeout(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that custom handlers share the request timeout."""
        processor.register_method_handler("debug/slow", StaticResultHandler({}, delay=5))
        connection.request_timeout_seconds = 0.05
        await _initialize(processor, connection)

        response = await _call(processor, connection, "debug/slow")
        assert response["error"]["data"]["error_code"] == "timeout"

    @pytest.mark.asyncio
    async def test_declining_handler(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that a handler refusing the request yields method-not-found."""
        processor.register_method_handler("debug/no", DecliningHandler())
        await _initialize(processor, connection)

        response = await _call(processor, connection, "debug/no")
        assert response["error"]["code"] == METHOD_NOT_FOUND

    def test_builtin_names_protected(self, processor: MessageProcessor) -> None:
        """Test that built-in methods cannot be overridden."""
        with pytest.raises(ValueError):
            processor.register_method_handler("tools/call", StaticResultHandler())
        with pytest.raises(ValueError):
            processor.register_method_handler("", StaticResultHandler())

    def test_replace_and_unregister(self, processor: MessageProcessor) -> None:
        """Test handler replacement and removal."""
        first, second = StaticResultHandler(1), StaticResultHandler(2)
        processor.register_method_handler("debug/x", first)
        processor.register_method_handler("debug/x", second)

        assert processor.get_method_handler("debug/x") is second
        assert processor.custom_methods == ["debug/x"]
        assert processor.unregister_method_handler("debug/x") is True
        assert processor.unregister_method_handler("debug/x") is False


# =============================================================================
# Tests for Statistics
# =============================================================================


class TestStatistics:
    """Tests for processor statistics."""

    @pytest.mark.asyncio
    async def test_counts(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test request, error and per-method counters."""
        await _initialize(processor, connection)
        await _call(processor, connection, "ping")
        await _call(processor, connection, "nope/nope")
        await processor.process_message(connection, "{bad")
        await processor.process_message(
            connection, _request("notifications/initialized", request_id=None)
        )

        stats = processor.get_statistics()
        assert stats["request_count"] == 5
        assert stats["error_count"] == 2
        assert stats["notification_count"] == 1
        assert stats["method_counts"] == {
            "initialize": 1,
            "ping": 1,
            UNKNOWN_METHOD_KEY: 2,
            "notifications/initialized": 1,
        }
        assert stats["method_errors"] == {UNKNOWN_METHOD_KEY: 2}
        assert stats["average_latency_ms"] >= 0

    @pytest.mark.asyncio
    async def test_reset(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that reset zeroes the counters."""
        await _call(processor, connection, "ping")
        processor.reset_statistics()
        assert processor.get_statistics()["request_count"] == 0


# =============================================================================
# Tests for Configuration Updates
# =============================================================================


class TestConfigUpdates:
    """Tests for swapping the configuration snapshot."""

    @pytest.mark.asyncio
    async def test_update_config_enables_gate(
        self, processor: MessageProcessor, connection: ClientConnection
    ) -> None:
        """Test that new snapshots apply to subsequent messages."""
        processor.set_authentication_provider(
            StaticTokenAuthProvider({"t": ("u", "viewer")})
        )
        await _initialize(processor, connection)
        assert "result" in await _call(processor, connection, "tools/list")

        processor.update_config(
            ServerConfig(enable_authentication=True, auth=AuthConfig())
        )

        response = await _call(processor, connection, "tools/list")
        assert response["error"]["data"]["error_code"] == "unauthenticated"
