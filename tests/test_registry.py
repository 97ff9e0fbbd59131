"""
Tests for the tool provider registry.

This test module validates:
- Provider registration, initialization failures and tool collisions
- Name resolution and catalog ordering
- Unregistration, refresh (name ownership kept across refreshes) and cleanup
- Argument validation against tool input schemas
- Tool execution, output normalization and error wrapping
- Execution statistics
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest

from mcp_toolhost.config import ServerConfig
from mcp_toolhost.errors import (
    InternalError,
    InvalidParamsError,
    MethodNotFoundError,
    ProviderInitializationError,
    ToolCollisionError,
)
from mcp_toolhost.models import Content, Tool
from mcp_toolhost.providers import EchoToolProvider, ToolProvider, ToolProviderRegistry

# =============================================================================
# Test Providers
# =============================================================================


class FakeProvider(ToolProvider):
    """Configurable provider used across registry tests."""

    def __init__(
        self,
        provider_id: str,
        tool_names: Sequence[str] = ("alpha",),
        *,
        result: Any = None,
        fail_init: bool = False,
        fail_cleanup: bool = False,
        error: Exception | None = None,
        schema: dict[str, Any] | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.tool_names = list(tool_names)
        self.result = result
        self.fail_init = fail_init
        self.fail_cleanup = fail_cleanup
        self.error = error
        self.schema = schema or {"type": "object"}
        self.initialized_with: ServerConfig | None = None
        self.cleanup_calls = 0
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def initialize(self, config: ServerConfig | None) -> None:
        if self.fail_init:
            raise RuntimeError("device unavailable")
        self.initialized_with = config

    def get_tools(self) -> list[Tool]:
        return [Tool(name, f"{name} tool", self.schema) for name in self.tool_names]

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        self.calls.append((name, arguments))
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return Content.text_content(f"{self.provider_id}:{name}")

    def cleanup(self) -> None:
        self.cleanup_calls += 1
        if self.fail_cleanup:
            raise RuntimeError("cleanup failed")


@pytest.fixture
def registry() -> ToolProviderRegistry:
    """Registry with a configuration snapshot."""
    return ToolProviderRegistry(ServerConfig(server_name="registry-test"))


# =============================================================================
# Tests for Registration
# =============================================================================


class TestRegistration:
    """Tests for provider registration."""

    def test_register_indexes_tools(self, registry: ToolProviderRegistry) -> None:
        """Test that registered tools become resolvable."""
        provider = FakeProvider("p1", ["alpha", "beta"])
        registry.register(provider)

        assert "alpha" in registry
        assert len(registry) == 2
        assert registry.find_provider_for_tool("beta") is provider
        assert registry.provider_ids == ["p1"]

    def test_initialize_receives_config(self, registry: ToolProviderRegistry) -> None:
        """Test that providers are initialized with the registry config."""
        provider = FakeProvider("p1")
        registry.register(provider)
        assert provider.initialized_with is registry.config

    def test_catalog_order(self, registry: ToolProviderRegistry) -> None:
        """Test provider order, then declaration order."""
        registry.register(FakeProvider("p1", ["zeta", "alpha"]))
        registry.register(FakeProvider("p2", ["beta"]))

        assert [t.name for t in registry.get_all_tools()] == ["zeta", "alpha", "beta"]

    def test_duplicate_provider_id(self, registry: ToolProviderRegistry) -> None:
        """Test that a provider id can only be registered once."""
        registry.register(FakeProvider("p1", ["alpha"]))
        with pytest.raises(ValueError):
            registry.register(FakeProvider("p1", ["beta"]))
        assert "beta" not in registry

    def test_missing_provider_id(self, registry: ToolProviderRegistry) -> None:
        """Test that providers need an id."""
        with pytest.raises(ValueError):
            registry.register(FakeProvider(""))

    def test_initialization_failure(self, registry: ToolProviderRegistry) -> None:
        """Test that a failing initialize aborts the registration."""
        with pytest.raises(ProviderInitializationError) as exc_info:
            registry.register(FakeProvider("broken", fail_init=True))

        assert "device unavailable" in exc_info.value.message
        assert registry.provider_ids == []
        assert len(registry) == 0

    def test_collision_with_existing_tool(self, registry: ToolProviderRegistry) -> None:
        """Test that the first provider keeps a colliding name."""
        first = FakeProvider("p1", ["alpha"])
        second = FakeProvider("p2", ["alpha", "beta"])
        registry.register(first)

        with pytest.raises(ToolCollisionError) as exc_info:
            registry.register(second)

        assert exc_info.value.details["existing_provider"] == "p1"
        assert registry.find_provider_for_tool("alpha") is first
        assert "beta" not in registry
        assert second.cleanup_calls == 1

    def test_collision_within_provider(self, registry: ToolProviderRegistry) -> None:
        """Test that a provider may not declare a name twice."""
        with pytest.raises(ToolCollisionError):
            registry.register(FakeProvider("p1", ["alpha", "alpha"]))
        assert len(registry) == 0


# =============================================================================
# Tests for Unregister, Refresh and Cleanup
# =============================================================================


class TestLifecycle:
    """Tests for unregister, refresh and cleanup."""

    def test_unregister_removes_tools(self, registry: ToolProviderRegistry) -> None:
        """Test that all of a provider's tools disappear."""
        provider = FakeProvider("p1", ["alpha", "beta"])
        registry.register(provider)

        assert registry.unregister("p1") is True
        assert len(registry) == 0
        assert registry.get_provider("p1") is None
        assert provider.cleanup_calls == 1

    def test_unregister_unknown(self, registry: ToolProviderRegistry) -> None:
        """Test that unknown ids are ignored."""
        assert registry.unregister("missing") is False

    def test_unregister_frees_names(self, registry: ToolProviderRegistry) -> None:
        """Test that a freed name can be claimed by another provider."""
        registry.register(FakeProvider("p1", ["alpha"]))
        registry.unregister("p1")

        replacement = FakeProvider("p2", ["alpha"])
        registry.register(replacement)
        assert registry.find_provider_for_tool("alpha") is replacement

    def test_refresh_picks_up_new_tools(self, registry: ToolProviderRegistry) -> None:
        """Test that refresh re-reads catalogs."""
        provider = FakeProvider("p1", ["alpha"])
        registry.register(provider)
        provider.tool_names = ["alpha", "gamma"]

        assert registry.refresh_tool_catalog() == 2
        assert "gamma" in registry

    def test_refresh_drops_colliding_tool(self, registry: ToolProviderRegistry) -> None:
        """Test that a later provider cannot take a name during refresh."""
        first = FakeProvider("p1", ["alpha"])
        second = FakeProvider("p2", ["beta"])
        registry.register(first)
        registry.register(second)
        second.tool_names = ["beta", "alpha"]

        registry.refresh_tool_catalog()

        assert registry.find_provider_for_tool("alpha") is first
        assert [t.name for t in registry.get_all_tools()] == ["alpha", "beta"]

    def test_refresh_keeps_existing_owner(self, registry: ToolProviderRegistry) -> None:
        """Test that an earlier provider cannot take a later provider's name."""
        first = FakeProvider("p1", ["alpha"])
        second = FakeProvider("p2", ["beta"])
        registry.register(first)
        registry.register(second)
        first.tool_names = ["alpha", "beta"]

        assert registry.refresh_tool_catalog() == 2
        assert registry.find_provider_for_tool("beta") is second
        assert registry.find_provider_for_tool("alpha") is first

    def test_refresh_releases_dropped_name(self, registry: ToolProviderRegistry) -> None:
        """Test that a name given up by its owner can be claimed by another provider."""
        first = FakeProvider("p1", ["alpha"])
        second = FakeProvider("p2", ["beta"])
        registry.register(first)
        registry.register(second)
        first.tool_names = []
        second.tool_names = ["beta", "alpha"]

        registry.refresh_tool_catalog()

        assert registry.find_provider_for_tool("alpha") is second

    def test_cleanup_all(self, registry: ToolProviderRegistry) -> None:
        """Test that cleanup_all empties the registry."""
        ok = FakeProvider("p1", ["alpha"])
        failing = FakeProvider("p2", ["beta"], fail_cleanup=True)
        registry.register(ok)
        registry.register(failing)

        assert registry.cleanup_all() is False
        assert len(registry) == 0
        assert ok.cleanup_calls == 1
        assert failing.cleanup_calls == 1


# =============================================================================
# Tests for Validation
# =============================================================================


class TestValidateTool:
    """Tests for validate_tool."""

    @pytest.fixture
    def echo_registry(self, registry: ToolProviderRegistry) -> ToolProviderRegistry:
        """Registry with the echo provider."""
        registry.register(EchoToolProvider())
        return registry

    def test_unknown_tool(self, echo_registry: ToolProviderRegistry) -> None:
        """Test that unknown tools fail with method_not_found."""
        result = echo_registry.validate_tool("missing", {})

        assert not result
        assert result.error_code == "method_not_found"
        assert isinstance(result.to_error(), MethodNotFoundError)

    def test_existence_only(self, echo_registry: ToolProviderRegistry) -> None:
        """Test that None arguments skip the schema check."""
        assert echo_registry.validate_tool("echo")

    def test_valid_arguments(self, echo_registry: ToolProviderRegistry) -> None:
        """Test that matching arguments pass."""
        assert echo_registry.validate_tool("echo", {"message": "hi"})

    def test_missing_required_argument(self, echo_registry: ToolProviderRegistry) -> None:
        """Test that a missing required property is invalid params."""
        result = echo_registry.validate_tool("echo", {})

        assert not result
        assert result.error_code == "invalid_params"
        assert "message" in result.message
        assert isinstance(result.to_error(), InvalidParamsError)

    def test_wrong_argument_type(self, echo_registry: ToolProviderRegistry) -> None:
        """Test that a type mismatch reports its path."""
        result = echo_registry.validate_tool("echo", {"message": 5})

        assert not result
        assert result.details["path"] == "message"

    def test_json_text_arguments(self, echo_registry: ToolProviderRegistry) -> None:
        """Test that arguments may be given as JSON text."""
        assert echo_registry.validate_tool("echo", '{"message": "hi"}')
        assert not echo_registry.validate_tool("echo", "{broken")

    def test_non_object_arguments(self, echo_registry: ToolProviderRegistry) -> None:
        """Test that arguments must decode to an object."""
        result = echo_registry.validate_tool("echo", "[1, 2]")
        assert not result
        assert result.details["type"] == "list"

    def test_invalid_schema_skips_checks(self, registry: ToolProviderRegistry) -> None:
        """Test that a tool with an unusable schema accepts any object."""
        registry.register(
            FakeProvider("p1", ["loose"], schema={"type": "object", "required": 5})
        )
        assert registry.validate_tool("loose", {"anything": True})


# =============================================================================
# Tests for Execution
# =============================================================================


class TestExecuteTool:
    """Tests for execute_tool."""

    @pytest.mark.asyncio
    async def test_execute_returns_content_list(self, registry: ToolProviderRegistry) -> None:
        """Test that a single Content is wrapped in a list."""
        registry.register(EchoToolProvider())

        contents = await registry.execute_tool("echo", {"message": "hello"})

        assert contents == [Content.text_content("hello")]

    @pytest.mark.asyncio
    async def test_arguments_passed_through(self, registry: ToolProviderRegistry) -> None:
        """Test that the provider receives the tool name and arguments."""
        provider = FakeProvider("p1", ["alpha"])
        registry.register(provider)

        await registry.execute_tool("alpha", {"x": 1})
        await registry.execute_tool("alpha")

        assert provider.calls == [("alpha", {"x": 1}), ("alpha", {})]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("result", "expected"),
        [
            ("plain text", [Content.text_content("plain text")]),
            (
                [Content.text_content("a"), Content.text_content("b")],
                [Content.text_content("a"), Content.text_content("b")],
            ),
        ],
    )
    async def test_output_normalization(
        self, registry: ToolProviderRegistry, result: Any, expected: list[Content]
    ) -> None:
        """Test that strings and sequences become content lists."""
        registry.register(FakeProvider("p1", ["alpha"], result=result))
        assert await registry.execute_tool("alpha", {}) == expected

    @pytest.mark.asyncio
    async def test_unsupported_output(self, registry: ToolProviderRegistry) -> None:
        """Test that unsupported output types are internal errors."""
        registry.register(FakeProvider("p1", ["alpha"], result={"not": "content"}))

        with pytest.raises(InternalError):
            await registry.execute_tool("alpha", {})

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry: ToolProviderRegistry) -> None:
        """Test that executing an unknown tool raises MethodNotFoundError."""
        with pytest.raises(MethodNotFoundError):
            await registry.execute_tool("missing", {})

    @pytest.mark.asyncio
    async def test_provider_exception_is_wrapped(self, registry: ToolProviderRegistry) -> None:
        """Test that arbitrary provider exceptions become InternalError."""
        registry.register(FakeProvider("p1", ["alpha"], error=OSError("disk gone")))

        with pytest.raises(InternalError) as exc_info:
            await registry.execute_tool("alpha", {})

        assert exc_info.value.message == "Tool 'alpha' failed: disk gone"
        assert exc_info.value.details["exception_type"] == "OSError"

    @pytest.mark.asyncio
    async def test_tool_host_error_passes_through(self, registry: ToolProviderRegistry) -> None:
        """Test that provider ToolHostErrors are not rewrapped."""
        registry.register(EchoToolProvider())

        with pytest.raises(InvalidParamsError):
            await registry.execute_tool("echo", {"message": 3})

    @pytest.mark.asyncio
    async def test_concurrent_executions(self, registry: ToolProviderRegistry) -> None:
        """Test that calls can run concurrently."""
        registry.register(EchoToolProvider())

        results = await asyncio.gather(
            *(registry.execute_tool("echo", {"message": str(i)}) for i in range(10))
        )

        assert [r[0].text for r in results] == [str(i) for i in range(10)]


# =============================================================================
# Tests for Statistics
# =============================================================================


class TestStatistics:
    """Tests for execution statistics."""

    @pytest.mark.asyncio
    async def test_counts_calls_and_failures(self, registry: ToolProviderRegistry) -> None:
        """Test that successes and failures are counted per tool."""
        registry.register(EchoToolProvider())

        await registry.execute_tool("echo", {"message": "a"})
        await registry.execute_tool("reverse", {"message": "b"})
        with pytest.raises(InvalidParamsError):
            await registry.execute_tool("echo", {})

        stats = registry.get_statistics()
        assert stats["total_calls"] == 3
        assert stats["failed_calls"] == 1
        assert stats["calls_per_tool"] == {"echo": 2, "reverse": 1}
        assert stats["failures_per_tool"] == {"echo": 1}
        assert stats["last_call_at"] is not None
        assert stats["providers"] == 1
        assert stats["tools"] == 2

    @pytest.mark.asyncio
    async def test_statistics_survive_unregister(self, registry: ToolProviderRegistry) -> None:
        """Test that counters are not reset by catalog changes."""
        registry.register(EchoToolProvider())
        await registry.execute_tool("echo", {"message": "a"})
        registry.unregister("echo")

        assert registry.get_statistics()["total_calls"] == 1

    @pytest.mark.asyncio
    async def test_reset(self, registry: ToolProviderRegistry) -> None:
        """Test that reset zeroes the counters."""
        registry.register(EchoToolProvider())
        await registry.execute_tool("echo", {"message": "a"})

        registry.reset_statistics()

        stats = registry.get_statistics()
        assert stats["total_calls"] == 0
        assert stats["calls_per_tool"] == {}
        assert stats["last_call_at"] is None
