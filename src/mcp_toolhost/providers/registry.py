"""
Tool provider registry for the MCP tool host.

This module provides:
- ToolProviderRegistry: aggregates tool providers, resolves tool names to
  providers, executes tools and records execution statistics
- ToolValidationResult: explicit outcome of a tool/arguments check
- ExecutionStatistics: monotonic execution counters

The registry is the single source of truth for which tools exist and which
provider runs them. Tool names are unique across providers: the first
provider to register a name owns it and later colliding registrations are
rejected.

Concurrency: mutations (register, unregister, refresh) serialize on a
re-entrant lock. The name index is rebuilt on every mutation and swapped in
as a new dict, so lookups and listings read it without locking and never
observe a half-built index. Tool execution happens outside the lock.
"""

from __future__ import annotations

import asyncio
import json
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, best_match

from mcp_toolhost.errors import (
    InternalError,
    InvalidParamsError,
    MethodNotFoundError,
    ProviderInitializationError,
    ToolCollisionError,
    ToolHostError,
)
from mcp_toolhost.logging import get_logger
from mcp_toolhost.models import Content, Tool

if TYPE_CHECKING:
    from mcp_toolhost.config import ServerConfig
    from mcp_toolhost.providers.base import ToolProvider

logger = get_logger(__name__)


# =============================================================================
# Validation Result
# =============================================================================


@dataclass
class ToolValidationResult:
    """
    Outcome of ``ToolProviderRegistry.validate_tool``.

    Attributes:
        valid: Whether the tool exists and the arguments are acceptable.
        error_code: "method_not_found" or "invalid_params" when not valid.
        message: Human-readable reason when not valid.
        details: Structured details (tool name, schema path, ...).
    """

    valid: bool
    error_code: str | None = None
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.valid

    def to_error(self) -> ToolHostError:
        """
        Build the exception matching this failed result.

        Returns:
            MethodNotFoundError or InvalidParamsError.
        """
        if self.error_code == "method_not_found":
            return MethodNotFoundError(message=self.message, details=self.details)
        return InvalidParamsError(message=self.message, details=self.details)


# =============================================================================
# Execution Statistics
# =============================================================================


class ExecutionStatistics:
    """
    Monotonic tool execution counters.

    Counters only grow until ``reset()`` is called explicitly.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_calls = 0
        self._failed_calls = 0
        self._calls_per_tool: dict[str, int] = {}
        self._failures_per_tool: dict[str, int] = {}
        self._last_call_at: datetime | None = None

    def record(self, tool_name: str, success: bool) -> None:
        """Record one finished execution of a tool."""
        with self._lock:
            self._total_calls += 1
            self._calls_per_tool[tool_name] = self._calls_per_tool.get(tool_name, 0) + 1
            if not success:
                self._failed_calls += 1
                self._failures_per_tool[tool_name] = (
                    self._failures_per_tool.get(tool_name, 0) + 1
                )
            self._last_call_at = datetime.now(UTC)

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of the counters."""
        with self._lock:
            return {
                "total_calls": self._total_calls,
                "failed_calls": self._failed_calls,
                "calls_per_tool": dict(self._calls_per_tool),
                "failures_per_tool": dict(self._failures_per_tool),
                "last_call_at": (
                    self._last_call_at.isoformat() if self._last_call_at else None
                ),
            }

    def reset(self) -> None:
        """Zero every counter."""
        with self._lock:
            self._total_calls = 0
            self._failed_calls = 0
            self._calls_per_tool.clear()
            self._failures_per_tool.clear()
            self._last_call_at = None


# =============================================================================
# Registry
# =============================================================================


@dataclass(frozen=True)
class _ProviderEntry:
    provider: ToolProvider
    tools: tuple[Tool, ...]


@dataclass(frozen=True)
class _IndexEntry:
    provider: ToolProvider
    tool: Tool


class ToolProviderRegistry:
    """
    Registry aggregating tools from multiple providers.

    Example:
        >>> registry = ToolProviderRegistry()
        >>> registry.register(EchoToolProvider())
        >>> [tool.name for tool in registry.get_all_tools()]
        ['echo', 'reverse']
        >>> contents = await registry.execute_tool("echo", {"message": "hi"})
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """
        Initialize an empty registry.

        Args:
            config: Configuration snapshot passed to ``provider.initialize``.
        """
        self._config = config
        self._lock = threading.RLock()
        self._entries: dict[str, _ProviderEntry] = {}
        self._index: dict[str, _IndexEntry] = {}
        self._validators: dict[str, Draft202012Validator | None] = {}
        self._statistics = ExecutionStatistics()

    @property
    def config(self) -> ServerConfig | None:
        """Configuration snapshot handed to newly registered providers."""
        return self._config

    @config.setter
    def config(self, config: ServerConfig | None) -> None:
        self._config = config

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, provider: ToolProvider) -> None:
        """
        Register a provider and index its tools.

        The provider is initialized first; its catalog is then checked for
        duplicate names and for collisions with tools that are already
        registered. On any failure the registry is left unchanged.

        Args:
            provider: Provider to register.

        Raises:
            ValueError: If the provider id is missing or already registered.
            ProviderInitializationError: If initialization or catalog
                retrieval fails.
            ToolCollisionError: If a tool name is already registered or
                repeated within the provider's own catalog.
        """
        provider_id = getattr(provider, "provider_id", None)
        if not isinstance(provider_id, str) or not provider_id:
            raise ValueError("Tool provider must define a non-empty provider_id")

        with self._lock:
            if provider_id in self._entries:
                raise ValueError(f"Provider '{provider_id}' is already registered")

            try:
                provider.initialize(self._config)
                tools = tuple(provider.get_tools())
            except Exception as e:
                logger.error(
                    "Tool provider failed to initialize",
                    extra={"provider": provider_id, "error": str(e)},
                )
                raise ProviderInitializationError(
                    message=f"Provider '{provider_id}' failed to initialize: {e}",
                    details={"provider": provider_id},
                ) from e

            try:
                self._check_catalog(provider_id, tools)
            except ToolHostError:
                self._cleanup_provider(provider)
                raise

            self._entries[provider_id] = _ProviderEntry(provider=provider, tools=tools)
            self._rebuild_index()

        logger.info(
            "Tool provider registered",
            extra={"provider": provider_id, "tools": [tool.name for tool in tools]},
        )

    def unregister(self, provider_id: str) -> bool:
        """
        Remove a provider and all of its tools.

        Unknown ids are ignored.

        Args:
            provider_id: Id of the provider to remove.

        Returns:
            True if a provider was removed, False if the id was unknown.
        """
        with self._lock:
            entry = self._entries.pop(provider_id, None)
            if entry is None:
                return False
            self._rebuild_index()

        self._cleanup_provider(entry.provider)
        logger.info("Tool provider unregistered", extra={"provider": provider_id})
        return True

    def refresh_tool_catalog(self) -> int:
        """
        Re-pull every provider's catalog and rebuild the index.

        A provider whose catalog cannot be retrieved keeps its previous tools.
        A name keeps its current owner; another provider newly declaring it
        has that tool dropped. Unowned names go to the first provider, in
        registration order, that declares them.

        Returns:
            Total number of indexed tools after the refresh.
        """
        with self._lock:
            catalogs: dict[str, tuple[Tool, ...]] = {}
            for provider_id, entry in self._entries.items():
                try:
                    tools = tuple(entry.provider.get_tools())
                except Exception as e:
                    logger.warning(
                        "Tool catalog refresh failed, keeping previous catalog",
                        extra={"provider": provider_id, "error": str(e)},
                    )
                    tools = entry.tools
                catalogs[provider_id] = tools

            owners: dict[str, str] = {}
            for provider_id, tools in catalogs.items():
                for tool in tools:
                    current = self._index.get(tool.name)
                    if current is not None and current.provider.provider_id == provider_id:
                        owners[tool.name] = provider_id

            refreshed: dict[str, _ProviderEntry] = {}
            for provider_id, entry in self._entries.items():
                kept: list[Tool] = []
                seen: set[str] = set()
                for tool in catalogs[provider_id]:
                    owner = owners.setdefault(tool.name, provider_id)
                    if owner != provider_id or tool.name in seen:
                        logger.warning(
                            "Dropping colliding tool during refresh",
                            extra={"provider": provider_id, "tool": tool.name},
                        )
                        continue
                    seen.add(tool.name)
                    kept.append(tool)

                refreshed[provider_id] = _ProviderEntry(
                    provider=entry.provider, tools=tuple(kept)
                )

            self._entries = refreshed
            self._rebuild_index()
            return len(self._index)

    def cleanup_all(self) -> bool:
        """
        Remove every provider, calling ``cleanup()`` on each.

        Returns:
            True if every provider cleaned up without raising.
        """
        with self._lock:
            entries = list(self._entries.values())
            self._entries = {}
            self._rebuild_index()

        results = [self._cleanup_provider(entry.provider) for entry in entries]
        return all(results)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_all_tools(self) -> list[Tool]:
        """
        List every registered tool.

        Returns:
            Tools in provider registration order, then declaration order.
        """
        return [entry.tool for entry in self._index.values()]

    def find_provider_for_tool(self, name: str) -> ToolProvider | None:
        """
        Resolve the provider owning a tool.

        Args:
            name: Tool name.

        Returns:
            The owning provider, or None if the tool is unknown.
        """
        entry = self._index.get(name)
        return entry.provider if entry is not None else None

    def get_tool(self, name: str) -> Tool | None:
        """Return the Tool descriptor for a name, or None."""
        entry = self._index.get(name)
        return entry.tool if entry is not None else None

    def get_provider(self, provider_id: str) -> ToolProvider | None:
        """Return a registered provider by id, or None."""
        entry = self._entries.get(provider_id)
        return entry.provider if entry is not None else None

    @property
    def provider_ids(self) -> list[str]:
        """Registered provider ids in registration order."""
        return list(self._entries)

    def __contains__(self, name: object) -> bool:
        """Check if a tool name is registered (for 'in' operator)."""
        return name in self._index

    def __len__(self) -> int:
        """Return the number of registered tools."""
        return len(self._index)

    # -------------------------------------------------------------------------
    # Validation and execution
    # -------------------------------------------------------------------------

    def validate_tool(
        self,
        name: str,
        arguments: dict[str, Any] | str | None = None,
    ) -> ToolValidationResult:
        """
        Check that a tool exists and, optionally, that arguments fit its schema.

        Nothing is executed.

        Args:
            name: Tool name.
            arguments: Decoded arguments or a JSON string. None skips the
                argument check.

        Returns:
            ToolValidationResult describing the outcome.
        """
        entry = self._index.get(name)
        if entry is None:
            return ToolValidationResult(
                valid=False,
                error_code="method_not_found",
                message=f"Tool '{name}' is not registered",
                details={"tool": name},
            )

        if arguments is None:
            return ToolValidationResult(valid=True)

        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                return ToolValidationResult(
                    valid=False,
                    error_code="invalid_params",
                    message=f"Arguments for '{name}' are not valid JSON: {e.msg}",
                    details={"tool": name},
                )

        if not isinstance(arguments, dict):
            return ToolValidationResult(
                valid=False,
                error_code="invalid_params",
                message=f"Arguments for '{name}' must be a JSON object",
                details={"tool": name, "type": type(arguments).__name__},
            )

        validator = self._validators.get(name)
        if validator is not None:
            error = best_match(validator.iter_errors(arguments))
            if error is not None:
                path = "/".join(str(part) for part in error.absolute_path)
                return ToolValidationResult(
                    valid=False,
                    error_code="invalid_params",
                    message=f"Invalid arguments for '{name}': {error.message}",
                    details={"tool": name, "path": path or "/"},
                )

        return ToolValidationResult(valid=True)

    async def execute_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> list[Content]:
        """
        Execute a tool by name.

        The registry lock is not held while the provider runs.

        Args:
            name: Tool name.
            arguments: Decoded tool arguments.

        Returns:
            The provider's output as a list of Content payloads.

        Raises:
            MethodNotFoundError: If the tool is not registered.
            ToolHostError: If the provider raises one (passed through).
            InternalError: If the provider fails in any other way.
        """
        entry = self._index.get(name)
        if entry is None:
            raise MethodNotFoundError(
                message=f"Tool '{name}' is not registered",
                details={"tool": name},
            )

        provider_id = entry.provider.provider_id
        try:
            output = await entry.provider.execute_tool(name, arguments or {})
            contents = _normalize_output(name, output)
        except ToolHostError:
            self._statistics.record(name, success=False)
            raise
        except asyncio.CancelledError:
            self._statistics.record(name, success=False)
            raise
        except Exception as e:
            self._statistics.record(name, success=False)
            logger.warning(
                "Tool execution failed",
                extra={"tool": name, "provider": provider_id, "error": str(e)},
            )
            raise InternalError(
                message=f"Tool '{name}' failed: {e}",
                details={
                    "tool": name,
                    "provider": provider_id,
                    "exception_type": type(e).__name__,
                },
            ) from e

        self._statistics.record(name, success=True)
        return contents

    def get_statistics(self) -> dict[str, Any]:
        """
        Return execution statistics and catalog size.

        Returns:
            Snapshot of counters plus provider and tool counts.
        """
        stats = self._statistics.snapshot()
        stats["providers"] = len(self._entries)
        stats["tools"] = len(self._index)
        return stats

    def reset_statistics(self) -> None:
        """Reset execution counters."""
        self._statistics.reset()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_catalog(self, provider_id: str, tools: Sequence[Tool]) -> None:
        seen: set[str] = set()
        for tool in tools:
            if not isinstance(tool, Tool):
                raise ProviderInitializationError(
                    message=f"Provider '{provider_id}' returned a non-Tool catalog entry",
                    details={"provider": provider_id, "type": type(tool).__name__},
                )
            if tool.name in seen:
                raise ToolCollisionError(
                    message=f"Provider '{provider_id}' declares tool '{tool.name}' twice",
                    details={"provider": provider_id, "tool": tool.name},
                )
            seen.add(tool.name)

            existing = self._index.get(tool.name)
            if existing is not None:
                raise ToolCollisionError(
                    message=(
                        f"Tool '{tool.name}' is already registered by provider "
                        f"'{existing.provider.provider_id}'"
                    ),
                    details={
                        "tool": tool.name,
                        "provider": provider_id,
                        "existing_provider": existing.provider.provider_id,
                    },
                )

    def _rebuild_index(self) -> None:
        index: dict[str, _IndexEntry] = {}
        validators: dict[str, Draft202012Validator | None] = {}
        for entry in self._entries.values():
            for tool in entry.tools:
                if tool.name in index:
                    continue
                index[tool.name] = _IndexEntry(provider=entry.provider, tool=tool)
                validators[tool.name] = _build_validator(tool)
        self._validators = validators
        self._index = index

    def _cleanup_provider(self, provider: ToolProvider) -> bool:
        try:
            provider.cleanup()
        except Exception as e:
            logger.warning(
                "Tool provider cleanup failed",
                extra={"provider": provider.provider_id, "error": str(e)},
            )
            return False
        return True


def _build_validator(tool: Tool) -> Draft202012Validator | None:
    schema = tool.schema
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        logger.warning(
            "Tool schema is not a valid JSON Schema, skipping argument checks",
            extra={"tool": tool.name, "error": e.message},
        )
        return None
    return Draft202012Validator(schema)


def _normalize_output(name: str, output: Any) -> list[Content]:
    if isinstance(output, Content):
        return [output]
    if isinstance(output, str):
        return [Content.text_content(output)]
    if isinstance(output, Sequence) and all(isinstance(item, Content) for item in output):
        return list(output)
    raise InternalError(
        message=f"Tool '{name}' returned an unsupported result type",
        details={"tool": name, "type": type(output).__name__},
    )
