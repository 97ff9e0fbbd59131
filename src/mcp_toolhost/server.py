"""
MCP Server composition root for the MCP tool host.

MCPServer owns the configuration snapshot and wires together the tool
provider registry, the authentication provider, the message processor, the
connection handler and the transport. It exposes lifecycle (start/stop),
runtime configuration swaps and statistics.

Lifecycle: STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED.

``start`` and ``stop`` never raise; they log failures and report a boolean.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from enum import Enum
from typing import TYPE_CHECKING, Any

from mcp_toolhost.config import ServerConfig
from mcp_toolhost.connection import ClientConnection
from mcp_toolhost.connection_handler import ConnectionHandler
from mcp_toolhost.errors import ConfigurationError, ToolHostError
from mcp_toolhost.logging import get_logger, set_log_level
from mcp_toolhost.processor import MessageProcessor, MethodHandler
from mcp_toolhost.providers.registry import ToolProviderRegistry
from mcp_toolhost.security.audit_logger import AuditLogger
from mcp_toolhost.security.auth import AuthenticationProvider, create_auth_provider
from mcp_toolhost.transport import StreamTransport

if TYPE_CHECKING:
    from mcp_toolhost.providers.base import ToolProvider

logger = get_logger(__name__)


class ServerState(str, Enum):
    """Server lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class MCPServer:
    """
    MCP tool host server.

    Example:
        >>> server = MCPServer(ServerConfig(port=8765))
        >>> server.register_tool_provider(EchoToolProvider())
        >>> await server.start()
        True
        >>> await server.stop()
        True

    Attributes:
        config: Current configuration snapshot.
        state: Current lifecycle state.
        registry: Tool provider registry.
        processor: Message processor.
        connection_handler: Active connection set.
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        registry: ToolProviderRegistry | None = None,
        auth_provider: AuthenticationProvider | None = None,
        transport: StreamTransport | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        """
        Initialize the server. Nothing is started until ``start()``.

        Args:
            config: Configuration snapshot (defaults to ServerConfig()).
            registry: Tool provider registry (a new one if omitted).
            auth_provider: Authentication provider. When omitted and
                authentication is enabled, one is built from ``config.auth``
                during start.
            transport: Listener (StreamTransport if omitted).
            audit_logger: Audit sink (built from the config during start if omitted).
        """
        self._config = config if config is not None else ServerConfig()
        self._registry = registry if registry is not None else ToolProviderRegistry()
        self._registry.config = self._config
        self._auth_provider = auth_provider
        self._transport = transport if transport is not None else StreamTransport()
        self._audit_logger = audit_logger
        self._owns_audit_logger = False

        self._connection_handler = ConnectionHandler(self._config.max_connections)
        self._processor = MessageProcessor(
            self._registry,
            self._config,
            auth_provider=auth_provider,
            audit_logger=audit_logger,
        )

        self._state = ServerState.STOPPED
        self._lifecycle_lock = asyncio.Lock()
        self._pending_providers: list[ToolProvider] = []
        self._monitor_task: asyncio.Task[None] | None = None
        self._started_at: float | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ServerState.RUNNING

    @property
    def registry(self) -> ToolProviderRegistry:
        return self._registry

    @property
    def processor(self) -> MessageProcessor:
        return self._processor

    @property
    def connection_handler(self) -> ConnectionHandler:
        return self._connection_handler

    @property
    def auth_provider(self) -> AuthenticationProvider | None:
        return self._auth_provider

    @property
    def transport(self) -> StreamTransport:
        return self._transport

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start the server.

        Order: validate config, initialize the authentication provider (if
        enabled), register pending tool providers, start the transport,
        start the idle-connection monitor. On failure everything already
        started is rolled back.

        Returns:
            True if the server is running, False if start failed.
        """
        async with self._lifecycle_lock:
            if self._state is ServerState.RUNNING:
                logger.warning("Server already running")
                return True

            self._state = ServerState.STARTING
            config = self._config

            try:
                config.validate()
            except ConfigurationError as e:
                logger.error(
                    "Server start failed: invalid configuration",
                    extra={"errors": e.details.get("errors", [])},
                )
                self._state = ServerState.STOPPED
                return False

            auth_initialized = False
            registered: list[ToolProvider] = []
            transport_started = False

            try:
                if self._audit_logger is None:
                    self._audit_logger = AuditLogger.from_config(config)
                    self._owns_audit_logger = True
                    self._processor.set_audit_logger(self._audit_logger)

                if config.enable_authentication:
                    if self._auth_provider is None:
                        self._auth_provider = create_auth_provider(config.auth)
                        self._processor.set_authentication_provider(self._auth_provider)
                    self._auth_provider.initialize(config)
                    auth_initialized = True

                self._registry.config = config
                for provider in list(self._pending_providers):
                    self._registry.register(provider)
                    registered.append(provider)
                    self._pending_providers.remove(provider)

                await self._transport.start(self)
                transport_started = True

                self._monitor_task = asyncio.create_task(
                    self._connection_handler.run_timeout_monitor(
                        config.timeout_check_interval_seconds
                    )
                )
            except Exception as e:
                logger.error(
                    "Server start failed",
                    extra={"error": str(e), "exception_type": type(e).__name__},
                )
                await self._rollback_start(auth_initialized, registered, transport_started)
                self._state = ServerState.STOPPED
                return False

            self._started_at = time.monotonic()
            self._state = ServerState.RUNNING

        logger.info(
            "Server started",
            extra={
                "server_name": config.server_name,
                "version": config.version,
                "bind_address": config.bind_address,
                "port": config.port,
                "tools": len(self._registry),
                "authentication": config.enable_authentication,
            },
        )
        self._audit_server_event("server_started", "Server started")
        return True

    async def _rollback_start(
        self,
        auth_initialized: bool,
        registered: list[ToolProvider],
        transport_started: bool,
    ) -> None:
        if transport_started:
            with contextlib.suppress(Exception):
                await self._transport.stop()

        for provider in reversed(registered):
            self._registry.unregister(provider.provider_id)
            self._pending_providers.insert(0, provider)

        if auth_initialized and self._auth_provider is not None:
            with contextlib.suppress(Exception):
                self._auth_provider.cleanup()

        self._close_owned_audit_logger()

    async def stop(self) -> bool:
        """
        Stop the server. Safe to call repeatedly.

        Every cleanup step is attempted even if an earlier one fails:
        transport, connections, idle monitor, tool providers, authentication.
        Tool providers are queued again so a later ``start()`` re-registers them.

        Returns:
            True if every cleanup step succeeded (always True when already stopped).
        """
        async with self._lifecycle_lock:
            if self._state is ServerState.STOPPED:
                return True

            self._state = ServerState.STOPPING
            ok = True

            try:
                await self._transport.stop()
            except Exception as e:
                ok = False
                logger.error("Failed to stop transport", extra={"error": str(e)})

            try:
                if not self._connection_handler.close_all_connections():
                    ok = False
            except Exception as e:
                ok = False
                logger.error("Failed to close connections", extra={"error": str(e)})

            if self._monitor_task is not None:
                self._monitor_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await self._monitor_task
                self._monitor_task = None

            try:
                providers = [
                    provider
                    for provider_id in self._registry.provider_ids
                    if (provider := self._registry.get_provider(provider_id)) is not None
                ]
                if not self._registry.cleanup_all():
                    ok = False
                self._pending_providers[:0] = providers
            except Exception as e:
                ok = False
                logger.error("Failed to dispose tool providers", extra={"error": str(e)})

            if self._config.enable_authentication and self._auth_provider is not None:
                try:
                    self._auth_provider.cleanup()
                except Exception as e:
                    ok = False
                    logger.error(
                        "Failed to clean up authentication provider",
                        extra={"error": str(e)},
                    )

            self._audit_server_event("server_stopped", "Server stopped")
            self._close_owned_audit_logger()

            self._started_at = None
            self._state = ServerState.STOPPED

        logger.info("Server stopped", extra={"clean": ok})
        return ok

    async def serve_forever(self) -> None:
        """
        Start (if needed) and serve until cancelled, then stop.

        Raises:
            RuntimeError: If the server cannot be started.
        """
        if not self.is_running and not await self.start():
            raise RuntimeError("Server failed to start")
        try:
            await self._transport.serve_forever()
        finally:
            await self.stop()

    def _close_owned_audit_logger(self) -> None:
        if self._owns_audit_logger and self._audit_logger is not None:
            self._audit_logger.close()
            self._audit_logger = None
            self._owns_audit_logger = False
            self._processor.set_audit_logger(None)

    def _audit_server_event(
        self, event_type: str, description: str, details: dict[str, Any] | None = None
    ) -> None:
        if self._audit_logger is not None:
            self._audit_logger.log_server_event(event_type, description, details)

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def update_config(self, config: ServerConfig) -> bool:
        """
        Swap the configuration snapshot.

        The new snapshot is validated and replaces the old one entirely.

        Applied immediately: the log level, the connection limit (for new
        admissions; open connections are never closed to meet it) and every
        per-request policy of the processor (authentication gate, exempt
        methods, initialize requirement, message size check). Open
        connections keep the idle and request timeouts they were admitted
        with, and the transport keeps its listener settings until restart.

        Enabling authentication on a running server initializes the current
        provider, building one from ``config.auth`` if none is set. If that
        fails the update is rejected.

        Args:
            config: New configuration snapshot.

        Returns:
            True if the new configuration was accepted.
        """
        try:
            config.validate()
        except ConfigurationError as e:
            logger.error(
                "Configuration update rejected",
                extra={"errors": e.details.get("errors", [])},
            )
            return False

        if not self._prepare_auth_provider(config):
            return False

        old = self._config
        self._config = config
        self._processor.update_config(config)
        self._registry.config = config

        if old.logging_level != config.logging_level:
            set_log_level(config.logging_level)
        if old.max_connections != config.max_connections:
            self._connection_handler.set_max_connections(config.max_connections)

        logger.info(
            "Configuration updated",
            extra={
                "logging_level": config.logging_level,
                "max_connections": config.max_connections,
            },
        )
        self._audit_server_event(
            "config_updated",
            "Configuration updated",
            {"logging_level": config.logging_level},
        )
        return True

    def _prepare_auth_provider(self, config: ServerConfig) -> bool:
        if not (self.is_running and config.enable_authentication):
            return True
        if self._config.enable_authentication and self._auth_provider is not None:
            return True

        provider = self._auth_provider or create_auth_provider(config.auth)
        try:
            provider.initialize(config)
        except Exception as e:
            logger.error(
                "Configuration update rejected: authentication provider failed to initialize",
                extra={"error": str(e)},
            )
            return False

        if provider is not self._auth_provider:
            self._auth_provider = provider
            self._processor.set_authentication_provider(provider)
        logger.info(
            "Authentication enabled",
            extra={"provider": type(provider).__name__},
        )
        return True

    # -------------------------------------------------------------------------
    # Providers and handlers
    # -------------------------------------------------------------------------

    def register_tool_provider(self, provider: ToolProvider) -> bool:
        """
        Register a tool provider.

        Before start the provider is queued and registered during ``start()``;
        while running it is registered immediately.

        Returns:
            False if the provider was rejected.
        """
        if self._state is ServerState.RUNNING:
            try:
                self._registry.register(provider)
            except (ToolHostError, ValueError) as e:
                logger.error(
                    "Tool provider registration failed",
                    extra={"provider": getattr(provider, "provider_id", None), "error": str(e)},
                )
                return False
            return True

        provider_id = getattr(provider, "provider_id", None)
        if not provider_id:
            logger.error("Tool provider has no provider_id")
            return False
        if any(p.provider_id == provider_id for p in self._pending_providers) or (
            provider_id in self._registry.provider_ids
        ):
            logger.error(
                "Tool provider already registered", extra={"provider": provider_id}
            )
            return False
        self._pending_providers.append(provider)
        return True

    def unregister_tool_provider(self, provider_id: str) -> bool:
        """
        Remove a queued or registered tool provider. Unknown ids are ignored.

        Returns:
            True if a provider was removed.
        """
        for provider in self._pending_providers:
            if provider.provider_id == provider_id:
                self._pending_providers.remove(provider)
                return True
        return self._registry.unregister(provider_id)

    @property
    def pending_provider_ids(self) -> list[str]:
        """Ids of providers queued for the next ``start()``."""
        return [provider.provider_id for provider in self._pending_providers]

    def register_method_handler(self, name: str, handler: MethodHandler) -> None:
        """Register a custom method handler (replaces any existing one)."""
        self._processor.register_method_handler(name, handler)

    def unregister_method_handler(self, name: str) -> bool:
        """Remove a custom method handler. Unknown names are ignored."""
        return self._processor.unregister_method_handler(name)

    def set_authentication_provider(
        self, auth_provider: AuthenticationProvider | None
    ) -> bool:
        """
        Replace the authentication provider.

        While running with authentication enabled, the new provider is
        initialized first; if that fails the old provider stays in place.

        Returns:
            True if the provider was replaced.
        """
        if (
            auth_provider is not None
            and self._state is ServerState.RUNNING
            and self._config.enable_authentication
        ):
            try:
                auth_provider.initialize(self._config)
            except Exception as e:
                logger.error(
                    "Authentication provider failed to initialize",
                    extra={"error": str(e)},
                )
                return False

        old = self._auth_provider
        self._auth_provider = auth_provider
        self._processor.set_authentication_provider(auth_provider)

        if old is not None and old is not auth_provider and self.is_running:
            with contextlib.suppress(Exception):
                old.cleanup()
        return True

    # -------------------------------------------------------------------------
    # Connections and messages
    # -------------------------------------------------------------------------

    def open_connection(
        self, remote_address: str = "", remote_port: int = 0
    ) -> ClientConnection | None:
        """
        Create a connection and admit it to the active set.

        Timeouts come from the configuration current at accept time.

        Returns:
            The connection, or None if the connection limit is reached.
        """
        connection = ClientConnection(
            remote_address=remote_address,
            remote_port=remote_port,
            timeout_seconds=self._config.connection_timeout_seconds,
            request_timeout_seconds=self._config.request_timeout_seconds,
        )
        if not self._connection_handler.handle_connection(connection):
            return None
        return connection

    async def handle_message(
        self, connection: ClientConnection, message: str | bytes
    ) -> str | None:
        """
        Process one message from a connection.

        Returns:
            The serialized response, or None for notifications.
        """
        return await self._processor.process_message(connection, message)

    def authenticate_connection(
        self, connection: ClientConnection, credentials: str | None = None
    ) -> bool:
        """Authenticate a connection up front instead of on its first gated request."""
        return self._processor.authenticate_connection(connection, credentials)

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_statistics(self) -> dict[str, Any]:
        """
        Return a snapshot of server statistics.

        Returns:
            State, uptime, connection counters, processor and registry statistics.
        """
        uptime = (
            time.monotonic() - self._started_at if self._started_at is not None else 0.0
        )
        return {
            "state": self._state.value,
            "server_name": self._config.server_name,
            "version": self._config.version,
            "uptime_seconds": round(uptime, 3),
            "connections": self._connection_handler.get_statistics(),
            "processor": self._processor.get_statistics(),
            "registry": self._registry.get_statistics(),
            "pending_providers": len(self._pending_providers),
        }
