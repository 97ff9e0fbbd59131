"""
Client connection state for the MCP tool host.

This module defines ClientConnection, the transport-independent state of one
client session: identity, authentication state, timestamps and metadata.

The session handshake state lives on the connection:
- ``metadata["initialized"]``: set once ``initialize`` has succeeded
- ``metadata["protocol_version"]``: the negotiated protocol version
- ``metadata["user_id"]`` / ``metadata["role"]``: set after authentication
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mcp_toolhost.logging import get_logger

logger = get_logger(__name__)

CloseCallback = Callable[["ClientConnection"], None]


@dataclass(eq=False)
class ClientConnection:
    """
    State of a single client session.

    ``last_activity_at`` is a monotonic clock reading and never decreases.
    A connection is owned by the ConnectionHandler's active set; the message
    processor only borrows it for the duration of one message.

    Attributes:
        remote_address: Peer address reported by the transport.
        remote_port: Peer port reported by the transport.
        timeout_seconds: Idle seconds after which the connection times out.
        request_timeout_seconds: Deadline for a single tool execution.
        credentials: Opaque credential string attached by the transport.
        metadata: Free-form per-session state.
        connection_id: Unique id generated at accept time.
        connected_at: Accept time (UTC).
        authenticated: Whether the connection passed authentication.
        clock: Monotonic clock used for activity tracking.

    Example:
        >>> conn = ClientConnection("10.0.0.5", 51234, timeout_seconds=60)
        >>> conn.touch()
        >>> conn.has_timed_out()
        False
    """

    remote_address: str = ""
    remote_port: int = 0
    timeout_seconds: float = 300
    request_timeout_seconds: float = 30
    credentials: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    authenticated: bool = False
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    last_activity_at: float = field(init=False)
    _closed: bool = field(default=False, init=False, repr=False)
    _close_callbacks: list[CloseCallback] = field(
        default_factory=list, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self.last_activity_at = self.clock()

    # -------------------------------------------------------------------------
    # Activity and timeouts
    # -------------------------------------------------------------------------

    def touch(self) -> None:
        """Record inbound activity."""
        self.last_activity_at = max(self.last_activity_at, self.clock())

    def idle_seconds(self, now: float | None = None) -> float:
        """
        Seconds since the last recorded activity.

        Args:
            now: Clock reading to compare against (default: current clock).
        """
        if now is None:
            now = self.clock()
        return max(0.0, now - self.last_activity_at)

    def has_timed_out(self, now: float | None = None) -> bool:
        """
        Check whether the connection has been idle longer than its timeout.

        Args:
            now: Clock reading to compare against (default: current clock).

        Returns:
            True if ``now - last_activity_at > timeout_seconds``.
        """
        if now is None:
            now = self.clock()
        return now - self.last_activity_at > self.timeout_seconds

    # -------------------------------------------------------------------------
    # Session state
    # -------------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        """Whether ``initialize`` has completed on this connection."""
        return bool(self.metadata.get("initialized", False))

    @property
    def is_closed(self) -> bool:
        """Whether ``close()`` has been called."""
        return self._closed

    def set_credentials(self, credentials: str | None) -> None:
        """
        Replace the connection's credentials.

        New credentials drop any previous authentication so the next gated
        request authenticates again.
        """
        if credentials != self.credentials:
            self.authenticated = False
            self.metadata.pop("user_id", None)
            self.metadata.pop("role", None)
        self.credentials = credentials

    def client_info(self) -> dict[str, Any]:
        """Client details handed to authentication providers."""
        return {
            "connection_id": self.connection_id,
            "remote_address": self.remote_address,
            "remote_port": self.remote_port,
        }

    def to_info(self, now: float | None = None) -> dict[str, Any]:
        """
        Snapshot of this connection for monitoring.

        Returns:
            Dictionary with id, address, connect time, auth flag and idle time.
        """
        return {
            "connection_id": self.connection_id,
            "remote_address": self.remote_address,
            "remote_port": self.remote_port,
            "connected_at": self.connected_at.isoformat(),
            "authenticated": self.authenticated,
            "initialized": self.initialized,
            "user_id": self.metadata.get("user_id"),
            "idle_seconds": round(self.idle_seconds(now), 3),
        }

    # -------------------------------------------------------------------------
    # Closing
    # -------------------------------------------------------------------------

    def add_close_callback(self, callback: CloseCallback) -> None:
        """
        Register a callback run once when the connection closes.

        Callbacks added after the connection closed run immediately.
        """
        if self._closed:
            callback(self)
            return
        self._close_callbacks.append(callback)

    def close(self) -> bool:
        """
        Close the connection. Safe to call more than once.

        Close callbacks (the owning handler, the transport) run exactly once,
        on the first call. A failing callback does not stop the others.

        Returns:
            False if a close callback raised, True otherwise.
        """
        if self._closed:
            return True
        self._closed = True

        callbacks, self._close_callbacks = self._close_callbacks, []
        ok = True
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                ok = False
                logger.warning(
                    "Connection close callback failed",
                    extra={"connection_id": self.connection_id, "error": str(e)},
                )
        return ok
