"""
Connection handler for the MCP tool host.

The ConnectionHandler owns the authoritative set of live connections. The
transport hands every accepted connection to ``handle_connection`` and the
connection's ``close()`` reports back through ``handle_connection_closed``.
Active-set membership is the only connection state shared between
connection tasks, and it is guarded by a lock.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any

from mcp_toolhost.connection import ClientConnection
from mcp_toolhost.logging import get_logger

logger = get_logger(__name__)


class ConnectionHandler:
    """
    Tracks active connections and enforces the connection limit.

    Example:
        >>> handler = ConnectionHandler(max_connections=2)
        >>> conn = ClientConnection("127.0.0.1", 40000)
        >>> handler.handle_connection(conn)
        True
        >>> conn.close()
        True
        >>> handler.active_count
        0
    """

    def __init__(self, max_connections: int = 100) -> None:
        """
        Initialize the handler.

        Args:
            max_connections: Maximum number of concurrently active connections.

        Raises:
            ValueError: If max_connections is not positive.
        """
        if max_connections <= 0:
            raise ValueError("max_connections must be greater than 0")
        self._max_connections = max_connections
        self._lock = threading.RLock()
        self._connections: dict[str, ClientConnection] = {}
        self._total_accepted = 0
        self._total_rejected = 0
        self._total_timed_out = 0

    @property
    def max_connections(self) -> int:
        return self._max_connections

    def set_max_connections(self, max_connections: int) -> None:
        """
        Change the connection limit.

        Existing connections are never closed; the new limit applies to
        subsequently accepted connections.
        """
        if max_connections <= 0:
            raise ValueError("max_connections must be greater than 0")
        with self._lock:
            self._max_connections = max_connections
        logger.info(
            "Connection limit updated", extra={"max_connections": max_connections}
        )

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._connections)

    @property
    def total_accepted(self) -> int:
        return self._total_accepted

    @property
    def total_rejected(self) -> int:
        return self._total_rejected

    @property
    def total_timed_out(self) -> int:
        return self._total_timed_out

    # -------------------------------------------------------------------------
    # Lifecycle events
    # -------------------------------------------------------------------------

    def handle_connection(self, connection: ClientConnection) -> bool:
        """
        Admit a newly accepted connection.

        Args:
            connection: The connection to admit.

        Returns:
            False if the active set is full (or the connection is already
            closed), True if the connection was added.
        """
        with self._lock:
            if connection.is_closed:
                return False
            if connection.connection_id in self._connections:
                return True
            if len(self._connections) >= self._max_connections:
                self._total_rejected += 1
                logger.warning(
                    "Connection rejected: limit reached",
                    extra={
                        "connection_id": connection.connection_id,
                        "remote_address": connection.remote_address,
                        "max_connections": self._max_connections,
                    },
                )
                return False
            self._connections[connection.connection_id] = connection
            self._total_accepted += 1

        connection.add_close_callback(self.handle_connection_closed)
        logger.info(
            "Client connected",
            extra={
                "connection_id": connection.connection_id,
                "remote_address": connection.remote_address,
                "remote_port": connection.remote_port,
            },
        )
        return True

    def handle_connection_closed(self, connection: ClientConnection) -> None:
        """
        Remove a connection from the active set. Repeated calls are no-ops.

        Args:
            connection: The closed connection.
        """
        with self._lock:
            removed = self._connections.pop(connection.connection_id, None)
        if removed is None:
            return
        logger.info(
            "Client disconnected",
            extra={
                "connection_id": connection.connection_id,
                "remote_address": connection.remote_address,
            },
        )

    def handle_connection_error(
        self, connection: ClientConnection, error: BaseException
    ) -> None:
        """
        Report a connection-level failure and close the connection.

        Args:
            connection: The failed connection.
            error: The error raised by the transport.
        """
        logger.warning(
            "Connection error",
            extra={
                "connection_id": connection.connection_id,
                "remote_address": connection.remote_address,
                "error": str(error),
                "exception_type": type(error).__name__,
            },
        )
        connection.close()
        self.handle_connection_closed(connection)

    def close_all_connections(self) -> bool:
        """
        Close every active connection.

        A failing close does not stop the remaining closes.

        Returns:
            True only if every connection closed cleanly.
        """
        with self._lock:
            connections = list(self._connections.values())

        ok = True
        for connection in connections:
            try:
                if not connection.close():
                    ok = False
            except Exception as e:
                ok = False
                logger.warning(
                    "Failed to close connection",
                    extra={"connection_id": connection.connection_id, "error": str(e)},
                )
            self.handle_connection_closed(connection)

        if connections:
            logger.info("Closed all connections", extra={"count": len(connections)})
        return ok

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def get_connection(self, connection_id: str) -> ClientConnection | None:
        """Return an active connection by id, or None."""
        with self._lock:
            return self._connections.get(connection_id)

    def get_connection_info(self) -> list[dict[str, Any]]:
        """
        Snapshot of every active connection.

        Returns:
            List of connection info dictionaries (not a live view).
        """
        with self._lock:
            connections = list(self._connections.values())
        return [connection.to_info() for connection in connections]

    def get_statistics(self) -> dict[str, Any]:
        """Return connection counters."""
        return {
            "active": self.active_count,
            "max_connections": self._max_connections,
            "total_accepted": self._total_accepted,
            "total_rejected": self._total_rejected,
            "total_timed_out": self._total_timed_out,
        }

    # -------------------------------------------------------------------------
    # Timeouts
    # -------------------------------------------------------------------------

    def close_timed_out_connections(self, now: float | None = None) -> list[str]:
        """
        Force-close connections idle longer than their timeout.

        Args:
            now: Clock reading to compare against; each connection's own
                clock is used when omitted.

        Returns:
            Ids of the connections that were closed.
        """
        with self._lock:
            expired = [
                connection
                for connection in self._connections.values()
                if connection.has_timed_out(now)
            ]

        closed: list[str] = []
        for connection in expired:
            logger.info(
                "Closing idle connection",
                extra={
                    "connection_id": connection.connection_id,
                    "idle_seconds": round(connection.idle_seconds(now), 3),
                    "timeout_seconds": connection.timeout_seconds,
                },
            )
            connection.close()
            self.handle_connection_closed(connection)
            closed.append(connection.connection_id)

        if closed:
            with self._lock:
                self._total_timed_out += len(closed)
        return closed

    async def run_timeout_monitor(self, interval_seconds: float) -> None:
        """
        Periodically close idle connections until cancelled.

        Args:
            interval_seconds: Delay between scans.
        """
        logger.debug(
            "Connection timeout monitor started",
            extra={"interval_seconds": interval_seconds},
        )
        try:
            while True:
                await asyncio.sleep(interval_seconds)
                try:
                    self.close_timed_out_connections()
                except Exception as e:
                    logger.error(
                        "Connection timeout scan failed", extra={"error": str(e)}
                    )
        finally:
            logger.debug("Connection timeout monitor stopped")
