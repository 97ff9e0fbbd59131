"""
Stream transport for the MCP tool host.

StreamTransport accepts TCP connections (optionally wrapped in TLS) and
exchanges newline-delimited JSON-RPC messages with each client. Every client
is served by its own task; messages from one client are processed strictly
in order.

Besides JSON-RPC messages a client may send an out-of-band credentials line:

    Authorization: Bearer <token>

which sets the connection's credentials and produces no response.
"""

from __future__ import annotations

import asyncio
import contextlib
import ssl
from typing import TYPE_CHECKING, Any

from mcp_toolhost.logging import get_logger
from mcp_toolhost.protocol import (
    INVALID_REQUEST,
    JSONRPCError,
    create_internal_error,
    format_error_response,
)

if TYPE_CHECKING:
    from mcp_toolhost.config import ServerConfig
    from mcp_toolhost.server import MCPServer

logger = get_logger(__name__)

CREDENTIALS_PREFIX = b"authorization:"


def create_ssl_context(config: ServerConfig) -> ssl.SSLContext | None:
    """
    Build the server-side TLS context described by the configuration.

    Returns:
        An SSLContext, or None when TLS is disabled.

    Raises:
        OSError, ssl.SSLError: If the certificate or key cannot be loaded.
    """
    if not config.enable_tls:
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(certfile=config.tls_cert_path, keyfile=config.tls_key_path)
    return context


class StreamTransport:
    """
    asyncio TCP listener speaking newline-delimited JSON-RPC.

    Example:
        >>> transport = StreamTransport(port=0)
        >>> await transport.start(server)
        >>> transport.bound_port
        54321
    """

    def __init__(self, host: str | None = None, port: int | None = None) -> None:
        """
        Args:
            host: Bind address override (default: ``config.bind_address``).
            port: Port override (default: ``config.port``); 0 picks a free port.
        """
        self._host_override = host
        self._port_override = port
        self._server: asyncio.AbstractServer | None = None
        self._owner: MCPServer | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._max_message_size = 0

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> int | None:
        """Port the listener is bound to, or None when stopped."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self, owner: MCPServer) -> None:
        """
        Start listening.

        Args:
            owner: Server that creates connections and processes messages.

        Raises:
            OSError, ssl.SSLError: If the listener cannot be started.
        """
        if self._server is not None:
            return

        config = owner.config
        host = self._host_override or config.bind_address
        port = self._port_override if self._port_override is not None else config.port
        self._max_message_size = config.max_message_size
        ssl_context = create_ssl_context(config)

        self._owner = owner
        self._server = await asyncio.start_server(
            self._handle_client,
            host=host,
            port=port,
            ssl=ssl_context,
            limit=self._max_message_size + 2,
        )
        logger.info(
            "Transport listening",
            extra={"host": host, "port": self.bound_port, "tls": ssl_context is not None},
        )

    async def stop(self) -> None:
        """Stop accepting connections and end every client task."""
        server, self._server = self._server, None
        if server is not None:
            server.close()

        # wait_closed() blocks until every client handler has returned
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if server is not None:
            with contextlib.suppress(Exception):
                await server.wait_closed()
            logger.info("Transport stopped")

    async def serve_forever(self) -> None:
        """Block until the listener is closed."""
        if self._server is None:
            raise RuntimeError("Transport is not running")
        with contextlib.suppress(asyncio.CancelledError):
            await self._server.serve_forever()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        owner = self._owner
        if owner is None:
            writer.close()
            return

        peer = writer.get_extra_info("peername")
        address, port = _split_peer(peer)

        connection = owner.open_connection(address, port)
        if connection is None:
            error = create_internal_error(
                "Server at connection limit",
                details={"reason": "connection_limit"},
            )
            await _send_and_close(writer, format_error_response(None, error).to_json())
            return

        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        connection.add_close_callback(lambda _conn: writer.close())

        try:
            while not connection.is_closed:
                try:
                    line = await reader.readline()
                except ValueError:
                    error = JSONRPCError(
                        code=INVALID_REQUEST,
                        message=(
                            f"Invalid Request: Message exceeds "
                            f"{self._max_message_size} bytes"
                        ),
                    )
                    await _write_line(writer, format_error_response(None, error).to_json())
                    break

                if not line:
                    break

                message = line.strip()
                if not message:
                    continue

                if message[: len(CREDENTIALS_PREFIX)].lower() == CREDENTIALS_PREFIX:
                    credentials = message[len(CREDENTIALS_PREFIX) :].decode(
                        "utf-8", errors="replace"
                    )
                    connection.set_credentials(credentials.strip() or None)
                    logger.debug(
                        "Credentials attached",
                        extra={"connection_id": connection.connection_id},
                    )
                    continue

                response = await owner.handle_message(connection, message)
                if response is not None:
                    await _write_line(writer, response)

        except (ConnectionResetError, BrokenPipeError, asyncio.IncompleteReadError):
            pass

        except asyncio.CancelledError:
            raise

        except Exception as e:
            owner.connection_handler.handle_connection_error(connection, e)

        finally:
            connection.close()
            if task is not None:
                self._tasks.discard(task)
            with contextlib.suppress(Exception):
                await writer.wait_closed()


def _split_peer(peer: Any) -> tuple[str, int]:
    if isinstance(peer, tuple) and len(peer) >= 2:
        return str(peer[0]), int(peer[1])
    return (str(peer) if peer else "unknown"), 0


async def _write_line(writer: asyncio.StreamWriter, text: str) -> None:
    if writer.is_closing():
        return
    writer.write(text.encode("utf-8") + b"\n")
    await writer.drain()


async def _send_and_close(writer: asyncio.StreamWriter, text: str) -> None:
    try:
        await _write_line(writer, text)
    except (ConnectionResetError, BrokenPipeError):
        pass
    finally:
        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()
