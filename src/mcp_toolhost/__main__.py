"""
Command-line entry point for the MCP tool host.

Usage:
    python -m mcp_toolhost --config /etc/mcp-toolhost/config.yml
    mcp-toolhost --port 9000 --debug
"""

from __future__ import annotations

import asyncio
import signal
import sys

from mcp_toolhost.config import load_config
from mcp_toolhost.logging import get_logger, setup_logging
from mcp_toolhost.providers.echo import EchoToolProvider
from mcp_toolhost.providers.system import SystemToolProvider
from mcp_toolhost.server import MCPServer

logger = get_logger(__name__)


async def run_server(server: MCPServer) -> None:
    """
    Run the server until SIGINT/SIGTERM.

    Args:
        server: A configured, not yet started server.
    """
    loop = asyncio.get_running_loop()
    serve_task = asyncio.create_task(server.serve_forever())

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        serve_task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except (ValueError, NotImplementedError):
            # Signal handling not supported on this platform
            pass

    try:
        await serve_task
    except asyncio.CancelledError:
        pass


def main(argv: list[str] | None = None) -> int:
    """
    Load configuration, start the server with the built-in providers and serve.

    Returns:
        Process exit code.
    """
    try:
        config = load_config(cli_args=argv)
    except Exception as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(config)

    server = MCPServer(config)
    server.register_tool_provider(EchoToolProvider())
    server.register_tool_provider(SystemToolProvider())

    try:
        asyncio.run(run_server(server))
    except RuntimeError as e:
        logger.error("Server exited with an error", extra={"error": str(e)})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
