"""
MCP tool host - JSON-RPC 2.0 tool-invocation server.

This package implements an MCP-style protocol engine: clients open a session,
negotiate a protocol version, discover tools contributed by pluggable tool
providers and invoke them, optionally behind an authentication gate.
"""

__version__ = "0.1.0"
