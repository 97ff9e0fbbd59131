"""
Tool providers for the MCP tool host.

- ToolProvider: provider interface
- ToolProviderRegistry: aggregation, name resolution and execution
- EchoToolProvider, SystemToolProvider: built-in providers
"""

from mcp_toolhost.providers.base import ToolProvider
from mcp_toolhost.providers.echo import EchoToolProvider
from mcp_toolhost.providers.registry import (
    ExecutionStatistics,
    ToolProviderRegistry,
    ToolValidationResult,
)
from mcp_toolhost.providers.system import SystemToolProvider

__all__ = [
    "ToolProvider",
    "ToolProviderRegistry",
    "ToolValidationResult",
    "ExecutionStatistics",
    "EchoToolProvider",
    "SystemToolProvider",
]
