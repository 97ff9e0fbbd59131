"""
Tool provider interface.

A tool provider contributes a bounded set of tools to the registry and
executes them. Providers are registered with a ToolProviderRegistry, which
initializes them, indexes their tools by name and routes calls to them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_toolhost.config import ServerConfig
    from mcp_toolhost.models import Content, Tool


class ToolProvider(ABC):
    """
    Abstract base class for tool providers.

    Example:
        >>> class GreetingProvider(ToolProvider):
        ...     provider_id = "greeting"
        ...
        ...     def get_tools(self) -> list[Tool]:
        ...         return [Tool("greet", "Say hello", {"type": "object"})]
        ...
        ...     async def execute_tool(self, name, arguments):
        ...         return Content.text_content(f"Hello, {arguments.get('who', 'world')}")
    """

    provider_id: str

    def initialize(self, config: ServerConfig | None) -> None:
        """
        Prepare the provider for use.

        Called once by the registry during registration. Raising aborts the
        registration.

        Args:
            config: Server configuration snapshot, if the registry has one.
        """

    @abstractmethod
    def get_tools(self) -> list[Tool]:
        """
        Return the tools this provider exposes, in declaration order.

        Returns:
            List of Tool descriptors.
        """

    @abstractmethod
    async def execute_tool(
        self, name: str, arguments: dict[str, Any]
    ) -> Content | Sequence[Content]:
        """
        Execute one of this provider's tools.

        Args:
            name: Tool name.
            arguments: Decoded tool arguments.

        Returns:
            A Content payload or a sequence of them.
        """

    def cleanup(self) -> None:
        """Release provider resources. Called on unregister and server stop."""
