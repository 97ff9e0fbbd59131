"""
Echo tool provider.

Exposes two trivial tools used for connectivity checks and examples:
- echo: return the given message
- reverse: return the given message reversed
"""

from __future__ import annotations

from typing import Any

from mcp_toolhost.errors import InvalidParamsError, MethodNotFoundError
from mcp_toolhost.models import Content, Tool
from mcp_toolhost.providers.base import ToolProvider

_MESSAGE_SCHEMA = {
    "type": "object",
    "properties": {
        "message": {"type": "string", "description": "Text to send back"},
    },
    "required": ["message"],
    "additionalProperties": False,
}


class EchoToolProvider(ToolProvider):
    """Provider for the ``echo`` and ``reverse`` tools."""

    def __init__(self, provider_id: str = "echo", prefix: str = "") -> None:
        """
        Args:
            provider_id: Registry id for this provider.
            prefix: Text prepended to every echoed message.
        """
        self.provider_id = provider_id
        self._prefix = prefix

    def get_tools(self) -> list[Tool]:
        return [
            Tool(
                name="echo",
                description="Echo a message back to the caller",
                input_schema=_MESSAGE_SCHEMA,
            ),
            Tool(
                name="reverse",
                description="Return a message with its characters reversed",
                input_schema=_MESSAGE_SCHEMA,
            ),
        ]

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> Content:
        message = arguments.get("message")
        if not isinstance(message, str):
            raise InvalidParamsError(
                message="'message' must be a string",
                details={"tool": name, "field": "message"},
            )

        if name == "reverse":
            return Content.text_content(message[::-1])
        if name == "echo":
            return Content.text_content(f"{self._prefix}{message}")
        raise MethodNotFoundError(
            message=f"Tool not found: {name}",
            details={"tool": name, "provider": self.provider_id},
        )
