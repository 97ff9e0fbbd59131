"""
Host information tool provider.

This module implements the host-inspection tools:
- system_info: basic hardware and software information about the host
- health_snapshot: CPU, memory and disk usage
- current_time: the current time in UTC or a given offset

Results are returned as JSON text content.
"""

from __future__ import annotations

import asyncio
import json
import platform
import socket
from datetime import UTC, datetime, timedelta, timezone
from time import time
from typing import TYPE_CHECKING, Any

import psutil

from mcp_toolhost.errors import InvalidParamsError, MethodNotFoundError
from mcp_toolhost.logging import get_logger
from mcp_toolhost.models import Content, Tool
from mcp_toolhost.providers.base import ToolProvider

if TYPE_CHECKING:
    from mcp_toolhost.config import ServerConfig

logger = get_logger(__name__)

_EMPTY_SCHEMA = {"type": "object", "properties": {}, "additionalProperties": False}


def _collect_system_info() -> dict[str, Any]:
    """
    Collect basic host information.

    Returns:
        Dictionary with hostname, platform, CPU and memory details.
    """
    return {
        "hostname": socket.gethostname(),
        "os_name": platform.system(),
        "os_release": platform.release(),
        "cpu_arch": platform.machine(),
        "cpu_cores": psutil.cpu_count(logical=True) or 1,
        "memory_total_bytes": psutil.virtual_memory().total,
        "python_version": platform.python_version(),
        "uptime_seconds": int(time() - psutil.boot_time()),
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _collect_health_snapshot(disk_path: str) -> dict[str, Any]:
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage(disk_path)
    return {
        "timestamp": datetime.now(UTC).isoformat(),
        "cpu_usage_percent": psutil.cpu_percent(interval=0.1),
        "memory_used_bytes": memory.used,
        "memory_total_bytes": memory.total,
        "disk_path": disk_path,
        "disk_used_bytes": disk.used,
        "disk_total_bytes": disk.total,
    }


class SystemToolProvider(ToolProvider):
    """
    Provider for host inspection tools.

    The disk path inspected by ``health_snapshot`` is read from
    ``custom_settings["system_disk_path"]`` (default "/").
    """

    provider_id = "system"

    def __init__(self) -> None:
        self._disk_path = "/"
        self._server_name = "mcp-toolhost"

    def initialize(self, config: ServerConfig | None) -> None:
        if config is None:
            return
        self._server_name = config.server_name
        self._disk_path = str(config.custom_settings.get("system_disk_path", "/"))
        logger.debug(
            "System tool provider initialized",
            extra={"disk_path": self._disk_path},
        )

    def get_tools(self) -> list[Tool]:
        return [
            Tool(
                name="system_info",
                description="Return basic hardware and software information about the host",
                input_schema=_EMPTY_SCHEMA,
            ),
            Tool(
                name="health_snapshot",
                description="Return current CPU, memory and disk usage",
                input_schema=_EMPTY_SCHEMA,
            ),
            Tool(
                name="current_time",
                description="Return the current time, optionally at a UTC offset",
                input_schema={
                    "type": "object",
                    "properties": {
                        "utc_offset_minutes": {
                            "type": "integer",
                            "minimum": -1439,
                            "maximum": 1439,
                        },
                    },
                    "additionalProperties": False,
                },
            ),
        ]

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> Content:
        if name == "system_info":
            info = await asyncio.to_thread(_collect_system_info)
            info["server_name"] = self._server_name
            return Content.text_content(json.dumps(info))

        if name == "health_snapshot":
            snapshot = await asyncio.to_thread(_collect_health_snapshot, self._disk_path)
            return Content.text_content(json.dumps(snapshot))

        if name == "current_time":
            offset = arguments.get("utc_offset_minutes", 0)
            if isinstance(offset, bool) or not isinstance(offset, int) or abs(offset) >= 1440:
                raise InvalidParamsError(
                    message="'utc_offset_minutes' must be an integer between -1439 and 1439",
                    details={"tool": name},
                )
            now = datetime.now(timezone(timedelta(minutes=offset)))
            return Content.text_content(now.isoformat())

        raise MethodNotFoundError(
            message=f"Tool not found: {name}",
            details={"tool": name, "provider": self.provider_id},
        )
