"""
Audit trail for the MCP tool host.

One JSON line per event: tool calls (with caller identity, outcome and
duration), authentication decisions, and server lifecycle changes. Lines go
to a dedicated ``mcp_toolhost.audit`` file logger when a path is configured,
otherwise to the application log.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from mcp_toolhost.logging import get_logger

if TYPE_CHECKING:
    from mcp_toolhost.config import ServerConfig
    from mcp_toolhost.connection import ClientConnection

logger = get_logger(__name__)

AUDIT_LOGGER_NAME = "mcp_toolhost.audit"

# Key fragments whose values never reach the audit trail in clear
SENSITIVE_KEY_MARKERS = frozenset(
    {"token", "password", "secret", "api_key", "apikey", "private_key", "credential", "auth"}
)

MASK = "<masked>"


def mask_value(value: Any) -> str:
    """Keep the outer two characters of long strings, hide everything else."""
    if isinstance(value, str) and len(value) > 8:
        return f"{value[:2]}...{value[-2:]}"
    return MASK


def mask_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """
    Return a copy of ``data`` with sensitive values masked.

    Keys are matched case-insensitively against ``SENSITIVE_KEY_MARKERS``.
    Nested objects, and objects inside lists, are masked recursively.
    """

    def visit(key: Any, value: Any) -> Any:
        lowered = str(key).lower()
        if any(marker in lowered for marker in SENSITIVE_KEY_MARKERS):
            return mask_value(value)
        if isinstance(value, dict):
            return mask_sensitive(value)
        if isinstance(value, list):
            return [mask_sensitive(v) if isinstance(v, dict) else v for v in value]
        return value

    return {key: visit(key, value) for key, value in data.items()}


class AuditLogger:
    """
    Writes audit events as JSON lines.

    A tool call entry looks like::

        {"timestamp": "2026-01-15T14:30:00+00:00", "event_type": "tool_call",
         "action": "system_info", "result": "success", "request_id": 7,
         "connection_id": "4f0c...", "user_id": "alice", "role": "operator",
         "source_ip": "192.168.1.100", "duration_ms": 4.2}

    Example:
        >>> audit = AuditLogger.from_config(config)
        >>> audit.log_tool_call(connection, "echo", status="success")
    """

    def __init__(
        self,
        audit_log_path: str | None = None,
        log_to_file: bool = True,
        log_to_app_log: bool = False,
    ) -> None:
        """
        Args:
            audit_log_path: File receiving audit lines.
            log_to_file: Attach the file handler (needs ``audit_log_path``).
            log_to_app_log: Also emit lines on the application logger. Forced
                on when the file cannot be opened.
        """
        self._path = audit_log_path
        self._mirror_to_app_log = log_to_app_log
        self._sink: logging.Logger | None = None
        self._handler: logging.Handler | None = None

        if log_to_file and audit_log_path:
            self._open_file(audit_log_path)

    @classmethod
    def from_config(cls, config: ServerConfig) -> AuditLogger:
        """File output when ``config.audit_log_path`` is set, the app log otherwise."""
        has_path = config.audit_log_path is not None
        return cls(
            audit_log_path=config.audit_log_path,
            log_to_file=has_path,
            log_to_app_log=not has_path,
        )

    @property
    def writes_to_file(self) -> bool:
        return self._sink is not None

    def _open_file(self, path: str) -> None:
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        except OSError as e:
            logger.error(
                "Audit file unavailable, using the application log",
                extra={"path": path, "error": str(e)},
            )
            self._mirror_to_app_log = True
            return

        handler.setFormatter(logging.Formatter("%(message)s"))
        sink = logging.getLogger(AUDIT_LOGGER_NAME)
        sink.setLevel(logging.INFO)
        sink.propagate = False
        for old in list(sink.handlers):
            sink.removeHandler(old)
            old.close()
        sink.addHandler(handler)

        self._sink = sink
        self._handler = handler
        logger.info("Audit file opened", extra={"path": path})

    def close(self) -> None:
        """Detach and close the file handler. Safe to call twice."""
        if self._sink is not None and self._handler is not None:
            self._sink.removeHandler(self._handler)
            self._handler.close()
        self._sink = None
        self._handler = None

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def log_tool_call(
        self,
        connection: ClientConnection | None,
        tool_name: str,
        status: str,
        error_code: str | None = None,
        params: dict[str, Any] | None = None,
        duration_ms: float | None = None,
        request_id: Any = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        """
        Record one ``tools/call``.

        Args:
            connection: Caller; identity comes from its metadata.
            tool_name: Invoked tool.
            status: "success" or "error".
            error_code: Machine error code for failed calls.
            params: Tool arguments, masked before writing.
            duration_ms: Execution time.
            request_id: JSON-RPC id of the call.
            extra: Additional fields; never replaces a standard field.
        """
        entry = _new_entry(
            "tool_call", action=tool_name, result=status, request_id=request_id
        )
        entry.update(_caller_fields(connection))
        if error_code:
            entry["error_code"] = error_code
        if params:
            entry["params"] = self._mask_sensitive_fields(params)
        if duration_ms is not None:
            entry["duration_ms"] = round(duration_ms, 2)
        for key, value in (extra or {}).items():
            entry.setdefault(key, value)
        self._write_entry(entry)

    def log_auth_event(
        self,
        event_type: str,
        success: bool,
        user_id: str | None = None,
        source_ip: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record an authentication or authorization decision."""
        entry = _new_entry(
            event_type, success=success, user_id=user_id, source_ip=source_ip
        )
        if details:
            entry["details"] = self._mask_sensitive_fields(details)
        self._write_entry(entry)

    def log_server_event(
        self,
        event_type: str,
        description: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record a lifecycle or configuration change of the server."""
        entry = _new_entry(event_type, description=description)
        if details:
            entry["details"] = self._mask_sensitive_fields(details)
        self._write_entry(entry)

    def _mask_sensitive_fields(self, data: dict[str, Any]) -> dict[str, Any]:
        return mask_sensitive(data)

    def _write_entry(self, entry: dict[str, Any]) -> None:
        line = json.dumps(entry, default=str)
        if self._sink is not None:
            try:
                self._sink.info(line)
            except Exception as e:
                logger.error("Audit write failed", extra={"error": str(e)})
        if self._mirror_to_app_log:
            logger.info("AUDIT: %s", line)


def _new_entry(event_type: str, **fields: Any) -> dict[str, Any]:
    return {
        "timestamp": datetime.now(UTC).isoformat(),
        "event_type": event_type,
        **fields,
    }


def _caller_fields(connection: ClientConnection | None) -> dict[str, Any]:
    if connection is None:
        return {}
    fields: dict[str, Any] = {
        "connection_id": connection.connection_id,
        "user_id": connection.metadata.get("user_id"),
        "role": connection.metadata.get("role"),
    }
    if connection.remote_address:
        fields["source_ip"] = connection.remote_address
    return fields
