"""
Configuration management for the MCP tool host.

This module implements the ServerConfig Pydantic model and configuration
loading. A ServerConfig is an immutable snapshot: the server swaps whole
snapshots rather than mutating one in place.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (--config path or MCP_TOOLHOST_CONFIG)
3. Environment variables (MCP_TOOLHOST_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from mcp_toolhost.errors import ConfigurationError

ENV_PREFIX = "MCP_TOOLHOST_"

VALID_LOG_LEVELS = {"debug", "info", "warn", "warning", "error", "critical"}


# =============================================================================
# Authentication Configuration
# =============================================================================


class StaticTokenConfig(BaseModel):
    """A static bearer token entry.

    Attributes:
        user_id: Identity the token authenticates as.
        role: Role granted to the identity (viewer, operator, admin).
    """

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(description="Identity the token authenticates as")
    role: str = Field(default="viewer", description="Role granted to the identity")


class AuthConfig(BaseModel):
    """Authentication provider configuration.

    Attributes:
        mode: Provider kind ('token' for static tokens, 'jwt' for signed tokens).
        static_tokens: Token to identity table for 'token' mode.
        jwt_secret: Shared HMAC secret for 'jwt' mode.
        jwt_algorithm: JWT signing algorithm.
        jwt_issuer: Issuer claim written into and required from tokens.
        jwt_audience: Audience claim written into and required from tokens.
        token_ttl_seconds: Lifetime of issued tokens.
        operation_roles: Minimum role per protocol method.
        tool_roles: Minimum role per tool name (``tools/call`` resource).
        default_role: Role required for operations without an entry.
    """

    model_config = ConfigDict(frozen=True)

    mode: str = Field(
        default="token",
        description="Authentication mode: 'token' or 'jwt'",
    )
    static_tokens: dict[str, StaticTokenConfig] = Field(
        default_factory=dict,
        description="Static bearer tokens mapped to identities",
    )
    jwt_secret: str = Field(
        default="",
        description="Shared HMAC secret used to sign and verify tokens",
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm",
    )
    jwt_issuer: str = Field(
        default="mcp-toolhost",
        description="Expected issuer (iss) claim",
    )
    jwt_audience: str = Field(
        default="mcp-toolhost",
        description="Expected audience (aud) claim",
    )
    token_ttl_seconds: int = Field(
        default=3600,
        description="Lifetime of issued tokens in seconds",
        gt=0,
    )
    operation_roles: dict[str, str] = Field(
        default_factory=dict,
        description="Minimum role per protocol method",
    )
    tool_roles: dict[str, str] = Field(
        default_factory=dict,
        description="Minimum role per tool name",
    )
    default_role: str = Field(
        default="viewer",
        description="Role required for operations without an explicit entry",
    )

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        """Validate authentication mode."""
        valid_modes = {"token", "jwt"}
        v_lower = v.lower()
        if v_lower not in valid_modes:
            raise ValueError(
                f"Invalid auth mode: {v}. Must be one of: {', '.join(sorted(valid_modes))}"
            )
        return v_lower


# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """
    Server configuration snapshot.

    Invariants (checked on construction and by ``validate()``):
    - 1 <= port <= 65535
    - max_connections > 0
    - connection and request timeouts > 0
    - bind_address is non-empty
    - with enable_tls, both tls_cert_path and tls_key_path are non-empty

    Attributes:
        server_name: Name reported in ``initialize`` serverInfo.
        version: Version reported in ``initialize`` serverInfo.
        port: TCP port for the listener.
        bind_address: Address the listener binds to.
        max_connections: Maximum concurrently active connections.
        connection_timeout_seconds: Idle time after which a connection is closed.
        request_timeout_seconds: Deadline for a single tool execution.
        enable_authentication: Whether the authentication gate is active.
        logging_level: Application log level.
        enable_tls: Whether the listener wraps connections in TLS.
        tls_cert_path: PEM certificate path.
        tls_key_path: PEM private key path.
        custom_settings: Free-form settings passed to tool providers.
    """

    model_config = ConfigDict(frozen=True)

    server_name: str = Field(
        default="mcp-toolhost",
        description="Server name reported to clients",
    )
    version: str = Field(
        default="0.1.0",
        description="Server version reported to clients",
    )
    port: int = Field(
        default=8765,
        description="TCP port for the listener",
        ge=1,
        le=65535,
    )
    bind_address: str = Field(
        default="127.0.0.1",
        description="Address the listener binds to",
        min_length=1,
    )
    max_connections: int = Field(
        default=100,
        description="Maximum concurrently active connections",
        gt=0,
    )
    connection_timeout_seconds: int = Field(
        default=300,
        description="Idle seconds before a connection is closed",
        gt=0,
    )
    request_timeout_seconds: int = Field(
        default=30,
        description="Deadline in seconds for a single tool execution",
        gt=0,
    )
    enable_authentication: bool = Field(
        default=False,
        description="Require authentication for gated methods",
    )
    logging_level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error, critical",
    )
    enable_tls: bool = Field(
        default=False,
        description="Wrap connections in TLS",
    )
    tls_cert_path: str = Field(
        default="",
        description="PEM certificate path",
    )
    tls_key_path: str = Field(
        default="",
        description="PEM private key path",
    )
    custom_settings: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form settings passed to tool providers",
    )

    log_json: bool = Field(
        default=True,
        description="Emit JSON structured logs",
    )
    audit_log_path: str | None = Field(
        default=None,
        description="Audit log file path (audit to the app log when unset)",
    )
    auth_exempt_methods: list[str] = Field(
        default_factory=lambda: ["initialize", "ping"],
        description="Methods that bypass the authentication gate",
    )
    require_initialize: bool = Field(
        default=True,
        description="Reject session methods that arrive before 'initialize'",
    )
    timeout_check_interval_seconds: float = Field(
        default=5.0,
        description="Interval of the idle-connection scan",
        gt=0,
    )
    max_message_size: int = Field(
        default=1024 * 1024,
        description="Maximum accepted message size in bytes",
        gt=0,
    )
    auth: AuthConfig = Field(
        default_factory=AuthConfig,
        description="Authentication provider settings",
    )

    @field_validator("logging_level")
    @classmethod
    def validate_logging_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v_lower = v.lower()
        if v_lower not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower

    @field_validator("bind_address")
    @classmethod
    def validate_bind_address(cls, v: str) -> str:
        """Reject blank bind addresses."""
        if not v.strip():
            raise ValueError("bind_address must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_tls(self) -> ServerConfig:
        """Require both TLS paths when TLS is enabled."""
        if self.enable_tls and not (self.tls_cert_path and self.tls_key_path):
            raise ValueError(
                "enable_tls requires both tls_cert_path and tls_key_path"
            )
        return self

    def validate(self) -> None:  # type: ignore[override]
        """
        Re-check the invariants of this snapshot.

        Snapshots built with ``model_construct`` skip validation; this method
        runs the full model validation over the current field values.

        Raises:
            ConfigurationError: If any invariant is violated.
        """
        try:
            type(self).model_validate(self.model_dump())
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            ]
            raise ConfigurationError(
                message=f"Invalid server configuration: {'; '.join(problems)}",
                details={"errors": problems},
            ) from e

    def is_valid(self) -> bool:
        """Return True if ``validate()`` passes."""
        try:
            self.validate()
        except ConfigurationError:
            return False
        return True


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Dictionary with configuration values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Environment variables are parsed with the following rules:
    - Prefix: MCP_TOOLHOST_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: MCP_TOOLHOST_AUTH__MODE=jwt

    ``MCP_TOOLHOST_CONFIG`` names the YAML file and is not a setting.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key == f"{prefix}CONFIG":
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="MCP tool host",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument("--port", "-p", type=int, help="Override listen port")
    parser.add_argument("--bind", type=str, help="Override bind address")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--enable-auth",
        action="store_true",
        help="Enable the authentication gate",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config
    if parsed.port is not None:
        result["port"] = parsed.port
    if parsed.bind:
        result["bind_address"] = parsed.bind
    if parsed.log_level:
        result["logging_level"] = parsed.log_level
    if parsed.enable_auth:
        result["enable_authentication"] = True
    if parsed.debug:
        result["logging_level"] = "debug"
        result["log_json"] = False

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> ServerConfig:
    """
    Load configuration from all sources with layered precedence.

    Later sources override earlier ones: defaults < YAML < environment < CLI.

    Args:
        config_path: Path to YAML configuration file. If None, uses the CLI
            --config argument or the MCP_TOOLHOST_CONFIG variable.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Validated ServerConfig instance.

    Raises:
        FileNotFoundError: If the specified config file doesn't exist.
        pydantic.ValidationError: If the configuration is invalid.

    Example:
        >>> config = load_config(cli_args=["--port", "9000"])
        >>> config.port
        9000
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif os.environ.get(f"{env_prefix}CONFIG"):
            config_path = Path(os.environ[f"{env_prefix}CONFIG"])
    elif isinstance(config_path, str):
        config_path = Path(config_path)
    cli_config.pop("_config_path", None)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return ServerConfig(**config_dict)
