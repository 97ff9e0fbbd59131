"""
Authentication providers for the MCP tool host.

The message processor consults an AuthenticationProvider for every gated
method. Credentials are the opaque string the transport attached to the
connection (for the stream transport, the value of an out-of-band
``Authorization`` line), optionally prefixed with the provider's scheme.

Implementations:
- StaticTokenAuthProvider: fixed token to identity table from configuration
- JWTAuthProvider: HS256-signed tokens issued and verified with PyJWT

Both authorize through an RBACEnforcer.
"""

from __future__ import annotations

import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
)

from mcp_toolhost.errors import ConfigurationError, UnauthenticatedError
from mcp_toolhost.logging import get_logger
from mcp_toolhost.security.rbac import RBACEnforcer

if TYPE_CHECKING:
    from mcp_toolhost.config import AuthConfig, ServerConfig, StaticTokenConfig

logger = get_logger(__name__)


@dataclass
class Identity:
    """
    Authenticated caller identity.

    Attributes:
        user_id: User identifier (static token owner or JWT 'sub' claim).
        role: Internal role (viewer, operator, admin).
        auth_method: How the identity was established ('static_token', 'jwt').
        token_exp: Token expiration time (if applicable).
        client_info: Client details recorded at authentication time.
    """

    user_id: str
    role: str = "viewer"
    auth_method: str = "static_token"
    token_exp: datetime | None = None
    client_info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "user_id": self.user_id,
            "role": self.role,
            "auth_method": self.auth_method,
            "token_exp": self.token_exp.isoformat() if self.token_exp else None,
        }


# =============================================================================
# Provider contract
# =============================================================================


class AuthenticationProvider(ABC):
    """
    Pluggable authentication provider.

    ``authenticate`` is the only method that creates session state.
    ``authorize`` is side-effect free and safe to call on every request.

    Subclasses implement ``_resolve_identity`` (raise UnauthenticatedError on
    bad credentials), ``validate_token`` and ``get_authentication_scheme``.
    """

    def __init__(self, rbac: RBACEnforcer | None = None) -> None:
        self._rbac = rbac or RBACEnforcer()
        self._rbac_from_config = rbac is None
        self._sessions: dict[str, Identity] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self, config: ServerConfig | None) -> None:
        """
        Prepare the provider. Called by the server during start.

        Args:
            config: Server configuration snapshot.

        Raises:
            ConfigurationError: If the provider cannot operate with the config.
        """
        if config is not None and self._rbac_from_config:
            self._rbac = RBACEnforcer.from_config(config.auth)

    def cleanup(self) -> None:
        """Drop every session. Called by the server during stop."""
        with self._lock:
            self._sessions.clear()

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    @abstractmethod
    def get_authentication_scheme(self) -> str:
        """Return the scheme name clients prefix their credentials with."""

    @abstractmethod
    def validate_token(self, token: str) -> bool:
        """Return True if the token is currently acceptable."""

    @abstractmethod
    def _resolve_identity(self, token: str) -> Identity:
        """Map a bare token to an identity or raise UnauthenticatedError."""

    def authenticate(
        self, credentials: str | None, client_info: dict[str, Any] | None = None
    ) -> bool:
        """
        Authenticate credentials and open a session for them.

        Args:
            credentials: Opaque credential string, optionally scheme-prefixed.
            client_info: Client details (address, port, connection id).

        Returns:
            True if the credentials were accepted.
        """
        token = self.extract_token(credentials)
        client_info = dict(client_info or {})
        if not token:
            logger.info(
                "Authentication failed",
                extra={"reason": "missing_token", **_client_fields(client_info)},
            )
            return False

        try:
            identity = self._resolve_identity(token)
        except UnauthenticatedError as e:
            logger.info(
                "Authentication failed",
                extra={
                    "reason": e.details.get("reason", e.message),
                    **_client_fields(client_info),
                },
            )
            return False

        identity.client_info = client_info
        with self._lock:
            self._prune_sessions()
            self._sessions[token] = identity

        logger.info(
            "Authentication succeeded",
            extra={
                "user_id": identity.user_id,
                "role": identity.role,
                "auth_method": identity.auth_method,
                **_client_fields(client_info),
            },
        )
        return True

    def authorize(
        self, credentials: str | None, operation: str, resource: str | None = None
    ) -> bool:
        """
        Decide whether the session behind credentials may perform an operation.

        Args:
            credentials: Credentials previously passed to ``authenticate``.
            operation: Protocol method name.
            resource: Optional resource (tool name for ``tools/call``).

        Returns:
            True if allowed.
        """
        identity = self.get_identity(credentials)
        if identity is None:
            return False
        return self._rbac.is_allowed(identity.role, operation, resource)

    def refresh_token(self, token: str) -> str:
        """
        Exchange a token for a new one.

        Returns:
            The new token, or an empty string when refresh is unsupported.
        """
        return ""

    def logout(self, credentials: str | None) -> bool:
        """
        End the session behind credentials.

        Returns:
            True if a session existed.
        """
        token = self.extract_token(credentials)
        with self._lock:
            identity = self._sessions.pop(token, None)
        if identity is not None:
            logger.info("Session ended", extra={"user_id": identity.user_id})
        return identity is not None

    def get_identity(self, credentials: str | None) -> Identity | None:
        """Return the session identity for credentials, or None."""
        token = self.extract_token(credentials)
        if not token:
            return None
        with self._lock:
            return self._sessions.get(token)

    @property
    def session_count(self) -> int:
        """Number of open sessions. Sessions whose token has expired are dropped first."""
        with self._lock:
            self._prune_sessions()
            return len(self._sessions)

    @property
    def rbac(self) -> RBACEnforcer:
        """The enforcer used by ``authorize``."""
        return self._rbac

    def extract_token(self, credentials: str | None) -> str:
        """
        Strip a scheme prefix ("Bearer ", "JWT ", case-insensitive) from credentials.

        Args:
            credentials: Raw credential string.

        Returns:
            The bare token, or an empty string.
        """
        if not credentials:
            return ""
        credentials = credentials.strip()
        scheme, _, rest = credentials.partition(" ")
        if rest and scheme.lower() in {"bearer", self.get_authentication_scheme().lower()}:
            return rest.strip()
        return credentials

    def _prune_sessions(self) -> None:
        now = time.time()
        expired = [
            token
            for token, identity in self._sessions.items()
            if identity.token_exp is not None and identity.token_exp.timestamp() < now
        ]
        for token in expired:
            del self._sessions[token]


def _client_fields(client_info: dict[str, Any]) -> dict[str, Any]:
    return {
        key: client_info[key]
        for key in ("connection_id", "remote_address")
        if key in client_info
    }


# =============================================================================
# Static tokens
# =============================================================================


class StaticTokenAuthProvider(AuthenticationProvider):
    """
    Authentication against a fixed token table.

    Tokens never expire; ``logout`` ends the session but the token remains
    valid for a later ``authenticate``.

    Example:
        >>> provider = StaticTokenAuthProvider({"s3cret": ("alice", "operator")})
        >>> provider.authenticate("Bearer s3cret", {})
        True
    """

    SCHEME = "Bearer"

    def __init__(
        self,
        tokens: dict[str, tuple[str, str]] | None = None,
        rbac: RBACEnforcer | None = None,
    ) -> None:
        """
        Args:
            tokens: Token to (user_id, role) table. Entries from
                ``config.auth.static_tokens`` are added on ``initialize``.
            rbac: Enforcer; built from ``config.auth`` on ``initialize`` if omitted.
        """
        super().__init__(rbac)
        self._tokens: dict[str, tuple[str, str]] = dict(tokens or {})

    @classmethod
    def from_config(cls, config: AuthConfig) -> StaticTokenAuthProvider:
        """Create a provider from the ``auth`` section of the configuration."""
        provider = cls(rbac=RBACEnforcer.from_config(config))
        provider.add_tokens(config.static_tokens)
        return provider

    def initialize(self, config: ServerConfig | None) -> None:
        super().initialize(config)
        if config is not None:
            self.add_tokens(config.auth.static_tokens)
        logger.info(
            "Static token authentication initialized",
            extra={"tokens": len(self._tokens)},
        )

    def add_tokens(self, tokens: dict[str, StaticTokenConfig]) -> None:
        """Add configured tokens without replacing existing entries."""
        for token, entry in tokens.items():
            self._tokens.setdefault(token, (entry.user_id, entry.role))

    def get_authentication_scheme(self) -> str:
        return self.SCHEME

    def validate_token(self, token: str) -> bool:
        return self.extract_token(token) in self._tokens

    def _resolve_identity(self, token: str) -> Identity:
        entry = self._tokens.get(token)
        if entry is None:
            raise UnauthenticatedError(
                message="Invalid static token",
                details={"reason": "invalid_token"},
            )
        user_id, role = entry
        return Identity(user_id=user_id, role=role, auth_method="static_token")


# =============================================================================
# JWT
# =============================================================================


class JWTAuthProvider(AuthenticationProvider):
    """
    Authentication with HMAC-signed JSON Web Tokens.

    Tokens carry ``sub``, ``role``, ``iat``, ``exp``, ``iss``, ``aud`` and a
    unique ``jti``. Validation checks signature, expiry, issuer, audience and
    the revocation list. ``refresh_token`` and ``logout`` revoke the old ``jti``.

    Example:
        >>> provider = JWTAuthProvider(secret="change-me")
        >>> token = provider.issue_token("alice", role="operator")
        >>> provider.authenticate(f"JWT {token}", {})
        True
    """

    SCHEME = "JWT"

    def __init__(
        self,
        secret: str = "",
        issuer: str = "mcp-toolhost",
        audience: str = "mcp-toolhost",
        algorithm: str = "HS256",
        ttl_seconds: int = 3600,
        rbac: RBACEnforcer | None = None,
    ) -> None:
        """
        Args:
            secret: Shared HMAC secret. Taken from ``config.auth.jwt_secret``
                on ``initialize`` if empty.
            issuer: Issuer claim written and required.
            audience: Audience claim written and required.
            algorithm: Signing algorithm.
            ttl_seconds: Lifetime of issued tokens.
            rbac: Enforcer; built from ``config.auth`` on ``initialize`` if omitted.
        """
        super().__init__(rbac)
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._algorithm = algorithm
        self._ttl_seconds = ttl_seconds
        # jti -> exp timestamp; entries are pruned once the token would have expired
        self._revoked: dict[str, float] = {}

    @classmethod
    def from_config(cls, config: AuthConfig) -> JWTAuthProvider:
        """Create a provider from the ``auth`` section of the configuration."""
        return cls(
            secret=config.jwt_secret,
            issuer=config.jwt_issuer,
            audience=config.jwt_audience,
            algorithm=config.jwt_algorithm,
            ttl_seconds=config.token_ttl_seconds,
            rbac=RBACEnforcer.from_config(config),
        )

    def initialize(self, config: ServerConfig | None) -> None:
        super().initialize(config)
        if config is not None and not self._secret:
            auth = config.auth
            self._secret = auth.jwt_secret
            self._issuer = auth.jwt_issuer
            self._audience = auth.jwt_audience
            self._algorithm = auth.jwt_algorithm
            self._ttl_seconds = auth.token_ttl_seconds
        if not self._secret:
            raise ConfigurationError(
                message="JWT authentication requires a non-empty jwt_secret",
                details={"field": "auth.jwt_secret"},
            )
        logger.info(
            "JWT authentication initialized",
            extra={"issuer": self._issuer, "audience": self._audience},
        )

    def cleanup(self) -> None:
        super().cleanup()
        with self._lock:
            self._revoked.clear()

    def get_authentication_scheme(self) -> str:
        return self.SCHEME

    def issue_token(
        self, subject: str, role: str = "viewer", ttl_seconds: int | None = None
    ) -> str:
        """
        Issue a signed token.

        Args:
            subject: User identifier for the ``sub`` claim.
            role: Role for the ``role`` claim.
            ttl_seconds: Lifetime override.

        Returns:
            Encoded JWT.
        """
        if not self._secret:
            raise ConfigurationError(
                message="Cannot issue tokens without a jwt_secret",
                details={"field": "auth.jwt_secret"},
            )
        now = int(time.time())
        payload = {
            "sub": subject,
            "role": role,
            "iat": now,
            "exp": now + (ttl_seconds or self._ttl_seconds),
            "iss": self._issuer,
            "aud": self._audience,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def validate_token(self, token: str) -> bool:
        try:
            self._decode(self.extract_token(token))
        except UnauthenticatedError:
            return False
        return True

    def refresh_token(self, token: str) -> str:
        """
        Re-issue a still-valid token and revoke the old one.

        Returns:
            The new token, or an empty string if the old one is not valid.
        """
        token = self.extract_token(token)
        try:
            payload = self._decode(token)
        except UnauthenticatedError as e:
            logger.info(
                "Token refresh rejected",
                extra={"reason": e.details.get("reason", e.message)},
            )
            return ""

        new_token = self.issue_token(payload["sub"], payload.get("role", "viewer"))
        self._revoke(payload)
        with self._lock:
            identity = self._sessions.pop(token, None)
            if identity is not None:
                self._sessions[new_token] = identity
        logger.info("Token refreshed", extra={"user_id": payload["sub"]})
        return new_token

    def logout(self, credentials: str | None) -> bool:
        token = self.extract_token(credentials)
        try:
            payload = self._decode(token, verify_exp=False)
        except UnauthenticatedError:
            payload = None
        if payload is not None:
            self._revoke(payload)
        return super().logout(token)

    def get_identity(self, credentials: str | None) -> Identity | None:
        token = self.extract_token(credentials)
        if not token or not self.validate_token(token):
            return None
        return super().get_identity(token)

    def is_revoked(self, jti: str) -> bool:
        """Return True if a token id has been revoked."""
        with self._lock:
            self._prune_revoked()
            return jti in self._revoked

    def _resolve_identity(self, token: str) -> Identity:
        payload = self._decode(token)
        return Identity(
            user_id=str(payload.get("sub", "")),
            role=str(payload.get("role", "viewer")),
            auth_method="jwt",
            token_exp=datetime.fromtimestamp(payload["exp"], tz=UTC),
        )

    def _decode(self, token: str, verify_exp: bool = True) -> dict[str, Any]:
        if not token:
            raise UnauthenticatedError(
                message="No authentication token provided",
                details={"reason": "missing_token"},
            )
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={
                    "require": ["exp", "iat", "sub", "jti"],
                    "verify_exp": verify_exp,
                },
            )
        except ExpiredSignatureError as e:
            raise UnauthenticatedError(
                message="Token has expired",
                details={"reason": "token_expired"},
            ) from e
        except InvalidSignatureError as e:
            raise UnauthenticatedError(
                message="Invalid token signature",
                details={"reason": "invalid_signature"},
            ) from e
        except InvalidAudienceError as e:
            raise UnauthenticatedError(
                message="Invalid token audience",
                details={"reason": "invalid_audience", "expected": self._audience},
            ) from e
        except InvalidIssuerError as e:
            raise UnauthenticatedError(
                message="Invalid token issuer",
                details={"reason": "invalid_issuer", "expected": self._issuer},
            ) from e
        except DecodeError as e:
            raise UnauthenticatedError(
                message="Invalid token format",
                details={"reason": "decode_error"},
            ) from e
        except InvalidTokenError as e:
            raise UnauthenticatedError(
                message="Invalid token",
                details={"reason": "invalid_token", "error": str(e)},
            ) from e

        if self.is_revoked(payload["jti"]):
            raise UnauthenticatedError(
                message="Token has been revoked",
                details={"reason": "token_revoked"},
            )
        return payload

    def _revoke(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self._revoked[payload["jti"]] = float(payload.get("exp", time.time()))

    def _prune_revoked(self) -> None:
        now = time.time()
        for jti in [jti for jti, exp in self._revoked.items() if exp < now]:
            del self._revoked[jti]


def create_auth_provider(config: AuthConfig) -> AuthenticationProvider:
    """
    Build the authentication provider selected by ``config.mode``.

    Args:
        config: The ``auth`` section of the server configuration.

    Returns:
        StaticTokenAuthProvider for 'token', JWTAuthProvider for 'jwt'.
    """
    if config.mode == "jwt":
        return JWTAuthProvider.from_config(config)
    return StaticTokenAuthProvider.from_config(config)
