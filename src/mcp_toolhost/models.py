"""
Data contracts for the MCP tool host.

This module defines the Tool descriptor published in ``tools/list`` and the
Content payloads returned from ``tools/call``.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class InvalidToolError(ValueError):
    """Raised when a Tool descriptor is constructed with an invalid schema."""


class InvalidContentError(ValueError):
    """Raised when a Content payload does not match its declared type."""


class ContentType(str, Enum):
    """Content payload kinds."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    RESOURCE = "resource"


def _decode_schema(input_schema: str | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(input_schema, str):
        try:
            schema = json.loads(input_schema)
        except json.JSONDecodeError as e:
            raise InvalidToolError(f"inputSchema is not valid JSON: {e.msg}") from e
    elif isinstance(input_schema, Mapping):
        schema = json.loads(json.dumps(dict(input_schema)))
    else:
        raise InvalidToolError(
            f"inputSchema must be a JSON object or string, got {type(input_schema).__name__}"
        )

    if not isinstance(schema, dict):
        raise InvalidToolError("inputSchema must be a JSON object")
    if schema.get("type") != "object":
        raise InvalidToolError(
            f"inputSchema top-level type must be 'object', got {schema.get('type')!r}"
        )
    return schema


@dataclass(frozen=True)
class Tool:
    """
    Descriptor of one callable capability exposed by a tool provider.

    Tools are immutable once built; a provider changes its catalog by
    re-registering.

    Attributes:
        name: Tool name, unique within a registry.
        description: Human-readable description.
        input_schema: JSON Schema for the tool arguments. Accepts a JSON
            string or a mapping; stored as a read-only mapping whose
            top-level ``type`` is ``"object"``.

    Example:
        >>> tool = Tool(
        ...     name="echo",
        ...     description="Echo a message",
        ...     input_schema='{"type": "object", "properties": {"message": {"type": "string"}}}',
        ... )
        >>> tool.to_dict()["inputSchema"]["type"]
        'object'
    """

    name: str
    description: str
    input_schema: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise InvalidToolError("Tool name must be a non-empty string")
        schema = _decode_schema(self.input_schema)
        object.__setattr__(self, "input_schema", MappingProxyType(schema))

    @property
    def schema(self) -> dict[str, Any]:
        """Return a mutable deep copy of the input schema."""
        return json.loads(json.dumps(dict(self.input_schema)))

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to the ``tools/list`` wire format.

        Returns:
            Dictionary with name, description and inputSchema.
        """
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.schema,
        }


@dataclass(frozen=True)
class Content:
    """
    Tagged content payload returned from a tool call.

    Attributes:
        type: Payload kind (text, image, audio, resource).
        text: Text payload (text content, or text resources).
        data: Base64 payload (image/audio content, or binary resources).
        mime_type: MIME type of the payload.
        uri: Resource URI (resource content only).
    """

    type: ContentType
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None
    uri: str | None = None

    def __post_init__(self) -> None:
        try:
            content_type = ContentType(self.type)
        except ValueError as e:
            raise InvalidContentError(f"Unknown content type: {self.type!r}") from e
        object.__setattr__(self, "type", content_type)

        if content_type is ContentType.TEXT:
            if self.text is None:
                raise InvalidContentError("Text content requires 'text'")
        elif content_type in (ContentType.IMAGE, ContentType.AUDIO):
            if not self.data or not self.mime_type:
                raise InvalidContentError(
                    f"{content_type.value.capitalize()} content requires 'data' and 'mimeType'"
                )
            _check_base64(self.data)
        else:
            if not self.uri:
                raise InvalidContentError("Resource content requires 'uri'")
            if (self.text is None) == (self.data is None):
                raise InvalidContentError(
                    "Resource content requires exactly one of 'text' or 'data'"
                )
            if self.data is not None:
                _check_base64(self.data)

    @classmethod
    def text_content(cls, text: str) -> Content:
        """Build a text payload."""
        return cls(type=ContentType.TEXT, text=text)

    @classmethod
    def image_content(cls, data: str | bytes, mime_type: str) -> Content:
        """Build an image payload from base64 text or raw bytes."""
        return cls(type=ContentType.IMAGE, data=_as_base64(data), mime_type=mime_type)

    @classmethod
    def audio_content(cls, data: str | bytes, mime_type: str) -> Content:
        """Build an audio payload from base64 text or raw bytes."""
        return cls(type=ContentType.AUDIO, data=_as_base64(data), mime_type=mime_type)

    @classmethod
    def resource_content(
        cls,
        uri: str,
        *,
        text: str | None = None,
        data: str | bytes | None = None,
        mime_type: str | None = None,
    ) -> Content:
        """Build an embedded resource payload."""
        return cls(
            type=ContentType.RESOURCE,
            uri=uri,
            text=text,
            data=_as_base64(data) if data is not None else None,
            mime_type=mime_type,
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to the ``tools/call`` wire format.

        Only the fields meaningful for the content type are emitted.
        """
        if self.type is ContentType.TEXT:
            return {"type": "text", "text": self.text}
        if self.type in (ContentType.IMAGE, ContentType.AUDIO):
            return {"type": self.type.value, "data": self.data, "mimeType": self.mime_type}

        resource: dict[str, Any] = {"uri": self.uri}
        if self.mime_type:
            resource["mimeType"] = self.mime_type
        if self.text is not None:
            resource["text"] = self.text
        else:
            resource["blob"] = self.data
        return {"type": "resource", "resource": resource}


def _as_base64(data: str | bytes) -> str:
    if isinstance(data, bytes):
        return base64.b64encode(data).decode("ascii")
    return data


def _check_base64(data: str) -> None:
    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidContentError("Content 'data' must be base64 encoded") from e
