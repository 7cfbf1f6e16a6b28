"""Immutable records for schemas, channels and messages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from chanlog.errors import SchemaValidationError

if TYPE_CHECKING:
    from collections.abc import Mapping

SchemaId = int
ChannelId = int

# Schema encodings whose bytes are UTF-8 text.
TEXT_SCHEMA_ENCODINGS = frozenset({"ros1msg", "ros2msg", "ros2idl", "omgidl"})

# Schema encodings whose bytes are binary and must be non-empty.
BINARY_SCHEMA_ENCODINGS = frozenset({"protobuf", "flatbuffer"})


@dataclass(frozen=True, slots=True)
class Schema:
    """A named, encoded description of a payload's structure."""

    id: SchemaId
    name: str
    encoding: str
    data: bytes

    def key(self) -> tuple[str, str, bytes]:
        """Identity used to deduplicate registrations."""
        return (self.name, self.encoding, self.data)

    @property
    def is_text(self) -> bool:
        return self.encoding in TEXT_SCHEMA_ENCODINGS or self.encoding == "jsonschema"


@dataclass(frozen=True, slots=True)
class Channel:
    """A named, schema-typed stream of messages."""

    id: ChannelId
    topic: str
    schema_id: SchemaId | None
    message_encoding: str
    metadata: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def definition(self) -> tuple[SchemaId | None, str, dict[str, str]]:
        """Everything except the id, for comparing re-registrations."""
        return (self.schema_id, self.message_encoding, dict(self.metadata))


@dataclass(frozen=True, slots=True)
class Message:
    """A single logged message.

    ``log_time`` and ``publish_time`` are nanoseconds since the epoch.
    """

    channel_id: ChannelId
    sequence: int
    log_time: int
    publish_time: int
    data: bytes


def validate_schema_data(name: str, encoding: str, data: bytes) -> None:
    """Check *data* is well-formed for *encoding*.

    Unknown encodings are treated as opaque and always pass.

    Raises:
        SchemaValidationError: If the bytes are malformed for a known encoding.
    """
    if not name:
        raise SchemaValidationError("Schema name must not be empty")
    if not encoding:
        raise SchemaValidationError(f"Schema {name!r} has no encoding")

    if encoding == "jsonschema":
        try:
            parsed = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SchemaValidationError(f"Schema {name!r} is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise SchemaValidationError(f"Schema {name!r} must be a JSON object")
    elif encoding in TEXT_SCHEMA_ENCODINGS:
        try:
            data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SchemaValidationError(f"Schema {name!r} is not UTF-8 text: {exc}") from exc
    elif encoding in BINARY_SCHEMA_ENCODINGS and not data:
        raise SchemaValidationError(f"Schema {name!r} ({encoding}) has no data")
