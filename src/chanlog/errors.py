"""Exception hierarchy for chanlog.

Registry errors are raised synchronously by the call that caused them.
Sink errors never reach producers; the :class:`~chanlog.context.Context`
captures them and reports them on its failure channel.
"""

from __future__ import annotations


class ChanlogError(Exception):
    """Base class for all chanlog errors."""


class ConfigError(ChanlogError):
    """Invalid or unusable configuration (e.g. a missing optional dependency)."""


# -- Registry ----------------------------------------------------------------


class SchemaValidationError(ChanlogError):
    """Schema bytes are malformed for a known schema encoding."""


class DuplicateChannelError(ChanlogError):
    """A channel with the same topic is already active."""

    def __init__(self, topic: str, existing_id: int) -> None:
        super().__init__(f"Channel topic {topic!r} is already registered (id={existing_id})")
        self.topic = topic
        self.existing_id = existing_id


class UnknownSchemaError(ChanlogError):
    """A schema id does not reference a registered schema."""

    def __init__(self, schema_id: int) -> None:
        super().__init__(f"Unknown schema id: {schema_id}")
        self.schema_id = schema_id


class UnknownChannelError(ChanlogError):
    """A channel id does not reference a registered channel."""

    def __init__(self, channel_id: int) -> None:
        super().__init__(f"Unknown channel id: {channel_id}")
        self.channel_id = channel_id


class ChannelClosedError(ChanlogError):
    """The channel was closed; further logs are rejected."""

    def __init__(self, channel_id: int, topic: str) -> None:
        super().__init__(f"Channel {topic!r} (id={channel_id}) is closed")
        self.channel_id = channel_id
        self.topic = topic


class ContextClosedError(ChanlogError):
    """The context has been closed."""


class UnknownSinkError(ChanlogError):
    """A sink id does not reference an attached sink."""

    def __init__(self, sink_id: int) -> None:
        super().__init__(f"Unknown sink id: {sink_id}")
        self.sink_id = sink_id


# -- Sinks -------------------------------------------------------------------


class SinkIOError(ChanlogError):
    """Non-fatal I/O failure inside one sink."""


class WriterCorruptionError(ChanlogError):
    """Checksum mismatch while writing a container. Fatal to that writer only."""


# -- Container reading -------------------------------------------------------


class ContainerFormatError(ChanlogError):
    """The byte stream is not a valid container (bad magic, bad record)."""


class ContainerChecksumError(ContainerFormatError):
    """A stored CRC does not match the data it covers."""

    def __init__(self, what: str, expected: int, actual: int) -> None:
        super().__init__(f"{what} CRC mismatch: stored {expected:#010x}, computed {actual:#010x}")
        self.expected = expected
        self.actual = actual


# -- Live protocol -----------------------------------------------------------


class ProtocolError(ChanlogError):
    """Malformed or invalid client frame. Isolated to one connection.

    ``kind`` names the failure (e.g. ``"unknown_channel"``) and is sent
    back to the client as the ``id`` of the error status frame.
    ``fatal`` marks wire-framing violations that close the connection.
    """

    def __init__(self, kind: str, message: str, *, fatal: bool = False) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.fatal = fatal


# -- Remote API --------------------------------------------------------------


class ApiError(ChanlogError):
    """Base class for remote API client failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NoTokenError(ApiError):
    """The request needs a device token but none was configured."""


class ApiResponseError(ApiError):
    """The API answered with an HTTP error status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        code: str | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.code = code
        self.body = body


class ApiParseError(ApiError):
    """A successful response body could not be parsed."""
