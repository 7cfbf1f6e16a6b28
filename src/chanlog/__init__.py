"""chanlog: log timestamped messages on typed channels to files and live viewers."""

from __future__ import annotations

import logging

from chanlog.config import (
    Capability,
    ChanlogSettings,
    ContainerOptions,
    DuplicateTopicPolicy,
    OverflowPolicy,
    ServerOptions,
)
from chanlog.context import ChannelHandle, CloseReport, Context
from chanlog.errors import (
    ChanlogError,
    ChannelClosedError,
    ConfigError,
    ContextClosedError,
    DuplicateChannelError,
    SchemaValidationError,
    SinkIOError,
    UnknownChannelError,
    UnknownSchemaError,
    UnknownSinkError,
    WriterCorruptionError,
)
from chanlog.registry import Channel, Message, Schema
from chanlog.sinks import CallbackSink, QueuedSink, Sink, SinkFailure, SinkKind

__version__ = "0.3.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())


def set_log_level(level: int | str) -> None:
    """Set the level of the ``chanlog`` package logger (e.g. ``"DEBUG"``)."""
    if isinstance(level, str):
        level = level.upper()
    logging.getLogger(__name__).setLevel(level)


__all__ = [
    "CallbackSink",
    "Capability",
    "ChanlogError",
    "ChanlogSettings",
    "Channel",
    "ChannelClosedError",
    "ChannelHandle",
    "CloseReport",
    "ConfigError",
    "ContainerOptions",
    "Context",
    "ContextClosedError",
    "DuplicateChannelError",
    "DuplicateTopicPolicy",
    "Message",
    "OverflowPolicy",
    "QueuedSink",
    "SchemaValidationError",
    "Schema",
    "ServerOptions",
    "Sink",
    "SinkFailure",
    "SinkIOError",
    "SinkKind",
    "UnknownChannelError",
    "UnknownSchemaError",
    "UnknownSinkError",
    "WriterCorruptionError",
    "__version__",
    "set_log_level",
]
