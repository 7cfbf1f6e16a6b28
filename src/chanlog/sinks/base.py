"""Sink capability interface and the custom (callback) variant."""

from __future__ import annotations

import abc
import logging
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from chanlog.registry.models import Channel, Message, Schema

logger = logging.getLogger(__name__)

SinkId = int


class SinkKind(StrEnum):
    """The closed set of sink variants."""

    CONTAINER = "container"
    LIVE_SERVER = "live_server"
    CUSTOM = "custom"


class Sink(abc.ABC):
    """A consumer of the message stream.

    The context calls each method with that sink's delivery lock held, so
    implementations see a single caller at a time.  ``on_schema`` and
    ``on_channel`` run while the registry write lock is held and must not
    block.  Errors raised here never reach producers; the context records
    them and may detach the sink (see :class:`~chanlog.context.Context`).
    """

    kind: SinkKind = SinkKind.CUSTOM

    @property
    def name(self) -> str:
        return type(self).__name__

    @abc.abstractmethod
    def on_schema(self, schema: Schema) -> None:
        """Accept a schema registration (or replay)."""

    @abc.abstractmethod
    def on_channel(self, channel: Channel) -> None:
        """Accept a channel registration (or replay)."""

    def on_channel_closed(self, channel: Channel) -> None:  # noqa: B027
        """Accept notice that *channel* no longer receives messages."""

    @abc.abstractmethod
    def on_message(self, channel: Channel, message: Message) -> None:
        """Accept one logged message."""

    def flush(self) -> None:  # noqa: B027
        """Push buffered data towards its destination."""

    @abc.abstractmethod
    def close(self) -> None:
        """Finish in-flight work and release resources.  Must be idempotent."""


class CallbackSink(Sink):
    """Custom sink that forwards each event to plain callables.

    Parameters:
        on_message: Called with ``(channel, message)`` for every message.
        on_schema: Optional; called for every schema.
        on_channel: Optional; called for every channel.
        name: Label used in logs and failure reports.
    """

    kind = SinkKind.CUSTOM

    def __init__(
        self,
        on_message: Callable[[Channel, Message], None],
        *,
        on_schema: Callable[[Schema], None] | None = None,
        on_channel: Callable[[Channel], None] | None = None,
        name: str | None = None,
    ) -> None:
        self._on_message = on_message
        self._on_schema = on_schema
        self._on_channel = on_channel
        self._name = name
        self._closed = False

    @property
    def name(self) -> str:
        return self._name or super().name

    @property
    def closed(self) -> bool:
        return self._closed

    def on_schema(self, schema: Schema) -> None:
        if self._on_schema is not None:
            self._on_schema(schema)

    def on_channel(self, channel: Channel) -> None:
        if self._on_channel is not None:
            self._on_channel(channel)

    def on_message(self, channel: Channel, message: Message) -> None:
        self._on_message(channel, message)

    def close(self) -> None:
        self._closed = True
