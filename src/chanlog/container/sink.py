"""Container file sink."""

from __future__ import annotations

import logging
import os
import threading
from typing import IO, TYPE_CHECKING

from chanlog.container.writer import ContainerWriter
from chanlog.errors import SinkIOError
from chanlog.sinks.base import Sink, SinkKind

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from chanlog.config import ContainerOptions
    from chanlog.registry.models import Channel, Message, Schema

logger = logging.getLogger(__name__)


class ContainerSink(Sink):
    """Writes everything it receives to a container file.

    ``OSError`` from the underlying stream surfaces as
    :class:`~chanlog.errors.SinkIOError` so the context treats it as a
    recoverable I/O failure.  A checksum failure during chunk
    verification raises :class:`~chanlog.errors.WriterCorruptionError`
    and leaves the sink unusable.
    """

    kind = SinkKind.CONTAINER

    def __init__(
        self,
        stream: IO[bytes],
        options: ContainerOptions | None = None,
        *,
        close_stream: bool = False,
        name: str | None = None,
    ) -> None:
        self._writer = ContainerWriter(stream, options, close_stream=close_stream)
        self._lock = threading.Lock()
        self._name = name
        self._closed = False

    @classmethod
    def open(
        cls, path: str | os.PathLike[str], options: ContainerOptions | None = None
    ) -> ContainerSink:
        """Create (or truncate) *path* and return a sink that owns the file."""
        stream = open(path, "wb")  # noqa: SIM115
        return cls(stream, options, close_stream=True, name=os.fspath(path))

    @property
    def name(self) -> str:
        return f"ContainerSink({self._name})" if self._name else "ContainerSink"

    @property
    def writer(self) -> ContainerWriter:
        return self._writer

    @property
    def closed(self) -> bool:
        return self._closed

    # -- Sink -----------------------------------------------------------------

    def on_schema(self, schema: Schema) -> None:
        with self._lock:
            self._io("write schema", self._writer.add_schema, schema)

    def on_channel(self, channel: Channel) -> None:
        with self._lock:
            self._io("write channel", self._writer.add_channel, channel)

    def on_message(self, channel: Channel, message: Message) -> None:
        with self._lock:
            self._io("write message", self._writer.add_message, message)

    def flush(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._io("flush", self._writer.flush)

    def close(self) -> None:
        """Write the summary and footer and close the file.  Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._writer.failed:
                logger.warning("%s closed without a summary after corruption", self.name)
                self._writer.abort()
                return
            self._io("finish", self._writer.finish)

    # -- Extras ---------------------------------------------------------------

    def write_metadata(self, name: str, metadata: Mapping[str, str]) -> None:
        """Record a named set of key/value strings in the file."""
        with self._lock:
            self._io("write metadata", self._writer.write_metadata, name, metadata)

    def attach(
        self,
        name: str,
        media_type: str,
        data: bytes,
        *,
        log_time: int = 0,
        create_time: int = 0,
    ) -> None:
        """Embed an arbitrary named file in the container."""
        with self._lock:
            self._io(
                "write attachment",
                lambda: self._writer.attach(
                    name, media_type, data, log_time=log_time, create_time=create_time
                ),
            )

    def _io(self, what: str, fn: Callable[..., object], *args: object) -> None:
        try:
            fn(*args)
        except OSError as exc:
            raise SinkIOError(f"{self.name}: failed to {what}: {exc}") from exc
