"""The logging context: registry plus attached sinks.

Usage::

    with Context() as ctx:
        schema_id = ctx.register_schema("Pose", "jsonschema", b'{"type": "object"}')
        pose = ctx.create_channel("/robot/pose", message_encoding="json", schema_id=schema_id)
        ctx.add_sink(ContainerSink.open("run.mcap"))
        pose.log(b'{"x": 1.0}')
    # every sink is flushed and closed here
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from chanlog.config import ChanlogSettings
from chanlog.errors import ChannelClosedError, ContextClosedError
from chanlog.registry.models import Message
from chanlog.registry.registry import Registry
from chanlog.sinks.fanout import SinkFanout

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from chanlog.registry.models import Channel, ChannelId, Schema, SchemaId
    from chanlog.sinks.base import Sink, SinkId
    from chanlog.sinks.fanout import AttachedSink, SinkFailure

logger = logging.getLogger(__name__)

_MAX_TIMESTAMP = 0xFFFF_FFFF_FFFF_FFFF


@dataclass
class CloseReport:
    """Outcome of :meth:`Context.close`."""

    closed: list[SinkId] = field(default_factory=list)
    failed: dict[SinkId, BaseException] = field(default_factory=dict)
    timed_out: list[SinkId] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.timed_out


class ChannelHandle:
    """Producer-facing handle for one channel of a context."""

    __slots__ = ("_context", "_channel")

    def __init__(self, context: Context, channel: Channel) -> None:
        self._context = context
        self._channel = channel

    @property
    def id(self) -> ChannelId:
        return self._channel.id

    @property
    def topic(self) -> str:
        return self._channel.topic

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def closed(self) -> bool:
        return self._context.registry.is_closed(self._channel.id)

    def log(self, payload: bytes, log_time: int | None = None) -> int:
        """Log *payload* on this channel and return its sequence number."""
        return self._context.log(self._channel.id, payload, log_time)

    def close(self) -> None:
        self._context.close_channel(self._channel.id)

    def __repr__(self) -> str:
        return f"ChannelHandle(id={self._channel.id}, topic={self._channel.topic!r})"


class Context:
    """Owns a registry and the set of attached sinks.

    Each context is independent; any number can coexist in one process.

    Parameters:
        settings: Context defaults; read from the environment when omitted.
        on_sink_error: Optional callback receiving every
            :class:`~chanlog.sinks.fanout.SinkFailure`.  Failures are also
            queued for :meth:`drain_sink_failures`.
    """

    def __init__(
        self,
        settings: ChanlogSettings | None = None,
        *,
        on_sink_error: Callable[[SinkFailure], Any] | None = None,
    ) -> None:
        self._settings = settings if settings is not None else ChanlogSettings()
        if self._settings.log_level:
            from chanlog import set_log_level

            set_log_level(self._settings.log_level)
        self._fanout = SinkFanout(
            delivery_timeout=self._settings.sink_delivery_timeout,
            max_consecutive_errors=self._settings.max_consecutive_sink_errors,
            max_pending_failures=self._settings.max_pending_failures,
            on_failure=on_sink_error,
        )
        self._registry = Registry(self._settings.duplicate_topic_policy, listener=self._fanout)
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def settings(self) -> ChanlogSettings:
        return self._settings

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def sink_count(self) -> int:
        return self._fanout.sink_count

    def __enter__(self) -> Context:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- Registry -------------------------------------------------------------

    def register_schema(self, name: str, encoding: str, data: bytes) -> SchemaId:
        """Register a schema; identical registrations return the same id."""
        self._check_open()
        return self._registry.register_schema(name, encoding, data)

    def add_channel(
        self,
        topic: str,
        *,
        message_encoding: str,
        schema_id: SchemaId | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> ChannelId:
        """Register a channel and return its id.

        Re-registering an active topic follows
        ``settings.duplicate_topic_policy``.
        """
        self._check_open()
        return self._registry.add_channel(
            topic, message_encoding=message_encoding, schema_id=schema_id, metadata=metadata
        )

    def create_channel(
        self,
        topic: str,
        *,
        message_encoding: str,
        schema_id: SchemaId | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> ChannelHandle:
        """Like :meth:`add_channel` but return a handle with ``log()``."""
        channel_id = self.add_channel(
            topic, message_encoding=message_encoding, schema_id=schema_id, metadata=metadata
        )
        return ChannelHandle(self, self._registry.get_channel(channel_id))

    def channel(self, channel_id: ChannelId) -> ChannelHandle:
        return ChannelHandle(self, self._registry.get_channel(channel_id))

    def close_channel(self, channel_id: ChannelId) -> None:
        """Reject further logs on the channel and notify every sink."""
        self._registry.close_channel(channel_id)

    def get_schema(self, schema_id: SchemaId) -> Schema:
        return self._registry.get_schema(schema_id)

    def get_channel(self, channel_id: ChannelId) -> Channel:
        return self._registry.get_channel(channel_id)

    # -- Sinks ----------------------------------------------------------------

    def add_sink(self, sink: Sink) -> SinkId:
        """Attach *sink*, replaying every schema and active channel to it first.

        The sink receives no messages logged before this call.
        """
        self._check_open()
        with self._registry.exclusive() as (schemas, channels):
            attached = self._fanout.attach(sink, schemas, channels)
        return attached.id

    def remove_sink(self, sink_id: SinkId) -> Sink:
        """Detach a sink and hand it back to the caller (it is not closed)."""
        with self._registry.lock.write():
            attached = self._fanout.detach(sink_id)
        return attached.sink

    def attached_sinks(self) -> tuple[AttachedSink, ...]:
        return self._fanout.sinks

    def drain_sink_failures(self) -> list[SinkFailure]:
        """Return and clear sink failures captured since the last call."""
        return self._fanout.drain_failures()

    # -- Logging --------------------------------------------------------------

    def log(self, channel_id: ChannelId, payload: bytes, log_time: int | None = None) -> int:
        """Log *payload* on a channel and return its sequence number.

        Delivery to sinks happens before this returns.  Sink failures
        never propagate here.

        Raises:
            UnknownChannelError: If the channel id is not registered.
            ChannelClosedError: If the channel is closed.
            ContextClosedError: If the context is closed.
            ValueError: If *log_time* is not an unsigned 64-bit nanosecond count.
        """
        self._check_open()
        if log_time is not None and not 0 <= log_time <= _MAX_TIMESTAMP:
            raise ValueError(f"log_time {log_time} is outside the u64 nanosecond range")
        with self._registry.lock.read():
            slot = self._registry.open_slot(channel_id)
            sinks = self._fanout.sinks

        publish_time = time.time_ns()
        data = bytes(payload)
        with slot.lock:
            if slot.closed:
                # Lost a race with close_channel.
                raise ChannelClosedError(channel_id, slot.channel.topic)
            message = Message(
                channel_id=channel_id,
                sequence=slot.next_sequence(),
                log_time=publish_time if log_time is None else log_time,
                publish_time=publish_time,
                data=data,
            )
            self._fanout.deliver(sinks, slot.channel, message)
        return message.sequence

    def flush(self) -> list[SinkFailure]:
        """Flush every attached sink; return the failures this caused."""
        return self._fanout.flush()

    # -- Lifecycle ------------------------------------------------------------

    def close(self, timeout: float | None = None) -> CloseReport:
        """Flush and close every sink in attachment order.

        Each sink gets what is left of *timeout* (default
        ``settings.sink_close_timeout``); sinks that fail or do not finish
        in time are reported rather than aborting the shutdown.  Calling
        ``close()`` again is a no-op returning an empty report.
        """
        with self._close_lock:
            if self._closed:
                return CloseReport()
            self._closed = True

        for channel in self._registry.channels():
            self._registry.close_channel(channel.id)

        with self._registry.lock.write():
            attached = self._fanout.detach_all()
        # Sinks that failed earlier were detached but still hold resources.
        leftovers = self._fanout.take_auto_detached()

        budget = self._settings.sink_close_timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        report = CloseReport()
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="chanlog-close"
        )
        try:
            for item in (*attached, *leftovers):
                flush = item in attached
                future = pool.submit(_flush_and_close, item.sink, flush)
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    future.result(timeout=remaining)
                except concurrent.futures.TimeoutError:
                    logger.warning("Sink %d (%s) did not close in time", item.id, item.sink.name)
                    report.timed_out.append(item.id)
                    # The stuck close keeps the worker busy; later sinks need a fresh one.
                    pool.shutdown(wait=False)
                    pool = concurrent.futures.ThreadPoolExecutor(
                        max_workers=1, thread_name_prefix="chanlog-close"
                    )
                except Exception as exc:
                    logger.warning(
                        "Sink %d (%s) failed to close", item.id, item.sink.name, exc_info=True
                    )
                    report.failed[item.id] = exc
                else:
                    report.closed.append(item.id)
        finally:
            pool.shutdown(wait=False)

        logger.info(
            "Context closed: %d sink(s) closed, %d failed, %d timed out",
            len(report.closed),
            len(report.failed),
            len(report.timed_out),
        )
        return report

    def _check_open(self) -> None:
        if self._closed:
            raise ContextClosedError("Context is closed")


def _flush_and_close(sink: Sink, flush: bool) -> None:
    try:
        if flush:
            sink.flush()
    finally:
        sink.close()
