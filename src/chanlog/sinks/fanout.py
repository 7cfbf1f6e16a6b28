"""Fan-out dispatcher for logged messages.

Multiplexes every registry event and message to N attached sinks, each
error-isolated.  One sink failing does not affect others or the
producer; failures are queued on an asynchronous failure channel.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from chanlog.errors import SinkIOError, UnknownSinkError

if TYPE_CHECKING:
    from collections.abc import Callable

    from chanlog.registry.models import Channel, Message, Schema
    from chanlog.sinks.base import Sink, SinkId, SinkKind

logger = logging.getLogger(__name__)


@dataclass
class SinkFailure:
    """One captured sink error, reported asynchronously."""

    sink_id: SinkId
    sink_name: str
    kind: SinkKind
    operation: str
    error: BaseException
    fatal: bool
    detached: bool
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class AttachedSink:
    """A sink plus its delivery state inside one context.

    ``lock`` makes the context a single logical caller of the sink; a
    delivery only happens while ``live`` is set under that lock.
    """

    __slots__ = ("id", "sink", "lock", "live", "degraded", "consecutive_errors", "dropped")

    def __init__(self, sink_id: SinkId, sink: Sink) -> None:
        self.id = sink_id
        self.sink = sink
        self.lock = threading.Lock()
        self.live = False
        self.degraded = False
        self.consecutive_errors = 0
        self.dropped = 0


class SinkFanout:
    """Delivers each event to all attached sinks.

    Parameters:
        delivery_timeout: Seconds to wait for a busy sink before dropping
            the message for that sink.
        max_consecutive_errors: :class:`SinkIOError` failures in a row
            before a degraded sink is detached.
        max_pending_failures: Size of the failure backlog.
        on_failure: Optional callback invoked for every failure.
    """

    def __init__(
        self,
        *,
        delivery_timeout: float = 1.0,
        max_consecutive_errors: int = 10,
        max_pending_failures: int = 500,
        on_failure: Callable[[SinkFailure], Any] | None = None,
    ) -> None:
        self._delivery_timeout = delivery_timeout
        self._max_consecutive_errors = max_consecutive_errors
        self._on_failure = on_failure
        self._ids = itertools.count(1)
        self._sinks: tuple[AttachedSink, ...] = ()
        self._failures: deque[SinkFailure] = deque(maxlen=max_pending_failures)
        self._failures_lock = threading.Lock()
        self._membership_lock = threading.Lock()
        self._auto_detached: list[AttachedSink] = []

    # -- Membership -----------------------------------------------------------

    @property
    def sinks(self) -> tuple[AttachedSink, ...]:
        """Current attachment snapshot, in attachment order."""
        return self._sinks

    @property
    def sink_count(self) -> int:
        return len(self._sinks)

    def has_sinks(self) -> bool:
        return len(self._sinks) > 0

    def attach(
        self, sink: Sink, schemas: list[Schema], channels: list[Channel]
    ) -> AttachedSink:
        """Replay *schemas* and *channels* to *sink*, then make it live.

        Caller must hold the registry write lock so no registration
        slips between the replay and the sink going live.
        """
        attached = AttachedSink(next(self._ids), sink)
        with attached.lock:
            for schema in schemas:
                sink.on_schema(schema)
            for channel in channels:
                sink.on_channel(channel)
            attached.live = True
        with self._membership_lock:
            self._sinks = (*self._sinks, attached)
        logger.info(
            "Attached sink %d (%s): replayed %d schema(s), %d channel(s)",
            attached.id,
            sink.name,
            len(schemas),
            len(channels),
        )
        return attached

    def detach(self, sink_id: SinkId) -> AttachedSink:
        """Remove a sink.  No delivery reaches it once this returns."""
        for attached in self._sinks:
            if attached.id == sink_id:
                break
        else:
            raise UnknownSinkError(sink_id)
        with attached.lock:
            attached.live = False
            with self._membership_lock:
                self._sinks = tuple(a for a in self._sinks if a.id != sink_id)
        logger.info("Detached sink %d (%s)", sink_id, attached.sink.name)
        return attached

    def take_auto_detached(self) -> list[AttachedSink]:
        """Return and forget the sinks detached because they failed."""
        with self._membership_lock:
            result, self._auto_detached = self._auto_detached, []
        return result

    def detach_all(self) -> tuple[AttachedSink, ...]:
        with self._membership_lock:
            detached = self._sinks
            self._sinks = ()
        for attached in detached:
            with attached.lock:
                attached.live = False
        return detached

    # -- Delivery -------------------------------------------------------------

    def schema_added(self, schema: Schema) -> None:
        for attached in self._sinks:
            self._call(attached, "on_schema", attached.sink.on_schema, schema, block=True)

    def channel_added(self, channel: Channel) -> None:
        for attached in self._sinks:
            self._call(attached, "on_channel", attached.sink.on_channel, channel, block=True)

    def channel_closed(self, channel: Channel) -> None:
        for attached in self._sinks:
            self._call(
                attached, "on_channel_closed", attached.sink.on_channel_closed, channel, block=True
            )

    def deliver(
        self, sinks: tuple[AttachedSink, ...], channel: Channel, message: Message
    ) -> None:
        """Deliver *message* to every live sink in *sinks*."""
        for attached in sinks:
            self._call(attached, "on_message", attached.sink.on_message, channel, message)

    def flush(self) -> list[SinkFailure]:
        """Flush every live sink and return the failures this caused."""
        failures: list[SinkFailure] = []
        for attached in self._sinks:
            failure = self._call(attached, "flush", attached.sink.flush, block=True)
            if failure is not None:
                failures.append(failure)
        return failures

    def _call(
        self,
        attached: AttachedSink,
        operation: str,
        method: Callable[..., Any],
        *args: Any,
        block: bool = False,
    ) -> SinkFailure | None:
        timeout = -1 if block else self._delivery_timeout
        if not attached.lock.acquire(timeout=timeout):
            attached.dropped += 1
            logger.debug("Sink %d busy; dropped %s", attached.id, operation)
            return None
        try:
            if not attached.live:
                return None
            method(*args)
            attached.consecutive_errors = 0
            return None
        except Exception as exc:
            return self._fail(attached, operation, exc)
        finally:
            attached.lock.release()

    def _fail(self, attached: AttachedSink, operation: str, exc: Exception) -> SinkFailure:
        """Record a failure.  Caller holds ``attached.lock``."""
        fatal = not isinstance(exc, SinkIOError)
        attached.degraded = True
        attached.consecutive_errors += 1
        detach = fatal or attached.consecutive_errors >= self._max_consecutive_errors
        if detach:
            attached.live = False
            with self._membership_lock:
                self._sinks = tuple(a for a in self._sinks if a is not attached)
                self._auto_detached.append(attached)

        logger.warning(
            "Sink %d (%s) failed in %s%s",
            attached.id,
            attached.sink.name,
            operation,
            "; detached" if detach else "",
            exc_info=exc,
        )
        failure = SinkFailure(
            sink_id=attached.id,
            sink_name=attached.sink.name,
            kind=attached.sink.kind,
            operation=operation,
            error=exc,
            fatal=fatal,
            detached=detach,
        )
        with self._failures_lock:
            self._failures.append(failure)
        if self._on_failure is not None:
            try:
                self._on_failure(failure)
            except Exception:
                logger.warning("Sink failure callback raised", exc_info=True)
        return failure

    def drain_failures(self) -> list[SinkFailure]:
        """Return and clear all pending failures."""
        with self._failures_lock:
            result = list(self._failures)
            self._failures.clear()
        return result
