"""Asynchronous delivery wrapper: a bounded queue drained by a worker thread."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import TYPE_CHECKING, Any

from chanlog.errors import SinkIOError
from chanlog.sinks.base import Sink

if TYPE_CHECKING:
    from chanlog.registry.models import Channel, Message, Schema

logger = logging.getLogger(__name__)

_SCHEMA = "schema"
_CHANNEL = "channel"
_CHANNEL_CLOSED = "channel_closed"
_MESSAGE = "message"
_FLUSH = "flush"
_STOP = "stop"


class QueuedSink(Sink):
    """Decouple a slow sink from producer threads.

    Events are handed to *inner* on a dedicated worker thread in arrival
    order.  Only messages count against *capacity*; when the queue is
    full the new message is dropped and counted.  Schema, channel and
    control events are never dropped.

    Failures on the worker thread are stored and re-raised from the next
    call on the producer side, so the owning context sees them through
    its normal failure path.
    """

    def __init__(self, inner: Sink, *, capacity: int = 1024) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._inner = inner
        self._capacity = capacity
        self._queue: deque[tuple[str, Any]] = deque()
        self._message_count = 0
        self._cond = threading.Condition()
        self._dropped = 0
        self._error: BaseException | None = None
        self._closed = False
        self._worker = threading.Thread(
            target=self._run, name=f"chanlog-queued-{inner.name}", daemon=True
        )
        self._worker.start()

    @property
    def kind(self) -> Any:  # type: ignore[override]
        return self._inner.kind

    @property
    def name(self) -> str:
        return f"Queued({self._inner.name})"

    @property
    def inner(self) -> Sink:
        return self._inner

    @property
    def dropped_count(self) -> int:
        return self._dropped

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._queue)

    # -- Producer side --------------------------------------------------------

    def on_schema(self, schema: Schema) -> None:
        self._put(_SCHEMA, schema)

    def on_channel(self, channel: Channel) -> None:
        self._put(_CHANNEL, channel)

    def on_channel_closed(self, channel: Channel) -> None:
        self._put(_CHANNEL_CLOSED, channel)

    def on_message(self, channel: Channel, message: Message) -> None:
        self._raise_pending()
        with self._cond:
            if self._message_count >= self._capacity:
                self._dropped += 1
                return
            self._message_count += 1
            self._queue.append((_MESSAGE, (channel, message)))
            self._cond.notify()

    def flush(self) -> None:
        if self._closed:
            return
        done = threading.Event()
        self._put(_FLUSH, done)
        done.wait()
        self._raise_pending()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(_STOP, None, check=False)
        self._worker.join()
        try:
            self._inner.close()
        finally:
            if self._dropped:
                logger.info("%s dropped %d message(s) on a full queue", self.name, self._dropped)
        self._raise_pending()

    def _put(self, kind: str, item: Any, *, check: bool = True) -> None:
        if check:
            self._raise_pending()
        with self._cond:
            self._queue.append((kind, item))
            self._cond.notify()

    def _raise_pending(self) -> None:
        error, self._error = self._error, None
        if error is None:
            return
        if isinstance(error, SinkIOError):
            raise SinkIOError(f"{self._inner.name} failed on worker thread: {error}") from error
        raise error

    # -- Worker side ----------------------------------------------------------

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._queue:
                    self._cond.wait()
                kind, item = self._queue.popleft()
                if kind == _MESSAGE:
                    self._message_count -= 1

            if kind == _STOP:
                return
            if kind == _FLUSH:
                try:
                    self._inner.flush()
                except Exception as exc:
                    self._record(exc)
                finally:
                    item.set()
                continue

            try:
                if kind == _MESSAGE:
                    self._inner.on_message(*item)
                elif kind == _SCHEMA:
                    self._inner.on_schema(item)
                elif kind == _CHANNEL:
                    self._inner.on_channel(item)
                elif kind == _CHANNEL_CLOSED:
                    self._inner.on_channel_closed(item)
            except Exception as exc:
                self._record(exc)

    def _record(self, exc: Exception) -> None:
        logger.warning("%s raised on worker thread", self._inner.name, exc_info=True)
        if self._error is None:
            self._error = exc
