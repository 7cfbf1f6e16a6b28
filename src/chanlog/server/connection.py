"""One live-protocol client connection."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from chanlog.config import OverflowPolicy
from chanlog.errors import ProtocolError
from chanlog.server.queue import Frame, OutboundQueue

if TYPE_CHECKING:
    from chanlog.server.protocol import ClientChannelAdvertisement

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_POLICY_VIOLATION = 1008


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True)
class Client:
    """Identity of a connected client, as passed to listeners."""

    id: int
    remote: str


@dataclass(frozen=True)
class ClientChannel:
    """A channel a client advertised for publishing to the server."""

    id: int
    topic: str
    encoding: str
    schema_name: str
    schema_encoding: str | None
    schema: str | None

    @classmethod
    def from_advertisement(cls, ad: ClientChannelAdvertisement) -> ClientChannel:
        return cls(
            id=ad.id,
            topic=ad.topic,
            encoding=ad.encoding,
            schema_name=ad.schema_name,
            schema_encoding=ad.schema_encoding,
            schema=ad.schema_,
        )


class ClientConnection:
    """Subscription table, outbound queue and sender task for one client.

    ``send_control`` / ``send_data`` / ``subscription_for`` may be called
    from any thread.  Everything else runs on the server's event loop.
    """

    def __init__(
        self,
        websocket: Any,
        *,
        client_id: int,
        loop: asyncio.AbstractEventLoop,
        capacity: int,
        policy: OverflowPolicy,
    ) -> None:
        self.websocket = websocket
        self.client = Client(id=client_id, remote=_remote(websocket))
        self.state = ConnectionState.CONNECTING
        self.queue = OutboundQueue(capacity, policy)
        self.client_channels: dict[int, ClientChannel] = {}
        self.parameter_subscriptions: set[str] = set()
        self._loop = loop
        self._wakeup = asyncio.Event()
        self._close_requested = asyncio.Event()
        self._close_code = CLOSE_NORMAL
        self._close_reason = ""
        self._stopping = False
        self._sender: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._subs_lock = threading.Lock()
        self._subscriptions: dict[int, int] = {}
        self._channel_subs: dict[int, int] = {}

    @property
    def id(self) -> int:
        return self.client.id

    @property
    def dropped(self) -> int:
        return self.queue.dropped

    @property
    def close_code(self) -> int:
        return self._close_code

    # -- Subscriptions --------------------------------------------------------

    def subscribe(self, subscription_id: int, channel_id: int) -> None:
        with self._subs_lock:
            if subscription_id in self._subscriptions:
                raise ProtocolError(
                    "duplicate_subscription",
                    f"Subscription id {subscription_id} is already in use",
                )
            if channel_id in self._channel_subs:
                raise ProtocolError(
                    "already_subscribed",
                    f"Already subscribed to channel {channel_id} "
                    f"(subscription {self._channel_subs[channel_id]})",
                )
            self._subscriptions[subscription_id] = channel_id
            self._channel_subs[channel_id] = subscription_id

    def unsubscribe(self, subscription_id: int) -> int:
        """Remove a subscription and return the channel id it referenced."""
        with self._subs_lock:
            channel_id = self._subscriptions.pop(subscription_id, None)
            if channel_id is None:
                raise ProtocolError(
                    "unknown_subscription", f"Unknown subscription id: {subscription_id}"
                )
            del self._channel_subs[channel_id]
            return channel_id

    def drop_channel(self, channel_id: int) -> int | None:
        """Forget the subscription to a channel that went away."""
        with self._subs_lock:
            subscription_id = self._channel_subs.pop(channel_id, None)
            if subscription_id is not None:
                del self._subscriptions[subscription_id]
            return subscription_id

    def subscription_for(self, channel_id: int) -> int | None:
        with self._subs_lock:
            return self._channel_subs.get(channel_id)

    def subscribed_channels(self) -> list[int]:
        with self._subs_lock:
            return list(self._channel_subs)

    def clear_subscriptions(self) -> list[int]:
        """Remove every subscription; return the channel ids they covered."""
        with self._subs_lock:
            channel_ids = list(self._channel_subs)
            self._subscriptions.clear()
            self._channel_subs.clear()
            return channel_ids

    # -- Outbound -------------------------------------------------------------

    def send_control(self, frame: Frame) -> None:
        if self.queue.put_control(frame):
            self._wake()

    def send_data(self, frame: Frame) -> bool:
        queued = self.queue.put_data(frame)
        if queued:
            self._wake()
        elif self.queue.overflowed and not self._close_requested.is_set():
            logger.warning(
                "Client %d (%s) outbound queue overflowed; disconnecting",
                self.id,
                self.client.remote,
            )
            self.request_close(CLOSE_POLICY_VIOLATION, "outbound queue overflow")
        return queued

    def request_close(self, code: int, reason: str) -> None:
        """Ask the connection handler to close this connection (thread-safe)."""

        def _request() -> None:
            if not self._close_requested.is_set():
                self._close_code = code
                self._close_reason = reason
                self._close_requested.set()

        self._call_soon(_request)

    async def wait_close_requested(self) -> None:
        await self._close_requested.wait()

    def spawn(self, coro: Any) -> asyncio.Task[Any]:
        """Run a request handler task tied to this connection's lifetime."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _wake(self) -> None:
        self._call_soon(self._wakeup.set)

    def _call_soon(self, callback: Any, *args: Any) -> None:
        if self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            callback(*args)
        else:
            self._loop.call_soon_threadsafe(callback, *args)

    # -- Lifecycle ------------------------------------------------------------

    def open(self) -> None:
        """Mark the connection open and start the sender task."""
        self.state = ConnectionState.OPEN
        self._sender = asyncio.ensure_future(self._send_loop())

    async def _send_loop(self) -> None:
        while True:
            frame = self.queue.pop()
            if frame is None:
                if self._stopping:
                    return
                self._wakeup.clear()
                if len(self.queue):
                    continue
                await self._wakeup.wait()
                continue
            try:
                await self.websocket.send(frame)
            except Exception:
                logger.debug("Send to client %d failed", self.id, exc_info=True)
                self.request_close(CLOSE_GOING_AWAY, "send failed")
                return

    async def drain(self, timeout: float) -> bool:
        """Let the sender flush what is queued, for at most *timeout* seconds.

        Returns ``True`` if the queue was fully flushed.
        """
        if self.state is ConnectionState.CLOSED:
            return False
        self.state = ConnectionState.DRAINING
        self.queue.close()
        self._stopping = True
        self._wakeup.set()
        if self._sender is None:
            return len(self.queue) == 0
        try:
            await asyncio.wait_for(asyncio.shield(self._sender), timeout)
        except TimeoutError:
            logger.info(
                "Client %d: %d frame(s) left undelivered after drain timeout",
                self.id,
                len(self.queue),
            )
            return False
        return len(self.queue) == 0

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self.queue.close()
        self.queue.clear()
        tasks = [t for t in (self._sender, *self._tasks) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        with contextlib.suppress(Exception):
            await self.websocket.close(code, reason)

    def close_reason(self) -> tuple[int, str]:
        return self._close_code, self._close_reason

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.id}, remote={self.client.remote!r}, state={self.state})"


def _remote(websocket: Any) -> str:
    address = getattr(websocket, "remote_address", None)
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address) if address else "unknown"
