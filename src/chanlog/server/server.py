"""Live WebSocket server sink.

Streams channel advertisements and subscribed messages to any number of
clients.  Producers reach the server through the :class:`Sink` methods,
which only enqueue frames; each connection's sender task writes them to
the socket on the server's event loop.

Usage from async code::

    server = LiveServer(ServerOptions(port=0))
    await server.start()
    ctx.add_sink(server)
    ...
    await server.stop()

or from sync code, with a private event-loop thread::

    server = start_server(ctx, ServerOptions(port=8765))
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Any

from chanlog._internal.async_utils import LoopThread
from chanlog.config import Capability, ServerOptions
from chanlog.errors import ConfigError, ProtocolError
from chanlog.server import protocol
from chanlog.server.connection import (
    CLOSE_GOING_AWAY,
    CLOSE_PROTOCOL_ERROR,
    ClientChannel,
    ClientConnection,
)
from chanlog.server.parameters import Parameter, ParameterStore
from chanlog.server.services import Service, ServiceRequest
from chanlog.sinks.base import Sink, SinkKind

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    import websockets.asyncio.server as ws_server

    from chanlog.context import Context
    from chanlog.registry.models import Channel, Message, Schema
    from chanlog.server.connection import Client

logger = logging.getLogger(__name__)

_MAX_CLOSE_REASON = 120


class ServerListener:
    """Callbacks for client activity.  Override the ones you need.

    Callbacks run on the server's event loop and must not block.
    Exceptions are logged and otherwise ignored.
    """

    def on_subscribe(self, client: Client, channel: Channel) -> None:
        """A client subscribed to *channel*."""

    def on_unsubscribe(self, client: Client, channel: Channel) -> None:
        """A client unsubscribed from *channel* (or disconnected)."""

    def on_client_advertise(self, client: Client, channel: ClientChannel) -> None:
        """A client advertised a channel it will publish on."""

    def on_client_unadvertise(self, client: Client, channel: ClientChannel) -> None:
        """A client withdrew a channel (or disconnected)."""

    def on_message_data(self, client: Client, channel: ClientChannel, payload: bytes) -> None:
        """A client published *payload* on one of its channels."""


class LiveServer(Sink):
    """WebSocket sink speaking the ``chanlog.websocket.v1`` subprotocol.

    Parameters:
        options: Bind address, queueing and capability options.
        listener: Receives client subscribe/advertise/publish callbacks.
        asset_handler: ``handler(uri) -> bytes | None`` for ``fetchAsset``
            requests; runs on a worker thread.  ``None`` means not found.
        parameters: Initial contents of the parameter store.
    """

    kind = SinkKind.LIVE_SERVER

    def __init__(
        self,
        options: ServerOptions | None = None,
        *,
        listener: ServerListener | None = None,
        asset_handler: Callable[[str], bytes | None] | None = None,
        parameters: Iterable[Parameter] = (),
    ) -> None:
        self._options = options or ServerOptions()
        self._capabilities = set(self._options.capabilities)
        self._listener = listener or ServerListener()
        self._asset_handler = asset_handler
        self._parameters = ParameterStore(parameters)
        self._lock = threading.Lock()
        self._schemas: dict[int, Schema] = {}
        self._channels: dict[int, Channel] = {}
        self._services: dict[str, Service] = {}
        self._services_by_id: dict[int, Service] = {}
        self._next_service_id = 1
        self._connections: tuple[ClientConnection, ...] = ()
        self._next_client_id = 1
        self._server: ws_server.Server | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: LoopThread | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._closed = False
        self.sink_id: int | None = None

    # -- Properties -----------------------------------------------------------

    @property
    def name(self) -> str:
        return f"LiveServer({self._options.name})"

    @property
    def options(self) -> ServerOptions:
        return self._options

    @property
    def parameters(self) -> ParameterStore:
        return self._parameters

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """The bound TCP port (useful with ``port=0``)."""
        if self._server is None:
            raise RuntimeError("Server is not running")
        return int(self._server.sockets[0].getsockname()[1])

    @property
    def connections(self) -> tuple[ClientConnection, ...]:
        return self._connections

    @property
    def client_count(self) -> int:
        return len(self._connections)

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Bind and start accepting connections on the running loop."""
        if self._server is not None:
            return
        try:
            import websockets.asyncio.server as ws_server_mod
        except ImportError as exc:
            raise ConfigError(
                "websockets is required for the live server. "
                "Install with: pip install chanlog[server]"
            ) from exc

        opts = self._options
        self._loop = asyncio.get_running_loop()
        self._server = await ws_server_mod.serve(
            self._handler,
            host=opts.host,
            port=opts.port,
            subprotocols=[protocol.SUBPROTOCOL],  # type: ignore[list-item]
            max_size=opts.max_frame_size,
            ping_interval=opts.idle_timeout,
            ping_timeout=opts.idle_timeout,
        )
        logger.info("Live server %r listening on %s:%d", opts.name, opts.host, self.port)

    async def stop(self) -> None:
        """Drain every connection (bounded by ``drain_timeout``) and shut down."""
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close(close_connections=False)
        connections = self._connections
        await asyncio.gather(*(self._shutdown(conn) for conn in connections))
        await server.wait_closed()
        logger.info("Live server %r stopped", self._options.name)

    async def _shutdown(self, conn: ClientConnection) -> None:
        await conn.drain(self._options.drain_timeout)
        await conn.close(CLOSE_GOING_AWAY, "server shutting down")

    # -- Sink -----------------------------------------------------------------

    def on_schema(self, schema: Schema) -> None:
        with self._lock:
            self._schemas[schema.id] = schema

    def on_channel(self, channel: Channel) -> None:
        with self._lock:
            self._channels[channel.id] = channel
            frame = protocol.advertise([self._describe(channel)])
            for conn in self._connections:
                conn.send_control(frame)

    def on_channel_closed(self, channel: Channel) -> None:
        with self._lock:
            if self._channels.pop(channel.id, None) is None:
                return
            frame = protocol.unadvertise([channel.id])
            for conn in self._connections:
                conn.drop_channel(channel.id)
                conn.send_control(frame)

    def on_message(self, channel: Channel, message: Message) -> None:
        for conn in self._connections:
            subscription_id = conn.subscription_for(channel.id)
            if subscription_id is not None:
                conn.send_data(
                    protocol.encode_message_data(subscription_id, message.log_time, message.data)
                )

    def close(self) -> None:
        """Stop the server.  Safe to call from any thread; idempotent."""
        if self._closed:
            return
        self._closed = True
        loop, loop_thread = self._loop, self._loop_thread
        timeout = self._options.drain_timeout + 5.0
        if self._server is not None and loop is not None and not loop.is_closed():
            if loop_thread is not None:
                loop_thread.run(self.stop(), timeout)
            else:
                try:
                    running = asyncio.get_running_loop()
                except RuntimeError:
                    running = None
                if running is loop:
                    self._stop_task = loop.create_task(self.stop())
                else:
                    asyncio.run_coroutine_threadsafe(self.stop(), loop).result(timeout)
        if loop_thread is not None:
            loop_thread.stop()
            self._loop_thread = None

    # -- Broadcasts -----------------------------------------------------------

    def publish_status(
        self,
        level: protocol.StatusLevel,
        message: str,
        status_id: str | None = None,
    ) -> None:
        self._broadcast(protocol.status(level, message, status_id))

    def remove_status(self, status_ids: Iterable[str]) -> None:
        self._broadcast(protocol.remove_status(status_ids))

    def broadcast_time(self, timestamp: int) -> None:
        """Send the server's current time (ns) to every client."""
        if Capability.TIME not in self._capabilities:
            logger.debug("broadcast_time() without the 'time' capability advertised")
        self._broadcast(protocol.encode_time(timestamp))

    def add_services(self, services: Iterable[Service]) -> None:
        """Register services and advertise them to connected clients.

        Raises:
            ValueError: If a service name is already registered.
        """
        with self._lock:
            added = list(services)
            names = [s.name for s in added]
            duplicates = {n for n in names if n in self._services or names.count(n) > 1}
            if duplicates:
                raise ValueError(f"Service name(s) already registered: {sorted(duplicates)}")
            for service in added:
                service.id = self._next_service_id
                self._next_service_id += 1
                self._services[service.name] = service
                self._services_by_id[service.id] = service
            frame = protocol.advertise_services(added)
            for conn in self._connections:
                conn.send_control(frame)

    def remove_services(self, names: Iterable[str]) -> None:
        with self._lock:
            removed = [self._services.pop(n) for n in names if n in self._services]
            for service in removed:
                del self._services_by_id[service.id]
            if not removed:
                return
            frame = protocol.unadvertise_services([s.id for s in removed])
            for conn in self._connections:
                conn.send_control(frame)

    def publish_parameter_values(self, parameters: Iterable[Parameter]) -> None:
        """Update the store and push the values to clients watching them."""
        self._broadcast_parameters(self._parameters.set(parameters))

    def _broadcast(self, frame: str | bytes) -> None:
        for conn in self._connections:
            conn.send_control(frame)

    def _broadcast_parameters(self, updated: list[Parameter]) -> None:
        for conn in self._connections:
            relevant = [p.to_wire() for p in updated if p.name in conn.parameter_subscriptions]
            if relevant:
                conn.send_control(protocol.parameter_values(relevant))

    # -- Connections ----------------------------------------------------------

    async def _handler(self, websocket: Any) -> None:
        assert self._loop is not None
        opts = self._options
        with self._lock:
            conn = ClientConnection(
                websocket,
                client_id=self._next_client_id,
                loop=self._loop,
                capacity=opts.outbound_queue_capacity,
                policy=opts.overflow_policy,
            )
            self._next_client_id += 1
            # Hello and registration happen atomically with respect to on_channel.
            conn.send_control(
                protocol.server_info(
                    name=opts.name,
                    capabilities=sorted(self._capabilities),
                    supported_encodings=opts.supported_encodings,
                    metadata=opts.metadata,
                    session_id=opts.session_id,
                )
            )
            if self._channels:
                conn.send_control(
                    protocol.advertise(self._describe(c) for c in self._channels.values())
                )
            if self._services:
                conn.send_control(protocol.advertise_services(self._services.values()))
            self._connections = (*self._connections, conn)
        logger.info(
            "Client %d connected from %s (total: %d)",
            conn.id,
            conn.client.remote,
            len(self._connections),
        )

        conn.open()
        receiver = asyncio.ensure_future(self._receive_loop(conn))
        closer = asyncio.ensure_future(conn.wait_close_requested())
        try:
            await asyncio.wait({receiver, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (receiver, closer):
                task.cancel()
            await asyncio.gather(receiver, closer, return_exceptions=True)
            self._unregister(conn)
            code, reason = conn.close_reason()
            await conn.close(code, reason)
            logger.info(
                "Client %d disconnected (code %d, %d frame(s) dropped)",
                conn.id,
                code,
                conn.dropped,
            )

    def _unregister(self, conn: ClientConnection) -> None:
        with self._lock:
            self._connections = tuple(c for c in self._connections if c is not conn)
            channels = [self._channels.get(cid) for cid in conn.clear_subscriptions()]
        for channel in channels:
            if channel is not None:
                self._notify("on_unsubscribe", conn.client, channel)
        for client_channel in conn.client_channels.values():
            self._notify("on_client_unadvertise", conn.client, client_channel)
        conn.client_channels.clear()

    async def _receive_loop(self, conn: ClientConnection) -> None:
        from websockets.exceptions import ConnectionClosed

        try:
            async for frame in conn.websocket:
                try:
                    if isinstance(frame, str):
                        self._handle_text(conn, frame)
                    else:
                        self._handle_binary(conn, frame)
                except ProtocolError as exc:
                    if exc.fatal:
                        logger.warning("Client %d protocol violation: %s", conn.id, exc.message)
                        conn.request_close(CLOSE_PROTOCOL_ERROR, exc.message[:_MAX_CLOSE_REASON])
                        return
                    logger.debug("Client %d request rejected (%s): %s", conn.id, exc.kind, exc)
                    conn.send_control(protocol.error_status(exc))
        except ConnectionClosed:
            logger.debug("Client %d connection closed", conn.id)

    def _notify(self, callback: str, *args: Any) -> None:
        try:
            getattr(self._listener, callback)(*args)
        except Exception:
            logger.warning("Server listener %s() failed", callback, exc_info=True)

    def _require(self, capability: Capability) -> None:
        if capability not in self._capabilities:
            raise ProtocolError(
                "missing_capability", f"Server does not support the {capability!s} capability"
            )

    def _describe(self, channel: Channel) -> dict[str, Any]:
        schema = self._schemas.get(channel.schema_id) if channel.schema_id else None
        return protocol.channel_description(channel, schema)

    # -- Client control ops ---------------------------------------------------

    def _handle_text(self, conn: ClientConnection, text: str) -> None:
        op = protocol.parse_client_text(text)
        if isinstance(op, protocol.Subscribe):
            self._on_subscribe(conn, op)
        elif isinstance(op, protocol.Unsubscribe):
            self._on_unsubscribe(conn, op)
        elif isinstance(op, protocol.ClientAdvertise):
            self._on_client_advertise(conn, op)
        elif isinstance(op, protocol.ClientUnadvertise):
            self._on_client_unadvertise(conn, op)
        elif isinstance(op, protocol.GetParameters):
            self._require(Capability.PARAMETERS)
            values = self._parameters.get(op.parameter_names)
            conn.send_control(protocol.parameter_values([p.to_wire() for p in values], op.id))
        elif isinstance(op, protocol.SetParameters):
            self._require(Capability.PARAMETERS)
            updated = self._parameters.set(op.parameters)
            if op.id is not None:
                conn.send_control(protocol.parameter_values([p.to_wire() for p in updated], op.id))
            self._broadcast_parameters(updated)
        elif isinstance(op, protocol.SubscribeParameterUpdates):
            self._require(Capability.PARAMETERS_SUBSCRIBE)
            conn.parameter_subscriptions.update(op.parameter_names)
        elif isinstance(op, protocol.UnsubscribeParameterUpdates):
            self._require(Capability.PARAMETERS_SUBSCRIBE)
            conn.parameter_subscriptions.difference_update(op.parameter_names)
        elif isinstance(op, protocol.FetchAsset):
            self._require(Capability.ASSETS)
            conn.spawn(self._fetch_asset(conn, op))

    def _on_subscribe(self, conn: ClientConnection, op: protocol.Subscribe) -> None:
        for request in op.subscriptions:
            try:
                with self._lock:
                    channel = self._channels.get(request.channel_id)
                    if channel is None:
                        raise ProtocolError(
                            "unknown_channel", f"Unknown channel id: {request.channel_id}"
                        )
                    conn.subscribe(request.id, request.channel_id)
            except ProtocolError as exc:
                conn.send_control(protocol.error_status(exc))
                continue
            logger.debug(
                "Client %d subscribed to %s as %d", conn.id, channel.topic, request.id
            )
            self._notify("on_subscribe", conn.client, channel)

    def _on_unsubscribe(self, conn: ClientConnection, op: protocol.Unsubscribe) -> None:
        for subscription_id in op.subscription_ids:
            try:
                channel_id = conn.unsubscribe(subscription_id)
            except ProtocolError as exc:
                conn.send_control(protocol.error_status(exc))
                continue
            channel = self._channels.get(channel_id)
            if channel is not None:
                self._notify("on_unsubscribe", conn.client, channel)

    def _on_client_advertise(self, conn: ClientConnection, op: protocol.ClientAdvertise) -> None:
        self._require(Capability.CLIENT_PUBLISH)
        supported = self._options.supported_encodings
        for ad in op.channels:
            if ad.id in conn.client_channels:
                error = ProtocolError(
                    "duplicate_client_channel", f"Client channel {ad.id} is already advertised"
                )
            elif supported and ad.encoding not in supported:
                error = ProtocolError(
                    "unsupported_encoding", f"Unsupported message encoding: {ad.encoding!r}"
                )
            else:
                channel = ClientChannel.from_advertisement(ad)
                conn.client_channels[ad.id] = channel
                self._notify("on_client_advertise", conn.client, channel)
                continue
            conn.send_control(protocol.error_status(error))

    def _on_client_unadvertise(
        self, conn: ClientConnection, op: protocol.ClientUnadvertise
    ) -> None:
        for channel_id in op.channel_ids:
            channel = conn.client_channels.pop(channel_id, None)
            if channel is None:
                conn.send_control(
                    protocol.error_status(
                        ProtocolError(
                            "unknown_client_channel", f"Unknown client channel id: {channel_id}"
                        )
                    )
                )
                continue
            self._notify("on_client_unadvertise", conn.client, channel)

    # -- Client binary frames -------------------------------------------------

    def _handle_binary(self, conn: ClientConnection, data: bytes) -> None:
        frame = protocol.decode_client_binary(data)
        if len(frame.payload) > self._options.max_client_payload:
            raise ProtocolError(
                "payload_too_large",
                f"Payload of {len(frame.payload)} bytes exceeds the "
                f"{self._options.max_client_payload}-byte limit",
            )
        if isinstance(frame, protocol.ClientMessageData):
            self._require(Capability.CLIENT_PUBLISH)
            channel = conn.client_channels.get(frame.client_channel_id)
            if channel is None:
                raise ProtocolError(
                    "unknown_client_channel",
                    f"Unknown client channel id: {frame.client_channel_id}",
                )
            self._notify("on_message_data", conn.client, channel, frame.payload)
            return

        self._require(Capability.SERVICES)
        service = self._services_by_id.get(frame.service_id)
        if service is None:
            raise ProtocolError("unknown_service", f"Unknown service id: {frame.service_id}")
        conn.spawn(self._call_service(conn, service, frame))

    async def _call_service(
        self,
        conn: ClientConnection,
        service: Service,
        frame: protocol.ServiceCallRequest,
    ) -> None:
        request = ServiceRequest(
            service_name=service.name,
            client_id=conn.id,
            call_id=frame.call_id,
            encoding=frame.encoding,
            payload=frame.payload,
        )
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, service.handler, request)
            if not isinstance(result, (bytes, bytearray, memoryview)):
                raise TypeError(
                    f"Service handler returned {type(result).__name__}, expected bytes"
                )
            payload = bytes(result)
        except Exception as exc:
            logger.warning(
                "Service %r call %d failed", service.name, frame.call_id, exc_info=True
            )
            conn.send_control(
                protocol.service_call_failure(service.id, frame.call_id, str(exc) or repr(exc))
            )
            return
        conn.send_control(
            protocol.encode_service_call_response(
                service.id, frame.call_id, frame.encoding, payload
            )
        )

    async def _fetch_asset(self, conn: ClientConnection, op: protocol.FetchAsset) -> None:
        status = protocol.AssetStatus
        if self._asset_handler is None:
            conn.send_control(
                protocol.encode_fetch_asset_response(
                    op.request_id, status.ERROR, error="No asset handler configured"
                )
            )
            return
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, self._asset_handler, op.uri)
        except Exception as exc:
            logger.warning("Asset handler failed for %s", op.uri, exc_info=True)
            frame = protocol.encode_fetch_asset_response(
                op.request_id, status.ERROR, error=str(exc) or repr(exc)
            )
        else:
            if data is None:
                frame = protocol.encode_fetch_asset_response(
                    op.request_id, status.ERROR, error=f"Asset not found: {op.uri}"
                )
            else:
                frame = protocol.encode_fetch_asset_response(
                    op.request_id, status.SUCCESS, data=bytes(data)
                )
        conn.send_control(frame)


def start_server(
    context: Context,
    options: ServerOptions | None = None,
    *,
    listener: ServerListener | None = None,
    asset_handler: Callable[[str], bytes | None] | None = None,
    parameters: Iterable[Parameter] = (),
    start_timeout: float = 10.0,
) -> LiveServer:
    """Start a :class:`LiveServer` on a private event-loop thread and attach it.

    Closing the context (or calling ``server.close()``) stops the server
    and its loop thread.
    """
    server = LiveServer(
        options, listener=listener, asset_handler=asset_handler, parameters=parameters
    )
    loop_thread = LoopThread(name=f"chanlog-server-{server.options.name}")
    loop_thread.start()
    try:
        loop_thread.run(server.start(), start_timeout)
    except BaseException:
        loop_thread.stop()
        raise
    server._loop_thread = loop_thread
    try:
        server.sink_id = context.add_sink(server)
    except BaseException:
        server.close()
        raise
    return server

