"""Live WebSocket server sink and its wire protocol."""

from __future__ import annotations

from chanlog.server.connection import Client, ClientChannel, ClientConnection, ConnectionState
from chanlog.server.parameters import Parameter, ParameterStore
from chanlog.server.protocol import SUBPROTOCOL, StatusLevel
from chanlog.server.queue import OutboundQueue
from chanlog.server.server import LiveServer, ServerListener, start_server
from chanlog.server.services import Service, ServiceMessageSchema, ServiceRequest

__all__ = [
    "SUBPROTOCOL",
    "Client",
    "ClientChannel",
    "ClientConnection",
    "ConnectionState",
    "LiveServer",
    "OutboundQueue",
    "Parameter",
    "ParameterStore",
    "ServerListener",
    "Service",
    "ServiceMessageSchema",
    "ServiceRequest",
    "StatusLevel",
    "start_server",
]
