"""Live protocol wire format.

Control frames are JSON text objects with an ``op`` field.  Data frames
are binary and start with a one-byte opcode; integers are little-endian.

Server → client binary::

    0x01 MessageData          subscription_id:u32 log_time:u64 payload
    0x02 Time                 timestamp:u64
    0x03 ServiceCallResponse  service_id:u32 call_id:u32 encoding_len:u32 encoding payload
    0x04 FetchAssetResponse   request_id:u32 status:u8 error_len:u32 error data

Client → server binary::

    0x01 ClientMessageData    client_channel_id:u32 payload
    0x02 ServiceCallRequest   service_id:u32 call_id:u32 encoding_len:u32 encoding payload
"""

from __future__ import annotations

import base64
import json
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from chanlog.errors import ProtocolError
from chanlog.server.parameters import Parameter

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from chanlog.registry.models import Channel, Schema
    from chanlog.server.services import Service

SUBPROTOCOL = "chanlog.websocket.v1"

_U32_MAX = 0xFFFFFFFF

_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_MESSAGE_DATA = struct.Struct("<BIQ")
_TIME = struct.Struct("<BQ")
_CALL_HEADER = struct.Struct("<II")
_CLIENT_DATA = struct.Struct("<BI")


class StatusLevel(IntEnum):
    INFO = 0
    WARNING = 1
    ERROR = 2


class ServerBinaryOpcode(IntEnum):
    MESSAGE_DATA = 0x01
    TIME = 0x02
    SERVICE_CALL_RESPONSE = 0x03
    FETCH_ASSET_RESPONSE = 0x04


class ClientBinaryOpcode(IntEnum):
    MESSAGE_DATA = 0x01
    SERVICE_CALL_REQUEST = 0x02


class AssetStatus(IntEnum):
    SUCCESS = 0
    ERROR = 1


# -- Client control ops --------------------------------------------------------


class _ClientOp(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


_Id = Annotated[int, Field(ge=0, le=_U32_MAX)]


class SubscriptionRequest(_ClientOp):
    id: _Id
    channel_id: _Id = Field(alias="channelId")


class Subscribe(_ClientOp):
    op: Literal["subscribe"]
    subscriptions: list[SubscriptionRequest]


class Unsubscribe(_ClientOp):
    op: Literal["unsubscribe"]
    subscription_ids: list[_Id] = Field(alias="subscriptionIds")


class ClientChannelAdvertisement(_ClientOp):
    id: _Id
    topic: str = Field(min_length=1)
    encoding: str = Field(min_length=1)
    schema_name: str = Field(default="", alias="schemaName")
    schema_encoding: str | None = Field(default=None, alias="schemaEncoding")
    schema_: str | None = Field(default=None, alias="schema")


class ClientAdvertise(_ClientOp):
    op: Literal["advertise"]
    channels: list[ClientChannelAdvertisement]


class ClientUnadvertise(_ClientOp):
    op: Literal["unadvertise"]
    channel_ids: list[_Id] = Field(alias="channelIds")


class GetParameters(_ClientOp):
    op: Literal["getParameters"]
    parameter_names: list[str] = Field(alias="parameterNames")
    id: str | None = None


class SetParameters(_ClientOp):
    op: Literal["setParameters"]
    parameters: list[Parameter]
    id: str | None = None


class SubscribeParameterUpdates(_ClientOp):
    op: Literal["subscribeParameterUpdates"]
    parameter_names: list[str] = Field(alias="parameterNames")


class UnsubscribeParameterUpdates(_ClientOp):
    op: Literal["unsubscribeParameterUpdates"]
    parameter_names: list[str] = Field(alias="parameterNames")


class FetchAsset(_ClientOp):
    op: Literal["fetchAsset"]
    uri: str = Field(min_length=1)
    request_id: _Id = Field(alias="requestId")


ClientOp = Annotated[
    Subscribe
    | Unsubscribe
    | ClientAdvertise
    | ClientUnadvertise
    | GetParameters
    | SetParameters
    | SubscribeParameterUpdates
    | UnsubscribeParameterUpdates
    | FetchAsset,
    Field(discriminator="op"),
]

_CLIENT_OP_ADAPTER: TypeAdapter[Any] = TypeAdapter(ClientOp)
CLIENT_OPS = frozenset(
    {
        "subscribe",
        "unsubscribe",
        "advertise",
        "unadvertise",
        "getParameters",
        "setParameters",
        "subscribeParameterUpdates",
        "unsubscribeParameterUpdates",
        "fetchAsset",
    }
)


def parse_client_text(text: str) -> Any:
    """Decode one JSON control frame into its op model.

    Raises:
        ProtocolError: ``fatal`` for framing violations (not JSON, not an
            object, no ``op``); non-fatal for unknown ops and bad fields.
    """
    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise ProtocolError(
            "invalid_json", f"Control frame is not valid JSON: {exc}", fatal=True
        ) from exc
    if not isinstance(raw, dict):
        raise ProtocolError("invalid_frame", "Control frame must be a JSON object", fatal=True)
    op = raw.get("op")
    if not isinstance(op, str):
        raise ProtocolError("missing_op", "Control frame has no string 'op' field", fatal=True)
    if op not in CLIENT_OPS:
        raise ProtocolError("unknown_op", f"Unknown op: {op!r}")
    try:
        return _CLIENT_OP_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ProtocolError("invalid_fields", f"Invalid {op!r} frame: {details}") from exc


# -- Client binary frames ------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClientMessageData:
    client_channel_id: int
    payload: bytes


@dataclass(frozen=True, slots=True)
class ServiceCallRequest:
    service_id: int
    call_id: int
    encoding: str
    payload: bytes


def decode_client_binary(data: bytes) -> ClientMessageData | ServiceCallRequest:
    """Decode one binary client frame.  Violations are fatal."""
    if not data:
        raise ProtocolError("truncated_frame", "Empty binary frame", fatal=True)
    opcode = data[0]
    if opcode == ClientBinaryOpcode.MESSAGE_DATA:
        if len(data) < _CLIENT_DATA.size:
            raise ProtocolError("truncated_frame", "Truncated ClientMessageData", fatal=True)
        _, channel_id = _CLIENT_DATA.unpack_from(data)
        return ClientMessageData(channel_id, bytes(data[_CLIENT_DATA.size :]))
    if opcode == ClientBinaryOpcode.SERVICE_CALL_REQUEST:
        service_id, call_id, encoding, payload = _unpack_call(data, "ServiceCallRequest")
        return ServiceCallRequest(service_id, call_id, encoding, payload)
    raise ProtocolError("unknown_opcode", f"Unknown binary opcode: {opcode:#04x}", fatal=True)


def _unpack_call(data: bytes, what: str) -> tuple[int, int, str, bytes]:
    pos = 1
    if len(data) < pos + _CALL_HEADER.size + _U32.size:
        raise ProtocolError("truncated_frame", f"Truncated {what}", fatal=True)
    service_id, call_id = _CALL_HEADER.unpack_from(data, pos)
    pos += _CALL_HEADER.size
    (enc_len,) = _U32.unpack_from(data, pos)
    pos += _U32.size
    if len(data) < pos + enc_len:
        raise ProtocolError("truncated_frame", f"Truncated {what} encoding", fatal=True)
    try:
        encoding = bytes(data[pos : pos + enc_len]).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError("truncated_frame", f"{what} encoding is not UTF-8", fatal=True) from exc
    return service_id, call_id, encoding, bytes(data[pos + enc_len :])


def encode_client_message_data(client_channel_id: int, payload: bytes) -> bytes:
    return _CLIENT_DATA.pack(ClientBinaryOpcode.MESSAGE_DATA, client_channel_id) + payload


def encode_service_call_request(
    service_id: int, call_id: int, encoding: str, payload: bytes
) -> bytes:
    raw = encoding.encode("utf-8")
    return (
        _U8.pack(ClientBinaryOpcode.SERVICE_CALL_REQUEST)
        + _CALL_HEADER.pack(service_id, call_id)
        + _U32.pack(len(raw))
        + raw
        + payload
    )


# -- Server binary frames ------------------------------------------------------


def encode_message_data(subscription_id: int, log_time: int, payload: bytes) -> bytes:
    return _MESSAGE_DATA.pack(ServerBinaryOpcode.MESSAGE_DATA, subscription_id, log_time) + payload


def decode_message_data(data: bytes) -> tuple[int, int, bytes]:
    """Split a MessageData frame into ``(subscription_id, log_time, payload)``."""
    opcode, subscription_id, log_time = _MESSAGE_DATA.unpack_from(data)
    if opcode != ServerBinaryOpcode.MESSAGE_DATA:
        raise ValueError(f"Not a MessageData frame: opcode {opcode:#04x}")
    return subscription_id, log_time, bytes(data[_MESSAGE_DATA.size :])


def encode_time(timestamp: int) -> bytes:
    return _TIME.pack(ServerBinaryOpcode.TIME, timestamp)


def encode_service_call_response(
    service_id: int, call_id: int, encoding: str, payload: bytes
) -> bytes:
    raw = encoding.encode("utf-8")
    return (
        _U8.pack(ServerBinaryOpcode.SERVICE_CALL_RESPONSE)
        + _CALL_HEADER.pack(service_id, call_id)
        + _U32.pack(len(raw))
        + raw
        + payload
    )


def decode_service_call_response(data: bytes) -> tuple[int, int, str, bytes]:
    if not data or data[0] != ServerBinaryOpcode.SERVICE_CALL_RESPONSE:
        raise ValueError("Not a ServiceCallResponse frame")
    return _unpack_call(data, "ServiceCallResponse")


def encode_fetch_asset_response(
    request_id: int, status: AssetStatus, *, error: str = "", data: bytes = b""
) -> bytes:
    raw = error.encode("utf-8")
    return (
        _U8.pack(ServerBinaryOpcode.FETCH_ASSET_RESPONSE)
        + _U32.pack(request_id)
        + _U8.pack(status)
        + _U32.pack(len(raw))
        + raw
        + data
    )


def decode_fetch_asset_response(data: bytes) -> tuple[int, int, str, bytes]:
    """Split a FetchAssetResponse into ``(request_id, status, error, data)``."""
    if not data or data[0] != ServerBinaryOpcode.FETCH_ASSET_RESPONSE:
        raise ValueError("Not a FetchAssetResponse frame")
    (request_id,) = _U32.unpack_from(data, 1)
    status = data[5]
    (err_len,) = _U32.unpack_from(data, 6)
    error = bytes(data[10 : 10 + err_len]).decode("utf-8")
    return request_id, status, error, bytes(data[10 + err_len :])


# -- Server control frames -----------------------------------------------------


def _dumps(frame: dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"))


def server_info(
    *,
    name: str,
    capabilities: Iterable[str],
    supported_encodings: Iterable[str],
    metadata: Mapping[str, str],
    session_id: str,
) -> str:
    return _dumps(
        {
            "op": "serverInfo",
            "name": name,
            "capabilities": list(capabilities),
            "supportedEncodings": list(supported_encodings),
            "metadata": dict(metadata),
            "sessionId": session_id,
        }
    )


def status(level: StatusLevel, message: str, status_id: str | None = None) -> str:
    frame: dict[str, Any] = {"op": "status", "level": int(level), "message": message}
    if status_id is not None:
        frame["id"] = status_id
    return _dumps(frame)


def error_status(error: ProtocolError) -> str:
    return status(StatusLevel.ERROR, error.message, error.kind)


def remove_status(status_ids: Iterable[str]) -> str:
    return _dumps({"op": "removeStatus", "statusIds": list(status_ids)})


def channel_description(channel: Channel, schema: Schema | None) -> dict[str, Any]:
    """Advertisement entry for one channel.

    Text schemas are sent as-is; binary schemas are base64-encoded.
    """
    entry: dict[str, Any] = {
        "id": channel.id,
        "topic": channel.topic,
        "encoding": channel.message_encoding,
        "schemaName": schema.name if schema else "",
        "schema": "",
    }
    if schema is not None:
        entry["schemaEncoding"] = schema.encoding
        if schema.is_text:
            entry["schema"] = schema.data.decode("utf-8")
        else:
            entry["schema"] = base64.b64encode(schema.data).decode("ascii")
    if channel.metadata:
        entry["metadata"] = dict(channel.metadata)
    return entry


def advertise(entries: Iterable[dict[str, Any]]) -> str:
    return _dumps({"op": "advertise", "channels": list(entries)})


def unadvertise(channel_ids: Iterable[int]) -> str:
    return _dumps({"op": "unadvertise", "channelIds": list(channel_ids)})


def parameter_values(parameters: Iterable[dict[str, Any]], request_id: str | None = None) -> str:
    frame: dict[str, Any] = {"op": "parameterValues", "parameters": list(parameters)}
    if request_id is not None:
        frame["id"] = request_id
    return _dumps(frame)


def advertise_services(services: Iterable[Service]) -> str:
    return _dumps({"op": "advertiseServices", "services": [s.describe() for s in services]})


def unadvertise_services(service_ids: Iterable[int]) -> str:
    return _dumps({"op": "unadvertiseServices", "serviceIds": list(service_ids)})


def service_call_failure(service_id: int, call_id: int, message: str) -> str:
    return _dumps(
        {
            "op": "serviceCallFailure",
            "serviceId": service_id,
            "callId": call_id,
            "message": message,
        }
    )
