"""Tests for live protocol frame encoding and parsing."""

from __future__ import annotations

import base64
import json

import pytest

from chanlog.errors import ProtocolError
from chanlog.registry.models import Channel, Schema
from chanlog.server import protocol
from chanlog.server.protocol import (
    AssetStatus,
    ClientAdvertise,
    ClientMessageData,
    FetchAsset,
    GetParameters,
    ServiceCallRequest,
    SetParameters,
    StatusLevel,
    Subscribe,
    Unsubscribe,
)
from chanlog.server.services import Service, ServiceMessageSchema


class TestParseClientText:
    def test_subscribe(self) -> None:
        op = protocol.parse_client_text(
            '{"op": "subscribe", "subscriptions": [{"id": 7, "channelId": 3}]}'
        )
        assert isinstance(op, Subscribe)
        assert op.subscriptions[0].id == 7
        assert op.subscriptions[0].channel_id == 3

    def test_unsubscribe(self) -> None:
        op = protocol.parse_client_text('{"op": "unsubscribe", "subscriptionIds": [1, 2]}')
        assert isinstance(op, Unsubscribe)
        assert op.subscription_ids == [1, 2]

    def test_client_advertise(self) -> None:
        op = protocol.parse_client_text(
            json.dumps(
                {
                    "op": "advertise",
                    "channels": [
                        {"id": 1, "topic": "/cmd", "encoding": "json", "schemaName": "Cmd"}
                    ],
                }
            )
        )
        assert isinstance(op, ClientAdvertise)
        assert op.channels[0].topic == "/cmd"
        assert op.channels[0].schema_name == "Cmd"
        assert op.channels[0].schema_ is None

    def test_parameters(self) -> None:
        get = protocol.parse_client_text(
            '{"op": "getParameters", "parameterNames": ["a"], "id": "req"}'
        )
        assert isinstance(get, GetParameters)
        assert get.parameter_names == ["a"]
        assert get.id == "req"

        put = protocol.parse_client_text(
            '{"op": "setParameters", "parameters": [{"name": "a", "value": 1.5}]}'
        )
        assert isinstance(put, SetParameters)
        assert put.parameters[0].value == 1.5
        assert put.id is None

    def test_fetch_asset(self) -> None:
        op = protocol.parse_client_text(
            '{"op": "fetchAsset", "uri": "package://robot/mesh.stl", "requestId": 4}'
        )
        assert isinstance(op, FetchAsset)
        assert op.request_id == 4

    def test_extra_fields_are_ignored(self) -> None:
        op = protocol.parse_client_text('{"op": "unsubscribe", "subscriptionIds": [], "x": 1}')
        assert isinstance(op, Unsubscribe)

    @pytest.mark.parametrize(
        ("text", "kind"),
        [
            ("not json", "invalid_json"),
            ("[1, 2]", "invalid_frame"),
            ('{"subscriptions": []}', "missing_op"),
            ('{"op": 5}', "missing_op"),
        ],
    )
    def test_framing_errors_are_fatal(self, text: str, kind: str) -> None:
        with pytest.raises(ProtocolError) as info:
            protocol.parse_client_text(text)
        assert info.value.kind == kind
        assert info.value.fatal

    def test_unknown_op_is_not_fatal(self) -> None:
        with pytest.raises(ProtocolError) as info:
            protocol.parse_client_text('{"op": "teleport"}')
        assert info.value.kind == "unknown_op"
        assert not info.value.fatal

    def test_bad_fields_are_not_fatal(self) -> None:
        with pytest.raises(ProtocolError) as info:
            protocol.parse_client_text(
                '{"op": "subscribe", "subscriptions": [{"id": -1, "channelId": 1}]}'
            )
        assert info.value.kind == "invalid_fields"
        assert not info.value.fatal
        assert "subscriptions" in info.value.message


class TestClientBinary:
    def test_message_data(self) -> None:
        frame = protocol.encode_client_message_data(9, b"payload")
        assert protocol.decode_client_binary(frame) == ClientMessageData(9, b"payload")

    def test_service_call_request(self) -> None:
        frame = protocol.encode_service_call_request(2, 11, "json", b'{"a": 1}')
        assert protocol.decode_client_binary(frame) == ServiceCallRequest(
            2, 11, "json", b'{"a": 1}'
        )

    @pytest.mark.parametrize(
        ("frame", "kind"),
        [
            (b"", "truncated_frame"),
            (b"\x01\x00\x00", "truncated_frame"),
            (b"\x02\x01\x00\x00\x00", "truncated_frame"),
            (b"\x02" + b"\x00" * 8 + b"\xff\x00\x00\x00json", "truncated_frame"),
            (b"\x7f\x00\x00\x00\x00", "unknown_opcode"),
        ],
    )
    def test_bad_frames_are_fatal(self, frame: bytes, kind: str) -> None:
        with pytest.raises(ProtocolError) as info:
            protocol.decode_client_binary(frame)
        assert info.value.kind == kind
        assert info.value.fatal


class TestServerBinary:
    def test_message_data_layout(self) -> None:
        frame = protocol.encode_message_data(5, 1_000, b"xyz")
        assert frame[0] == 0x01
        assert int.from_bytes(frame[1:5], "little") == 5
        assert int.from_bytes(frame[5:13], "little") == 1_000
        assert frame[13:] == b"xyz"
        assert protocol.decode_message_data(frame) == (5, 1_000, b"xyz")

    def test_decode_message_data_rejects_other_opcodes(self) -> None:
        with pytest.raises(ValueError):
            protocol.decode_message_data(protocol.encode_time(1) + b"\x00" * 4)

    def test_time(self) -> None:
        assert protocol.encode_time(42) == b"\x02" + (42).to_bytes(8, "little")

    def test_service_call_response(self) -> None:
        frame = protocol.encode_service_call_response(1, 2, "cbor", b"\x00")
        assert protocol.decode_service_call_response(frame) == (1, 2, "cbor", b"\x00")

    def test_fetch_asset_response(self) -> None:
        ok = protocol.encode_fetch_asset_response(3, AssetStatus.SUCCESS, data=b"mesh")
        assert protocol.decode_fetch_asset_response(ok) == (3, 0, "", b"mesh")
        failed = protocol.encode_fetch_asset_response(4, AssetStatus.ERROR, error="missing")
        assert protocol.decode_fetch_asset_response(failed) == (4, 1, "missing", b"")


class TestControlFrames:
    def test_server_info(self) -> None:
        frame = json.loads(
            protocol.server_info(
                name="robot",
                capabilities=["services"],
                supported_encodings=["json"],
                metadata={"fw": "1.2"},
                session_id="abc",
            )
        )
        assert frame == {
            "op": "serverInfo",
            "name": "robot",
            "capabilities": ["services"],
            "supportedEncodings": ["json"],
            "metadata": {"fw": "1.2"},
            "sessionId": "abc",
        }

    def test_frames_are_compact(self) -> None:
        assert protocol.remove_status(["a"]) == '{"op":"removeStatus","statusIds":["a"]}'

    def test_error_status(self) -> None:
        frame = json.loads(protocol.error_status(ProtocolError("unknown_channel", "no such")))
        assert frame == {
            "op": "status",
            "level": int(StatusLevel.ERROR),
            "message": "no such",
            "id": "unknown_channel",
        }

    def test_status_without_id(self) -> None:
        frame = json.loads(protocol.status(StatusLevel.INFO, "hello"))
        assert "id" not in frame
        assert frame["level"] == 0

    def test_text_schema_description(self) -> None:
        schema = Schema(1, "Pose", "jsonschema", b'{"type": "object"}')
        channel = Channel(1, "/pose", 1, "json", {"frame": "map"})
        entry = protocol.channel_description(channel, schema)
        assert entry == {
            "id": 1,
            "topic": "/pose",
            "encoding": "json",
            "schemaName": "Pose",
            "schema": '{"type": "object"}',
            "schemaEncoding": "jsonschema",
            "metadata": {"frame": "map"},
        }

    def test_binary_schema_is_base64(self) -> None:
        schema = Schema(1, "Pose", "protobuf", b"\x0a\x04Pose")
        channel = Channel(1, "/pose", 1, "protobuf")
        entry = protocol.channel_description(channel, schema)
        assert base64.b64decode(entry["schema"]) == b"\x0a\x04Pose"
        assert "metadata" not in entry

    def test_schemaless_channel(self) -> None:
        entry = protocol.channel_description(Channel(2, "/raw", None, "cdr"), None)
        assert entry["schemaName"] == ""
        assert "schemaEncoding" not in entry

    def test_advertise_services(self) -> None:
        service = Service(
            "add",
            "math/Add",
            lambda req: b"",
            request=ServiceMessageSchema("json", "AddRequest"),
            id=3,
        )
        frame = json.loads(protocol.advertise_services([service]))
        assert frame["op"] == "advertiseServices"
        assert frame["services"][0]["id"] == 3
        assert frame["services"][0]["request"]["schemaName"] == "AddRequest"
        assert "response" not in frame["services"][0]

    def test_service_call_failure(self) -> None:
        frame = json.loads(protocol.service_call_failure(1, 2, "boom"))
        assert frame == {
            "op": "serviceCallFailure",
            "serviceId": 1,
            "callId": 2,
            "message": "boom",
        }

    def test_parameter_values(self) -> None:
        frame = json.loads(protocol.parameter_values([{"name": "a", "value": 1}], "req"))
        assert frame == {
            "op": "parameterValues",
            "parameters": [{"name": "a", "value": 1}],
            "id": "req",
        }
