"""Tests for the schema and channel registry."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from chanlog.config import DuplicateTopicPolicy
from chanlog.errors import (
    ChannelClosedError,
    DuplicateChannelError,
    SchemaValidationError,
    UnknownChannelError,
    UnknownSchemaError,
)
from chanlog.registry import Registry

JSON_SCHEMA = b'{"type": "object"}'


class TestRegisterSchema:
    def test_ids_start_at_one(self) -> None:
        reg = Registry()
        assert reg.register_schema("A", "jsonschema", JSON_SCHEMA) == 1
        assert reg.register_schema("B", "jsonschema", JSON_SCHEMA) == 2

    def test_identical_schema_reuses_id(self) -> None:
        reg = Registry()
        first = reg.register_schema("Pose", "jsonschema", JSON_SCHEMA)
        second = reg.register_schema("Pose", "jsonschema", JSON_SCHEMA)
        assert first == second
        assert len(reg.schemas()) == 1

    def test_different_data_gets_new_id(self) -> None:
        reg = Registry()
        first = reg.register_schema("Pose", "jsonschema", JSON_SCHEMA)
        second = reg.register_schema("Pose", "jsonschema", b'{"type": "array"}')
        assert first != second

    def test_invalid_schema_rejected(self) -> None:
        reg = Registry()
        with pytest.raises(SchemaValidationError):
            reg.register_schema("Pose", "jsonschema", b"not json")
        assert reg.schemas() == []

    def test_get_unknown_schema(self) -> None:
        reg = Registry()
        with pytest.raises(UnknownSchemaError):
            reg.get_schema(7)

    def test_listener_notified_once(self) -> None:
        listener = MagicMock()
        reg = Registry(listener=listener)
        reg.register_schema("Pose", "jsonschema", JSON_SCHEMA)
        reg.register_schema("Pose", "jsonschema", JSON_SCHEMA)
        listener.schema_added.assert_called_once()


class TestAddChannel:
    def test_basic_registration(self) -> None:
        reg = Registry()
        schema_id = reg.register_schema("Pose", "jsonschema", JSON_SCHEMA)
        channel_id = reg.add_channel("/pose", message_encoding="json", schema_id=schema_id)
        channel = reg.get_channel(channel_id)
        assert channel.topic == "/pose"
        assert channel.schema_id == schema_id
        assert channel.message_encoding == "json"

    def test_schemaless_channel(self) -> None:
        reg = Registry()
        channel_id = reg.add_channel("/raw", message_encoding="cdr")
        assert reg.get_channel(channel_id).schema_id is None

    def test_unknown_schema_rejected(self) -> None:
        reg = Registry()
        with pytest.raises(UnknownSchemaError):
            reg.add_channel("/pose", message_encoding="json", schema_id=3)

    def test_empty_topic_rejected(self) -> None:
        reg = Registry()
        with pytest.raises(ValueError):
            reg.add_channel("", message_encoding="json")

    def test_metadata_is_read_only(self) -> None:
        reg = Registry()
        channel_id = reg.add_channel("/pose", message_encoding="json", metadata={"k": "v"})
        channel = reg.get_channel(channel_id)
        assert channel.metadata["k"] == "v"
        with pytest.raises(TypeError):
            channel.metadata["k"] = "x"  # type: ignore[index]


class TestDuplicateTopicPolicy:
    def test_reuse_identical_returns_existing(self) -> None:
        reg = Registry(DuplicateTopicPolicy.REUSE)
        first = reg.add_channel("/pose", message_encoding="json")
        second = reg.add_channel("/pose", message_encoding="json")
        assert first == second
        assert len(reg.channels()) == 1

    def test_reuse_conflicting_raises(self) -> None:
        reg = Registry(DuplicateTopicPolicy.REUSE)
        first = reg.add_channel("/pose", message_encoding="json")
        with pytest.raises(DuplicateChannelError) as exc_info:
            reg.add_channel("/pose", message_encoding="cbor")
        assert exc_info.value.existing_id == first

    def test_error_policy_always_raises(self) -> None:
        reg = Registry(DuplicateTopicPolicy.ERROR)
        reg.add_channel("/pose", message_encoding="json")
        with pytest.raises(DuplicateChannelError):
            reg.add_channel("/pose", message_encoding="json")

    def test_closed_topic_can_be_reregistered(self) -> None:
        reg = Registry(DuplicateTopicPolicy.ERROR)
        first = reg.add_channel("/pose", message_encoding="json")
        reg.close_channel(first)
        second = reg.add_channel("/pose", message_encoding="json")
        assert second != first
        assert reg.channel_by_topic("/pose").id == second  # type: ignore[union-attr]


class TestCloseChannel:
    def test_close_is_idempotent(self) -> None:
        listener = MagicMock()
        reg = Registry(listener=listener)
        channel_id = reg.add_channel("/pose", message_encoding="json")
        reg.close_channel(channel_id)
        reg.close_channel(channel_id)
        listener.channel_closed.assert_called_once()
        assert reg.is_closed(channel_id)

    def test_open_slot_rejects_closed(self) -> None:
        reg = Registry()
        channel_id = reg.add_channel("/pose", message_encoding="json")
        reg.close_channel(channel_id)
        with reg.lock.read(), pytest.raises(ChannelClosedError):
            reg.open_slot(channel_id)

    def test_unknown_channel(self) -> None:
        reg = Registry()
        with pytest.raises(UnknownChannelError):
            reg.close_channel(42)

    def test_channels_excludes_closed_by_default(self) -> None:
        reg = Registry()
        a = reg.add_channel("/a", message_encoding="json")
        b = reg.add_channel("/b", message_encoding="json")
        reg.close_channel(a)
        assert [c.id for c in reg.channels()] == [b]
        assert [c.id for c in reg.channels(include_closed=True)] == [a, b]


class TestExclusive:
    def test_yields_snapshot(self) -> None:
        reg = Registry()
        reg.register_schema("Pose", "jsonschema", JSON_SCHEMA)
        reg.add_channel("/a", message_encoding="json")
        closed = reg.add_channel("/b", message_encoding="json")
        reg.close_channel(closed)
        with reg.exclusive() as (schemas, channels):
            assert [s.name for s in schemas] == ["Pose"]
            assert [c.topic for c in channels] == ["/a"]
