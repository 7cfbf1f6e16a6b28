"""Tests for ContainerSink attached to a Context."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from chanlog.config import ChanlogSettings, ContainerOptions
from chanlog.container.reader import ContainerReader
from chanlog.container.sink import ContainerSink
from chanlog.context import Context
from chanlog.errors import SinkIOError
from chanlog.registry.models import Schema
from chanlog.sinks.base import SinkKind


class _BrokenStream(io.RawIOBase):
    def writable(self) -> bool:
        return True

    def write(self, data: object) -> int:
        raise OSError(28, "No space left on device")


class TestContainerSink:
    def test_context_writes_readable_file(self, tmp_path: Path, settings: ChanlogSettings) -> None:
        path = tmp_path / "session.mcap"
        with Context(settings) as ctx:
            sink = ContainerSink.open(path)
            ctx.add_sink(sink)
            schema_id = ctx.register_schema("Pose", "jsonschema", b'{"type": "object"}')
            pose = ctx.create_channel("/pose", message_encoding="json", schema_id=schema_id)
            for i in range(5):
                pose.log(f'{{"x": {i}}}'.encode(), log_time=i)
            sink.write_metadata("run", {"id": "42"})

        assert sink.closed
        assert sink.writer.finished
        with ContainerReader.open(path) as reader:
            messages = list(reader.iter_messages())
            summary = reader.read_summary()
        assert [m.sequence for _, _, m in messages] == [1, 2, 3, 4, 5]
        schema, channel, _ = messages[0]
        assert schema == Schema(schema_id, "Pose", "jsonschema", b'{"type": "object"}')
        assert channel.topic == "/pose"
        assert summary is not None
        assert summary.statistics is not None
        assert summary.statistics.message_count == 5
        assert summary.statistics.metadata_count == 1

    def test_late_attach_gets_existing_channels(
        self, tmp_path: Path, settings: ChanlogSettings
    ) -> None:
        path = tmp_path / "late.mcap"
        with Context(settings) as ctx:
            ch = ctx.create_channel("/early", message_encoding="json")
            ch.log(b"{}")
            ctx.add_sink(ContainerSink.open(path, ContainerOptions(use_chunking=False)))
            ch.log(b"{}")

        with ContainerReader.open(path) as reader:
            messages = list(reader.iter_messages())
        assert len(messages) == 1
        assert messages[0][1].topic == "/early"
        assert messages[0][2].sequence == 2

    def test_name_and_kind(self, tmp_path: Path) -> None:
        sink = ContainerSink.open(tmp_path / "a.mcap")
        try:
            assert sink.kind is SinkKind.CONTAINER
            assert "a.mcap" in sink.name
        finally:
            sink.close()

    def test_os_error_becomes_sink_io_error(self) -> None:
        sink = ContainerSink(_BrokenStream())
        with pytest.raises(SinkIOError, match="No space left"):
            sink.on_schema(Schema(1, "Pose", "jsonschema", b"{}"))

    def test_close_is_idempotent(self) -> None:
        buf = io.BytesIO()
        sink = ContainerSink(buf)
        sink.close()
        size = len(buf.getvalue())
        sink.close()
        assert len(buf.getvalue()) == size
        assert buf.getvalue().endswith(b"\x89MCAP0\r\n")

    def test_io_failures_detach_sink(self, settings: ChanlogSettings) -> None:
        with Context(settings) as ctx:
            ctx.add_sink(ContainerSink(_BrokenStream(), name="broken"))
            ch = ctx.create_channel("/a", message_encoding="json")
            for _ in range(5):
                ch.log(b"{}")
            failures = ctx.drain_sink_failures()
            assert failures
            assert isinstance(failures[0].error, SinkIOError)
            assert failures[-1].detached
            assert ctx.sink_count == 0
