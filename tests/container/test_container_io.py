"""Tests for ContainerWriter and ContainerReader."""

from __future__ import annotations

import io
import struct
import threading
from pathlib import Path

import pytest

from chanlog.config import ContainerOptions
from chanlog.container.reader import ContainerReader
from chanlog.container.records import (
    MAGIC,
    RECORD_PREFIX,
    Attachment,
    Chunk,
    Header,
    Metadata,
    Opcode,
    encode_message,
)
from chanlog.container.sink import ContainerSink
from chanlog.container.writer import ContainerWriter
from chanlog.context import Context
from chanlog.errors import ContainerChecksumError, ContainerFormatError, WriterCorruptionError
from chanlog.registry.models import Channel, Message, Schema

SCHEMA = Schema(id=1, name="Pose", encoding="jsonschema", data=b'{"type": "object"}')
CHANNEL = Channel(id=1, topic="/pose", schema_id=1, message_encoding="json")
RAW_CHANNEL = Channel(id=2, topic="/raw", schema_id=None, message_encoding="cdr")


def _message(seq: int, channel_id: int = 1, log_time: int | None = None) -> Message:
    t = seq * 1000 if log_time is None else log_time
    return Message(
        channel_id=channel_id,
        sequence=seq,
        log_time=t,
        publish_time=t + 1,
        data=f'{{"seq": {seq}}}'.encode(),
    )


def _write(
    messages: list[Message],
    options: ContainerOptions | None = None,
    *,
    finish: bool = True,
) -> bytes:
    buf = io.BytesIO()
    writer = ContainerWriter(buf, options)
    writer.add_schema(SCHEMA)
    writer.add_channel(CHANNEL)
    writer.add_channel(RAW_CHANNEL)
    for message in messages:
        writer.add_message(message)
    if finish:
        writer.finish()
    else:
        writer.flush()
    return buf.getvalue()


class _FlakyStream(io.BytesIO):
    """Raises on the next write after ``fail_next`` is set, then recovers."""

    fail_next = False

    def write(self, data: bytes) -> int:  # type: ignore[override]
        if self.fail_next:
            self.fail_next = False
            raise OSError("disk hiccup")
        return super().write(data)


class TestRoundTrip:
    @pytest.mark.parametrize(
        "options",
        [
            ContainerOptions(),
            ContainerOptions(compression_codec=""),
            ContainerOptions(use_chunking=False),
            ContainerOptions(checksum_enabled=False),
            ContainerOptions(chunk_size_bytes=256),
        ],
        ids=["default", "uncompressed", "unchunked", "no-crc", "small-chunks"],
    )
    def test_messages_round_trip(self, options: ContainerOptions) -> None:
        messages = [_message(i, channel_id=1 + (i - 1) % 2) for i in range(1, 41)]
        data = _write(messages, options)

        reader = ContainerReader(io.BytesIO(data))
        out = list(reader.iter_messages())
        assert [m for _, _, m in out] == messages
        schema, channel, _ = out[0]
        assert schema == SCHEMA
        assert channel.topic == "/pose"
        assert out[1][0] is None
        assert out[1][1].topic == "/raw"

    def test_file_starts_and_ends_with_magic(self) -> None:
        data = _write([_message(1)])
        assert data.startswith(MAGIC)
        assert data.endswith(MAGIC)

    def test_header_records_library(self) -> None:
        data = _write([], ContainerOptions(profile="robot", library="chanlog/test"))
        header = ContainerReader(io.BytesIO(data)).header()
        assert header == Header(profile="robot", library="chanlog/test")

    def test_channel_metadata_round_trips(self) -> None:
        channel = Channel(
            id=1, topic="/m", schema_id=None, message_encoding="json", metadata={"a": "1"}
        )
        buf = io.BytesIO()
        writer = ContainerWriter(buf)
        writer.add_channel(channel)
        writer.finish()
        summary = ContainerReader(io.BytesIO(buf.getvalue())).read_summary()
        assert summary is not None
        assert dict(summary.channels[1].metadata) == {"a": "1"}

    def test_out_of_order_log_times(self) -> None:
        messages = [_message(1, log_time=500), _message(2, log_time=100), _message(3, log_time=300)]
        data = _write(messages)
        reader = ContainerReader(io.BytesIO(data))
        assert [m.log_time for _, _, m in reader.iter_messages()] == [500, 100, 300]
        summary = reader.read_summary()
        assert summary is not None
        assert summary.statistics is not None
        assert summary.statistics.message_start_time == 100
        assert summary.statistics.message_end_time == 500


class TestSummary:
    def test_statistics_and_indexes(self) -> None:
        messages = [_message(i) for i in range(1, 101)]
        data = _write(messages, ContainerOptions(chunk_size_bytes=1024))
        reader = ContainerReader(io.BytesIO(data))
        summary = reader.read_summary()
        assert summary is not None

        stats = summary.statistics
        assert stats is not None
        assert stats.message_count == 100
        assert stats.schema_count == 1
        assert stats.channel_count == 2
        assert stats.channel_message_counts == {1: 100}
        assert stats.chunk_count == len(summary.chunk_indexes) > 1
        assert set(summary.schemas) == {1}
        assert set(summary.channels) == {1, 2}

        indexed = sum(sum(reader.message_index_counts(ci).values()) for ci in summary.chunk_indexes)
        assert indexed == 100

    def test_chunk_index_points_at_chunk(self) -> None:
        data = _write([_message(i) for i in range(1, 11)])
        reader = ContainerReader(io.BytesIO(data))
        summary = reader.read_summary()
        assert summary is not None
        records = reader.read_chunk(summary.chunk_indexes[0])
        assert sum(isinstance(r, Message) for r in records) == 10

    def test_chunk_duration_splits_chunks(self) -> None:
        messages = [_message(i, log_time=i * 1_000_000) for i in range(1, 11)]
        data = _write(messages, ContainerOptions(chunk_duration=3_000_000))
        summary = ContainerReader(io.BytesIO(data)).read_summary()
        assert summary is not None
        assert len(summary.chunk_indexes) >= 3
        for index in summary.chunk_indexes:
            assert index.message_end_time - index.message_start_time <= 3_000_000

    def test_unfinished_file_has_no_summary(self) -> None:
        data = _write([_message(1), _message(2)], finish=False)
        reader = ContainerReader(io.BytesIO(data))
        assert reader.read_summary() is None
        assert len(list(reader.iter_messages())) == 2

    def test_summary_crc_mismatch(self) -> None:
        data = bytearray(_write([_message(1)]))
        footer = ContainerReader(io.BytesIO(bytes(data))).footer()
        assert footer is not None
        # Flip a byte inside the summary section.
        data[footer.summary_start + RECORD_PREFIX.size + 2] ^= 0xFF
        with pytest.raises(ContainerChecksumError):
            ContainerReader(io.BytesIO(bytes(data))).read_summary()


class TestLinearScan:
    def test_truncated_tail_is_tolerated(self) -> None:
        data = _write([_message(i) for i in range(1, 6)], ContainerOptions(use_chunking=False))
        truncated = data[: len(data) // 2]
        reader = ContainerReader(io.BytesIO(truncated))
        messages = [m for _, _, m in reader.iter_messages()]
        assert messages == [_message(i) for i in range(1, len(messages) + 1)]
        assert reader.read_summary() is None

    def test_unknown_records_are_skipped(self) -> None:
        data = _write([_message(1)], ContainerOptions(use_chunking=False), finish=False)
        body = b"future record"
        unknown = RECORD_PREFIX.pack(0x80, len(body)) + body
        spliced = data + unknown + encode_message(_message(2))
        reader = ContainerReader(io.BytesIO(spliced))
        assert [m.sequence for _, _, m in reader.iter_messages()] == [1, 2]

    def test_bad_magic(self) -> None:
        with pytest.raises(ContainerFormatError, match="magic"):
            list(ContainerReader(io.BytesIO(b"NOTMCAP!" + b"\x00" * 32)).iter_records())

    def test_chunk_crc_mismatch(self) -> None:
        data = bytearray(_write([_message(1)], ContainerOptions(compression_codec="")))
        marker = b'{"seq": 1}'
        pos = data.index(marker)
        data[pos + 2] ^= 0x01
        with pytest.raises(ContainerChecksumError):
            list(ContainerReader(io.BytesIO(bytes(data))).iter_messages())

    def test_crc_validation_can_be_disabled(self) -> None:
        data = bytearray(_write([_message(1)], ContainerOptions(compression_codec="")))
        pos = data.index(b'{"seq": 1}')
        data[pos + 2] ^= 0x01
        reader = ContainerReader(io.BytesIO(bytes(data)), validate_crcs=False)
        assert len(list(reader.iter_messages())) == 1

    def test_records_include_chunks(self) -> None:
        data = _write([_message(1)])
        records = list(ContainerReader(io.BytesIO(data)).iter_records())
        assert isinstance(records[0], Header)
        assert any(isinstance(r, Chunk) for r in records)


class TestMetadataAndAttachments:
    def test_metadata_and_attachment(self) -> None:
        buf = io.BytesIO()
        writer = ContainerWriter(buf)
        writer.write_metadata("session", {"robot": "r2", "run": "7"})
        writer.attach("calib.yaml", "application/yaml", b"k: 1\n", log_time=5)
        writer.finish()

        reader = ContainerReader(io.BytesIO(buf.getvalue()))
        summary = reader.read_summary()
        assert summary is not None
        assert summary.statistics is not None
        assert summary.statistics.metadata_count == 1
        assert summary.statistics.attachment_count == 1

        metadata = reader.read_metadata(summary.metadata_indexes[0])
        assert metadata == Metadata(name="session", metadata={"robot": "r2", "run": "7"})
        attachment = reader.read_attachment(summary.attachment_indexes[0])
        assert attachment.data == b"k: 1\n"
        assert attachment.log_time == 5
        assert attachment.crc != 0

        scanned = list(ContainerReader(io.BytesIO(buf.getvalue())).iter_records())
        assert any(isinstance(r, Attachment) for r in scanned)

    def test_attachment_crc_mismatch(self) -> None:
        buf = io.BytesIO()
        writer = ContainerWriter(buf)
        writer.attach("blob", "application/octet-stream", b"payload-bytes")
        writer.finish()
        data = bytearray(buf.getvalue())
        pos = data.index(b"payload-bytes")
        data[pos] ^= 0xFF
        with pytest.raises(ContainerChecksumError):
            list(ContainerReader(io.BytesIO(bytes(data))).iter_records())


class TestWriterGuards:
    def test_message_for_unknown_channel(self) -> None:
        writer = ContainerWriter(io.BytesIO())
        with pytest.raises(ValueError, match="unknown channel"):
            writer.add_message(_message(1, channel_id=9))

    def test_finish_twice_is_noop(self) -> None:
        buf = io.BytesIO()
        writer = ContainerWriter(buf)
        writer.finish()
        size = len(buf.getvalue())
        writer.finish()
        assert len(buf.getvalue()) == size

    def test_write_after_finish_rejected(self) -> None:
        writer = ContainerWriter(io.BytesIO())
        writer.finish()
        with pytest.raises(ValueError):
            writer.add_schema(SCHEMA)

    def test_failed_chunk_write_is_retried(self) -> None:
        stream = _FlakyStream()
        writer = ContainerWriter(stream, ContainerOptions(chunk_size_bytes=1))
        writer.add_schema(SCHEMA)
        writer.add_channel(CHANNEL)
        writer.add_message(_message(1))

        stream.fail_next = True
        with pytest.raises(OSError, match="disk hiccup"):
            writer.add_message(_message(2))
        assert writer.statistics.message_count == 1

        writer.add_message(_message(3))
        writer.finish()

        reader = ContainerReader(io.BytesIO(stream.getvalue()))
        assert [m.sequence for _, _, m in reader.iter_messages()] == [1, 2, 3]
        summary = reader.read_summary()
        assert summary is not None
        assert summary.statistics is not None
        assert summary.statistics.message_count == 3
        assert summary.statistics.channel_message_counts == {1: 3}

    def test_corrupting_codec_fails_writer(self) -> None:
        from chanlog.container.codec import Codec, register_codec

        register_codec(Codec("flaky", lambda d: d, lambda d, n: d[:-1] + b"\x00"))
        writer = ContainerWriter(io.BytesIO(), ContainerOptions(compression_codec="flaky"))
        writer.add_channel(RAW_CHANNEL)
        writer.add_message(_message(1, channel_id=2))
        with pytest.raises(WriterCorruptionError):
            writer.flush()
        assert writer.failed
        with pytest.raises(WriterCorruptionError):
            writer.add_message(_message(2, channel_id=2))


class TestConcurrentContainer:
    def test_statistics_match_threads_times_messages(self, tmp_path: Path) -> None:
        path = tmp_path / "concurrent.mcap"
        threads, per_thread = 4, 250
        with Context() as ctx:
            ctx.add_sink(ContainerSink.open(path, ContainerOptions(chunk_size_bytes=4096)))
            handles = [
                ctx.create_channel(f"/t{i}", message_encoding="json") for i in range(threads)
            ]

            def worker(index: int) -> None:
                for _ in range(per_thread):
                    handles[index].log(b"{}")

            pool = [threading.Thread(target=worker, args=(i,)) for i in range(threads)]
            for t in pool:
                t.start()
            for t in pool:
                t.join()

        with ContainerReader.open(path) as reader:
            summary = reader.read_summary()
            assert summary is not None
            assert summary.statistics is not None
            assert summary.statistics.message_count == threads * per_thread
            assert summary.statistics.channel_message_counts == {
                h.id: per_thread for h in handles
            }
            per_channel: dict[int, list[int]] = {}
            for _, channel, message in reader.iter_messages():
                per_channel.setdefault(channel.id, []).append(message.sequence)
        for sequences in per_channel.values():
            assert sequences == list(range(1, per_thread + 1))


def test_record_prefix_layout() -> None:
    prefix = RECORD_PREFIX.pack(Opcode.MESSAGE, 10)
    assert prefix == struct.pack("<BQ", 0x05, 10)
