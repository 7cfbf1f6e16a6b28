"""Container record layout: opcodes, record types, encode and parse.

Wire format (all integers little-endian)::

    magic   = 0x89 "MCAP0" "\\r\\n"
    record  = opcode:u8  length:u64  body[length]
    string  = length:u32 utf8[length]
    map     = byte_length:u32 (key value)*

Readers skip records with an unknown opcode using the length prefix.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from chanlog.errors import ContainerFormatError
from chanlog.registry.models import Channel, Message, Schema

MAGIC = b"\x89MCAP0\r\n"

_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
RECORD_PREFIX = struct.Struct("<BQ")
_MESSAGE_HEADER = struct.Struct("<HIQQ")
_INDEX_ENTRY = struct.Struct("<QQ")
_OFFSET_ENTRY = struct.Struct("<HQ")

# Footer body is fixed size: summary_start, summary_offset_start, summary_crc.
FOOTER_BODY_SIZE = 8 + 8 + 4
FOOTER_RECORD_SIZE = RECORD_PREFIX.size + FOOTER_BODY_SIZE


class Opcode(IntEnum):
    HEADER = 0x01
    FOOTER = 0x02
    SCHEMA = 0x03
    CHANNEL = 0x04
    MESSAGE = 0x05
    CHUNK = 0x06
    MESSAGE_INDEX = 0x07
    CHUNK_INDEX = 0x08
    ATTACHMENT = 0x09
    ATTACHMENT_INDEX = 0x0A
    STATISTICS = 0x0B
    METADATA = 0x0C
    METADATA_INDEX = 0x0D
    SUMMARY_OFFSET = 0x0E
    DATA_END = 0x0F


# -- Record types that have no registry counterpart ----------------------------


@dataclass
class Header:
    profile: str
    library: str


@dataclass
class Footer:
    summary_start: int
    summary_offset_start: int
    summary_crc: int


@dataclass
class Chunk:
    message_start_time: int
    message_end_time: int
    uncompressed_size: int
    uncompressed_crc: int
    compression: str
    records: bytes


@dataclass
class MessageIndex:
    channel_id: int
    records: list[tuple[int, int]]
    """``(log_time, offset into the uncompressed chunk)`` pairs."""


@dataclass
class ChunkIndex:
    message_start_time: int
    message_end_time: int
    chunk_start_offset: int
    chunk_length: int
    message_index_offsets: dict[int, int]
    message_index_length: int
    compression: str
    compressed_size: int
    uncompressed_size: int


@dataclass
class Attachment:
    log_time: int
    create_time: int
    name: str
    media_type: str
    data: bytes
    crc: int = 0


@dataclass
class AttachmentIndex:
    offset: int
    length: int
    log_time: int
    create_time: int
    data_size: int
    name: str
    media_type: str


@dataclass
class Statistics:
    message_count: int = 0
    schema_count: int = 0
    channel_count: int = 0
    attachment_count: int = 0
    metadata_count: int = 0
    chunk_count: int = 0
    message_start_time: int = 0
    message_end_time: int = 0
    channel_message_counts: dict[int, int] = field(default_factory=dict)


@dataclass
class Metadata:
    name: str
    metadata: dict[str, str]


@dataclass
class MetadataIndex:
    offset: int
    length: int
    name: str


@dataclass
class SummaryOffset:
    group_opcode: int
    group_start: int
    group_length: int


@dataclass
class DataEnd:
    data_section_crc: int


@dataclass
class UnknownRecord:
    """A record whose opcode this version does not understand."""

    opcode: int
    body: bytes


# -- Encoding ------------------------------------------------------------------


def _str(value: str) -> bytes:
    raw = value.encode("utf-8")
    return _U32.pack(len(raw)) + raw


def _str_map(mapping: dict[str, str] | Any) -> bytes:
    body = b"".join(_str(k) + _str(v) for k, v in sorted(mapping.items()))
    return _U32.pack(len(body)) + body


def _frame(opcode: Opcode, body: bytes) -> bytes:
    return RECORD_PREFIX.pack(opcode, len(body)) + body


def encode_header(header: Header) -> bytes:
    return _frame(Opcode.HEADER, _str(header.profile) + _str(header.library))


def footer_prefix(summary_start: int, summary_offset_start: int) -> bytes:
    """Footer bytes covered by the summary CRC (everything but the CRC itself)."""
    return RECORD_PREFIX.pack(Opcode.FOOTER, FOOTER_BODY_SIZE) + _U64.pack(
        summary_start
    ) + _U64.pack(summary_offset_start)


def encode_schema(schema: Schema) -> bytes:
    body = (
        _U16.pack(schema.id)
        + _str(schema.name)
        + _str(schema.encoding)
        + _U32.pack(len(schema.data))
        + schema.data
    )
    return _frame(Opcode.SCHEMA, body)


def encode_channel(channel: Channel) -> bytes:
    body = (
        _U16.pack(channel.id)
        + _U16.pack(channel.schema_id or 0)
        + _str(channel.topic)
        + _str(channel.message_encoding)
        + _str_map(channel.metadata)
    )
    return _frame(Opcode.CHANNEL, body)


def encode_message(message: Message) -> bytes:
    header = _MESSAGE_HEADER.pack(
        message.channel_id,
        message.sequence & 0xFFFFFFFF,
        message.log_time,
        message.publish_time,
    )
    return _frame(Opcode.MESSAGE, header + message.data)


def encode_chunk(chunk: Chunk) -> bytes:
    body = (
        _U64.pack(chunk.message_start_time)
        + _U64.pack(chunk.message_end_time)
        + _U64.pack(chunk.uncompressed_size)
        + _U32.pack(chunk.uncompressed_crc)
        + _str(chunk.compression)
        + _U64.pack(len(chunk.records))
        + chunk.records
    )
    return _frame(Opcode.CHUNK, body)


def encode_message_index(index: MessageIndex) -> bytes:
    entries = b"".join(_INDEX_ENTRY.pack(t, o) for t, o in index.records)
    body = _U16.pack(index.channel_id) + _U32.pack(len(entries)) + entries
    return _frame(Opcode.MESSAGE_INDEX, body)


def encode_chunk_index(index: ChunkIndex) -> bytes:
    offsets = b"".join(
        _OFFSET_ENTRY.pack(cid, off) for cid, off in sorted(index.message_index_offsets.items())
    )
    body = (
        _U64.pack(index.message_start_time)
        + _U64.pack(index.message_end_time)
        + _U64.pack(index.chunk_start_offset)
        + _U64.pack(index.chunk_length)
        + _U32.pack(len(offsets))
        + offsets
        + _U64.pack(index.message_index_length)
        + _str(index.compression)
        + _U64.pack(index.compressed_size)
        + _U64.pack(index.uncompressed_size)
    )
    return _frame(Opcode.CHUNK_INDEX, body)


def attachment_body_prefix(attachment: Attachment) -> bytes:
    """Attachment body up to (not including) its CRC field."""
    return (
        _U64.pack(attachment.log_time)
        + _U64.pack(attachment.create_time)
        + _str(attachment.name)
        + _str(attachment.media_type)
        + _U64.pack(len(attachment.data))
        + attachment.data
    )


def encode_attachment(attachment: Attachment) -> bytes:
    body = attachment_body_prefix(attachment) + _U32.pack(attachment.crc)
    return _frame(Opcode.ATTACHMENT, body)


def encode_attachment_index(index: AttachmentIndex) -> bytes:
    body = (
        _U64.pack(index.offset)
        + _U64.pack(index.length)
        + _U64.pack(index.log_time)
        + _U64.pack(index.create_time)
        + _U64.pack(index.data_size)
        + _str(index.name)
        + _str(index.media_type)
    )
    return _frame(Opcode.ATTACHMENT_INDEX, body)


def encode_statistics(stats: Statistics) -> bytes:
    counts = b"".join(
        _U16.pack(cid) + _U64.pack(n) for cid, n in sorted(stats.channel_message_counts.items())
    )
    body = (
        _U64.pack(stats.message_count)
        + _U16.pack(stats.schema_count)
        + _U32.pack(stats.channel_count)
        + _U32.pack(stats.attachment_count)
        + _U32.pack(stats.metadata_count)
        + _U32.pack(stats.chunk_count)
        + _U64.pack(stats.message_start_time)
        + _U64.pack(stats.message_end_time)
        + _U32.pack(len(counts))
        + counts
    )
    return _frame(Opcode.STATISTICS, body)


def encode_metadata(metadata: Metadata) -> bytes:
    return _frame(Opcode.METADATA, _str(metadata.name) + _str_map(metadata.metadata))


def encode_metadata_index(index: MetadataIndex) -> bytes:
    body = _U64.pack(index.offset) + _U64.pack(index.length) + _str(index.name)
    return _frame(Opcode.METADATA_INDEX, body)


def encode_summary_offset(offset: SummaryOffset) -> bytes:
    body = _U8.pack(offset.group_opcode) + _U64.pack(offset.group_start) + _U64.pack(
        offset.group_length
    )
    return _frame(Opcode.SUMMARY_OFFSET, body)


def encode_data_end(data_end: DataEnd) -> bytes:
    return _frame(Opcode.DATA_END, _U32.pack(data_end.data_section_crc))


# -- Parsing -------------------------------------------------------------------


class _Cursor:
    """Bounds-checked little-endian reader over one record body."""

    __slots__ = ("_buf", "_pos", "_what")

    def __init__(self, buf: bytes | memoryview, what: str) -> None:
        self._buf = memoryview(buf)
        self._pos = 0
        self._what = what

    def _take(self, n: int) -> memoryview:
        end = self._pos + n
        if end > len(self._buf):
            raise ContainerFormatError(
                f"{self._what} record truncated: need {n} byte(s) at offset {self._pos}"
            )
        view = self._buf[self._pos : end]
        self._pos = end
        return view

    def u8(self) -> int:
        return int(_U8.unpack(self._take(1))[0])

    def u16(self) -> int:
        return int(_U16.unpack(self._take(2))[0])

    def u32(self) -> int:
        return int(_U32.unpack(self._take(4))[0])

    def u64(self) -> int:
        return int(_U64.unpack(self._take(8))[0])

    def text(self) -> str:
        raw = self._take(self.u32())
        try:
            return bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ContainerFormatError(f"{self._what} record has invalid UTF-8: {exc}") from exc

    def bytes32(self) -> bytes:
        return bytes(self._take(self.u32()))

    def bytes64(self) -> bytes:
        return bytes(self._take(self.u64()))

    def rest(self) -> bytes:
        return bytes(self._take(len(self._buf) - self._pos))

    def str_map(self) -> dict[str, str]:
        sub = _Cursor(self._take(self.u32()), self._what)
        result: dict[str, str] = {}
        while not sub.at_end():
            key = sub.text()
            result[key] = sub.text()
        return result

    def at_end(self) -> bool:
        return self._pos >= len(self._buf)


def parse_record(opcode: int, body: bytes | memoryview) -> Any:
    """Decode one record body.  Unknown opcodes yield :class:`UnknownRecord`."""
    try:
        op = Opcode(opcode)
    except ValueError:
        return UnknownRecord(opcode=opcode, body=bytes(body))

    c = _Cursor(body, op.name.lower())
    if op is Opcode.HEADER:
        return Header(profile=c.text(), library=c.text())
    if op is Opcode.FOOTER:
        return Footer(summary_start=c.u64(), summary_offset_start=c.u64(), summary_crc=c.u32())
    if op is Opcode.SCHEMA:
        return Schema(id=c.u16(), name=c.text(), encoding=c.text(), data=c.bytes32())
    if op is Opcode.CHANNEL:
        channel_id = c.u16()
        schema_id = c.u16()
        return Channel(
            id=channel_id,
            topic=c.text(),
            schema_id=schema_id or None,
            message_encoding=c.text(),
            metadata=c.str_map(),
        )
    if op is Opcode.MESSAGE:
        return Message(
            channel_id=c.u16(),
            sequence=c.u32(),
            log_time=c.u64(),
            publish_time=c.u64(),
            data=c.rest(),
        )
    if op is Opcode.CHUNK:
        return Chunk(
            message_start_time=c.u64(),
            message_end_time=c.u64(),
            uncompressed_size=c.u64(),
            uncompressed_crc=c.u32(),
            compression=c.text(),
            records=c.bytes64(),
        )
    if op is Opcode.MESSAGE_INDEX:
        channel_id = c.u16()
        entries = c.bytes32()
        return MessageIndex(
            channel_id=channel_id,
            records=[tuple(e) for e in _INDEX_ENTRY.iter_unpack(entries)],  # type: ignore[misc]
        )
    if op is Opcode.CHUNK_INDEX:
        start, end, offset, length = c.u64(), c.u64(), c.u64(), c.u64()
        offsets = dict(_OFFSET_ENTRY.iter_unpack(c.bytes32()))
        return ChunkIndex(
            message_start_time=start,
            message_end_time=end,
            chunk_start_offset=offset,
            chunk_length=length,
            message_index_offsets=offsets,
            message_index_length=c.u64(),
            compression=c.text(),
            compressed_size=c.u64(),
            uncompressed_size=c.u64(),
        )
    if op is Opcode.ATTACHMENT:
        return Attachment(
            log_time=c.u64(),
            create_time=c.u64(),
            name=c.text(),
            media_type=c.text(),
            data=c.bytes64(),
            crc=c.u32(),
        )
    if op is Opcode.ATTACHMENT_INDEX:
        return AttachmentIndex(
            offset=c.u64(),
            length=c.u64(),
            log_time=c.u64(),
            create_time=c.u64(),
            data_size=c.u64(),
            name=c.text(),
            media_type=c.text(),
        )
    if op is Opcode.STATISTICS:
        stats = Statistics(
            message_count=c.u64(),
            schema_count=c.u16(),
            channel_count=c.u32(),
            attachment_count=c.u32(),
            metadata_count=c.u32(),
            chunk_count=c.u32(),
            message_start_time=c.u64(),
            message_end_time=c.u64(),
        )
        counts = _Cursor(c.bytes32(), "statistics")
        while not counts.at_end():
            channel_id = counts.u16()
            stats.channel_message_counts[channel_id] = counts.u64()
        return stats
    if op is Opcode.METADATA:
        return Metadata(name=c.text(), metadata=c.str_map())
    if op is Opcode.METADATA_INDEX:
        return MetadataIndex(offset=c.u64(), length=c.u64(), name=c.text())
    if op is Opcode.SUMMARY_OFFSET:
        return SummaryOffset(group_opcode=c.u8(), group_start=c.u64(), group_length=c.u64())
    if op is Opcode.DATA_END:
        return DataEnd(data_section_crc=c.u32())
    raise AssertionError(f"unhandled opcode {op!r}")
