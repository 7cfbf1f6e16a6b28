"""Container reader.

Two access paths:

* :meth:`ContainerReader.read_summary` seeks to the footer and decodes
  the summary section (schemas, channels, statistics, indexes).  Returns
  ``None`` for files without a summary, e.g. when the writer never
  finished.
* :meth:`ContainerReader.iter_records` / :meth:`iter_messages` scan the
  data section linearly.  This works on unindexed and truncated files:
  the scan stops quietly at the first incomplete record.

Records with unknown opcodes are skipped on both paths.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING, Any

from chanlog.container.codec import crc32, get_codec
from chanlog.container.records import (
    FOOTER_RECORD_SIZE,
    MAGIC,
    RECORD_PREFIX,
    Attachment,
    AttachmentIndex,
    Chunk,
    ChunkIndex,
    DataEnd,
    Footer,
    Header,
    Metadata,
    MetadataIndex,
    MessageIndex,
    Opcode,
    Statistics,
    SummaryOffset,
    UnknownRecord,
    attachment_body_prefix,
    footer_prefix,
    parse_record,
)
from chanlog.errors import ContainerChecksumError, ContainerFormatError
from chanlog.registry.models import Channel, Message, Schema

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


@dataclass
class Summary:
    """Decoded summary section of a finished container."""

    schemas: dict[int, Schema] = field(default_factory=dict)
    channels: dict[int, Channel] = field(default_factory=dict)
    statistics: Statistics | None = None
    chunk_indexes: list[ChunkIndex] = field(default_factory=list)
    attachment_indexes: list[AttachmentIndex] = field(default_factory=list)
    metadata_indexes: list[MetadataIndex] = field(default_factory=list)
    summary_offsets: list[SummaryOffset] = field(default_factory=list)


class ContainerReader:
    """Reads a container from a seekable binary stream.

    Parameters:
        stream: Binary stream positioned anywhere; the reader seeks as needed.
        validate_crcs: Verify chunk, attachment, data-section and summary
            CRCs.  A stored CRC of zero means "not computed" and is never
            checked.
    """

    def __init__(self, stream: IO[bytes], *, validate_crcs: bool = True) -> None:
        self._stream = stream
        self._validate = validate_crcs
        self._owns_stream = False

    @classmethod
    def open(cls, path: str | os.PathLike[str], *, validate_crcs: bool = True) -> ContainerReader:
        reader = cls(open(path, "rb"), validate_crcs=validate_crcs)  # noqa: SIM115
        reader._owns_stream = True
        return reader

    def close(self) -> None:
        if self._owns_stream:
            self._stream.close()

    def __enter__(self) -> ContainerReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- Header / summary -----------------------------------------------------

    def header(self) -> Header:
        self._stream.seek(0)
        self._read_magic()
        record = self._next_record()
        if record is None or not isinstance(record[1], Header):
            raise ContainerFormatError("Container does not start with a Header record")
        return record[1]

    def footer(self) -> Footer | None:
        """Decode the footer, or ``None`` if the file does not end with one."""
        stream = self._stream
        end = stream.seek(0, os.SEEK_END)
        if end < 2 * len(MAGIC) + FOOTER_RECORD_SIZE:
            return None
        stream.seek(end - len(MAGIC))
        if stream.read(len(MAGIC)) != MAGIC:
            return None
        stream.seek(end - len(MAGIC) - FOOTER_RECORD_SIZE)
        record = self._next_record()
        if record is None or not isinstance(record[1], Footer):
            return None
        return record[1]

    def read_summary(self) -> Summary | None:
        """Decode the summary section via the footer.

        Raises:
            ContainerChecksumError: If the summary CRC does not match.
        """
        footer = self.footer()
        if footer is None or footer.summary_start == 0:
            return None

        stream = self._stream
        footer_start = stream.seek(0, os.SEEK_END) - len(MAGIC) - FOOTER_RECORD_SIZE
        if not 0 < footer.summary_start <= footer_start:
            raise ContainerFormatError(f"Footer points outside the file: {footer.summary_start}")
        stream.seek(footer.summary_start)
        raw = stream.read(footer_start - footer.summary_start)

        if self._validate and footer.summary_crc != 0:
            actual = crc32(
                footer_prefix(footer.summary_start, footer.summary_offset_start),
                crc32(raw),
            )
            if actual != footer.summary_crc:
                raise ContainerChecksumError("summary", footer.summary_crc, actual)

        summary = Summary()
        for _, record in _iter_buffer(raw):
            if isinstance(record, Schema):
                summary.schemas[record.id] = record
            elif isinstance(record, Channel):
                summary.channels[record.id] = record
            elif isinstance(record, Statistics):
                summary.statistics = record
            elif isinstance(record, ChunkIndex):
                summary.chunk_indexes.append(record)
            elif isinstance(record, AttachmentIndex):
                summary.attachment_indexes.append(record)
            elif isinstance(record, MetadataIndex):
                summary.metadata_indexes.append(record)
            elif isinstance(record, SummaryOffset):
                summary.summary_offsets.append(record)
        return summary

    def message_index_counts(self, chunk_index: ChunkIndex) -> dict[int, int]:
        """Count the MessageIndex entries following one chunk, per channel."""
        counts: dict[int, int] = {}
        for channel_id, offset in chunk_index.message_index_offsets.items():
            self._stream.seek(offset)
            record = self._next_record()
            if record is None or not isinstance(record[1], MessageIndex):
                raise ContainerFormatError(f"No MessageIndex at offset {offset}")
            counts[channel_id] = len(record[1].records)
        return counts

    def read_chunk(self, chunk_index: ChunkIndex) -> list[Any]:
        """Decompress the chunk an index entry points at and decode its records."""
        self._stream.seek(chunk_index.chunk_start_offset)
        record = self._next_record()
        if record is None or not isinstance(record[1], Chunk):
            raise ContainerFormatError(
                f"No Chunk at offset {chunk_index.chunk_start_offset}"
            )
        return [r for _, r in _iter_buffer(self._decompress(record[1]))]

    def read_attachment(self, index: AttachmentIndex) -> Attachment:
        self._stream.seek(index.offset)
        record = self._next_record()
        if record is None or not isinstance(record[1], Attachment):
            raise ContainerFormatError(f"No Attachment at offset {index.offset}")
        self._check_attachment(record[1])
        return record[1]

    def read_metadata(self, index: MetadataIndex) -> Metadata:
        self._stream.seek(index.offset)
        record = self._next_record()
        if record is None or not isinstance(record[1], Metadata):
            raise ContainerFormatError(f"No Metadata at offset {index.offset}")
        return record[1]

    # -- Linear scan ----------------------------------------------------------

    def iter_records(self) -> Iterator[Any]:
        """Yield data-section records in file order, up to DataEnd.

        Chunks are yielded as :class:`Chunk` records, not expanded.
        Attachment CRCs and the data-section CRC are verified when
        enabled.
        """
        self._stream.seek(0)
        self._read_magic()
        crc = crc32(MAGIC)
        while True:
            item = self._next_record()
            if item is None:
                return
            raw, record = item
            if isinstance(record, DataEnd):
                if self._validate and record.data_section_crc not in (0, crc):
                    raise ContainerChecksumError("data section", record.data_section_crc, crc)
                return
            if isinstance(record, Footer):
                return
            crc = crc32(raw, crc)
            if isinstance(record, UnknownRecord):
                logger.debug("Skipping record with unknown opcode %#04x", record.opcode)
                continue
            if isinstance(record, Attachment):
                self._check_attachment(record)
            yield record

    def iter_messages(self) -> Iterator[tuple[Schema | None, Channel, Message]]:
        """Yield every message with its channel and schema, in file order."""
        schemas: dict[int, Schema] = {}
        channels: dict[int, Channel] = {}

        def expand(record: Any) -> Iterator[Any]:
            if isinstance(record, Chunk):
                for _, inner in _iter_buffer(self._decompress(record)):
                    yield inner
            else:
                yield record

        for outer in self.iter_records():
            for record in expand(outer):
                if isinstance(record, Schema):
                    schemas[record.id] = record
                elif isinstance(record, Channel):
                    channels[record.id] = record
                elif isinstance(record, Message):
                    channel = channels.get(record.channel_id)
                    if channel is None:
                        raise ContainerFormatError(
                            f"Message references unknown channel id {record.channel_id}"
                        )
                    schema = schemas.get(channel.schema_id) if channel.schema_id else None
                    yield schema, channel, record

    # -- Internals ------------------------------------------------------------

    def _read_magic(self) -> None:
        magic = self._stream.read(len(MAGIC))
        if magic != MAGIC:
            raise ContainerFormatError(f"Bad magic: {magic!r}")

    def _next_record(self) -> tuple[bytes, Any] | None:
        """Read one record at the current position; ``None`` at a truncated tail."""
        prefix = self._stream.read(RECORD_PREFIX.size)
        if len(prefix) < RECORD_PREFIX.size:
            if prefix:
                logger.warning("Container ends inside a record prefix; stopping")
            return None
        opcode, length = RECORD_PREFIX.unpack(prefix)
        body = self._stream.read(length)
        if len(body) < length:
            logger.warning(
                "Container truncated inside %s record (%d of %d bytes); stopping",
                _opcode_name(opcode),
                len(body),
                length,
            )
            return None
        return prefix + body, parse_record(opcode, body)

    def _decompress(self, chunk: Chunk) -> bytes:
        records = get_codec(chunk.compression).decompress(chunk.records, chunk.uncompressed_size)
        if len(records) != chunk.uncompressed_size:
            raise ContainerFormatError(
                f"Chunk decompressed to {len(records)} bytes, expected {chunk.uncompressed_size}"
            )
        if self._validate and chunk.uncompressed_crc != 0:
            actual = crc32(records)
            if actual != chunk.uncompressed_crc:
                raise ContainerChecksumError("chunk", chunk.uncompressed_crc, actual)
        return records

    def _check_attachment(self, attachment: Attachment) -> None:
        if self._validate and attachment.crc != 0:
            actual = crc32(attachment_body_prefix(attachment))
            if actual != attachment.crc:
                raise ContainerChecksumError(
                    f"attachment {attachment.name!r}", attachment.crc, actual
                )


def _opcode_name(opcode: int) -> str:
    try:
        return Opcode(opcode).name.lower()
    except ValueError:
        return f"opcode {opcode:#04x}"


def _iter_buffer(buf: bytes) -> Iterator[tuple[bytes, Any]]:
    """Decode back-to-back records held in memory, skipping unknown opcodes."""
    view = memoryview(buf)
    pos = 0
    while pos < len(view):
        if pos + RECORD_PREFIX.size > len(view):
            raise ContainerFormatError("Record prefix overruns its enclosing buffer")
        opcode, length = RECORD_PREFIX.unpack_from(view, pos)
        start = pos + RECORD_PREFIX.size
        end = start + length
        if end > len(view):
            raise ContainerFormatError(f"{_opcode_name(opcode)} record overruns its buffer")
        record = parse_record(opcode, view[start:end])
        pos = end
        if isinstance(record, UnknownRecord):
            continue
        yield bytes(view[start - RECORD_PREFIX.size : end]), record
