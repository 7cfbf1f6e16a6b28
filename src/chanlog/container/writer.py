"""Chunked, indexed container writer.

Schema, channel and message records are buffered into an open chunk.
When the chunk reaches ``chunk_size_bytes`` (uncompressed) or spans
``chunk_duration`` nanoseconds of log time it is sealed: compressed,
written as one Chunk record followed by a MessageIndex per channel, and
remembered for the summary.  :meth:`ContainerWriter.finish` writes the
summary section and a footer pointing at it, so readers can seek
straight to the index.  A file that never reaches ``finish`` is still a
valid record stream that readers can scan linearly.

The writer is not thread-safe; :class:`~chanlog.container.sink.ContainerSink`
serializes access to it.
"""

from __future__ import annotations

import logging
from typing import IO, TYPE_CHECKING, Any

from chanlog.config import ContainerOptions
from chanlog.container.codec import crc32, get_codec
from chanlog.container.records import (
    MAGIC,
    Attachment,
    AttachmentIndex,
    Chunk,
    ChunkIndex,
    DataEnd,
    Header,
    Metadata,
    MetadataIndex,
    MessageIndex,
    Opcode,
    Statistics,
    SummaryOffset,
    attachment_body_prefix,
    encode_attachment,
    encode_attachment_index,
    encode_channel,
    encode_chunk,
    encode_chunk_index,
    encode_data_end,
    encode_header,
    encode_message,
    encode_message_index,
    encode_metadata,
    encode_metadata_index,
    encode_schema,
    encode_statistics,
    encode_summary_offset,
    footer_prefix,
)
from chanlog.errors import WriterCorruptionError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from chanlog.registry.models import Channel, Message, Schema

logger = logging.getLogger(__name__)

_MAX_RECORD_ID = 0xFFFF


class _ChunkBuilder:
    """Uncompressed records of the chunk currently being filled."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.start_time = 0
        self.end_time = 0
        self.message_count = 0
        self.indexes: dict[int, list[tuple[int, int]]] = {}
        self.channel_counts: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self.buffer)

    def add_record(self, record: bytes) -> None:
        self.buffer += record

    def add_message(self, message: Message, record: bytes) -> None:
        if self.message_count == 0:
            self.start_time = self.end_time = message.log_time
        else:
            # Log time is producer controlled and may go backwards.
            self.start_time = min(self.start_time, message.log_time)
            self.end_time = max(self.end_time, message.log_time)
        self.indexes.setdefault(message.channel_id, []).append(
            (message.log_time, len(self.buffer))
        )
        self.buffer += record
        self.message_count += 1
        counts = self.channel_counts
        counts[message.channel_id] = counts.get(message.channel_id, 0) + 1

    def span(self) -> int:
        return self.end_time - self.start_time if self.message_count else 0


class ContainerWriter:
    """Writes one container to a binary stream.

    Parameters:
        stream: Writable binary stream positioned at the start of the file.
        options: Chunking, compression and checksum options.
        close_stream: Close *stream* when :meth:`finish` completes.
    """

    def __init__(
        self,
        stream: IO[bytes],
        options: ContainerOptions | None = None,
        *,
        close_stream: bool = False,
    ) -> None:
        self._stream = stream
        self._options = options or ContainerOptions()
        self._codec = get_codec(self._options.compression_codec)
        self._close_stream = close_stream
        self._pos = 0
        self._crc = 0
        self._started = False
        self._finished = False
        self._failed: WriterCorruptionError | None = None
        self._chunk = _ChunkBuilder()
        self._schemas: dict[int, Schema] = {}
        self._channels: dict[int, Channel] = {}
        self._chunk_indexes: list[ChunkIndex] = []
        self._attachment_indexes: list[AttachmentIndex] = []
        self._metadata_indexes: list[MetadataIndex] = []
        self._stats = Statistics()

    # -- Properties -----------------------------------------------------------

    @property
    def options(self) -> ContainerOptions:
        return self._options

    @property
    def statistics(self) -> Statistics:
        return self._stats

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def failed(self) -> bool:
        return self._failed is not None

    @property
    def bytes_written(self) -> int:
        return self._pos

    # -- Records --------------------------------------------------------------

    def start(self) -> None:
        """Write the magic and Header record.  Called lazily by the add methods."""
        self._check_usable()
        if self._started:
            return
        self._started = True
        self._write(MAGIC)
        self._write(encode_header(Header(self._options.profile, self._options.library)))

    def add_schema(self, schema: Schema) -> None:
        self._check_usable()
        self.start()
        if schema.id in self._schemas:
            return
        if schema.id > _MAX_RECORD_ID:
            raise ValueError(f"Schema id {schema.id} does not fit the container's u16 id")
        self._schemas[schema.id] = schema
        self._stats.schema_count += 1
        self._add_record(encode_schema(schema))

    def add_channel(self, channel: Channel) -> None:
        self._check_usable()
        self.start()
        if channel.id in self._channels:
            return
        if channel.id > _MAX_RECORD_ID:
            raise ValueError(f"Channel id {channel.id} does not fit the container's u16 id")
        self._channels[channel.id] = channel
        self._stats.channel_count += 1
        self._add_record(encode_channel(channel))

    def add_message(self, message: Message) -> None:
        self._check_usable()
        self.start()
        if message.channel_id not in self._channels:
            raise ValueError(f"Message for unknown channel id {message.channel_id}")

        record = encode_message(message)
        if not self._options.use_chunking:
            self._write(record)
            self._count_messages(
                message.log_time, message.log_time, 1, {message.channel_id: 1}
            )
            return

        self._chunk.add_message(message, record)
        duration = self._options.chunk_duration
        if len(self._chunk) >= self._options.chunk_size_bytes or (
            duration is not None and self._chunk.span() >= duration
        ):
            self._seal_chunk()

    def write_metadata(self, name: str, metadata: Mapping[str, str]) -> None:
        """Write a named key/value Metadata record to the data section."""
        self._check_usable()
        self.start()
        offset = self._pos
        self._write(encode_metadata(Metadata(name=name, metadata=dict(metadata))))
        self._metadata_indexes.append(
            MetadataIndex(offset=offset, length=self._pos - offset, name=name)
        )
        self._stats.metadata_count += 1

    def attach(
        self,
        name: str,
        media_type: str,
        data: bytes,
        *,
        log_time: int = 0,
        create_time: int = 0,
    ) -> None:
        """Write an Attachment record (an arbitrary named file) to the data section."""
        self._check_usable()
        self.start()
        attachment = Attachment(
            log_time=log_time,
            create_time=create_time,
            name=name,
            media_type=media_type,
            data=bytes(data),
        )
        if self._options.checksum_enabled:
            attachment.crc = crc32(attachment_body_prefix(attachment))
        offset = self._pos
        self._write(encode_attachment(attachment))
        self._attachment_indexes.append(
            AttachmentIndex(
                offset=offset,
                length=self._pos - offset,
                log_time=log_time,
                create_time=create_time,
                data_size=len(attachment.data),
                name=name,
                media_type=media_type,
            )
        )
        self._stats.attachment_count += 1

    def flush(self) -> None:
        """Seal the open chunk and flush the stream."""
        self._check_usable()
        if len(self._chunk):
            self._seal_chunk()
        self._stream.flush()

    def finish(self) -> None:
        """Seal the open chunk and write DataEnd, summary, footer and magic.

        Calling it again is a no-op.
        """
        if self._finished:
            return
        self._check_usable()
        self.start()
        if len(self._chunk):
            self._seal_chunk()

        checksum = self._options.checksum_enabled
        self._write(encode_data_end(DataEnd(self._crc if checksum else 0)))

        summary_start = self._pos
        self._crc = 0
        offsets: list[SummaryOffset] = []
        self._write_group(offsets, Opcode.SCHEMA, self._schemas.values(), encode_schema)
        self._write_group(offsets, Opcode.CHANNEL, self._channels.values(), encode_channel)
        self._write_group(offsets, Opcode.STATISTICS, [self._stats], encode_statistics)
        self._write_group(offsets, Opcode.CHUNK_INDEX, self._chunk_indexes, encode_chunk_index)
        self._write_group(
            offsets, Opcode.ATTACHMENT_INDEX, self._attachment_indexes, encode_attachment_index
        )
        self._write_group(
            offsets, Opcode.METADATA_INDEX, self._metadata_indexes, encode_metadata_index
        )

        summary_offset_start = self._pos
        for offset in offsets:
            self._write(encode_summary_offset(offset))

        prefix = footer_prefix(summary_start, summary_offset_start)
        self._write(prefix)
        summary_crc = self._crc if checksum else 0
        self._write(summary_crc.to_bytes(4, "little"))
        self._write(MAGIC)
        self._stream.flush()
        self._finished = True
        if self._close_stream:
            self._stream.close()
        logger.debug(
            "Container finished: %d message(s) in %d chunk(s), %d bytes",
            self._stats.message_count,
            self._stats.chunk_count,
            self._pos,
        )

    def abort(self) -> None:
        """Stop writing without a summary; the file stays linearly readable."""
        self._finished = True
        if self._close_stream:
            self._stream.close()

    # -- Internals ------------------------------------------------------------

    def _check_usable(self) -> None:
        if self._failed is not None:
            raise WriterCorruptionError(f"Writer is unusable after corruption: {self._failed}")
        if self._finished:
            raise ValueError("Container writer is already finished")

    def _write(self, data: bytes) -> None:
        self._stream.write(data)
        self._pos += len(data)
        self._crc = crc32(data, self._crc)

    def _add_record(self, record: bytes) -> None:
        if self._options.use_chunking:
            self._chunk.add_record(record)
        else:
            self._write(record)

    def _write_group(
        self,
        offsets: list[SummaryOffset],
        opcode: Opcode,
        items: Iterable[Any],
        encode: Callable[..., bytes],
    ) -> None:
        start = self._pos
        for item in items:
            self._write(encode(item))
        if self._pos > start:
            offsets.append(SummaryOffset(opcode, start, self._pos - start))

    def _count_messages(
        self, start_time: int, end_time: int, count: int, channel_counts: Mapping[int, int]
    ) -> None:
        if not count:
            return
        stats = self._stats
        if stats.message_count == 0:
            stats.message_start_time, stats.message_end_time = start_time, end_time
        else:
            stats.message_start_time = min(stats.message_start_time, start_time)
            stats.message_end_time = max(stats.message_end_time, end_time)
        stats.message_count += count
        counts = stats.channel_message_counts
        for channel_id, n in channel_counts.items():
            counts[channel_id] = counts.get(channel_id, 0) + n

    def _seal_chunk(self) -> None:
        # The builder is only replaced once its records are on the stream, so a
        # failed write is retried with the next seal.
        chunk = self._chunk
        records = bytes(chunk.buffer)
        checksum = self._options.checksum_enabled
        uncompressed_crc = crc32(records) if checksum else 0
        compressed = self._codec.compress(records)

        if checksum:
            roundtrip = self._codec.decompress(compressed, len(records))
            actual = crc32(roundtrip)
            if actual != uncompressed_crc:
                self._failed = WriterCorruptionError(
                    f"Chunk failed {self._codec.name or 'identity'} round-trip check: "
                    f"expected CRC {uncompressed_crc:#010x}, got {actual:#010x}"
                )
                logger.error("Container writer corrupted: %s", self._failed)
                raise self._failed

        chunk_start = self._pos
        blob = bytearray(
            encode_chunk(
                Chunk(
                    message_start_time=chunk.start_time,
                    message_end_time=chunk.end_time,
                    uncompressed_size=len(records),
                    uncompressed_crc=uncompressed_crc,
                    compression=self._codec.name,
                    records=compressed,
                )
            )
        )
        chunk_length = len(blob)

        index_offsets: dict[int, int] = {}
        for channel_id, entries in sorted(chunk.indexes.items()):
            index_offsets[channel_id] = chunk_start + len(blob)
            blob += encode_message_index(MessageIndex(channel_id, sorted(entries)))
        self._write(bytes(blob))
        self._chunk = _ChunkBuilder()

        self._chunk_indexes.append(
            ChunkIndex(
                message_start_time=chunk.start_time,
                message_end_time=chunk.end_time,
                chunk_start_offset=chunk_start,
                chunk_length=chunk_length,
                message_index_offsets=index_offsets,
                message_index_length=self._pos - chunk_start - chunk_length,
                compression=self._codec.name,
                compressed_size=len(compressed),
                uncompressed_size=len(records),
            )
        )
        self._stats.chunk_count += 1
        self._count_messages(
            chunk.start_time, chunk.end_time, chunk.message_count, chunk.channel_counts
        )
        logger.debug(
            "Sealed chunk %d: %d message(s), %d -> %d bytes",
            self._stats.chunk_count,
            chunk.message_count,
            len(records),
            len(compressed),
        )
