"""Self-describing chunked container file format: writer, reader and sink."""

from __future__ import annotations

from chanlog.container.codec import Codec, available_codecs, get_codec, register_codec
from chanlog.container.reader import ContainerReader, Summary
from chanlog.container.records import MAGIC, Opcode
from chanlog.container.sink import ContainerSink
from chanlog.container.writer import ContainerWriter

__all__ = [
    "MAGIC",
    "Codec",
    "ContainerReader",
    "ContainerSink",
    "ContainerWriter",
    "Opcode",
    "Summary",
    "available_codecs",
    "get_codec",
    "register_codec",
]
