"""Chunk compression codecs.

Each chunk records the name of the codec that compressed it, so readers
pick the matching decompressor per chunk.  ``""`` means uncompressed.
Additional codecs can be plugged in with :func:`register_codec`.
"""

from __future__ import annotations

import zlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chanlog.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Callable


@dataclass(frozen=True)
class Codec:
    """A named compress/decompress pair."""

    name: str
    compress: Callable[[bytes], bytes]
    decompress: Callable[[bytes, int], bytes]


def _identity(data: bytes) -> bytes:
    return data


def _identity_decompress(data: bytes, uncompressed_size: int) -> bytes:
    return data


def _zlib_decompress(data: bytes, uncompressed_size: int) -> bytes:
    return zlib.decompress(data, bufsize=max(uncompressed_size, 1))


def _zstd_codec() -> Codec:
    try:
        import zstandard
    except ImportError as exc:
        raise ConfigError(
            "zstandard is required for zstd chunk compression. "
            "Install with: pip install chanlog[zstd]"
        ) from exc

    def compress(data: bytes) -> bytes:
        return zstandard.ZstdCompressor().compress(data)

    def decompress(data: bytes, uncompressed_size: int) -> bytes:
        return zstandard.ZstdDecompressor().decompress(data, max_output_size=uncompressed_size)

    return Codec("zstd", compress, decompress)


_CODECS: dict[str, Codec] = {
    "": Codec("", _identity, _identity_decompress),
    "zlib": Codec("zlib", zlib.compress, _zlib_decompress),
}

_LAZY_CODECS: dict[str, Callable[[], Codec]] = {
    "zstd": _zstd_codec,
}

_ALIASES = {"none": ""}


def register_codec(codec: Codec) -> None:
    """Make *codec* available to writers and readers under ``codec.name``."""
    _CODECS[codec.name] = codec


def get_codec(name: str) -> Codec:
    """Look up a codec by name (``"none"`` is an alias for ``""``).

    Raises:
        ConfigError: If the codec is unknown or its library is not installed.
    """
    name = _ALIASES.get(name, name)
    codec = _CODECS.get(name)
    if codec is not None:
        return codec
    factory = _LAZY_CODECS.get(name)
    if factory is None:
        raise ConfigError(f"Unknown compression codec: {name!r}")
    codec = factory()
    _CODECS[name] = codec
    return codec


def available_codecs() -> list[str]:
    return sorted(set(_CODECS) | set(_LAZY_CODECS))


def crc32(data: bytes | memoryview, value: int = 0) -> int:
    return zlib.crc32(data, value) & 0xFFFFFFFF
