"""On-disk layout of a chunk file and the CRC32 helpers used with it.

A chunk file starts with a 24 byte header::

    offset 0   2 bytes   file id
    offset 2   4 bytes   crc32, network byte order
    offset 6  16 bytes   padding
    offset 22  2 bytes   metadata length, big endian

followed by the metadata and then the content. The checksum covers the
metadata length field, the metadata and the content.
"""

from __future__ import annotations

import struct
import zlib

from .errors import CorruptedError, ErrorCode

FILE_ID = b"\xc1\x00"
HEADER_MIN = 24
HASH_OFFSET = 2
META_LEN_OFFSET = 22
CONTENT_OFFSET = META_LEN_OFFSET
META_OFFSET = HEADER_MIN
MAX_META_LEN = 0xFFFF

_MASK = 0xFFFFFFFF

_INIT_CRC_BYTES = b"\xff\x12\xd9\x41"


def crc32_init() -> int:
    """Return the initial (non-finalised) CRC32 register value."""
    return _MASK


def crc32_update(crc: int, data: bytes | bytearray | memoryview) -> int:
    """Feed ``data`` into a non-finalised CRC32 register and return it."""
    return zlib.crc32(data, (crc ^ _MASK) & _MASK) ^ _MASK


def crc32_finalize(crc: int) -> int:
    """Turn a CRC32 register into the final checksum value."""
    return (crc ^ _MASK) & _MASK


def init_header(checksum: bool) -> bytes:
    """Return the header written into a freshly created chunk file."""
    crc_bytes = _INIT_CRC_BYTES if checksum else b"\x00" * 4
    return FILE_ID + crc_bytes + b"\x00" * 16 + b"\x00\x00"


def meta_len(buf: bytes | bytearray | memoryview) -> int:
    """Read the metadata length stored in a chunk header."""
    high, low = buf[META_LEN_OFFSET], buf[META_LEN_OFFSET + 1]
    return (high << 8) | low


def set_meta_len(buf: bytearray | memoryview, length: int) -> None:
    """Store a metadata length into a mutable chunk header."""
    if not 0 <= length <= MAX_META_LEN:
        raise ValueError(f"metadata length out of range: {length}")
    buf[META_LEN_OFFSET] = (length >> 8) & 0xFF
    buf[META_LEN_OFFSET + 1] = length & 0xFF


def stored_crc(buf: bytes | bytearray | memoryview) -> int:
    """Read the checksum kept in the header, in host order."""
    (value,) = struct.unpack_from(">I", buf, HASH_OFFSET)
    return value


def content_size(buf: bytes | bytearray | memoryview, file_size: int) -> int:
    """Return the number of content bytes in a file of ``file_size`` bytes.

    Raises :class:`CorruptedError` when the sizes do not fit the layout.
    """
    if file_size < HEADER_MIN or len(buf) < HEADER_MIN:
        raise CorruptedError("invalid content size", ErrorCode.BAD_LAYOUT)
    size = file_size - HEADER_MIN - meta_len(buf)
    if size < 0:
        raise CorruptedError("invalid content size", ErrorCode.BAD_LAYOUT)
    return size