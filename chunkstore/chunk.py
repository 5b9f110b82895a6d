"""Streams and chunks: the public interface over the storage backends."""

from __future__ import annotations

import os
from enum import Enum
from typing import Any, Optional

from .context import Context
from .errors import ChunkIOError, ErrorCode, RetryError
from .file import FileBackend, OpenFlags
from .layout import crc32_init, crc32_update

VERSION = "1.0.0"

_INVALID_STREAM_NAMES = {"", ".", "..", "/"}


class StoreType(Enum):
    """Where the chunks of a stream keep their content."""

    FS = "fs"
    MEM = "mem"


class _MemoryBackend:
    """Content kept in a growable in-memory buffer."""

    def __init__(self, chunk: "Chunk", size: int = 0) -> None:
        self.chunk = chunk
        self.buffer = bytearray()
        self.metadata = b""
        self.crc_cur = crc32_init()
        self.initial_size = size

    @property
    def buf_len(self) -> int:
        return len(self.buffer)

    @buf_len.setter
    def buf_len(self, length: int) -> None:
        if length < 0:
            raise ValueError(f"invalid content length: {length}")
        if length < len(self.buffer):
            del self.buffer[length:]
        else:
            self.buffer.extend(b"\x00" * (length - len(self.buffer)))

    def write(self, data: bytes) -> None:
        data = bytes(data)
        if not data:
            return
        if self.chunk.context.options.checksum:
            self.crc_cur = crc32_update(self.crc_cur, data)
        self.buffer += data

    def content(self) -> bytes:
        return bytes(self.buffer)


class Stream:
    """A named group of chunks sharing one storage type."""

    def __init__(self, context: Context, name: str,
                 store_type: StoreType = StoreType.FS) -> None:
        if name is None or name in _INVALID_STREAM_NAMES:
            raise ValueError(f"invalid stream name: {name!r}")
        store_type = StoreType(store_type)
        if store_type is StoreType.FS:
            if context.root_path is None:
                raise ChunkIOError("file system stream requires a root path")
            path = os.path.join(context.root_path, name)
            try:
                os.makedirs(path, mode=0o755, exist_ok=True)
            except OSError as exc:
                context.log_error(f"cannot create stream path {path}")
                raise ChunkIOError(f"cannot create stream path {path}") from exc

        self.context = context
        self.name = name
        self.type = store_type
        self.chunks: list[Chunk] = []
        self.chunks_up: list[Chunk] = []
        self.chunks_down: list[Chunk] = []
        context.add_stream(self)

    def close_chunks(self) -> None:
        """Close every chunk of the stream without deleting content."""
        for chunk in list(self.chunks):
            chunk.close(False)


class Chunk:
    """One unit of data inside a stream."""

    def __init__(self, context: Context, stream: Stream, name: str) -> None:
        self.context = context
        self.stream = stream
        self.name = name
        self.locked = False
        self.tx_active = False
        self.tx_crc = 0
        self.tx_content_length = 0
        self.error = ErrorCode.NONE
        self.backend: Any = None

    def __repr__(self) -> str:
        return f"Chunk({self.stream.name!r}, {self.name!r})"

    # -- internal --------------------------------------------------------

    def _reset_error(self) -> None:
        self.error = ErrorCode.NONE

    @property
    def _is_fs(self) -> bool:
        return self.stream.type is StoreType.FS

    def _state_sync(self) -> None:
        for state_list in (self.stream.chunks_up, self.stream.chunks_down):
            if self in state_list:
                state_list.remove(self)
        if self.is_up():
            self.stream.chunks_up.append(self)
        else:
            self.stream.chunks_down.append(self)

    # -- lifecycle -------------------------------------------------------

    def close(self, delete: bool = False) -> None:
        """Release the chunk; remove its file as well when ``delete``."""
        self._reset_error()
        if self._is_fs:
            self.backend.close(delete)
        stream = self.stream
        if self in stream.chunks:
            stream.chunks.remove(self)
        for state_list in (stream.chunks_up, stream.chunks_down):
            if self in state_list:
                state_list.remove(self)
        self.context.total_chunks -= 1

    # -- content ---------------------------------------------------------

    def write(self, data: bytes) -> None:
        """Append ``data`` to the content."""
        self._reset_error()
        self.backend.write(data)

    def write_at(self, offset: int, data: bytes) -> None:
        """Write ``data`` at ``offset``, dropping what followed it."""
        self._reset_error()
        if self._is_fs:
            self.backend.data_size = offset
            self.backend.crc_reset = True
        else:
            self.backend.buf_len = offset
        self.write(data)

    def write_metadata(self, data: bytes) -> None:
        """Replace the chunk metadata."""
        self._reset_error()
        if self._is_fs:
            self.backend.write_metadata(data)
        else:
            self.backend.metadata = bytes(data)

    def sync(self) -> None:
        """Flush pending changes to the backing store."""
        self._reset_error()
        if self._is_fs:
            self.backend.sync()

    def content(self) -> bytes:
        """Return the content, mapping a file chunk if needed."""
        self._reset_error()
        return self.backend.content()

    def content_copy(self) -> bytes:
        """Return a copy of the content, bringing a down chunk up briefly."""
        self._reset_error()
        if self._is_fs:
            try:
                return self.backend.content_copy()
            finally:
                self._state_sync()
        return self.backend.content()

    def content_size(self) -> int:
        """Return the number of content bytes."""
        self._reset_error()
        if self._is_fs:
            return self.backend.data_size
        return self.backend.buf_len

    def real_size(self) -> int:
        """Return the size taken in the backing store."""
        self._reset_error()
        if self._is_fs:
            return self.backend.real_size()
        return self.backend.buf_len

    def hash(self) -> Optional[bytes]:
        """Return the stored checksum bytes of a file chunk, else None."""
        if self._is_fs:
            return self.backend.hash()
        return None

    # -- locking and transactions ----------------------------------------

    def lock(self) -> None:
        """Lock the chunk, syncing it first when it is up."""
        self._reset_error()
        if self.locked:
            raise ChunkIOError("chunk is already locked")
        self.locked = True
        if self.is_up():
            self.sync()

    def unlock(self) -> None:
        """Release the lock."""
        self._reset_error()
        if not self.locked:
            raise ChunkIOError("chunk is not locked")
        self.locked = False

    def is_locked(self) -> bool:
        return self.locked

    def tx_begin(self) -> None:
        """Remember the current checksum and length for a rollback."""
        self._reset_error()
        if self.locked:
            raise RetryError("chunk is locked")
        if self.tx_active:
            return
        self.tx_active = True
        backend = self.backend
        self.tx_crc = backend.crc_cur
        if self._is_fs:
            self.tx_content_length = backend.data_size
        else:
            self.tx_content_length = backend.buf_len

    def tx_commit(self) -> None:
        """Keep the changes made since :meth:`tx_begin`."""
        self._reset_error()
        self.sync()
        self.tx_active = False

    def tx_rollback(self) -> None:
        """Drop the changes made since :meth:`tx_begin`."""
        self._reset_error()
        if not self.tx_active:
            raise ChunkIOError("no transaction is active")
        backend = self.backend
        backend.crc_cur = self.tx_crc
        if self._is_fs:
            backend.data_size = self.tx_content_length
        else:
            backend.buf_len = self.tx_content_length
        self.tx_active = False

    # -- state -----------------------------------------------------------

    def is_up(self) -> bool:
        """True when the content is available in memory."""
        if self._is_fs:
            return self.backend.is_up()
        return True

    def is_file(self) -> bool:
        return self._is_fs

    def up(self) -> None:
        """Bring the chunk into memory, honouring the context limit."""
        self._reset_error()
        if self._is_fs:
            try:
                self.backend.up(force=False)
            finally:
                self._state_sync()

    def up_force(self) -> None:
        """Bring the chunk into memory regardless of the limit."""
        self._reset_error()
        if self._is_fs:
            try:
                self.backend.up(force=True)
            finally:
                self._state_sync()

    def down(self) -> None:
        """Release the in-memory content of a file chunk."""
        self._reset_error()
        if self._is_fs:
            try:
                self.backend.down()
            finally:
                self._state_sync()


def open_chunk(context: Context, stream: Optional[Stream], name: str,
               flags: int = OpenFlags.OPEN, size: int = 0) -> Chunk:
    """Open or create chunk ``name`` in ``stream``."""
    if stream is None:
        context.log_error("[cio chunk] invalid stream")
        raise ChunkIOError("invalid stream")
    if not name:
        context.log_error("[cio chunk] invalid file name")
        raise ChunkIOError("invalid file name")

    chunk = Chunk(context, stream, name)
    stream.chunks.append(chunk)
    try:
        if stream.type is StoreType.FS:
            chunk.backend = FileBackend(chunk, flags, size)
        else:
            chunk.backend = _MemoryBackend(chunk, size)
    except Exception:
        stream.chunks.remove(chunk)
        raise

    context.total_chunks += 1
    if chunk.is_up():
        stream.chunks_up.append(chunk)
    else:
        stream.chunks_down.append(chunk)
    return chunk


def version() -> str:
    """Return the library version string."""
    return VERSION