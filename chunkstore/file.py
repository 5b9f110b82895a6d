"""File system backend: a chunk kept in a memory-mapped file."""

from __future__ import annotations

import errno
import mmap
import os
import struct
from enum import IntFlag
from typing import Any

from .errors import ChunkIOError, CorruptedError, ErrorCode
from .layout import (
    CONTENT_OFFSET,
    FILE_ID,
    HASH_OFFSET,
    HEADER_MIN,
    MAX_META_LEN,
    crc32_finalize,
    crc32_init,
    crc32_update,
    init_header,
    meta_len,
    set_meta_len,
    stored_crc,
)
from .layout import content_size as _content_size


class OpenFlags(IntFlag):
    """How a chunk file is opened."""

    OPEN = 1
    OPEN_RW = 1
    OPEN_RD = 2


_FALLOCATE_UNSUPPORTED = {errno.EOPNOTSUPP, errno.ENOTSUP, errno.EINVAL}


def _round_up(value: int, step: int) -> int:
    return -(-value // step) * step


class FileBackend:
    """Storage of one chunk in a file under ``root/stream/name``.

    The chunk object handed in must provide ``context``, ``stream`` (with a
    ``name``), ``name`` and a writable ``error`` attribute.
    """

    def __init__(self, chunk: Any, flags: int = OpenFlags.OPEN,
                 size: int = 0) -> None:
        ctx = chunk.context
        self.chunk = chunk
        self.context = ctx

        name = chunk.name
        if len(name) == 1 and name in "./":
            ctx.log_error("[cio file] invalid file name")
            raise ChunkIOError("invalid file name")
        if ctx.root_path is None:
            raise ChunkIOError("file system backend requires a root path")

        self.path = os.path.join(ctx.root_path, chunk.stream.name, name)
        self.fd = -1
        self.flags = OpenFlags(flags)
        self.realloc_size = mmap.PAGESIZE * 8
        self.crc_cur = crc32_init()
        self.crc_reset = False
        self.synced = False
        self.data_size = 0
        self.alloc_size = 0
        self.fs_size = 0
        self.map: mmap.mmap | None = None

        if ctx.total_chunks_up >= ctx.max_chunks_up:
            # Limit reached: keep the chunk down but remember its size.
            try:
                self.fs_size = os.stat(self.path).st_size
            except OSError:
                pass
            return

        try:
            self._open_file()
            self._map_file(self.fs_size)
        except ChunkIOError:
            self.close(False)
            raise

    # -- helpers -----------------------------------------------------------

    @property
    def _checksum(self) -> bool:
        return bool(self.context.options.checksum)

    @property
    def _label(self) -> str:
        return f"{self.chunk.stream.name}:{self.chunk.name}"

    def _fail(self, code: ErrorCode, message: str) -> None:
        self.chunk.error = code
        raise CorruptedError(message, code)

    def _content_start(self) -> int:
        return HEADER_MIN + meta_len(self.map)

    def _available(self) -> tuple[int, int]:
        mlen = meta_len(self.map)
        return self.alloc_size - self.data_size - (HEADER_MIN + mlen), mlen

    def _checksum_from(self, start: int) -> int:
        length = 2 + meta_len(self.map) + self.data_size
        return crc32_update(start,
                            self.map[CONTENT_OFFSET:CONTENT_OFFSET + length])

    def _update_checksum(self, data: bytes) -> None:
        if self.crc_reset:
            self.crc_cur = crc32_init()
            self.crc_cur = self.calculate_checksum()
            self.crc_reset = False
        crc = crc32_update(self.crc_cur, data)
        struct.pack_into("=I", self.map, HASH_OFFSET, crc)
        self.crc_cur = crc

    def _adjust_layout(self, size: int) -> None:
        set_meta_len(self.map, size)
        if self._checksum:
            self.crc_cur = crc32_init()
            self.crc_cur = self.calculate_checksum()
        self.synced = False

    def _remap(self, new_size: int) -> None:
        try:
            new_map = mmap.mmap(self.fd, new_size, access=mmap.ACCESS_WRITE)
        except (OSError, ValueError) as exc:
            raise ChunkIOError(
                f"cannot remap {self.path} to {new_size} bytes") from exc
        old_map, self.map = self.map, new_map
        if old_map is not None:
            old_map.close()

    def _release_map(self) -> None:
        if self.map is not None:
            self.map.close()
        self.map = None
        self.data_size = 0
        self.alloc_size = 0

    def _apply_ownership(self) -> None:
        ctx = self.context
        uid = -1 if ctx.processed_user is None else ctx.processed_user
        gid = -1 if ctx.processed_group is None else ctx.processed_group

        if uid != -1 or gid != -1:
            try:
                os.chown(self.path, uid, gid)
            except OSError as exc:
                user = ctx.options.user
                group = ctx.options.group
                connector = "with group"
                if user is None:
                    user, connector = "", ""
                if group is None:
                    group, connector = "", ""
                ctx.log_error(f"cannot change ownership of {self.path} to "
                              f"{user} {connector} {group}")
                raise ChunkIOError(
                    f"cannot change ownership of {self.path}") from exc

        if ctx.options.chmod is not None:
            try:
                os.chmod(self.path, int(ctx.options.chmod, 8))
            except (ValueError, OSError) as exc:
                ctx.log_error(f"cannot change acl of {self.path} to "
                              f"{ctx.options.chmod}")
                raise ChunkIOError(
                    f"cannot change mode of {self.path}") from exc

    def _open_file(self) -> None:
        if self.map is not None or self.fd >= 0:
            raise ChunkIOError(f"{self.path} is already open")

        if self.flags & OpenFlags.OPEN:
            os_flags = os.O_RDWR | os.O_CREAT
        elif self.flags & OpenFlags.OPEN_RD:
            os_flags = os.O_RDONLY
        else:
            raise ChunkIOError(f"no open mode given for {self.path}")

        try:
            self.fd = os.open(self.path, os_flags, 0o600)
        except OSError as exc:
            self.context.log_error(f"cannot open/create {self.path}")
            raise ChunkIOError(f"cannot open/create {self.path}") from exc

        try:
            self._apply_ownership()
            st = os.fstat(self.fd)
        except (ChunkIOError, OSError) as exc:
            os.close(self.fd)
            self.fd = -1
            if isinstance(exc, ChunkIOError):
                raise
            raise ChunkIOError(f"cannot stat {self.path}") from exc
        self.fs_size = st.st_size

    def _map_file(self, size: int) -> None:
        if self.map is not None:
            return
        ctx = self.context

        if size > 0:
            fs_size = size
        else:
            try:
                fs_size = os.fstat(self.fd).st_size
            except OSError as exc:
                raise ChunkIOError(f"cannot stat {self.path}") from exc

        writable = bool(self.flags & OpenFlags.OPEN)
        if fs_size > 0:
            size = fs_size
            self.synced = True
        else:
            if not writable:
                self._fail(ErrorCode.PERMISSION,
                           f"cannot initialize read-only chunk {self.path}")
            self.synced = False
            if size < HEADER_MIN:
                size += HEADER_MIN
            size = _round_up(size, ctx.page_size)
            try:
                self.fs_size_change(size)
            except ChunkIOError:
                ctx.log_error(
                    f"cannot adjust chunk size '{self.path}' to {size} bytes")
                raise
            ctx.log_debug(f"{self._label} adjusting size OK")

        self.alloc_size = size
        access = mmap.ACCESS_WRITE if writable else mmap.ACCESS_READ
        try:
            self.map = mmap.mmap(self.fd, size, access=access)
        except (OSError, ValueError) as exc:
            self.map = None
            ctx.log_error(f"cannot mmap/read chunk '{self.path}'")
            raise ChunkIOError(f"cannot mmap chunk {self.path}") from exc

        try:
            if fs_size > 0:
                try:
                    self.data_size = _content_size(self.map, fs_size)
                except CorruptedError:
                    ctx.log_error(f"invalid content size {self.path}")
                    raise
                self.fs_size = fs_size
            else:
                self.data_size = 0
                self.fs_size = 0
            try:
                self._format_check()
            except CorruptedError:
                ctx.log_error(f"format check failed: {self.chunk.stream.name}"
                              f"/{self.chunk.name}")
                raise
        except CorruptedError:
            self._release_map()
            raise

        ctx.log_debug(f"{self._label} mapped OK")
        ctx.total_chunks_up += 1

    def _format_check(self) -> None:
        buf = self.map
        ctx = self.context
        if self.fs_size == 0:
            if not self.flags & OpenFlags.OPEN:
                ctx.log_warn("[cio file] cannot initialize chunk (read-only)")
                self._fail(ErrorCode.PERMISSION, "chunk is read-only")
            if self.alloc_size < HEADER_MIN:
                ctx.log_warn("[cio file] cannot initialize chunk")
                self._fail(ErrorCode.BAD_LAYOUT, "allocation too small")
            buf[:HEADER_MIN] = init_header(self._checksum)
            if self._checksum:
                self.crc_cur = self.calculate_checksum()
            return

        if bytes(buf[:2]) != FILE_ID:
            ctx.log_debug(f"[cio file] invalid header at {self.chunk.name}")
            self._fail(ErrorCode.PERMISSION, f"invalid header at {self.path}")

        if self._checksum:
            self.crc_cur = crc32_init()
            crc = self.calculate_checksum()
            if crc32_finalize(crc) != stored_crc(buf):
                ctx.log_debug(f"[cio file] invalid crc32 at "
                              f"{self.chunk.name}/{self.path}")
                self._fail(ErrorCode.BAD_CHECKSUM,
                           f"invalid crc32 at {self.path}")
            self.crc_cur = crc

    def _unmap(self) -> bool:
        if self.map is None:
            return False
        if not self.synced:
            try:
                self.sync()
            except (ChunkIOError, OSError):
                self.context.log_error(
                    f"[cio file] error syncing file at {self._label}")
        self._release_map()
        self.context.total_chunks_up -= 1
        return True

    # -- public interface ------------------------------------------------

    def is_up(self) -> bool:
        """True when the content is mapped and the descriptor is open."""
        return self.map is not None and self.fd >= 0

    def up(self, force: bool = False) -> None:
        """Map a chunk that was put down; honour limits unless ``force``."""
        ctx = self.context
        if self.map is not None:
            ctx.log_error(f"[cio file] file is already mapped: {self._label}")
            raise ChunkIOError(f"{self.path} is already mapped")
        if self.fd >= 0:
            ctx.log_error(f"[cio file] file descriptor already exists: "
                          f"[fd={self.fd}] {self._label}")
            raise ChunkIOError(f"{self.path} already has a descriptor")
        if not force and ctx.total_chunks_up >= ctx.max_chunks_up:
            raise ChunkIOError("maximum number of chunks up reached")

        try:
            self._open_file()
        except ChunkIOError:
            ctx.log_error(f"[cio file] cannot open chunk: {self._label}")
            raise

        try:
            self._map_file(self.fs_size)
        except ChunkIOError as exc:
            if not isinstance(exc, CorruptedError):
                ctx.log_error(f"[cio file] cannot map chunk: {self._label}")
            os.close(self.fd)
            self.fd = -1
            raise

    def down(self) -> None:
        """Release the mapping and descriptor, keeping the chunk known."""
        if self.map is None:
            self.context.log_error(
                f"[cio file] file is not mapped: {self._label}")
            raise ChunkIOError(f"{self.path} is not mapped")

        self._unmap()
        self.alloc_size = 0
        try:
            self.fs_size = os.fstat(self.fd).st_size
        except OSError:
            self.fs_size = 0
        os.close(self.fd)
        self.fd = -1
        self.map = None

    def close(self, delete: bool = False) -> None:
        """Sync and release resources; remove the file when ``delete``."""
        self._unmap()
        if delete:
            try:
                os.unlink(self.path)
            except OSError:
                self.context.log_error(
                    f"[cio file] error deleting file at close {self._label}")
        if self.fd >= 0:
            os.close(self.fd)
            self.fd = -1

    def write(self, data: bytes) -> None:
        """Append ``data`` to the content area, growing the file if needed."""
        data = bytes(data)
        count = len(data)
        if count == 0:
            return
        ctx = self.context
        if not self.is_up():
            ctx.log_error(f"[cio file] file is not mmap()ed: {self._label}")
            raise ChunkIOError(f"{self.path} is not mapped")

        available, mlen = self._available()
        if available < count:
            pre_content = HEADER_MIN + mlen
            new_size = self.alloc_size + self.realloc_size
            while new_size < pre_content + self.data_size + count:
                new_size += self.realloc_size
            new_size = _round_up(new_size, ctx.page_size)
            try:
                self.fs_size_change(new_size)
            except ChunkIOError:
                ctx.log_error(
                    "[cio_file] error setting new file size on write")
                raise
            try:
                self._remap(new_size)
            except ChunkIOError:
                ctx.log_error(
                    f"[cio file] data exceeds available space "
                    f"(alloc={self.alloc_size} current_size={self.data_size} "
                    f"write_size={count})")
                raise
            ctx.log_debug(
                f"[cio file] alloc_size from {self.alloc_size} to {new_size}")
            self.alloc_size = new_size

        if self._checksum:
            self._update_checksum(data)

        start = HEADER_MIN + mlen + self.data_size
        self.map[start:start + count] = data
        self.data_size += count
        self.synced = False

    def write_metadata(self, data: bytes) -> None:
        """Replace the metadata, moving the content to follow it."""
        data = bytes(data)
        size = len(data)
        if not self.is_up():
            raise ChunkIOError(f"{self.path} is not mapped")
        if size > MAX_META_LEN:
            raise ValueError(f"metadata too large: {size} bytes")

        current = meta_len(self.map)
        old_start = HEADER_MIN + current
        new_start = HEADER_MIN + size

        if current >= size:
            self.map[HEADER_MIN:new_start] = data
            if self.data_size:
                self.map.move(new_start, old_start, self.data_size)
            self._adjust_layout(size)
            return

        needed = HEADER_MIN + size + self.data_size
        if self.alloc_size < needed:
            self.fs_size_change(needed)
            try:
                self._remap(needed)
            except ChunkIOError:
                self.context.log_error(
                    f"[cio meta] data exceeds available space "
                    f"(alloc={self.alloc_size} "
                    f"current_size={self.data_size} meta_size={size})")
                raise
            self.alloc_size = needed

        if self.data_size:
            self.map.move(new_start, old_start, self.data_size)
        self.map[HEADER_MIN:new_start] = data
        self._adjust_layout(size)

    def sync(self) -> None:
        """Trim the file to its used size, finalise the CRC and flush."""
        if self.flags & OpenFlags.OPEN_RD:
            return
        if self.synced:
            return
        if self.map is None or self.fd < 0:
            raise ChunkIOError(f"{self.path} is not mapped")
        ctx = self.context

        try:
            st = os.fstat(self.fd)
        except OSError as exc:
            raise ChunkIOError(f"cannot stat {self.path}") from exc

        old_size = self.alloc_size
        available, _ = self._available()
        if available > 0:
            size = self.alloc_size - available
            try:
                self.fs_size_change(size)
            except ChunkIOError:
                ctx.log_error(f"[cio file sync] error adjusting size at: "
                              f" {self.chunk.stream.name}/{self.chunk.name}")
            self.alloc_size = size
        elif self.alloc_size > st.st_size:
            try:
                self.fs_size_change(self.alloc_size)
            except ChunkIOError:
                ctx.log_error(f"[cio file sync] error adjusting size at: "
                              f" {self.chunk.stream.name}/{self.chunk.name}")

        if old_size != self.alloc_size:
            try:
                self._remap(self.alloc_size)
            except ChunkIOError:
                ctx.log_error(f"[cio file] cannot remap memory: "
                              f"old={old_size} new={self.alloc_size}")
                self.alloc_size = old_size
                raise

        if self._checksum:
            struct.pack_into(">I", self.map, HASH_OFFSET,
                             crc32_finalize(self.crc_cur))

        try:
            self.map.flush()
            self.synced = True
            self.fs_size = os.fstat(self.fd).st_size
        except OSError as exc:
            raise ChunkIOError(f"cannot sync {self.path}") from exc

        ctx.log_debug(f"[cio file] synced at: "
                      f"{self.chunk.stream.name}/{self.chunk.name}")

    def read_prepare(self) -> None:
        """Make sure the content is mapped for reading."""
        if self.map is None:
            self._map_file(0)

    def content(self) -> bytes:
        """Return the content bytes, mapping the file if needed."""
        self.read_prepare()
        start = self._content_start()
        return bytes(self.map[start:start + self.data_size])

    def content_copy(self) -> bytes:
        """Return a copy of the content, bringing the chunk up briefly."""
        set_down = False
        if not self.is_up():
            self.up(force=True)
            set_down = True
        try:
            start = self._content_start()
            return bytes(self.map[start:start + self.data_size])
        finally:
            if set_down:
                self.down()

    def real_size(self) -> int:
        """Return the size of the file on disk (0 when it is missing)."""
        if self.fs_size == 0:
            try:
                return os.stat(self.path).st_size
            except OSError:
                return 0
        return self.fs_size

    def hash(self) -> bytes:
        """Return the four checksum bytes stored in the header."""
        if self.map is None:
            raise ChunkIOError(f"{self.path} is not mapped")
        return bytes(self.map[HASH_OFFSET:HASH_OFFSET + 4])

    def fs_size_change(self, new_size: int) -> None:
        """Set the on-disk size of the file (not of the mapping)."""
        try:
            if new_size > self.alloc_size and hasattr(os, "posix_fallocate"):
                try:
                    os.posix_fallocate(self.fd, 0, new_size)
                except OSError as exc:
                    if exc.errno not in _FALLOCATE_UNSUPPORTED:
                        raise
                    os.ftruncate(self.fd, new_size)
            else:
                os.ftruncate(self.fd, new_size)
        except OSError as exc:
            raise ChunkIOError(
                f"cannot set size of {self.path} to {new_size}") from exc
        self.fs_size = new_size

    def calculate_checksum(self) -> int:
        """Feed the checked area into the current CRC register."""
        return self._checksum_from(self.crc_cur)


def scan_dump(context: Any, stream: Any) -> None:
    """Print one line per chunk of ``stream`` describing its state."""
    for chunk in stream.chunks:
        backend = chunk.backend
        set_down = False
        if not backend.is_up():
            try:
                backend.up()
            except ChunkIOError:
                continue
            set_down = True
        try:
            name = f"{stream.name}/{chunk.name}"
            mlen = meta_len(backend.map)
            crc_fs = stored_crc(backend.map)
            line = f"        {name:<60}"
            if context.options.checksum:
                crc = crc32_finalize(backend._checksum_from(crc32_init()))
                if crc != crc_fs:
                    line += f"checksum error={crc_fs:08x} expected={crc:08x}, "
            line += (f"meta_len={mlen}, data_size={backend.data_size}, "
                     f"crc={crc_fs:08x}")
            print(line)
        finally:
            if set_down:
                backend.down()