import os

import pytest

from chunkstore.chunk import Stream, StoreType, open_chunk, version
from chunkstore.context import Context, LogLevel, Options
from chunkstore.errors import ChunkIOError, CorruptedError, ErrorCode, RetryError
from chunkstore.file import OpenFlags

LINE = b"this is a test line\n"
EMPTY_CRC = bytes([0x41, 0xD9, 0x12, 0xFF])


def _context(root, checksum=True, level=LogLevel.INFO):
    return Context(Options(root_path=str(root), checksum=checksum,
                           log_level=level))


@pytest.fixture
def sample():
    return bytes(range(256)) * 16


def test_open_without_stream_fails(tmp_path):
    with _context(tmp_path) as ctx:
        with pytest.raises(ChunkIOError):
            open_chunk(ctx, None, "invalid", 0, 0)


@pytest.mark.parametrize("name", ["", "/"])
def test_invalid_stream_names(tmp_path, name):
    with _context(tmp_path) as ctx:
        with pytest.raises(ValueError):
            Stream(ctx, name, StoreType.FS)


def test_fs_write_and_reload(tmp_path, sample):
    with _context(tmp_path) as ctx:
        stream = Stream(ctx, "test-write", StoreType.FS)
        for i in range(100):
            name = f"api-test-{i:04d}.txt"
            chunk = open_chunk(ctx, stream, name, OpenFlags.OPEN, 1000000)
            if i >= ctx.max_chunks_up:
                assert chunk.is_up() is False
                chunk.up_force()
            chunk.write(sample)
            chunk.write(sample)
            chunk.write_metadata(name.encode())
            chunk.write(sample)
            chunk.write(sample)
            chunk.write(sample)
            chunk.sync()
        assert ctx.total_chunks == 100

    with _context(tmp_path) as ctx:
        stream = Stream(ctx, "test-write", StoreType.FS)
        for i in (0, 50, 99):
            chunk = open_chunk(ctx, stream, f"api-test-{i:04d}.txt")
            assert chunk.content_copy() == sample * 5


def test_fs_checksum_empty_file(tmp_path):
    with _context(tmp_path) as ctx:
        stream = Stream(ctx, "test-crc32", StoreType.FS)
        chunk = open_chunk(ctx, stream, "test1.out", OpenFlags.OPEN, 10)
        chunk.sync()
        assert chunk.hash() == EMPTY_CRC


def test_fs_up_down(tmp_path, sample):
    with _context(tmp_path) as ctx:
        stream = Stream(ctx, "test-crc32", StoreType.FS)
        chunk = open_chunk(ctx, stream, "test1.out", OpenFlags.OPEN, 10)
        assert chunk.is_up() is True
        chunk.down()
        assert chunk.is_up() is False
        chunk.up()
        assert chunk.is_up() is True
        chunk.sync()
        assert chunk.hash() == EMPTY_CRC

        chunk.write(sample)
        chunk.sync()
        path = tmp_path / "test-crc32" / "test1.out"
        assert os.stat(path).st_size == chunk.real_size()
        synced_hash = chunk.hash()

        chunk.down()
        assert chunk.is_up() is False
        chunk.up()
        assert chunk.is_up() is True
        assert chunk.hash() == synced_hash
        assert chunk.content_copy() == sample


def test_fs_size_chunks_up(tmp_path):
    with _context(tmp_path) as ctx:
        ctx.set_max_chunks_up(50)
        stream = Stream(ctx, "test_size_chunks_up", StoreType.FS)
        for i in range(100):
            chunk = open_chunk(ctx, stream, f"test-{i}", OpenFlags.OPEN, 1000)
            if i < 50:
                assert chunk.is_up() is True
                chunk.write(LINE)
                assert stream.chunks_up[-1] is chunk
                chunk.down()
                assert stream.chunks_down[-1] is chunk
                chunk.up()
                assert stream.chunks_up[-1] is chunk
            else:
                assert stream.chunks_down[-1] is chunk
        total = sum(c.content_size() for c in stream.chunks_up)
        assert total == 50 * len(LINE)
        assert len(stream.chunks_up) == 50


def test_issue_51_truncated_file(tmp_path):
    with _context(tmp_path, checksum=False, level=LogLevel.DEBUG) as ctx:
        stream = Stream(ctx, "test", StoreType.FS)
        open_chunk(ctx, stream, "c", OpenFlags.OPEN, 1000)

    with open(tmp_path / "test" / "c", "r+b") as fh:
        fh.truncate(1)

    with _context(tmp_path, checksum=False, level=LogLevel.DEBUG) as ctx:
        stream = Stream(ctx, "test", StoreType.FS)
        with pytest.raises(CorruptedError):
            open_chunk(ctx, stream, "c", OpenFlags.OPEN, 1000)
        assert stream.chunks == []
        assert ctx.total_chunks == 0


def test_issue_flb_2025_repeated_up_down(tmp_path):
    with _context(tmp_path, level=LogLevel.DEBUG) as ctx:
        stream = Stream(ctx, "test", StoreType.FS)
        chunk = open_chunk(ctx, stream, "c", OpenFlags.OPEN, 1000)
        for _ in range(200):
            chunk.write(LINE)
            chunk.down()
            chunk.up()
        assert chunk.content_copy() == LINE * 200


def test_issue_write_at(tmp_path):
    with _context(tmp_path) as ctx:
        ctx.set_max_chunks_up(50)
        stream = Stream(ctx, "test_write_at", StoreType.FS)
        chunk = open_chunk(ctx, stream, "test", OpenFlags.OPEN, 1000)
        for _ in range(3):
            chunk.write(LINE)
        chunk.write_at(len(LINE) * 2, b"test\n")
        chunk.down()
        chunk.up()
        assert chunk.content_copy() == LINE * 2 + b"test\n"

        chunk.backend.crc_cur = 10
        chunk.write(b"\0")
        chunk.down()
        with pytest.raises(CorruptedError):
            chunk.up()
        assert chunk.error == ErrorCode.BAD_CHECKSUM
        assert chunk.backend.map is None
        assert chunk.backend.fd < 0
        assert stream.chunks_down[-1] is chunk


def test_fs_up_down_up_append(tmp_path):
    with _context(tmp_path, level=LogLevel.DEBUG) as ctx:
        stream = Stream(ctx, "cio", StoreType.FS)
        chunk = open_chunk(ctx, stream, "c", OpenFlags.OPEN, 1000)
        assert chunk.content_copy() == b""

        chunk.write(b"line 1\n")
        assert chunk.content_copy() == b"line 1\n"

        chunk.down()
        chunk.up()
        assert chunk.content_copy() == b"line 1\n"

        chunk.write(b"line 2\n")
        chunk.down()
        chunk.up()
        assert chunk.content_copy() == b"line 1\nline 2\n"
        assert chunk.content_size() == 14


def test_content_copy_of_down_chunk_leaves_it_down(tmp_path):
    with _context(tmp_path) as ctx:
        stream = Stream(ctx, "s", StoreType.FS)
        chunk = open_chunk(ctx, stream, "c")
        chunk.write(b"abc")
        chunk.down()
        assert chunk.content_copy() == b"abc"
        assert chunk.is_up() is False


def test_memfs_write(sample):
    with Context(Options(checksum=True)) as ctx:
        with pytest.raises(ChunkIOError):
            open_chunk(ctx, None, "invalid", 0, 0)
        with pytest.raises(ValueError):
            Stream(ctx, "", StoreType.MEM)
        with pytest.raises(ValueError):
            Stream(ctx, "/", StoreType.MEM)
        stream = Stream(ctx, "test-write", StoreType.MEM)
        chunks = []
        for i in range(100):
            chunk = open_chunk(ctx, stream, f"api-test-{i:04d}.txt",
                               OpenFlags.OPEN, 1000000)
            for _ in range(5):
                chunk.write(sample)
            chunks.append(chunk)
        assert all(c.content_size() == len(sample) * 5 for c in chunks)
        assert chunks[0].is_up() is True
        assert chunks[0].is_file() is False
        assert chunks[0].hash() is None
        assert ctx.total_chunks == 100


def test_memory_write_at_and_rollback():
    with Context() as ctx:
        stream = Stream(ctx, "mem", StoreType.MEM)
        chunk = open_chunk(ctx, stream, "m")
        chunk.write(b"hello world")
        chunk.write_at(5, b"!")
        assert chunk.content() == b"hello!"
        chunk.tx_begin()
        chunk.write(b"more")
        chunk.tx_rollback()
        assert chunk.content() == b"hello!"


def test_fs_transaction_rollback_and_commit(tmp_path):
    with _context(tmp_path) as ctx:
        stream = Stream(ctx, "tx", StoreType.FS)
        chunk = open_chunk(ctx, stream, "c")
        chunk.write(b"first")
        chunk.tx_begin()
        chunk.write(b"second")
        chunk.tx_rollback()
        assert chunk.content_copy() == b"first"
        chunk.tx_begin()
        chunk.write(b"+")
        chunk.tx_commit()
        chunk.down()
        chunk.up()
        assert chunk.content_copy() == b"first+"


def test_rollback_without_transaction_fails():
    with Context() as ctx:
        chunk = open_chunk(ctx, Stream(ctx, "m", StoreType.MEM), "c")
        with pytest.raises(ChunkIOError):
            chunk.tx_rollback()


def test_lock_rules():
    with Context() as ctx:
        chunk = open_chunk(ctx, Stream(ctx, "m", StoreType.MEM), "c")
        with pytest.raises(ChunkIOError):
            chunk.unlock()
        chunk.lock()
        assert chunk.is_locked() is True
        with pytest.raises(ChunkIOError):
            chunk.lock()
        with pytest.raises(RetryError):
            chunk.tx_begin()
        chunk.unlock()
        assert chunk.is_locked() is False


def test_close_updates_stream_and_counters(tmp_path):
    with _context(tmp_path) as ctx:
        stream = Stream(ctx, "s", StoreType.FS)
        keep = open_chunk(ctx, stream, "keep")
        gone = open_chunk(ctx, stream, "gone")
        gone.write(b"x")
        assert ctx.total_chunks == 2
        gone.close(delete=True)
        assert ctx.total_chunks == 1
        assert stream.chunks == [keep]
        assert gone not in stream.chunks_up
        assert not (tmp_path / "s" / "gone").exists()
        assert (tmp_path / "s" / "keep").exists()


def test_fs_stream_requires_root_path():
    with Context() as ctx:
        with pytest.raises(ChunkIOError):
            Stream(ctx, "s", StoreType.FS)


def test_version_string():
    parts = version().split(".")
    assert len(parts) == 3
    assert all(part.isdigit() for part in parts)