# chunkstore

`chunkstore` keeps data in *chunks* that are grouped into *streams*. A stream
is backed either by memory (`StoreType.MEM`) or by files below a root directory
(`StoreType.FS`). A file-backed chunk lives in `root/stream/name`, is
memory-mapped while in use, and starts with a 24 byte header followed by
optional metadata and then the content. A CRC32 checksum over the metadata
length, the metadata and the content can be kept in the header.

To keep memory use within a limit, a file-backed chunk can be put *down*, which
syncs it and releases its mapping, and brought *up* again when it is needed.

## Installation

```
pip install chunkstore
```

With the test dependencies:

```
pip install "chunkstore[test]"
```

## Usage

```python
from chunkstore.context import Options, LogLevel, create
from chunkstore.chunk import Stream, StoreType, open_chunk
from chunkstore.file import OpenFlags

ctx = create(Options(root_path="/tmp/store", log_level=LogLevel.INFO, checksum=True))
stream = Stream(ctx, "events", StoreType.FS)

chunk = open_chunk(ctx, stream, "batch-0001", OpenFlags.OPEN, 1000)
chunk.write(b"line 1\n")
chunk.write_metadata(b"tag=events")
chunk.sync()

chunk.down()                 # release the mapping, keep the file
chunk.up()                   # map it back; header and checksum are checked here
print(chunk.content_copy())  # b"line 1\n"

ctx.destroy()
```

`Context` is also a context manager; leaving the `with` block calls
`destroy()`, which closes every chunk of every stream without deleting files.

For memory-only storage, create the context without a `root_path` and use
`StoreType.MEM` for the stream. Memory chunks are always up; `sync`, `up` and
`down` do nothing for them, and `hash()` returns `None`.

### Options

`Options` holds `root_path`, `user`, `group`, `chmod` (an octal string such as
`"0640"`), `log_callback`, `log_level`, `checksum` and `full_sync`. When
`user`, `group` or `chmod` are set, every chunk file that is opened gets that
owner, group or mode. A missing root directory is created; an existing one must
be writable.

### Chunk operations

- `write(data)` appends; `write_at(offset, data)` writes at `offset` and drops
  what followed it.
- `write_metadata(data)` replaces the metadata (at most 65535 bytes).
- `content()`, `content_copy()`, `content_size()` and `real_size()` read the
  content and sizes; `content_copy()` brings a down chunk up for the copy and
  puts it down again.
- `lock()` / `unlock()` / `is_locked()`; locking an up chunk syncs it.
- `up()`, `up_force()`, `down()`, `is_up()`, `is_file()`, `close(delete)`.
- `Stream.close_chunks()` closes every chunk of a stream.
- `Context.sort(key)` sorts the chunks inside every stream.

### Transactions

```python
chunk.tx_begin()
chunk.write(b"partial record")
chunk.tx_rollback()          # content length and checksum go back to tx_begin
```

`tx_commit()` syncs the chunk and ends the transaction.

### Limits and logging

- `Context.set_max_chunks_up(n)` sets how many file-backed chunks may be up at
  once. Chunks opened after the limit is reached start out down, and `up()`
  refuses to exceed it; `up_force()` ignores it.
- `Context.set_log_level(level)` takes a `LogLevel` (`ERROR` … `TRACE`);
  messages at that level or a more severe one are emitted.
- `Context.set_log_callback(callback)` sends them to
  `callback(context, level, message)`; without a callback they go to the
  `chunkstore` logger of the `logging` module.

### Errors

A failed operation raises `ChunkIOError`. A chunk whose layout, header or
checksum is invalid raises `CorruptedError`, and the chunk's `error` attribute
holds an `ErrorCode` saying which check failed (`error_string(code)` describes
it). `tx_begin()` on a locked chunk raises `RetryError`. An invalid log level,
chunk limit or stream name raises `ValueError`.

### Lower-level helpers

`chunkstore.layout` reads and writes the header fields and provides the CRC32
helpers (`crc32_init`, `crc32_update`, `crc32_finalize`).
`chunkstore.file.scan_dump(context, stream)` prints one line per chunk with its
metadata length, data size and stored checksum, and reports checksum mismatches
when checksums are enabled. `chunkstore.chunk.version()` returns the library
version string.

## What it does not do

- It does not scan a root directory for streams and chunks written earlier;
  reopen them by creating the `Stream` and calling `open_chunk` with the same
  names.
- It does not delete streams, and has no command-line tool.