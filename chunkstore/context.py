"""Storage context: options, logging, limits and the set of streams."""

from __future__ import annotations

import dataclasses
import logging
import mmap
import os
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional

from .errors import ChunkIOError

MAX_CHUNKS_UP = 64

_logger = logging.getLogger("chunkstore")


class LogLevel(IntEnum):
    """Verbosity of the context log; higher values print more."""

    ERROR = 1
    WARN = 2
    INFO = 3
    DEBUG = 4
    TRACE = 5


_PY_LEVELS = {
    LogLevel.ERROR: logging.ERROR,
    LogLevel.WARN: logging.WARNING,
    LogLevel.INFO: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.TRACE: logging.DEBUG,
}

LogCallback = Callable[["Context", LogLevel, str], Any]


@dataclass
class Options:
    """Settings used when a context is created."""

    root_path: Optional[str] = None
    user: Optional[str] = None
    group: Optional[str] = None
    chmod: Optional[str] = None
    log_callback: Optional[LogCallback] = None
    log_level: int = LogLevel.INFO
    checksum: bool = False
    full_sync: bool = False


def _check_level(level: int) -> LogLevel:
    if not LogLevel.ERROR <= level <= LogLevel.TRACE:
        raise ValueError(f"invalid log level: {level}")
    return LogLevel(level)


def lookup_user(name: Optional[str]) -> int:
    """Return the numeric id of a user name, or -1 for no user."""
    if name is None:
        return -1
    import pwd

    try:
        return pwd.getpwnam(name).pw_uid
    except KeyError:
        raise ChunkIOError(f"unknown user: {name}") from None


def lookup_group(name: Optional[str]) -> int:
    """Return the numeric id of a group name, or -1 for no group."""
    if name is None:
        return -1
    import grp

    try:
        return grp.getgrnam(name).gr_gid
    except KeyError:
        raise ChunkIOError(f"unknown group: {name}") from None


class Context:
    """Root of a chunk store: holds options, counters and streams."""

    def __init__(self, options: Optional[Options] = None) -> None:
        options = Options() if options is None else options
        level = _check_level(options.log_level)

        self.options = dataclasses.replace(options, log_level=level)
        self.streams: list = []
        self.page_size = mmap.PAGESIZE
        self.max_chunks_up = MAX_CHUNKS_UP
        self.total_chunks = 0
        self.total_chunks_up = 0
        self.processed_user: Optional[int] = None
        self.processed_group: Optional[int] = None

        if options.root_path is not None:
            self._check_root_path(options.root_path)

        if self.options.user is not None:
            self.processed_user = lookup_user(self.options.user)
        if self.options.group is not None:
            self.processed_group = lookup_group(self.options.group)

    @property
    def root_path(self) -> Optional[str]:
        return self.options.root_path

    def _check_root_path(self, root_path: str) -> None:
        if not root_path:
            raise ChunkIOError(f"cannot initialize root path {root_path!r}")
        if not os.path.isdir(root_path):
            try:
                os.makedirs(root_path, mode=0o755, exist_ok=True)
            except OSError as exc:
                self.log_error(f"cannot initialize root path {root_path}")
                raise ChunkIOError(
                    f"cannot initialize root path {root_path}"
                ) from exc
            self.log_info(f"created root path {root_path}")
            return
        if not os.access(root_path, os.W_OK):
            self.log_error(f"cannot initialize root path {root_path}")
            raise ChunkIOError(f"root path {root_path} is not writable")

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.destroy()

    def set_log_callback(self, callback: Optional[LogCallback]) -> None:
        """Install (or remove, with None) the log callback."""
        self.options.log_callback = callback

    def set_log_level(self, level: int) -> None:
        """Change the log verbosity; raises ValueError when out of range."""
        self.options.log_level = _check_level(level)

    def set_max_chunks_up(self, n: int) -> None:
        """Limit how many chunks may be held up in memory at once."""
        if n < 1:
            raise ValueError(f"invalid number of chunks up: {n}")
        self.max_chunks_up = n

    def add_stream(self, stream: Any) -> None:
        """Register a stream with this context."""
        self.streams.append(stream)

    def sort(self, key: Callable[[Any], Any]) -> None:
        """Sort the chunks inside every stream using ``key``."""
        for stream in self.streams:
            stream.chunks.sort(key=key)

    def destroy(self) -> None:
        """Close every stream and its chunks."""
        streams, self.streams = self.streams, []
        for stream in streams:
            stream.close_chunks()
        self.processed_user = None
        self.processed_group = None

    def log(self, level: int, message: str) -> None:
        """Emit ``message`` if ``level`` is within the configured verbosity."""
        level = _check_level(level)
        if level > self.options.log_level:
            return
        callback = self.options.log_callback
        if callback is not None:
            callback(self, level, message)
        else:
            _logger.log(_PY_LEVELS[level], message)

    def log_error(self, message: str) -> None:
        self.log(LogLevel.ERROR, message)

    def log_warn(self, message: str) -> None:
        self.log(LogLevel.WARN, message)

    def log_info(self, message: str) -> None:
        self.log(LogLevel.INFO, message)

    def log_debug(self, message: str) -> None:
        self.log(LogLevel.DEBUG, message)

    def log_trace(self, message: str) -> None:
        self.log(LogLevel.TRACE, message)


def create(options: Optional[Options] = None) -> Context:
    """Create a storage context from ``options`` (defaults when None)."""
    return Context(options)