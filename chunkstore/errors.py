"""Error codes attached to chunks and the exceptions raised by the store."""

from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    """Reason recorded on a chunk after a failed operation."""

    NONE = 0
    BAD_CHECKSUM = 1
    BAD_LAYOUT = 2
    PERMISSION = 3


_MESSAGES = {
    ErrorCode.BAD_CHECKSUM: "bad checksum",
    ErrorCode.BAD_LAYOUT: "bad layout or invalid header",
    ErrorCode.PERMISSION: "permission error",
}

_DEFAULT_MESSAGE = "no error has been specified"


def error_string(code: int) -> str:
    """Return a human readable description of an error code."""
    try:
        return _MESSAGES.get(ErrorCode(code), _DEFAULT_MESSAGE)
    except ValueError:
        return _DEFAULT_MESSAGE


class ChunkIOError(Exception):
    """Generic failure of a chunk or storage operation."""

    def __init__(self, message: str | None = None,
                 code: ErrorCode = ErrorCode.NONE) -> None:
        self.code = ErrorCode(code)
        if message is None:
            message = error_string(self.code)
        super().__init__(message)


class CorruptedError(ChunkIOError):
    """The on-disk chunk is damaged or cannot be initialised."""


class RetryError(ChunkIOError):
    """The operation cannot proceed now but may succeed later."""