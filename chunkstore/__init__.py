"""Chunked data storage in memory or in memory-mapped files."""

__version__ = "0.1.0"
__all__ = ["chunk", "context", "errors", "file", "layout"]