[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "chunkstore"
version = "0.1.0"
description = "Chunked data storage in memory or in memory-mapped files, with metadata, CRC32 checksums and up/down paging"
requires-python = ">=3.10"
dependencies = []
keywords = ["chunk", "storage", "buffer", "crc32", "mmap", "filesystem"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["chunkstore*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
