"""Segment file naming and low-level file helpers."""

from __future__ import annotations

import os
import re
from typing import BinaryIO, Union

DIRECTORY_PERMISSIONS = 0o700
FILE_PERMISSIONS = 0o600

LOG_SUFFIX = ".log"
INDEX_SUFFIX = ".index"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_OFFSET_PATTERN = re.compile(r"[+-]?[0-9]+")


def segment_base_path(log_dir: Union[str, os.PathLike], base_offset: int) -> str:
    """Return the path of a segment without its extension."""
    return os.path.join(os.fspath(log_dir), f"{base_offset:020d}")


def log_file_path(log_dir: Union[str, os.PathLike], base_offset: int) -> str:
    """Return the path of a segment's log file."""
    return segment_base_path(log_dir, base_offset) + LOG_SUFFIX


def index_file_path(log_dir: Union[str, os.PathLike], base_offset: int) -> str:
    """Return the path of a segment's index file."""
    return segment_base_path(log_dir, base_offset) + INDEX_SUFFIX


def parse_base_offset(path: Union[str, os.PathLike]) -> int:
    """Extract the base offset from a log file path such as ``00000000000000000042.log``."""
    filename = os.path.basename(os.fspath(path))
    text = filename[: -len(LOG_SUFFIX)] if filename.endswith(LOG_SUFFIX) else filename
    if not _OFFSET_PATTERN.fullmatch(text):
        raise ValueError(f"invalid base offset in filename {filename}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"invalid base offset in filename {filename}: out of range")
    return value


def _fileno(file: Union[BinaryIO, int]) -> int:
    return file if isinstance(file, int) else file.fileno()


def preallocate(file: Union[BinaryIO, int], size: int) -> None:
    """Reserve ``size`` bytes for a file.

    Uses true preallocation where the platform offers it and otherwise falls
    back to truncating the file to ``size``, which yields a sparse file.
    """
    fd = _fileno(file)
    fallocate = getattr(os, "posix_fallocate", None)
    if fallocate is not None:
        try:
            fallocate(fd, 0, size)
            return
        except OSError:
            pass
    os.ftruncate(fd, size)


def sync_dir(path: Union[str, os.PathLike]) -> None:
    """Flush a directory's entries to disk."""
    fd = os.open(os.fspath(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)