"""Read-only, memory-mapped segments of a log."""

from __future__ import annotations

import mmap
import os
import struct
import threading
from typing import BinaryIO, Optional, Union

from appendlog.files import index_file_path, log_file_path
from appendlog.index import INDEX_ENTRY_SIZE, IndexEntry
from appendlog.record import RECORD_LENGTH_SIZE, LogError, Record, find_record

_UINT32 = struct.Struct(">I")

_Mapped = Union[mmap.mmap, bytes]


def _map_file(file: BinaryIO) -> _Mapped:
    size = os.fstat(file.fileno()).st_size
    if size == 0:
        return b""
    return mmap.mmap(file.fileno(), size, access=mmap.ACCESS_READ)


def _advise(data: _Mapped, hint_name: str) -> None:
    madvise = getattr(data, "madvise", None)
    hint = getattr(mmap, hint_name, None)
    if madvise is None or hint is None:
        return
    try:
        madvise(hint)
    except OSError:
        pass


def binary_search_index(index_data, target: int) -> int:
    """Return the position of the last index entry whose offset is <= ``target``.

    Returns 0 when no entry qualifies or the index is empty.
    """
    low, high = 0, len(index_data) // INDEX_ENTRY_SIZE - 1
    result = 0
    while low <= high:
        mid = (low + high) // 2
        start = mid * INDEX_ENTRY_SIZE
        entry = IndexEntry.decode(index_data[start : start + INDEX_ENTRY_SIZE])
        if entry.relative_offset <= target:
            result = mid
            low = mid + 1
        else:
            high = mid - 1
    return result


class SealedSegment:
    """An immutable segment whose log and index files are memory-mapped."""

    def __init__(self, log_dir: Union[str, os.PathLike], base_offset: int) -> None:
        self._base_offset = base_offset
        self._length = 0
        self._lock = threading.Lock()

        try:
            log_file = open(log_file_path(log_dir, base_offset), "rb", buffering=0)
        except OSError as exc:
            raise LogError(f"failed to open log file: {exc}") from exc
        try:
            index_file = open(index_file_path(log_dir, base_offset), "rb", buffering=0)
        except OSError as exc:
            log_file.close()
            raise LogError(f"failed to open index file: {exc}") from exc

        try:
            log_data = _map_file(log_file)
        except (OSError, ValueError) as exc:
            log_file.close()
            index_file.close()
            raise LogError(f"mmap log file: {exc}") from exc
        try:
            index_data = _map_file(index_file)
        except (OSError, ValueError) as exc:
            if isinstance(log_data, mmap.mmap):
                log_data.close()
            log_file.close()
            index_file.close()
            raise LogError(f"mmap index file: {exc}") from exc

        _advise(log_data, "MADV_SEQUENTIAL")
        _advise(index_data, "MADV_RANDOM")

        self._log_file: Optional[BinaryIO] = log_file
        self._index_file: Optional[BinaryIO] = index_file
        self._log_data: Optional[_Mapped] = log_data
        self._index_data: Optional[_Mapped] = index_data

    def read(self, offset: int) -> Record:
        """Return the record at the given relative offset."""
        with self._lock:
            if self._log_data is None:
                raise LogError("segment is closed")
            position = self._find_starting_byte_position(offset)
            return find_record(self._log_data, position, len(self._log_data), offset)

    def base_offset(self) -> int:
        """Return the absolute offset of the segment's first record."""
        return self._base_offset

    def length(self) -> int:
        """Return the number of records, computed once and then cached."""
        with self._lock:
            if self._length == 0 and self._log_data is not None:
                self._length = self._compute_length()
            return self._length

    def close(self) -> None:
        """Unmap the files and close their handles; safe to call twice."""
        errors: list[str] = []
        with self._lock:
            for label, data in (("log data", self._log_data), ("index data", self._index_data)):
                if isinstance(data, mmap.mmap):
                    try:
                        data.close()
                    except (OSError, BufferError) as exc:
                        errors.append(f"failed to unmap {label}: {exc}")
            self._log_data = None
            self._index_data = None

            for label, file in (("log file", self._log_file), ("index file", self._index_file)):
                if file is not None:
                    try:
                        file.close()
                    except OSError as exc:
                        errors.append(f"failed to close {label}: {exc}")
            self._log_file = None
            self._index_file = None

        if errors:
            raise LogError("; ".join(errors))

    def _compute_length(self) -> int:
        index_data = self._index_data or b""
        if len(index_data) < INDEX_ENTRY_SIZE:
            return self._count_records_from(0, 0)
        end = len(index_data) - len(index_data) % INDEX_ENTRY_SIZE
        last = IndexEntry.decode(index_data[end - INDEX_ENTRY_SIZE : end])
        return self._count_records_from(last.position, last.relative_offset)

    def _count_records_from(self, start: int, initial_count: int) -> int:
        data = self._log_data or b""
        size = len(data)
        count = initial_count
        position = start
        while position + RECORD_LENGTH_SIZE <= size:
            (length,) = _UINT32.unpack_from(data, position)
            if length == 0:
                break
            position += RECORD_LENGTH_SIZE + length
            count += 1
        return count

    def _find_starting_byte_position(self, offset: int) -> int:
        index_data = self._index_data or b""
        if len(index_data) < INDEX_ENTRY_SIZE:
            return 0
        idx = binary_search_index(index_data, offset)
        start = idx * INDEX_ENTRY_SIZE
        return IndexEntry.decode(index_data[start : start + INDEX_ENTRY_SIZE]).position