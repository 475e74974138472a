"""The writable, last segment of a log."""

from __future__ import annotations

import mmap
import os
import threading
from typing import Callable, Optional, Union

from appendlog.config import Config
from appendlog.files import (
    DIRECTORY_PERMISSIONS,
    FILE_PERMISSIONS,
    index_file_path,
    log_file_path,
    preallocate,
)
from appendlog.index import IndexCache, IndexEntry
from appendlog.record import (
    LogError,
    Record,
    RecordCache,
    encode_record,
    find_record,
)

_DEFAULT_BUFFER_SIZE = 4096
_BINARY = getattr(os, "O_BINARY", 0)


class _BufferedWriter:
    """Write buffer over a file descriptor.

    Data reaches the file only when the buffer is flushed, when it fills up,
    or when a single write is larger than the whole buffer; ``on_flush`` is
    told how many bytes each of those writes put in the file.
    """

    def __init__(
        self,
        fd: int,
        capacity: int,
        on_flush: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._fd = fd
        self._capacity = capacity if capacity > 0 else _DEFAULT_BUFFER_SIZE
        self._buffer = bytearray()
        self._on_flush = on_flush

    def available(self) -> int:
        return self._capacity - len(self._buffer)

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while len(view) > self.available():
            if not self._buffer:
                self._write_through(view)
                return
            room = self.available()
            self._buffer += view[:room]
            view = view[room:]
            self.flush()
        self._buffer += view

    def flush(self) -> None:
        if not self._buffer:
            return
        pending = bytes(self._buffer)
        self._write_through(pending)
        self._buffer.clear()

    def _write_through(self, data) -> None:
        with memoryview(data) as view:
            total = 0
            while total < len(view):
                total += os.write(self._fd, view[total:])
        if self._on_flush is not None:
            self._on_flush(total)


class ActiveSegment:
    """The only segment of a log that accepts appends.

    Offsets and sizes are relative to the segment. Records still in the
    write buffer are served from a cache; flushed ones are read through a
    memory map of the preallocated log file.
    """

    def __init__(
        self, log_dir: Union[str, os.PathLike], base_offset: int, config: Config
    ) -> None:
        self._config = config
        self._base_offset = base_offset

        try:
            os.makedirs(log_dir, DIRECTORY_PERMISSIONS, exist_ok=True)
        except OSError as exc:
            raise LogError(f"failed to create log directory: {exc}") from exc

        log_path = log_file_path(log_dir, base_offset)
        index_path = index_file_path(log_dir, base_offset)

        # No O_APPEND: after preallocation it would write past the reserved space.
        try:
            log_fd = os.open(log_path, os.O_CREAT | os.O_WRONLY | _BINARY, FILE_PERMISSIONS)
        except OSError as exc:
            raise LogError(f"failed to open log file: {exc}") from exc
        try:
            index_fd = os.open(
                index_path, os.O_CREAT | os.O_WRONLY | _BINARY, FILE_PERMISSIONS
            )
        except OSError as exc:
            os.close(log_fd)
            raise LogError(f"failed to open index file: {exc}") from exc

        try:
            self._log_map = self._map_preallocated(log_fd, log_path, config.max_segment_size)
        except LogError:
            os.close(log_fd)
            os.close(index_fd)
            raise

        self._log_fd = log_fd
        self._index_fd = index_fd

        self._next_offset = 0
        self._byte_position = 0
        self._last_indexed_position = 0
        self._flushed_position = 0

        self._record_cache = RecordCache()
        self._index_cache = IndexCache()

        self._log_writer = _BufferedWriter(
            log_fd, config.log_writer_buffer_size, self._on_log_flush
        )
        self._index_writer = _BufferedWriter(index_fd, config.index_writer_buffer_size)

        self._closed = False
        self._lock = threading.Lock()

    @staticmethod
    def _map_preallocated(log_fd: int, log_path: str, size: int) -> mmap.mmap:
        try:
            preallocate(log_fd, size)
        except OSError as exc:
            raise LogError(f"failed to preallocate log file: {exc}") from exc
        try:
            read_fd = os.open(log_path, os.O_RDONLY | _BINARY)
        except OSError as exc:
            raise LogError(f"failed to open log read file: {exc}") from exc
        try:
            return mmap.mmap(read_fd, size, access=mmap.ACCESS_READ)
        except (OSError, ValueError) as exc:
            raise LogError(f"failed to mmap log file: {exc}") from exc
        finally:
            os.close(read_fd)

    def _on_log_flush(self, bytes_written: int) -> None:
        # Runs while the segment lock is held by append, sync or close.
        self._flushed_position += bytes_written
        self._record_cache.clear()

    def append(self, data: bytes, timestamp: int = 0) -> int:
        """Append a record and return its relative offset.

        The record is accepted but not durable until ``sync`` is called.
        """
        data = bytes(data)
        with self._lock:
            if self._closed:
                raise LogError("segment is closed")
            if len(data) > self._config.max_record_data_size:
                raise LogError(
                    f"failed to encode record: data size {len(data)} is greater than "
                    f"the max record data size {self._config.max_record_data_size}"
                )

            offset = self._next_offset
            position = self._byte_position
            record = Record(offset, timestamp, data)
            encoded = encode_record(record)

            try:
                # Keep every record whole on one side of the buffer boundary.
                if self._log_writer.available() < len(encoded):
                    self._log_writer.flush()
                self._record_cache.add(record, position)
                self._log_writer.write(encoded)
            except OSError as exc:
                raise LogError(f"failed to write record: {exc}") from exc

            self._byte_position += len(encoded)
            self._next_offset += 1

            if self._should_index(position):
                entry = IndexEntry(offset, position)
                self._index_cache.append(entry)
                try:
                    self._index_writer.write(entry.encode())
                except OSError as exc:
                    raise LogError(f"failed to write index entry: {exc}") from exc
                self._last_indexed_position = position

            return offset

    def read(self, offset: int) -> Record:
        """Return the record at the given relative offset."""
        with self._lock:
            if self._closed:
                raise LogError("segment is closed")
            last_written = self._next_offset - 1
        if offset > last_written:
            raise LogError(
                f"offset {offset} is greater than the last written offset {last_written}"
            )

        cached = self._record_cache.get(offset)
        if cached is not None:
            return cached.record

        with self._lock:
            if self._closed:
                raise LogError("segment is closed")
            # Entries added since the bound check all have larger offsets,
            # so they cannot change the lookup result.
            entry, _ = self._index_cache.find(offset)
            return find_record(
                self._log_map, entry.position, self._flushed_position, offset
            )

    def base_offset(self) -> int:
        """Return the absolute offset of the segment's first record."""
        return self._base_offset

    def length(self) -> int:
        """Return the number of records appended to the segment."""
        with self._lock:
            return self._next_offset

    def size(self) -> int:
        """Return the number of bytes appended to the segment."""
        with self._lock:
            return self._byte_position

    def sync(self) -> None:
        """Flush buffered records and index entries and sync them to disk."""
        with self._lock:
            if self._closed:
                raise LogError("segment is closed")
            self._sync()

    def close(self) -> None:
        """Sync the segment and release its files; a second call does nothing."""
        with self._lock:
            if self._closed:
                return
            errors: list[str] = []
            try:
                self._sync()
            except LogError as exc:
                errors.append(str(exc))
            try:
                self._log_map.close()
            except (OSError, BufferError) as exc:
                errors.append(f"failed to munmap log: {exc}")
            for label, fd in (("log file", self._log_fd), ("index file", self._index_fd)):
                try:
                    os.close(fd)
                except OSError as exc:
                    errors.append(f"failed to close {label}: {exc}")
            self._closed = True
        if errors:
            raise LogError("; ".join(errors))

    def _should_index(self, position: int) -> bool:
        return (
            position == 0
            or position - self._last_indexed_position >= self._config.index_interval_bytes
        )

    def _sync(self) -> None:
        try:
            self._log_writer.flush()
            self._index_writer.flush()
            os.fsync(self._log_fd)
            os.fsync(self._index_fd)
        except OSError as exc:
            raise LogError(f"failed to sync segment: {exc}") from exc