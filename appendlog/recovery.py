"""Crash recovery for the last segment of a log."""

from __future__ import annotations

import contextlib
import os
import struct
import zlib
from typing import BinaryIO, NamedTuple, Union

from appendlog.config import Config
from appendlog.files import FILE_PERMISSIONS, index_file_path, log_file_path
from appendlog.index import IndexEntry
from appendlog.record import (
    RECORD_CRC_SIZE,
    RECORD_HEADER_SIZE,
    RECORD_LENGTH_SIZE,
    RECORD_OFFSET_SIZE,
    RECORD_TIMESTAMP_SIZE,
    LogError,
    record_data_size,
)

_UINT32 = struct.Struct(">I")
_UINT64 = struct.Struct(">Q")

PathLike = Union[str, os.PathLike]


class ScanResult(NamedTuple):
    """Byte position after the last valid record and the number of valid records."""

    boundary: int
    record_count: int


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read up to ``size`` bytes, stopping early only at end of stream."""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _remove_quietly(path: PathLike) -> None:
    with contextlib.suppress(OSError):
        os.remove(path)


def recover_last_segment(directory: PathLike, base_offset: int, config: Config) -> None:
    """Validate the segment at ``base_offset``, cut it at the first bad record
    and rebuild its index. Both files are deleted if no valid record remains.
    """
    log_path = log_file_path(directory, base_offset)
    index_path = index_file_path(directory, base_offset)

    boundary, record_count = scan_log_file(log_path, config)

    if record_count == 0:
        _remove_quietly(log_path)
        _remove_quietly(index_path)
        return

    try:
        os.truncate(log_path, boundary)
    except OSError as exc:
        raise LogError(f"failed to truncate log file: {exc}") from exc

    _remove_quietly(index_path)
    rebuild_index(log_path, index_path, config)


def scan_log_file(log_path: PathLike, config: Config) -> ScanResult:
    """Open a log file and scan it for its last valid record boundary."""
    try:
        stream = open(log_path, "rb", buffering=max(1, config.log_reader_buffer_size))
    except OSError as exc:
        raise LogError(f"failed to open log file for recovery: {exc}") from exc
    with stream:
        try:
            return scan_for_valid_boundary(stream, config)
        except OSError as exc:
            raise LogError(f"failed to scan log file: {exc}") from exc


def scan_for_valid_boundary(stream: BinaryIO, config: Config) -> ScanResult:
    """Scan encoded records from ``stream`` until the first corruption.

    Stops at end of stream, a zero length field, an oversized length, an
    incomplete record or a checksum mismatch.
    """
    max_record_size = RECORD_HEADER_SIZE + config.max_record_data_size
    position = 0
    record_count = 0

    while True:
        header = _read_exact(stream, RECORD_LENGTH_SIZE)
        if len(header) < RECORD_LENGTH_SIZE:
            break
        (length,) = _UINT32.unpack(header)
        if length == 0 or length > max_record_size - RECORD_LENGTH_SIZE:
            break

        crc_bytes = _read_exact(stream, RECORD_CRC_SIZE)
        if len(crc_bytes) < RECORD_CRC_SIZE:
            break
        (expected_crc,) = _UINT32.unpack(crc_bytes)

        remaining = length - RECORD_CRC_SIZE
        if remaining <= 0:
            break
        body = _read_exact(stream, remaining)
        if len(body) < remaining:
            break
        if zlib.crc32(body) != expected_crc:
            break

        position += RECORD_LENGTH_SIZE + length
        record_count += 1

    return ScanResult(position, record_count)


def rebuild_index(log_path: PathLike, index_path: PathLike, config: Config) -> None:
    """Write a fresh index for a clean log file, using the indexing interval."""
    try:
        log_stream = open(log_path, "rb", buffering=max(1, config.log_reader_buffer_size))
    except OSError as exc:
        raise LogError(f"failed to open log file: {exc}") from exc

    with log_stream:
        try:
            fd = os.open(
                index_path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, FILE_PERMISSIONS
            )
            index_stream = open(
                fd, "wb", buffering=max(1, config.index_writer_buffer_size)
            )
        except OSError as exc:
            raise LogError(f"failed to create index file: {exc}") from exc

        with index_stream:
            try:
                _write_index_entries(log_stream, index_stream, config)
                index_stream.flush()
                os.fsync(index_stream.fileno())
            except OSError as exc:
                raise LogError(f"failed to rebuild index: {exc}") from exc


def _write_index_entries(log_stream: BinaryIO, index_stream: BinaryIO, config: Config) -> None:
    interval = config.index_interval_bytes
    position = 0
    last_indexed_position = -interval

    while True:
        record_start = position

        header = _read_exact(log_stream, RECORD_LENGTH_SIZE)
        if not header:
            break
        if len(header) < RECORD_LENGTH_SIZE:
            raise LogError("failed to read record length: unexpected end of file")
        (length,) = _UINT32.unpack(header)
        if length == 0:
            break

        if len(_read_exact(log_stream, RECORD_CRC_SIZE)) < RECORD_CRC_SIZE:
            raise LogError("failed to skip CRC: unexpected end of file")

        offset_bytes = _read_exact(log_stream, RECORD_OFFSET_SIZE)
        if len(offset_bytes) < RECORD_OFFSET_SIZE:
            raise LogError("failed to read record offset: unexpected end of file")
        (record_offset,) = _UINT64.unpack(offset_bytes)

        if record_start == 0 or record_start - last_indexed_position >= interval:
            index_stream.write(IndexEntry(record_offset, record_start).encode())
            last_indexed_position = record_start

        remaining = RECORD_TIMESTAMP_SIZE + record_data_size(length)
        if remaining < 0:
            raise LogError(f"failed to skip remaining record bytes: invalid length {length}")
        if len(_read_exact(log_stream, remaining)) < remaining:
            raise LogError("failed to skip remaining record bytes: unexpected end of file")

        position = record_start + RECORD_LENGTH_SIZE + length