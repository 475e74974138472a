"""Records, their on-disk encoding and the cache of unflushed records."""

from __future__ import annotations

import bisect
import struct
import threading
import zlib
from dataclasses import dataclass
from typing import NamedTuple, Optional

# On-disk layout: | Length 4B | CRC 4B | Offset 8B | Timestamp 8B | Data |
# Length covers everything after itself; the CRC covers Offset, Timestamp and Data.
RECORD_LENGTH_SIZE = 4
RECORD_CRC_SIZE = 4
RECORD_OFFSET_SIZE = 8
RECORD_TIMESTAMP_SIZE = 8
RECORD_HEADER_SIZE = (
    RECORD_LENGTH_SIZE + RECORD_CRC_SIZE + RECORD_OFFSET_SIZE + RECORD_TIMESTAMP_SIZE
)

_HEADER = struct.Struct(">IIqq")
_LENGTH = struct.Struct(">I")
_CRC_OFFSET = struct.Struct(">Iq")
_TIMESTAMP = struct.Struct(">q")
_MIN_RECORD_LENGTH = RECORD_CRC_SIZE + RECORD_OFFSET_SIZE + RECORD_TIMESTAMP_SIZE


class LogError(Exception):
    """Raised when a log operation fails."""


class CorruptRecordError(LogError):
    """Raised when a stored record does not match its checksum."""


@dataclass(frozen=True)
class Record:
    """A record stored in the log."""

    offset: int
    timestamp: int
    data: bytes


def record_data_size(record_length: int) -> int:
    """Return the data size of a record from the value of its length field."""
    return record_length - RECORD_CRC_SIZE - RECORD_OFFSET_SIZE - RECORD_TIMESTAMP_SIZE


def encode_record(record: Record) -> bytes:
    """Return the on-disk bytes of a record, length prefix included."""
    data = bytes(record.data)
    body = struct.pack(">qq", record.offset, record.timestamp) + data
    crc = zlib.crc32(body)
    return _LENGTH.pack(RECORD_CRC_SIZE + len(body)) + _LENGTH.pack(crc) + body


def find_record(buffer, start: int, limit: int, offset: int) -> Record:
    """Scan encoded records in ``buffer`` from ``start`` for the one at ``offset``.

    Scanning stops before ``limit`` or at a zero length field. Raises
    ``CorruptRecordError`` on a checksum mismatch and ``LogError`` when a
    record past the target is met or the target is never reached.
    """
    with memoryview(buffer) as view:
        size = len(view)
        position = start
        while position < limit:
            if position + RECORD_LENGTH_SIZE > size:
                break
            (length,) = _LENGTH.unpack_from(view, position)
            if length == 0:
                break
            if position + RECORD_LENGTH_SIZE + RECORD_CRC_SIZE + RECORD_OFFSET_SIZE > size:
                break
            crc, record_offset = _CRC_OFFSET.unpack_from(
                view, position + RECORD_LENGTH_SIZE
            )
            if record_offset > offset:
                raise LogError(
                    f"unexpected case: found record offset {record_offset} greater "
                    f"than the target offset {offset} while doing a sequential read"
                )
            if record_offset < offset:
                position += RECORD_LENGTH_SIZE + length
                continue

            body_start = position + RECORD_LENGTH_SIZE + RECORD_CRC_SIZE
            body_end = position + RECORD_LENGTH_SIZE + length
            if length < _MIN_RECORD_LENGTH or body_end > size:
                raise CorruptRecordError(
                    f"record at offset {record_offset} has invalid length {length}"
                )
            actual = zlib.crc32(view[body_start:body_end])
            if actual != crc:
                raise CorruptRecordError(f"record CRC mismatch: {actual} != {crc}")
            (timestamp,) = _TIMESTAMP.unpack_from(view, body_start + RECORD_OFFSET_SIZE)
            data_start = body_start + RECORD_OFFSET_SIZE + RECORD_TIMESTAMP_SIZE
            return Record(record_offset, timestamp, bytes(view[data_start:body_end]))
    raise LogError("unexpected end of segment file")


class RecordCacheEntry(NamedTuple):
    """A cached record and the byte position where it starts."""

    record: Record
    position: int


class RecordCache:
    """Thread-safe cache of records still waiting in a write buffer.

    Records must be added in ascending offset order.
    """

    def __init__(self) -> None:
        self._entries: list[RecordCacheEntry] = []
        self._lock = threading.Lock()

    def add(self, record: Record, position: int) -> None:
        """Cache a record written at ``position``."""
        with self._lock:
            self._entries.append(RecordCacheEntry(record, position))

    def clear(self) -> None:
        """Drop every cached record."""
        with self._lock:
            self._entries.clear()

    def get(self, offset: int) -> Optional[RecordCacheEntry]:
        """Return the cached entry for ``offset``, or None if absent."""
        with self._lock:
            entries = self._entries
            idx = bisect.bisect_left(entries, offset, key=lambda e: e.record.offset)
            if idx < len(entries) and entries[idx].record.offset == offset:
                return entries[idx]
            return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)