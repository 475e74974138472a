"""Sparse index entries mapping record offsets to byte positions."""

from __future__ import annotations

import bisect
import struct
from dataclasses import dataclass
from typing import Iterable, Optional

INDEX_ENTRY_SIZE = 8

_ENTRY = struct.Struct(">II")
_UINT32_MASK = 0xFFFFFFFF


@dataclass(frozen=True)
class IndexEntry:
    """Relative offset of a record and the byte position where it starts.

    On disk both fields are stored as big-endian unsigned 32-bit integers.
    """

    relative_offset: int
    position: int

    def encode(self) -> bytes:
        """Return the 8-byte on-disk form of the entry."""
        return _ENTRY.pack(
            self.relative_offset & _UINT32_MASK, self.position & _UINT32_MASK
        )

    @classmethod
    def decode(cls, buf: bytes) -> IndexEntry:
        """Read an entry from the first 8 bytes of ``buf``."""
        if len(buf) < INDEX_ENTRY_SIZE:
            raise ValueError(
                f"short buffer: need {INDEX_ENTRY_SIZE} bytes, got {len(buf)}"
            )
        relative_offset, position = _ENTRY.unpack_from(buf, 0)
        return cls(relative_offset, position)


_START = IndexEntry(0, 0)


class IndexCache:
    """In-memory index entries of a segment, sorted by relative offset."""

    def __init__(self, entries: Optional[Iterable[IndexEntry]] = None) -> None:
        self._entries: list[IndexEntry] = list(entries) if entries else []

    def append(self, entry: IndexEntry) -> None:
        """Add an entry; entries must arrive in ascending offset order."""
        self._entries.append(entry)

    def find(self, offset: int) -> tuple[IndexEntry, bool]:
        """Return the entry for ``offset`` or the closest smaller one.

        The flag is True only on an exact match. When no entry precedes
        the offset, the entry for the start of the segment is returned.
        """
        entries = self._entries
        idx = bisect.bisect_left(entries, offset, key=lambda e: e.relative_offset)
        if idx < len(entries) and entries[idx].relative_offset == offset:
            return entries[idx], True
        if idx == 0:
            return _START, False
        return entries[idx - 1], False

    def snapshot(self, length: int) -> IndexCache:
        """Return a cache holding only the first ``length`` entries."""
        return IndexCache(self._entries[:length])

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))