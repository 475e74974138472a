"""Configuration for an append-only log."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import timedelta

BYTE = 1
KIB = 1024 * BYTE
MIB = 1024 * KIB
GIB = 1024 * MIB


@dataclass(frozen=True)
class Config:
    """Tunable limits and buffer sizes of a log.

    Sizes are in bytes except the two cache sizes, which count entries.
    A zero ``retention`` disables time-based segment cleanup.
    """

    max_segment_size: int = 1 * GIB
    max_record_data_size: int = 1 * KIB
    index_interval_bytes: int = 4 * KIB
    log_writer_buffer_size: int = 64 * KIB
    index_writer_buffer_size: int = 16 * KIB
    log_reader_buffer_size: int = 16 * KIB
    record_cache_size: int = 256
    index_cache_size: int = 500_000
    retention: timedelta = timedelta(0)

    @property
    def retention_enabled(self) -> bool:
        """Whether time-based retention cleanup is switched on."""
        return self.retention != timedelta(0)

    def with_changes(self, **kwargs) -> Config:
        """Return a copy with the given fields replaced."""
        return dataclasses.replace(self, **kwargs)


def default_config() -> Config:
    """Return the defaults meant for production use."""
    return Config()