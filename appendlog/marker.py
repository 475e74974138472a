"""The marker file that records a clean shutdown of a log."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from appendlog.files import FILE_PERMISSIONS, sync_dir
from appendlog.record import LogError

CLEAN_SHUTDOWN_MARKER_FILE = ".clean_shutdown"

_TIMESTAMP_PATTERN = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?"
)

PathLike = Union[str, os.PathLike]


def _format_timestamp(value: datetime) -> str:
    text = value.isoformat()
    if value.utcoffset() == timedelta(0) and text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


def _parse_timestamp(text: str) -> datetime:
    match = _TIMESTAMP_PATTERN.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    base, fraction, zone = match.groups()
    normalized = base
    if fraction:
        normalized += "." + (fraction + "000000")[:6]
    if zone:
        normalized += "+00:00" if zone == "Z" else zone
    return datetime.fromisoformat(normalized)


@dataclass(frozen=True)
class ShutdownMarker:
    """What a log looked like when it was closed cleanly.

    ``last_offset`` is -1 for a log without records.
    """

    timestamp: datetime
    last_offset: int
    segment_count: int

    def to_json(self) -> str:
        """Return the marker as indented JSON ending in a newline."""
        document = {
            "timestamp": _format_timestamp(self.timestamp),
            "last_offset": self.last_offset,
            "segment_count": self.segment_count,
        }
        return json.dumps(document, indent=2) + "\n"

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> ShutdownMarker:
        """Parse a marker; raises ValueError on malformed content."""
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid shutdown marker: {exc}") from exc
        if not isinstance(document, dict):
            raise ValueError("invalid shutdown marker: not an object")
        try:
            timestamp = document["timestamp"]
            last_offset = document["last_offset"]
            segment_count = document["segment_count"]
        except KeyError as exc:
            raise ValueError(f"invalid shutdown marker: missing {exc.args[0]}") from exc
        if not isinstance(timestamp, str):
            raise ValueError("invalid shutdown marker: timestamp is not a string")
        for name, value in (("last_offset", last_offset), ("segment_count", segment_count)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"invalid shutdown marker: {name} is not an integer")
        return cls(_parse_timestamp(timestamp), last_offset, segment_count)


def marker_path(directory: PathLike) -> str:
    """Return the path of the shutdown marker inside a log directory."""
    return os.path.join(os.fspath(directory), CLEAN_SHUTDOWN_MARKER_FILE)


def write_shutdown_marker(directory: PathLike, marker: ShutdownMarker) -> None:
    """Write the marker durably, replacing any previous one."""
    path = marker_path(directory)
    try:
        fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, FILE_PERMISSIONS)
    except OSError as exc:
        raise LogError(f"failed to create shutdown marker file: {exc}") from exc
    with open(fd, "w", encoding="utf-8") as stream:
        try:
            stream.write(marker.to_json())
            stream.flush()
        except OSError as exc:
            raise LogError(f"failed to encode shutdown marker: {exc}") from exc
        try:
            os.fsync(stream.fileno())
        except OSError as exc:
            raise LogError(f"failed to sync shutdown marker file: {exc}") from exc
    try:
        sync_dir(directory)
    except OSError as exc:
        raise LogError(f"failed to sync directory: {exc}") from exc


def read_shutdown_marker(directory: PathLike) -> Optional[ShutdownMarker]:
    """Return the marker of a log directory, or None if there is none."""
    path = marker_path(directory)
    try:
        with open(path, encoding="utf-8") as stream:
            text = stream.read()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise LogError(f"failed to read shutdown marker: {exc}") from exc
    try:
        return ShutdownMarker.from_json(text)
    except ValueError as exc:
        raise LogError(str(exc)) from exc