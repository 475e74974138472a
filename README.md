# appendlog

`appendlog` provides the storage pieces of an append-only log of byte records
kept on disk. Each record has a sequential offset, a timestamp and a data
payload. Records are grouped into segments. A segment is stored as two files:

- a `.log` file of length-prefixed records, each guarded by a CRC32 checksum;
- a sparse `.index` file that maps relative offsets to byte positions.

Files are named after the segment's base offset, zero-padded to 20 digits, for
example `00000000000000000000.log`.

## Installation

```
pip install appendlog
```

The package has no third-party dependencies. It uses `mmap` and `os.fsync`, and
is meant for POSIX systems.

## Modules

- `appendlog.config`: `Config` is a frozen dataclass. Its fields are
  `max_segment_size`, `max_record_data_size`, `index_interval_bytes`,
  `log_writer_buffer_size`, `index_writer_buffer_size`,
  `log_reader_buffer_size`, `record_cache_size`, `index_cache_size` and
  `retention`, which is a `timedelta`. `with_changes(**kwargs)` returns a
  modified copy. `retention_enabled` is true when `retention` is non-zero.
  `default_config()` returns the defaults. Size constants `BYTE`, `KIB`,
  `MIB` and `GIB` are also provided.
- `appendlog.active`: `ActiveSegment(log_dir, base_offset, config)` is the
  writable segment. It has these methods:
  - `append(data, timestamp=0)` returns the relative offset of the new record.
  - `read(offset)` returns the record at a relative offset.
  - `length()`, `size()` and `base_offset()` report the segment's state.
  - `sync()` flushes and fsyncs both files.
  - `close()` syncs the files and releases them.

  The log file is preallocated to `max_segment_size` and memory-mapped. Records
  still in the write buffer are served from an in-memory cache.
- `appendlog.sealed`: `SealedSegment(log_dir, base_offset)` opens an existing
  segment read-only, using memory maps. It offers `read(offset)`, `length()`
  (computed once, then cached), `base_offset()` and `close()`.
  `binary_search_index` searches raw index bytes.
- `appendlog.recovery`: `recover_last_segment(directory, base_offset, config)`
  scans a segment's log file. It cuts the file at the first incomplete,
  oversized or checksum-failing record and rebuilds the index. If no valid
  record remains, it deletes both files. The module also offers
  `scan_log_file`, `scan_for_valid_boundary` and `rebuild_index`.
- `appendlog.marker`: `ShutdownMarker(timestamp, last_offset, segment_count)`
  can be written to a directory's `.clean_shutdown` file as JSON and read back.
  Use `write_shutdown_marker(directory, marker)` to write it and
  `read_shutdown_marker(directory)` to read it. The reader returns `None` when
  no marker exists.
- `appendlog.record`: provides these names:
  - `Record` (`offset`, `timestamp`, `data`).
  - `encode_record` and `find_record`.
  - `RecordCache`.
  - The errors `LogError` and `CorruptRecordError`.
- `appendlog.index`: provides `IndexEntry` (8 bytes on disk, encoded with
  `encode` and `decode`) and `IndexCache`, which has `append`, `find` and
  `snapshot`.
- `appendlog.files`: path helpers `segment_base_path`, `log_file_path`,
  `index_file_path` and `parse_base_offset`, plus `preallocate` and `sync_dir`.

## Usage

```python
from appendlog.active import ActiveSegment
from appendlog.config import KIB, default_config
from appendlog.sealed import SealedSegment

config = default_config().with_changes(max_segment_size=64 * KIB)

segment = ActiveSegment("/tmp/mylog", 0, config)
first = segment.append(b"hello")
segment.append(b"world", timestamp=1234567890)
segment.sync()
print(segment.read(first).data)   # b'hello'
segment.close()

sealed = SealedSegment("/tmp/mylog", 0)
print(sealed.length())            # 2
print(sealed.read(1).timestamp)   # 1234567890
sealed.close()
```

After a crash, recover the last segment before you open it as a sealed segment:

```python
from appendlog.recovery import recover_last_segment

recover_last_segment("/tmp/mylog", 0, config)
```

An `ActiveSegment` always starts writing at byte 0 of its file. Give each new
active segment a base offset whose files do not hold records yet.

## Errors

Failures are raised as `appendlog.record.LogError`. Examples are data larger
than `max_record_data_size`, an offset past the last written record, and
reading a closed segment. A checksum mismatch on read raises
`CorruptRecordError`, which is a subclass of `LogError`.

## What this package does not do

The package has no single log object that ties segments together. The caller
has to do that work:

- keep the list of segments;
- start a new active segment when the current one fills up;
- turn absolute offsets into segment-relative ones;
- decide on opening whether recovery is needed, for example by checking for a
  shutdown marker;
- delete expired segments.

`Config.retention` is only a setting. No code in the package removes segments.
There is no command-line tool and no server.

## Running the tests

```
pip install -e ".[test]"
pytest
```