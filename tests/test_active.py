import os
import threading

import pytest

from appendlog.active import ActiveSegment
from appendlog.config import KIB, Config
from appendlog.index import INDEX_ENTRY_SIZE, IndexEntry
from appendlog.record import RECORD_HEADER_SIZE, LogError, Record, encode_record
from appendlog.sealed import SealedSegment


def small_config(**changes):
    cfg = Config(
        max_segment_size=4 * KIB,
        max_record_data_size=512,
        index_interval_bytes=256,
        log_writer_buffer_size=1 * KIB,
        index_writer_buffer_size=512,
        log_reader_buffer_size=512,
        record_cache_size=16,
        index_cache_size=100,
    )
    return cfg.with_changes(**changes)


@pytest.fixture
def segment(tmp_path):
    seg = ActiveSegment(tmp_path, 0, small_config())
    yield seg
    seg.close()


def test_new_segment_creates_preallocated_files(tmp_path):
    cfg = small_config()
    seg = ActiveSegment(tmp_path, 0, cfg)
    try:
        log_path = tmp_path / "00000000000000000000.log"
        index_path = tmp_path / "00000000000000000000.index"
        assert log_path.exists()
        assert index_path.exists()
        assert os.path.getsize(log_path) == cfg.max_segment_size
        assert seg.length() == 0
        assert seg.size() == 0
    finally:
        seg.close()


def test_creates_missing_directory(tmp_path):
    directory = tmp_path / "nested" / "dir"
    seg = ActiveSegment(directory, 0, small_config())
    try:
        assert directory.is_dir()
        assert seg.append(b"x") == 0
    finally:
        seg.close()


def test_base_offset_names_files_and_offsets_stay_relative(tmp_path):
    seg = ActiveSegment(tmp_path, 42, small_config())
    try:
        assert seg.base_offset() == 42
        assert (tmp_path / "00000000000000000042.log").exists()
        assert seg.append(b"first") == 0
        assert seg.read(0).offset == 0
    finally:
        seg.close()


def test_append_returns_sequential_offsets(segment):
    offsets = [segment.append(f"record-{i}".encode()) for i in range(10)]
    assert offsets == list(range(10))
    assert segment.length() == 10


def test_size_tracks_encoded_bytes(segment):
    payloads = [b"test record", b"another record", b""]
    for payload in payloads:
        segment.append(payload)
    assert segment.size() == sum(RECORD_HEADER_SIZE + len(p) for p in payloads)


def test_read_from_cache_before_flush(segment):
    offset = segment.append(b"cached record", 7)
    record = segment.read(offset)
    assert record == Record(offset, 7, b"cached record")


def test_read_after_sync(segment):
    offset = segment.append(b"flushed record", 1234567890)
    segment.sync()
    record = segment.read(offset)
    assert record.data == b"flushed record"
    assert record.timestamp == 1234567890


def test_read_after_automatic_flushes(segment):
    for i in range(100):
        segment.append(f"record-{i:03d}".encode())
    for i in range(100):
        assert segment.read(i).data == f"record-{i:03d}".encode()


def test_read_beyond_last_offset_raises(segment):
    for i in range(3):
        segment.append(f"record-{i}".encode())
    with pytest.raises(LogError, match="greater than the last written offset"):
        segment.read(3)
    with pytest.raises(LogError):
        segment.read(100)


def test_data_over_limit_is_rejected(segment):
    cfg = small_config()
    with pytest.raises(LogError):
        segment.append(bytes(cfg.max_record_data_size + 1))
    assert segment.length() == 0
    assert segment.append(b"valid record") == 0


def test_data_at_limit_round_trips(segment):
    data = bytes(i % 256 for i in range(small_config().max_record_data_size))
    offset = segment.append(data)
    segment.sync()
    assert segment.read(offset).data == data


def test_synced_bytes_match_encoding(tmp_path):
    seg = ActiveSegment(tmp_path, 0, small_config())
    payloads = [b"alpha", b"beta", b"gamma"]
    for i, payload in enumerate(payloads):
        seg.append(payload, 100 + i)
    seg.sync()
    expected = b"".join(
        encode_record(Record(i, 100 + i, p)) for i, p in enumerate(payloads)
    )
    with open(tmp_path / "00000000000000000000.log", "rb") as fh:
        on_disk = fh.read(len(expected) + 4)
    seg.close()
    assert on_disk[: len(expected)] == expected
    assert on_disk[len(expected):] == bytes(4)


def test_record_larger_than_write_buffer_goes_straight_to_file(tmp_path):
    seg = ActiveSegment(tmp_path, 0, small_config(log_writer_buffer_size=64))
    try:
        data = bytes(range(100))
        offset = seg.append(data)
        with open(tmp_path / "00000000000000000000.log", "rb") as fh:
            head = fh.read(RECORD_HEADER_SIZE + len(data))
        assert head == encode_record(Record(0, 0, data))
        assert seg.read(offset).data == data
    finally:
        seg.close()


def test_index_entries_follow_interval(tmp_path):
    seg = ActiveSegment(tmp_path, 0, small_config(index_interval_bytes=50))
    for i in range(10):
        seg.append(f"record-{i:02d}-padding".encode())
    seg.sync()
    raw = (tmp_path / "00000000000000000000.index").read_bytes()
    try:
        assert len(raw) % INDEX_ENTRY_SIZE == 0
        entries = [
            IndexEntry.decode(raw[i : i + INDEX_ENTRY_SIZE])
            for i in range(0, len(raw), INDEX_ENTRY_SIZE)
        ]
        assert len(entries) > 1
        assert entries[0] == IndexEntry(0, 0)
        offsets = [e.relative_offset for e in entries]
        assert offsets == sorted(set(offsets))
        positions = [e.position for e in entries]
        assert all(b - a >= 50 for a, b in zip(positions, positions[1:]))
        for i in range(10):
            assert seg.read(i).data == f"record-{i:02d}-padding".encode()
    finally:
        seg.close()


def test_closed_segment_reopens_as_sealed(tmp_path):
    seg = ActiveSegment(tmp_path, 0, small_config(index_interval_bytes=30))
    for i in range(12):
        seg.append(f"r{i:02d}".encode(), i)
    seg.close()
    sealed = SealedSegment(tmp_path, 0)
    try:
        assert sealed.length() == 12
        for i in range(12):
            assert sealed.read(i) == Record(i, i, f"r{i:02d}".encode())
    finally:
        sealed.close()


def test_close_is_idempotent_and_blocks_further_use(tmp_path):
    seg = ActiveSegment(tmp_path, 0, small_config())
    seg.append(b"data")
    seg.close()
    seg.close()
    with pytest.raises(LogError, match="segment is closed"):
        seg.append(b"more")
    with pytest.raises(LogError, match="segment is closed"):
        seg.sync()
    with pytest.raises(LogError, match="segment is closed"):
        seg.read(0)


def test_concurrent_appends_get_unique_offsets(segment):
    results = []
    lock = threading.Lock()

    def worker(worker_id):
        for i in range(50):
            offset = segment.append(f"g{worker_id}-r{i}".encode())
            with lock:
                results.append(offset)

    threads = [threading.Thread(target=worker, args=(g,)) for g in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == list(range(500))
    assert segment.length() == 500