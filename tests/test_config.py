import dataclasses
from datetime import timedelta

import pytest

from appendlog.config import GIB, KIB, Config, default_config


def test_default_config_values():
    cfg = default_config()
    assert cfg.max_segment_size == 1 * GIB
    assert cfg.max_record_data_size == 1 * KIB
    assert cfg.index_interval_bytes == 4 * KIB
    assert cfg.log_writer_buffer_size == 64 * KIB
    assert cfg.index_writer_buffer_size == 16 * KIB
    assert cfg.log_reader_buffer_size == 16 * KIB
    assert cfg.record_cache_size == 256
    assert cfg.index_cache_size == 500_000


def test_default_retention_is_disabled():
    cfg = default_config()
    assert cfg.retention == timedelta(0)
    assert cfg.retention_enabled is False


def test_default_config_equals_plain_constructor():
    assert default_config() == Config()


def test_with_changes_returns_modified_copy():
    cfg = default_config()
    changed = cfg.with_changes(max_segment_size=4 * KIB, retention=timedelta(milliseconds=100))
    assert changed.max_segment_size == 4 * KIB
    assert changed.retention_enabled is True
    assert changed.max_record_data_size == cfg.max_record_data_size
    assert cfg.max_segment_size == 1 * GIB


def test_with_changes_unknown_field_raises():
    with pytest.raises(TypeError):
        default_config().with_changes(no_such_field=1)


def test_config_is_immutable():
    cfg = default_config()
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.max_segment_size = 10
    assert cfg.max_segment_size == 1 * GIB