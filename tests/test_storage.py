import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from mdcrdt.storage import (
    ARCHIVE_DIR,
    FORMAT_VERSION,
    OPS_DIR,
    SEGMENT_FILE,
    SUPERBLOCK_A,
    SUPERBLOCK_B,
    TOMBSTONES_FILE,
    CompactionReport,
    CorruptStorageError,
    MissingStorageError,
    Storage,
    StorageError,
    TombstoneRetention,
    _checksum,
    _Superblock,
)


def active_storage_bytes(root: Path) -> int:
    return sum(
        (root / name).stat().st_size
        for name in (SEGMENT_FILE, SUPERBLOCK_A, SUPERBLOCK_B, TOMBSTONES_FILE)
        if (root / name).exists()
    )


def test_crash_recovery_missing_superblock(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"payload", b"pending", False)
    (tmp_path / SUPERBLOCK_A).unlink()

    payload, pending, flag = storage.read_snapshot()
    assert payload == b"payload"
    assert pending == b"pending"
    assert flag is False


def test_corruption_detection(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"payload", b"pending", False)
    segment_path = tmp_path / SEGMENT_FILE
    segment = bytearray(segment_path.read_bytes())
    segment[0] ^= 0xFF
    segment_path.write_bytes(bytes(segment))

    with pytest.raises(CorruptStorageError) as info:
        storage.read_snapshot()
    assert info.value.reason == "checksum mismatch"


def test_version_mismatch(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"payload", b"pending", False)
    bad = _Superblock(
        version=FORMAT_VERSION + 1,
        seq_ref_index_flag=False,
        pending_ops=b"",
        segment_checksum=_checksum(b"payload"),
        segment_len=7,
    ).encode()
    (tmp_path / SUPERBLOCK_A).write_bytes(bad)
    (tmp_path / SUPERBLOCK_B).write_bytes(bad)

    with pytest.raises(CorruptStorageError) as info:
        storage.read_snapshot()
    assert info.value.reason == "version"


def test_length_mismatch(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"payload", b"pending", False)
    (tmp_path / SEGMENT_FILE).write_bytes(b"short")

    with pytest.raises(CorruptStorageError) as info:
        storage.read_snapshot()
    assert info.value.reason == "length mismatch"


def test_missing_storage(tmp_path):
    storage = Storage(tmp_path)
    with pytest.raises(MissingStorageError):
        storage.read_snapshot()


def test_both_superblocks_missing(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"payload", b"pending", False)
    (tmp_path / SUPERBLOCK_A).unlink()
    (tmp_path / SUPERBLOCK_B).unlink()

    with pytest.raises(MissingStorageError):
        storage.read_snapshot()


def test_seq_ref_index_flag_preserved(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"payload", b"pending", True)
    assert storage.read_snapshot().seq_ref_index_flag is True


def test_compact_archives_segments_and_ops(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"old", b"pending", False)
    storage.append_op_segment(b"op1")
    storage.append_op_segment(b"op2")

    report = storage.compact(
        b"new", b"pending", False, TombstoneRetention.keep_all(), [1, 2]
    )

    archived = [p for p in (tmp_path / ARCHIVE_DIR).iterdir() if p.is_file()]
    assert report.archived_segments >= 1
    assert report.archived_ops >= 2
    assert len(archived) >= 3
    assert storage.read_snapshot().payload == b"new"
    assert list((tmp_path / OPS_DIR).iterdir()) == []


def test_compact_archived_contents(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"old", b"", False)
    storage.append_op_segment(b"op1")
    storage.append_op_segment(b"op2")
    storage.compact(b"new", b"", False, TombstoneRetention.keep_all(), [])

    archive = tmp_path / ARCHIVE_DIR
    assert (archive / "segment_0").read_bytes() == b"old"
    assert sorted(
        (archive / name).read_bytes() for name in ("op_0", "op_1")
    ) == [b"op1", b"op2"]


def test_compact_prunes_tombstones(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"payload", b"pending", False)

    report = storage.compact(
        b"payload", b"pending", False, TombstoneRetention.max_count(2), [1, 2, 3]
    )
    assert report.pruned_tombstones == 1
    assert report.kept_tombstones == 2
    assert storage.read_tombstones() == [2, 3]


def test_compact_accumulates_tombstones(tmp_path):
    storage = Storage(tmp_path)
    storage.compact(b"a", b"", False, TombstoneRetention.keep_all(), [5, 6])
    report = storage.compact(b"b", b"", False, TombstoneRetention.keep_all(), [7])
    assert report == CompactionReport(
        archived_segments=1, archived_ops=0, pruned_tombstones=0, kept_tombstones=3
    )
    assert storage.read_tombstones() == [5, 6, 7]


def test_compact_max_count_zero_prunes_all(tmp_path):
    storage = Storage(tmp_path)
    report = storage.compact(b"a", b"", False, TombstoneRetention.max_count(0), [1, 2])
    assert report.pruned_tombstones == 2
    assert report.kept_tombstones == 0
    assert report.archived_segments == 0
    assert storage.read_tombstones() == []


def test_negative_retention_rejected():
    with pytest.raises(ValueError):
        TombstoneRetention.max_count(-1)


def test_read_tombstones_empty_without_file(tmp_path):
    assert Storage(tmp_path).read_tombstones() == []


def test_corrupt_tombstones_file(tmp_path):
    storage = Storage(tmp_path)
    (tmp_path / TOMBSTONES_FILE).write_bytes(b"\x05")
    with pytest.raises(CorruptStorageError) as info:
        storage.read_tombstones()
    assert info.value.reason == "decode"


def test_garbage_superblock_is_decode_error(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"payload", b"", False)
    (tmp_path / SUPERBLOCK_A).write_bytes(b"garbage")
    with pytest.raises(CorruptStorageError) as info:
        storage.read_snapshot()
    assert info.value.reason == "decode"


def test_missing_segment_with_superblocks_is_io_error(tmp_path):
    storage = Storage(tmp_path)
    storage.write_snapshot(b"payload", b"", False)
    (tmp_path / SEGMENT_FILE).unlink()
    with pytest.raises(FileNotFoundError):
        storage.read_snapshot()


def test_append_op_segment_numbers_files(tmp_path):
    storage = Storage(tmp_path)
    (tmp_path / OPS_DIR).mkdir()
    (tmp_path / OPS_DIR / "op_notanumber").write_bytes(b"x")
    first = storage.append_op_segment(b"one")
    second = storage.append_op_segment(b"two")
    assert first.name == "op_0"
    assert second.name == "op_1"
    assert second.read_bytes() == b"two"


def test_errors_share_base_class():
    assert issubclass(CorruptStorageError, StorageError)
    assert issubclass(MissingStorageError, StorageError)
    assert str(CorruptStorageError("version")) == "corrupt storage: version"
    assert str(MissingStorageError()) == "missing storage"


def test_storage_overhead_targets(tmp_path):
    storage = Storage(tmp_path)
    payload = b"a" * 20_000
    storage.write_snapshot(payload, b"pending", False)
    overhead = max(active_storage_bytes(tmp_path) - len(payload), 0)
    assert overhead <= len(payload) // 2


def test_compacted_storage_overhead_targets(tmp_path):
    storage = Storage(tmp_path)
    payload = b"b" * 30_000
    storage.write_snapshot(payload, b"pending", False)
    storage.append_op_segment(b"op")
    storage.compact(payload, b"pending", False, TombstoneRetention.max_count(1), [42])
    overhead = max(active_storage_bytes(tmp_path) - len(payload), 0)
    assert overhead <= len(payload) // 5


@settings(max_examples=30, deadline=None)
@given(payload=st.binary(), pending=st.binary(), flag=st.booleans())
def test_snapshot_round_trip(payload, pending, flag):
    with tempfile.TemporaryDirectory() as root:
        storage = Storage(root)
        storage.write_snapshot(payload, pending, flag)
        assert storage.read_snapshot() == (payload, pending, flag)


@given(
    values=st.lists(st.integers(min_value=0, max_value=2**64 - 1)),
    limit=st.integers(min_value=0, max_value=20),
)
def test_prune_keeps_newest(values, limit):
    kept, pruned = TombstoneRetention.max_count(limit).prune(values)
    assert len(kept) + pruned == len(values)
    assert len(kept) == min(limit, len(values))
    assert kept == values[len(values) - len(kept):]