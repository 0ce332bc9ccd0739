"""Crash-tolerant on-disk storage for document snapshots, op segments and tombstones."""

from __future__ import annotations

import os
import re
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

SUPERBLOCK_A = "superblock_a"
SUPERBLOCK_B = "superblock_b"
SEGMENT_FILE = "segment"
SEGMENT_TEMP_FILE = "segment.tmp"
OPS_DIR = "ops"
ARCHIVE_DIR = "archive"
TOMBSTONES_FILE = "tombstones.bin"
FORMAT_VERSION = 1

_SUPERBLOCK_MAGIC = b"MDSB"
_SUPERBLOCK_HEADER = struct.Struct("<IBQIQ")
_TOMBSTONE_COUNT = struct.Struct("<Q")
_U64_MAX = 2**64 - 1
_INDEX_PATTERN = re.compile(r"\+?[0-9]+")


class StorageError(Exception):
    """Base class for storage failures that are not plain I/O errors."""


class CorruptStorageError(StorageError):
    """Stored data failed to decode or did not match its recorded checksum."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"corrupt storage: {reason}")
        self.reason = reason


class MissingStorageError(StorageError):
    """No snapshot has been written to this storage yet."""

    def __init__(self) -> None:
        super().__init__("missing storage")


@dataclass(frozen=True)
class TombstoneRetention:
    """How many tombstones survive compaction; ``limit`` of ``None`` keeps all."""

    limit: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise ValueError("tombstone retention limit cannot be negative")

    @classmethod
    def keep_all(cls) -> TombstoneRetention:
        """Keep every tombstone."""
        return cls(None)

    @classmethod
    def max_count(cls, count: int) -> TombstoneRetention:
        """Keep only the ``count`` most recently recorded tombstones."""
        return cls(count)

    def prune(self, values: list[int]) -> tuple[list[int], int]:
        """Return the kept tombstones and how many were pruned."""
        if self.limit is None:
            return list(values), 0
        if self.limit == 0:
            return [], len(values)
        if len(values) <= self.limit:
            return list(values), 0
        start = len(values) - self.limit
        return list(values[start:]), start


@dataclass(frozen=True)
class CompactionReport:
    """What a compaction moved to the archive and how tombstones were pruned."""

    archived_segments: int
    archived_ops: int
    pruned_tombstones: int
    kept_tombstones: int


class Snapshot(NamedTuple):
    """A snapshot read back from storage."""

    payload: bytes
    pending_ops: bytes
    seq_ref_index_flag: bool


@dataclass(frozen=True)
class _Superblock:
    version: int
    seq_ref_index_flag: bool
    pending_ops: bytes
    segment_checksum: int
    segment_len: int

    def encode(self) -> bytes:
        header = _SUPERBLOCK_HEADER.pack(
            self.version,
            int(self.seq_ref_index_flag),
            self.segment_len,
            self.segment_checksum,
            len(self.pending_ops),
        )
        return _SUPERBLOCK_MAGIC + header + self.pending_ops

    @classmethod
    def decode(cls, data: bytes) -> _Superblock:
        prefix = len(_SUPERBLOCK_MAGIC)
        body_start = prefix + _SUPERBLOCK_HEADER.size
        if len(data) < body_start or data[:prefix] != _SUPERBLOCK_MAGIC:
            raise CorruptStorageError("decode")
        version, flag, segment_len, checksum, pending_len = _SUPERBLOCK_HEADER.unpack_from(
            data, prefix
        )
        pending = data[body_start:]
        if flag not in (0, 1) or len(pending) != pending_len:
            raise CorruptStorageError("decode")
        return cls(version, bool(flag), bytes(pending), checksum, segment_len)


def _checksum(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def _next_index(directory: Path, prefix: str) -> int:
    """Return one past the highest ``<prefix><n>`` index in ``directory``, or 0."""
    if not directory.exists():
        return 0
    indices = [
        int(rest)
        for entry in directory.iterdir()
        if entry.name.startswith(prefix)
        and _INDEX_PATTERN.fullmatch(rest := entry.name[len(prefix):])
    ]
    return max(indices) + 1 if indices else 0


def _op_sort_key(path: Path) -> tuple[int, str]:
    rest = path.name[len("op_"):] if path.name.startswith("op_") else ""
    return (int(rest) if _INDEX_PATTERN.fullmatch(rest) else -1, path.name)


def _encode_tombstones(values: list[int]) -> bytes:
    for value in values:
        if not 0 <= value <= _U64_MAX:
            raise ValueError(f"tombstone out of range: {value}")
    return _TOMBSTONE_COUNT.pack(len(values)) + struct.pack(f"<{len(values)}Q", *values)


def _decode_tombstones(data: bytes) -> list[int]:
    if len(data) < _TOMBSTONE_COUNT.size:
        raise CorruptStorageError("decode")
    (count,) = _TOMBSTONE_COUNT.unpack_from(data)
    body = data[_TOMBSTONE_COUNT.size:]
    if len(body) != count * 8:
        raise CorruptStorageError("decode")
    return list(struct.unpack(f"<{count}Q", body))


class Storage:
    """A storage directory holding one segment guarded by two superblocks."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"Storage({str(self.root)!r})"

    def write_snapshot(
        self, payload: bytes, pending_ops: bytes, seq_ref_index_flag: bool
    ) -> None:
        """Atomically replace the segment and rewrite both superblocks."""
        payload = bytes(payload)
        temp_path = self.root / SEGMENT_TEMP_FILE
        temp_path.write_bytes(payload)
        os.replace(temp_path, self.root / SEGMENT_FILE)

        encoded = _Superblock(
            version=FORMAT_VERSION,
            seq_ref_index_flag=bool(seq_ref_index_flag),
            pending_ops=bytes(pending_ops),
            segment_checksum=_checksum(payload),
            segment_len=len(payload),
        ).encode()
        (self.root / SUPERBLOCK_A).write_bytes(encoded)
        (self.root / SUPERBLOCK_B).write_bytes(encoded)

    def read_snapshot(self) -> Snapshot:
        """Read the segment verified against the first readable superblock."""
        last_error: OSError | None = None
        for name in (SUPERBLOCK_A, SUPERBLOCK_B):
            try:
                data = (self.root / name).read_bytes()
            except OSError as exc:
                last_error = exc
                continue
            superblock = _Superblock.decode(data)
            if superblock.version != FORMAT_VERSION:
                raise CorruptStorageError("version")
            segment = (self.root / SEGMENT_FILE).read_bytes()
            if len(segment) != superblock.segment_len:
                raise CorruptStorageError("length mismatch")
            if _checksum(segment) != superblock.segment_checksum:
                raise CorruptStorageError("checksum mismatch")
            return Snapshot(segment, superblock.pending_ops, superblock.seq_ref_index_flag)

        if last_error is None or isinstance(last_error, FileNotFoundError):
            raise MissingStorageError() from last_error
        raise last_error

    def append_op_segment(self, payload: bytes) -> Path:
        """Write ``payload`` as the next numbered op segment and return its path."""
        ops_dir = self.root / OPS_DIR
        ops_dir.mkdir(parents=True, exist_ok=True)
        path = ops_dir / f"op_{_next_index(ops_dir, 'op_')}"
        path.write_bytes(bytes(payload))
        return path

    def compact(
        self,
        payload: bytes,
        pending_ops: bytes,
        seq_ref_index_flag: bool,
        retention: TombstoneRetention,
        tombstones: list[int],
    ) -> CompactionReport:
        """Archive the current segment and op segments, prune tombstones, write a new snapshot."""
        archive_dir = self.root / ARCHIVE_DIR
        archive_dir.mkdir(parents=True, exist_ok=True)

        archived_segments = 0
        segment_path = self.root / SEGMENT_FILE
        if segment_path.exists():
            index = _next_index(archive_dir, "segment_")
            os.replace(segment_path, archive_dir / f"segment_{index}")
            archived_segments += 1

        archived_ops = 0
        ops_dir = self.root / OPS_DIR
        if ops_dir.exists():
            for path in sorted(ops_dir.iterdir(), key=_op_sort_key):
                if path.is_file():
                    index = _next_index(archive_dir, "op_")
                    os.replace(path, archive_dir / f"op_{index}")
                    archived_ops += 1

        all_tombstones = self.read_tombstones() + list(tombstones)
        kept, pruned = retention.prune(all_tombstones)
        (self.root / TOMBSTONES_FILE).write_bytes(_encode_tombstones(kept))

        self.write_snapshot(payload, pending_ops, seq_ref_index_flag)

        return CompactionReport(
            archived_segments=archived_segments,
            archived_ops=archived_ops,
            pruned_tombstones=pruned,
            kept_tombstones=len(kept),
        )

    def read_tombstones(self) -> list[int]:
        """Return the stored tombstones, or an empty list if none were written."""
        path = self.root / TOMBSTONES_FILE
        if not path.exists():
            return []
        return _decode_tombstones(path.read_bytes())