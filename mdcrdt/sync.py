"""Operation-log synchronisation with causal buffering and message validation."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from .ids import OpId, StateVector


@dataclass(frozen=True)
class Operation:
    """An operation identified by ``id`` carrying an opaque payload."""

    id: OpId
    payload: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", bytes(self.payload))


@dataclass
class ChangeMessage:
    """A batch of operations computed relative to the state vector ``since``."""

    since: StateVector
    ops: list[Operation] = field(default_factory=list)


class MalformedKind(Enum):
    """Ways in which an operation can be malformed."""

    EMPTY_PAYLOAD = "empty payload"
    ZERO_COUNTER = "counter cannot be zero"
    INVALID_PAYLOAD = "invalid payload"
    INVALID_SEQUENCE = "invalid sequence"
    UNEXPECTED_FORMAT = "unexpected format"

    def __str__(self) -> str:
        return self.value


class ValidationError(Exception):
    """Base class for problems found in an incoming sync message."""


class MalformedOperationError(ValidationError):
    """Operation data is malformed or invalid."""

    def __init__(self, op_id: OpId, kind: MalformedKind) -> None:
        super().__init__(f"malformed operation {op_id!r}: {kind}")
        self.op_id = op_id
        self.kind = kind


class InvalidReferenceError(ValidationError):
    """Operation references a non-existent element."""

    def __init__(self, op_id: OpId) -> None:
        super().__init__(f"invalid reference in operation {op_id!r}")
        self.op_id = op_id


class ResourceLimitExceededError(ValidationError):
    """Message exceeds a configured resource limit."""

    def __init__(self, limit: int, actual: int) -> None:
        super().__init__(f"resource limit exceeded: {actual} > {limit}")
        self.limit = limit
        self.actual = actual


class BufferFullError(ValidationError):
    """The pending operation buffer would overflow."""

    def __init__(self, capacity: int) -> None:
        super().__init__(f"buffer full (capacity: {capacity})")
        self.capacity = capacity


@dataclass(frozen=True)
class ValidationLimits:
    """Limits applied when validating incoming messages."""

    max_ops_per_message: int = 10_000
    max_payload_bytes: int = 10 * 1024 * 1024
    max_pending_buffer: int = 100_000


def validate_changes(
    message: ChangeMessage,
    limits: ValidationLimits,
    pending_count: int,
) -> None:
    """Raise a :class:`ValidationError` if ``message`` breaks ``limits``."""
    op_count = len(message.ops)
    if op_count > limits.max_ops_per_message:
        raise ResourceLimitExceededError(limits.max_ops_per_message, op_count)

    total_payload = sum(len(op.payload) for op in message.ops)
    if total_payload > limits.max_payload_bytes:
        raise ResourceLimitExceededError(limits.max_payload_bytes, total_payload)

    if pending_count + op_count > limits.max_pending_buffer:
        raise BufferFullError(limits.max_pending_buffer)

    for op in message.ops:
        if not op.payload:
            raise MalformedOperationError(op.id, MalformedKind.EMPTY_PAYLOAD)
        if op.id.counter == 0:
            raise MalformedOperationError(op.id, MalformedKind.ZERO_COUNTER)


@dataclass(frozen=True)
class ConcurrentInsert:
    """Two peers inserted at the same position concurrently."""

    op_ids: tuple[OpId, ...]


@dataclass(frozen=True)
class ConcurrentDelete:
    """Two peers deleted the same element concurrently."""

    op_ids: tuple[OpId, ...]


@dataclass(frozen=True)
class AttributeConflict:
    """An attribute had concurrent updates; the winner is chosen by id."""

    key: str
    winner: OpId
    loser: OpId


SemanticConflict = Union[ConcurrentInsert, ConcurrentDelete, AttributeConflict]


@dataclass
class ApplyResult:
    """Outcome of applying a change message."""

    applied: list[OpId] = field(default_factory=list)
    buffered: list[OpId] = field(default_factory=list)
    conflicts: list[SemanticConflict] = field(default_factory=list)


class Document:
    """An operation log that applies remote changes in causal order per peer."""

    def __init__(self) -> None:
        self._ops: dict[OpId, bytes] = {}
        self._pending: dict[OpId, Operation] = {}
        self._outbox: set[OpId] = set()
        self._sent: set[OpId] = set()
        self._max_counter: dict[int, int] = {}

    def _store(self, op_id: OpId, payload: bytes) -> None:
        self._ops[op_id] = payload
        if op_id.counter > self._max_counter.get(op_id.peer, 0):
            self._max_counter[op_id.peer] = op_id.counter

    def _applied_counter(self, peer: int) -> int:
        return self._max_counter.get(peer, 0)

    def apply_op(self, op: Operation) -> None:
        """Record ``op`` directly; an already known id keeps its first payload."""
        if op.id not in self._ops:
            self._store(op.id, op.payload)

    def state_vector(self) -> StateVector:
        """Return the state vector covering every applied operation."""
        sv = StateVector()
        for op_id in self._ops:
            if op_id.counter > (sv.get(op_id.peer) or 0):
                sv.set(op_id.peer, op_id.counter)
        return sv

    def encode_changes_since(self, since: StateVector) -> ChangeMessage:
        """Return, in id order, every applied operation not covered by ``since``."""
        ops = [
            Operation(op_id, payload)
            for op_id, payload in sorted(self._ops.items())
            if op_id.counter > (since.get(op_id.peer) or 0)
        ]
        return ChangeMessage(StateVector(dict(since.items())), ops)

    def apply_changes(self, message: ChangeMessage) -> ApplyResult:
        """Apply ready operations and buffer those whose predecessors are missing."""
        result = ApplyResult()
        for op in message.ops:
            if op.id in self._ops:
                continue
            if op.id.counter > self._applied_counter(op.id.peer) + 1:
                self._pending[op.id] = op
                result.buffered.append(max(self._pending))
            else:
                self._store(op.id, op.payload)
                result.applied.append(op.id)
                self._drain_pending(result)
        return result

    def _drain_pending(self, result: ApplyResult) -> None:
        progressed = True
        while progressed:
            progressed = False
            for op_id in sorted(self._pending):
                if op_id.counter != self._applied_counter(op_id.peer) + 1:
                    continue
                op = self._pending.pop(op_id)
                self._store(op.id, op.payload)
                result.applied.append(op_id)
                result.buffered = [i for i in result.buffered if i != op_id]
                progressed = True

    def pending_count(self) -> int:
        """Return the number of causally unready operations."""
        return len(self._pending)

    def pending(self) -> list[Operation]:
        """Return the buffered operations in id order, e.g. for persistence."""
        return [Operation(op_id, op.payload) for op_id, op in sorted(self._pending.items())]

    def add_local_op(self, op: Operation) -> None:
        """Record a locally generated operation and queue it for sending."""
        self._store(op.id, op.payload)
        self._outbox.add(op.id)

    def outbox(self) -> list[Operation]:
        """Return, in id order, the local operations not yet sent."""
        return [
            Operation(op_id, self._ops[op_id])
            for op_id in sorted(self._outbox)
            if op_id in self._ops
        ]

    def mark_sent(self, op_ids: Iterable[OpId]) -> None:
        """Move the given operations from the outbox to the sent set."""
        for op_id in op_ids:
            if op_id in self._outbox:
                self._outbox.discard(op_id)
                self._sent.add(op_id)

    def mark_confirmed(self, op_ids: Iterable[OpId]) -> None:
        """Stop tracking the given sent operations."""
        for op_id in op_ids:
            self._sent.discard(op_id)

    def restore_pending(self, ops: Iterable[Operation]) -> None:
        """Re-buffer previously persisted pending operations not yet applied."""
        for op in ops:
            if op.id not in self._ops:
                self._pending[op.id] = op