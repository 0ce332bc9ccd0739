"""Simple, obviously-correct reference implementations used for differential testing."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Generic, TypeVar, Union

from .ids import OpId, StateVector

T = TypeVar("T")


@dataclass(frozen=True)
class InsertOp(Generic[T]):
    """Insert ``value`` with identifier ``id`` after element ``after`` (``None`` = head)."""

    after: OpId | None
    id: OpId
    value: T
    right_origin: OpId | None = None


@dataclass(frozen=True)
class DeleteOp:
    """Delete the element ``target``; ``id`` identifies the delete itself."""

    target: OpId
    id: OpId


SequenceOp = Union[InsertOp, DeleteOp]


@dataclass
class _Element(Generic[T]):
    id: OpId
    value: T
    after: OpId | None
    right_origin: OpId | None
    deleted: bool = False


def _sign(a: OpId, b: OpId) -> int:
    return (a > b) - (a < b)


@dataclass
class Sequence(Generic[T]):
    """A naive sequence CRDT that rebuilds its whole order on every insert."""

    _elements: list[_Element[T]] = field(default_factory=list, init=False)

    def apply(self, op: SequenceOp) -> None:
        """Apply an insert or delete operation."""
        if isinstance(op, InsertOp):
            self.insert(op.after, op.value, op.id, op.right_origin)
        elif isinstance(op, DeleteOp):
            self.delete(op.target)
        else:
            raise TypeError(f"unsupported sequence operation: {op!r}")

    def insert(
        self,
        after: OpId | None,
        value: T,
        id: OpId,
        right_origin: OpId | None,
    ) -> None:
        """Insert ``value``; inserting an already known id does nothing."""
        if any(elem.id == id for elem in self._elements):
            return
        self._elements.insert(0, _Element(id, value, after, right_origin))
        self._rebuild_order()

    def delete(self, target: OpId) -> None:
        """Tombstone the element ``target``; unknown targets are ignored."""
        for elem in self._elements:
            if elem.id == target:
                elem.deleted = True
                return

    def elements(self) -> list[T]:
        """Return the visible values in document order."""
        return [elem.value for elem in self._elements if not elem.deleted]

    def _rebuild_order(self) -> None:
        by_id = {elem.id: elem for elem in self._elements}

        children: dict[OpId | None, list[OpId]] = {}
        for elem_id in sorted(by_id):
            children.setdefault(by_id[elem_id].after, []).append(elem_id)

        def compare(a: OpId, b: OpId) -> int:
            ra, rb = by_id[a].right_origin, by_id[b].right_origin
            if ra is not None and rb is not None:
                return _sign(b, a) if ra == rb else _sign(ra, rb)
            if ra is not None:
                return -1
            if rb is not None:
                return 1
            return _sign(b, a)

        for ids in children.values():
            ids.sort(key=cmp_to_key(compare))

        ordered: list[OpId] = []
        stack = list(reversed(children.get(None, [])))
        while stack:
            current = stack.pop()
            ordered.append(current)
            stack.extend(reversed(children.get(current, [])))

        self._elements = [by_id[elem_id] for elem_id in ordered]


@dataclass
class SyncOracle:
    """A naive operation log keyed by operation id."""

    _ops: dict[OpId, bytes] = field(default_factory=dict, init=False)

    def apply(self, id: OpId, payload: bytes) -> None:
        """Record an operation; the first payload seen for an id wins."""
        self._ops.setdefault(id, bytes(payload))

    def state_vector(self) -> StateVector:
        """Return the highest counter recorded for each peer."""
        sv = StateVector()
        for op_id in self._ops:
            current = sv.get(op_id.peer) or 0
            if op_id.counter > current:
                sv.set(op_id.peer, op_id.counter)
        return sv

    def changes_since(self, since: StateVector) -> list[tuple[OpId, bytes]]:
        """Return, in id order, every operation not covered by ``since``."""
        return [
            (op_id, payload)
            for op_id, payload in sorted(self._ops.items())
            if op_id.counter > (since.get(op_id.peer) or 0)
        ]

    def same_state(self, other: SyncOracle) -> bool:
        """Return whether both oracles hold exactly the same operations."""
        return self._ops == other._ops