"""Operation identifiers and state vectors shared by the CRDT components."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass


@dataclass(frozen=True, order=True)
class OpId:
    """Globally unique operation identifier: a Lamport-style counter plus a peer id.

    Identifiers order by counter first, then by peer.
    """

    counter: int
    peer: int


class StateVector:
    """Highest counter seen for each peer."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[int, int] | None = None) -> None:
        self._entries: dict[int, int] = dict(entries or {})

    def get(self, peer: int) -> int | None:
        """Return the recorded counter for ``peer``, or ``None`` if unseen."""
        return self._entries.get(peer)

    def set(self, peer: int, counter: int) -> None:
        """Record ``counter`` as the value for ``peer``, replacing any previous one."""
        self._entries[peer] = counter

    def items(self) -> list[tuple[int, int]]:
        """Return ``(peer, counter)`` pairs sorted by peer."""
        return sorted(self._entries.items())

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, peer: object) -> bool:
        return peer in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StateVector):
            return NotImplemented
        return self._entries == other._entries

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"StateVector({dict(self.items())!r})"