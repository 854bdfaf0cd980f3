"""Flow keys and the ordered flow maps used to coalesce decapsulated packets."""

from __future__ import annotations

import bisect
import dataclasses
import enum
from collections.abc import Iterator
from dataclasses import dataclass, field

from .virtio import VirtioNetHdr


@dataclass
class PacketFlags:
    """Offload metadata collected while a packet is evaluated."""

    vnethdr: VirtioNetHdr = field(default_factory=VirtioNetHdr)
    isv6: bool = False
    istcp: bool = False
    ispsh: bool = False
    issealed: bool = False


@dataclass(order=True)
class FlowKey:
    """Identifies a flow; ``segment_size`` and ``seq`` are the variable part."""

    srcip: bytes = b""
    dstip: bytes = b""
    srcport: int = 0
    dstport: int = 0
    tcpack: int = 0
    frag: int = 0
    tos: int = 0
    ttl: int = 0
    segment_size: int = 0
    seq: int = 0

    def _fixed(self) -> tuple:
        return (
            self.srcip,
            self.dstip,
            self.srcport,
            self.dstport,
            self.tcpack,
            self.frag,
            self.tos,
            self.ttl,
        )

    def matches(self, other: FlowKey) -> bool:
        """True if both keys agree on everything but segment size and sequence."""
        return self._fixed() == other._fixed()

    def matches_tcp(self, other: FlowKey, size: int) -> bool:
        return self.matches(other) and self.segment_size <= other.segment_size and self.seq + size == other.seq

    def matches_udp(self, other: FlowKey) -> bool:
        return self.matches(other) and self.segment_size == other.segment_size


class DecapOutcome(enum.IntEnum):
    GRO_ADD = 0
    GRO_NOADD = 1
    GRO_DROP = 2


class FlowMap:
    """Flow batches keyed by :class:`FlowKey`, iterated from the greatest key down."""

    def __init__(self) -> None:
        self._keys: list[FlowKey] = []
        self._batches: list = []

    def _index(self, key: FlowKey) -> int:
        i = bisect.bisect_left(self._keys, key)
        if i < len(self._keys) and self._keys[i] == key:
            return i
        raise KeyError(key)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: FlowKey) -> bool:
        try:
            self._index(key)
        except KeyError:
            return False
        return True

    def __getitem__(self, key: FlowKey):
        return self._batches[self._index(key)]

    def __iter__(self) -> Iterator[FlowKey]:
        return reversed(self._keys)

    def keys(self) -> list[FlowKey]:
        return list(reversed(self._keys))

    def values(self) -> list:
        return list(reversed(self._batches))

    def items(self) -> list[tuple[FlowKey, object]]:
        return list(zip(reversed(self._keys), reversed(self._batches)))

    def lower_bound(self, key: FlowKey) -> FlowKey | None:
        """Return the first key in map order not greater than ``key``, or None."""
        i = bisect.bisect_right(self._keys, key) - 1
        return self._keys[i] if i >= 0 else None

    def higher(self, key: FlowKey) -> FlowKey | None:
        """Return the key just before ``key`` in map order (the next greater one)."""
        i = self._index(key) + 1
        return self._keys[i] if i < len(self._keys) else None

    def lower(self, key: FlowKey) -> FlowKey | None:
        """Return the key just after ``key`` in map order (the next smaller one)."""
        i = self._index(key)
        return self._keys[i - 1] if i > 0 else None

    def insert(self, key: FlowKey, batch) -> FlowKey:
        """Add a new flow and return the stored key; raise ValueError if it exists."""
        i = bisect.bisect_left(self._keys, key)
        if i < len(self._keys) and self._keys[i] == key:
            raise ValueError("flow already present")
        stored = dataclasses.replace(key)
        self._keys.insert(i, stored)
        self._batches.insert(i, batch)
        return stored

    def pop(self, key: FlowKey):
        """Remove a flow and return its batch."""
        i = self._index(key)
        del self._keys[i]
        return self._batches.pop(i)


def find_flow(flow: FlowMap, fk: FlowKey, pktdata, flags: PacketFlags) -> tuple[FlowKey | None, bool]:
    """Find the flow ``fk`` may be appended to; returns ``(key, usable)``."""
    key = flow.lower_bound(fk)
    if key is None:
        return None, False
    batch = flow[key]
    if batch.flags.ispsh or batch.flags.issealed:
        return key, False
    if not batch.is_appendable(len(pktdata)):
        return key, False
    if flags.istcp:
        usable = key.matches_tcp(fk, len(pktdata))
    else:
        usable = key.matches_udp(fk)
    return key, usable