"""Flow batches that own a copy of their coalesced payload."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field

from .flowkey import DecapOutcome, PacketFlags
from .flowkey_ref import MAX_BYTES, MAX_SEGMENTS, PacketRefBatch, _DecapBase, _finalize_headers


@dataclass
class OwnedPacketBatch:
    """One coalesced flow: a header and a contiguous copy of all payload."""

    hdrbuf: bytearray = field(default_factory=bytearray)
    flags: PacketFlags = field(default_factory=PacketFlags)
    buf: bytearray = field(default_factory=bytearray)
    count: int = 0

    def __post_init__(self) -> None:
        self.hdrbuf = bytearray(self.hdrbuf)
        self.buf = bytearray(self.buf)

    @classmethod
    def from_ref(cls, prb: PacketRefBatch) -> OwnedPacketBatch:
        """Copy a referencing batch into one that owns its data."""
        return cls(
            hdrbuf=bytearray(prb.hdrbuf),
            flags=copy.deepcopy(prb.flags),
            buf=bytearray(b"".join(prb.segments)),
            count=len(prb.segments),
        )

    def size_bytes(self) -> int:
        return len(self.buf)

    def append(self, data) -> None:
        self.buf += data
        self.count += 1

    def extend(self, other: OwnedPacketBatch) -> None:
        """Take over all payload of ``other``, leaving it empty."""
        self.buf += other.buf
        self.count += other.count
        other.buf.clear()
        other.count = 0

    def is_appendable(self, size: int) -> bool:
        return self.count + 1 < MAX_SEGMENTS and len(self.buf) + size < MAX_BYTES

    def is_mergeable(self, other: OwnedPacketBatch) -> bool:
        return self.count + other.count < MAX_SEGMENTS and len(self.buf) + len(other.buf) < MAX_BYTES

    def finalize(self) -> list:
        """Complete the headers and return the buffers to write, virtio header first."""
        _finalize_headers(self.hdrbuf, self.flags, len(self.buf))
        return [self.flags.vnethdr.pack(), bytes(self.hdrbuf), bytes(self.buf)]


def _new_owned_batch(pkthdr, segment_size: int, flags: PacketFlags) -> OwnedPacketBatch:
    return OwnedPacketBatch(hdrbuf=bytearray(pkthdr), flags=flags)


class DecapBatch(_DecapBase):
    """Decapsulated packets grouped into flows holding their own copies of the data."""

    _create_batch = staticmethod(_new_owned_batch)

    @staticmethod
    def _keep_unrel(view: memoryview) -> bytes:
        return bytes(view)

    def push_packet_v4(self, ippkt, ecn_outer: int) -> DecapOutcome:
        return self._push_v4(ippkt, ecn_outer)

    def push_packet_v6(self, ippkt, ecn_outer: int) -> DecapOutcome:
        return self._push_v6(ippkt, ecn_outer)

    def push_packet(self, ippkt, ecn_outer: int) -> DecapOutcome:
        """Classify a packet of either IP version by its version nibble."""
        return self._push_any(ippkt, ecn_outer)