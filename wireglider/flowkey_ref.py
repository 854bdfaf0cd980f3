"""Flow batches that reference decapsulated packet data instead of copying it."""

from __future__ import annotations

import struct
from collections import deque

from .evaluator import IP4_HDR_LEN, append_flow, evaluate_packet, fill_fk_ip4, fill_fk_ip6
from .flowkey import DecapOutcome, FlowKey, FlowMap, PacketFlags
from .offload import checksum, pseudo_header_checksum

MAX_SEGMENTS = 64
MAX_BYTES = 65536
# the first two write vectors are taken by the virtio header and the packet header
_RESERVED_IOV = 2


def _finalize_headers(hdrbuf: bytearray, flags: PacketFlags, payload_len: int) -> None:
    """Fix up lengths and checksums of a coalesced header for ``payload_len`` bytes of payload."""
    csum_start = flags.vnethdr.csum_start
    l4len = len(hdrbuf) - csum_start + payload_len
    if not flags.istcp:
        struct.pack_into("!H", hdrbuf, csum_start + 4, l4len & 0xFFFF)

    if flags.isv6:
        proto = hdrbuf[6]
        src, dst = bytes(hdrbuf[8:24]), bytes(hdrbuf[24:40])
        struct.pack_into("!H", hdrbuf, 4, l4len & 0xFFFF)
    else:
        proto = hdrbuf[9]
        src, dst = bytes(hdrbuf[12:16]), bytes(hdrbuf[16:20])
        struct.pack_into("!H", hdrbuf, 2, (len(hdrbuf) + payload_len) & 0xFFFF)
        struct.pack_into("!H", hdrbuf, 10, 0)
        struct.pack_into("!H", hdrbuf, 10, checksum(hdrbuf[:csum_start]))

    # the device completes the transport checksum from this partial sum
    l4_csum = pseudo_header_checksum(proto, src, dst, l4len)
    struct.pack_into("!H", hdrbuf, csum_start + flags.vnethdr.csum_offset, l4_csum)


class PacketRefBatch:
    """One coalesced flow: a copied header plus views of each packet's payload."""

    def __init__(self, hdr=b"", flags: PacketFlags | None = None) -> None:
        self.hdrbuf = bytearray(hdr)
        self.flags = flags if flags is not None else PacketFlags()
        self.segments: list[memoryview] = []
        self.nbytes = 0

    def __repr__(self) -> str:
        return f"PacketRefBatch(segments={len(self.segments)}, nbytes={self.nbytes}, flags={self.flags!r})"

    @property
    def _iov_count(self) -> int:
        return _RESERVED_IOV + len(self.segments)

    def size_bytes(self) -> int:
        return self.nbytes

    def append(self, data) -> None:
        view = memoryview(data)
        self.segments.append(view)
        self.nbytes += len(view)

    def extend(self, other: PacketRefBatch) -> None:
        """Take over all payload of ``other``, leaving it empty."""
        self.segments.extend(other.segments)
        self.nbytes += other.nbytes
        other.segments.clear()
        other.nbytes = 0

    def is_appendable(self, size: int) -> bool:
        return self._iov_count + 1 < MAX_SEGMENTS and self.nbytes + size < MAX_BYTES

    def is_mergeable(self, other: PacketRefBatch) -> bool:
        return (
            self._iov_count + other._iov_count < MAX_SEGMENTS + _RESERVED_IOV
            and self.nbytes + other.nbytes < MAX_BYTES
        )

    def finalize(self) -> list:
        """Complete the headers and return the buffers to write, virtio header first."""
        _finalize_headers(self.hdrbuf, self.flags, self.nbytes)
        return [self.flags.vnethdr.pack(), bytes(self.hdrbuf), *self.segments]


def _new_ref_batch(pkthdr, segment_size: int, flags: PacketFlags) -> PacketRefBatch:
    return PacketRefBatch(pkthdr, flags)


class _DecapBase:
    """Sorts decapsulated packets into TCP/UDP flows per address family."""

    def __init__(self, has_uso: bool) -> None:
        self.has_uso = has_uso
        self.tcp4 = FlowMap()
        self.udp4 = FlowMap()
        self.tcp6 = FlowMap()
        self.udp6 = FlowMap()
        # packets that are not aggregated
        self.unrel: deque = deque()
        # packets that must go back to the peer for protocol reasons
        self.retpkt: list = []
        # unique UDP flow number
        self.udpid = 0

    def _push(self, ippkt, ecn_outer: int, fill_ip, tcpflow: FlowMap, udpflow: FlowMap) -> DecapOutcome:
        view = memoryview(ippkt)
        fk = FlowKey()
        flags = PacketFlags()
        res = evaluate_packet(view, fill_ip, fk, flags, ecn_outer, self.has_uso)
        if res is DecapOutcome.GRO_ADD:
            hdr_len = flags.vnethdr.hdr_len
            self.udpid = append_flow(
                tcpflow if flags.istcp else udpflow,
                fk,
                view[:hdr_len],
                view[hdr_len:],
                flags,
                self.udpid,
                self._create_batch,
            )
        elif res is DecapOutcome.GRO_NOADD:
            self.unrel.append(self._keep_unrel(view))
        return res

    def _push_v4(self, ippkt, ecn_outer: int) -> DecapOutcome:
        return self._push(ippkt, ecn_outer, fill_fk_ip4, self.tcp4, self.udp4)

    def _push_v6(self, ippkt, ecn_outer: int) -> DecapOutcome:
        return self._push(ippkt, ecn_outer, fill_fk_ip6, self.tcp6, self.udp6)

    def _push_any(self, ippkt, ecn_outer: int) -> DecapOutcome:
        """Classify a packet of either IP version by its version nibble."""
        if len(ippkt) < IP4_HDR_LEN:
            return DecapOutcome.GRO_NOADD
        version = ippkt[0] >> 4
        if version == 4:
            return self._push_v4(ippkt, ecn_outer)
        if version == 6:
            return self._push_v6(ippkt, ecn_outer)
        return DecapOutcome.GRO_NOADD


class DecapRefBatch(_DecapBase):
    """Decapsulated packets grouped into flows that reference the receive buffer."""

    _create_batch = staticmethod(_new_ref_batch)

    @staticmethod
    def _keep_unrel(view: memoryview):
        return view

    def push_packet_v4(self, ippkt, ecn_outer: int) -> DecapOutcome:
        return self._push_v4(ippkt, ecn_outer)

    def push_packet_v6(self, ippkt, ecn_outer: int) -> DecapOutcome:
        return self._push_v6(ippkt, ecn_outer)

    def push_packet(self, ippkt, ecn_outer: int) -> DecapOutcome:
        """Classify a packet of either IP version by its version nibble."""
        return self._push_any(ippkt, ecn_outer)