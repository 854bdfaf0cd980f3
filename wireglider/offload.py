"""Internet checksums and segmentation of GSO super-packets read from a tun device."""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass, field

from .virtio import (
    F_NEEDS_CSUM,
    GSO_ECN,
    GSO_NONE,
    GSO_TCPV4,
    GSO_TCPV6,
    GSO_UDP_L4,
    VirtioNetHdr,
)

IPPROTO_TCP = 6
IPPROTO_UDP = 17
TCP_HDR_LEN = 20
UDP_HDR_LEN = 8

_IP4_CSUM_OFFSET = 10
_IP4_ID_OFFSET = 4
_IP4_LEN_OFFSET = 2
_IP4_PROTO_OFFSET = 9
_IP4_SRC = slice(12, 16)
_IP4_DST = slice(16, 20)
_IP6_PLEN_OFFSET = 4
_IP6_NXT_OFFSET = 6
_IP6_SRC = slice(8, 24)
_IP6_DST = slice(24, 40)

_TCP_FIN = 0x01
_TCP_PSH = 0x08


def _ones_sum(data) -> int:
    raw = bytes(data)
    if len(raw) % 2:
        raw += b"\x00"
    return sum(struct.unpack(f"!{len(raw) // 2}H", raw))


def _fold(total: int) -> int:
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return total


def checksum(data, initial: int = 0) -> int:
    """Return the one's-complement Internet checksum of ``data`` plus a partial sum."""
    return ~_fold(initial + _ones_sum(data)) & 0xFFFF


def pseudo_header_checksum(protocol: int, srcaddr, dstaddr, length: int) -> int:
    """Return the folded, uncomplemented sum of a TCP/UDP pseudo-header."""
    total = _ones_sum(srcaddr) + _ones_sum(dstaddr) + protocol
    total += (length >> 16) + (length & 0xFFFF)
    return _fold(total)


def calc_l4_checksum(packet, isv6: bool, istcp: bool, csum_start: int) -> int:
    """Checksum the transport segment of an IP packet, pseudo-header included.

    Returns 0 for a packet whose transport checksum is already correct.
    """
    if isv6:
        src, dst = packet[_IP6_SRC], packet[_IP6_DST]
    else:
        src, dst = packet[_IP4_SRC], packet[_IP4_DST]
    proto = IPPROTO_TCP if istcp else IPPROTO_UDP
    segment = packet[csum_start:]
    return checksum(segment, pseudo_header_checksum(proto, src, dst, len(segment)))


@dataclass
class PacketBatch:
    """A run of IP packets laid out back to back, each ``segment_size`` long except the last."""

    data: bytes | bytearray | memoryview
    segment_size: int
    isv6: bool
    ecn: int
    prefix: bytes = b""
    unrel: list = field(default_factory=list)

    def nr_segments(self) -> int:
        return -(-len(self.data) // self.segment_size)

    def __iter__(self) -> Iterator[memoryview]:
        view = memoryview(self.data)
        for start in range(0, len(view), self.segment_size):
            yield view[start : start + self.segment_size]


def _ecn_of(buf: bytearray, isv6: bool) -> int:
    if isv6:
        return (int.from_bytes(buf[0:4], "big") >> 20) & 3
    return buf[1] & 3


def gso_split(inbuf, vnethdr: VirtioNetHdr) -> PacketBatch:
    """Split a tun super-packet into wire-ready segments with fresh checksums.

    ``inbuf`` is the IP packet that followed ``vnethdr`` on the tun device.
    Packets that need no segmentation come back as a single-packet batch.
    """
    buf = bytearray(inbuf)
    if not buf:
        raise ValueError("empty packet")
    csum_start = vnethdr.csum_start
    l4_csum_offset = csum_start + vnethdr.csum_offset
    isv6 = (buf[0] >> 4) == 6
    ecn = _ecn_of(buf, isv6)

    def whole() -> PacketBatch:
        return PacketBatch(data=buf, segment_size=len(buf), isv6=isv6, ecn=ecn)

    gso_type = vnethdr.gso_type & ~GSO_ECN
    if gso_type == GSO_NONE:
        if vnethdr.flags & F_NEEDS_CSUM:
            if not isv6:
                struct.pack_into("!H", buf, _IP4_CSUM_OFFSET, 0)
            struct.pack_into("!H", buf, l4_csum_offset, 0)
            if isv6:
                istcp = buf[_IP6_NXT_OFFSET] == IPPROTO_TCP
            else:
                istcp = buf[_IP4_PROTO_OFFSET] == IPPROTO_TCP
                struct.pack_into("!H", buf, _IP4_CSUM_OFFSET, checksum(buf[:csum_start]))
            struct.pack_into("!H", buf, l4_csum_offset, calc_l4_checksum(buf, isv6, istcp, csum_start))
        return whole()
    elif gso_type in (GSO_TCPV4, GSO_TCPV6):
        # The kernel's hdr_len may cover the whole first packet on the forward
        # path, so derive it from the TCP data offset instead.
        if len(buf) - csum_start < TCP_HDR_LEN:
            return whole()
        thlen = 4 * (buf[csum_start + 12] >> 4)
        if thlen < TCP_HDR_LEN:
            return whole()
        hdr_len = csum_start + thlen
        istcp = True
    elif gso_type == GSO_UDP_L4:
        hdr_len = csum_start + UDP_HDR_LEN
        istcp = False
    else:
        return whole()

    if len(buf) < hdr_len:
        return whole()

    gso_size = vnethdr.gso_size
    prefix = bytearray(buf[:hdr_len])
    rest = memoryview(buf)[hdr_len:]
    if rest and gso_size == 0:
        raise ValueError("gso_size must be positive")

    if not isv6:
        struct.pack_into("!H", prefix, _IP4_CSUM_OFFSET, 0)
    prefix[l4_csum_offset : l4_csum_offset + 2] = b"\x00\x00"

    tcpseq0 = struct.unpack_from("!I", prefix, csum_start + 4)[0] if istcp else 0

    out = bytearray()
    for i, start in enumerate(range(0, len(rest), gso_size)):
        chunk = rest[start : start + gso_size]
        is_last = start + len(chunk) >= len(rest)
        pkt = prefix + chunk

        if isv6:
            struct.pack_into("!H", pkt, _IP6_PLEN_OFFSET, len(pkt) - csum_start)
        else:
            if i:
                ip_id = struct.unpack_from("!H", pkt, _IP4_ID_OFFSET)[0]
                struct.pack_into("!H", pkt, _IP4_ID_OFFSET, (ip_id + i) & 0xFFFF)
            struct.pack_into("!H", pkt, _IP4_LEN_OFFSET, len(pkt))
            struct.pack_into("!H", pkt, _IP4_CSUM_OFFSET, checksum(pkt[:csum_start]))

        if istcp:
            struct.pack_into("!I", pkt, csum_start + 4, (tcpseq0 + gso_size * i) & 0xFFFFFFFF)
            if not is_last:
                # FIN and PSH belong on the final segment only
                pkt[csum_start + 13] &= ~(_TCP_FIN | _TCP_PSH) & 0xFF
        else:
            struct.pack_into("!H", pkt, csum_start + 4, len(pkt) - csum_start)

        struct.pack_into("!H", pkt, l4_csum_offset, calc_l4_checksum(pkt, isv6, istcp, csum_start))
        out += pkt

    return PacketBatch(data=out, segment_size=len(prefix) + gso_size, isv6=isv6, ecn=ecn)