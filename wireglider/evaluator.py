"""Packet classification and flow aggregation for the decapsulation path."""

from __future__ import annotations

import copy
import struct
from collections.abc import Callable

from .flowkey import DecapOutcome, FlowKey, FlowMap, PacketFlags, find_flow
from .offload import IPPROTO_TCP, IPPROTO_UDP, TCP_HDR_LEN, UDP_HDR_LEN, calc_l4_checksum, checksum
from .virtio import F_NEEDS_CSUM, GSO_ECN, GSO_TCPV4, GSO_TCPV6, GSO_UDP_L4

IPPROTO_RAW = 255
IP4_HDR_LEN = 20
IP6_HDR_LEN = 40
IP_DF = 0x4000
IPTOS_ECN_MASK = 0x03
IPTOS_DSCP_MASK = 0xFC
IPTOS_ECN_CE = 0x03

_TCP_FIN = 0x01
_TCP_SYN = 0x02
_TCP_RST = 0x04
_TCP_PSH = 0x08
_TCP_URG = 0x20
_TCP_RES2 = 0xC0
_TCP_CSUM_OFFSET = 16
_UDP_CSUM_OFFSET = 6

# RFC 6040 section 4.2: nibbles indexed by inner(2 bits)||outer(2 bits),
# each nibble is warn(2 bits)||resulting ecn(2 bits); warn 3 means drop.
_ECN_MAP = 0x3B3331223151F880


def fill_fk_ip4(fk: FlowKey, ippkt, flags: PacketFlags):
    """Fill ``fk`` from an IPv4 header; return ``(header, protocol)`` or ``(None, IPPROTO_RAW)``."""
    if len(ippkt) < IP4_HDR_LEN:
        return None, IPPROTO_RAW
    # long headers are not supported
    if (ippkt[0] & 0x0F) * 4 != IP4_HDR_LEN:
        return None, IPPROTO_RAW
    ip_len, = struct.unpack_from("!H", ippkt, 2)
    if len(ippkt) != ip_len:
        return None, IPPROTO_RAW
    ip_off, = struct.unpack_from("!H", ippkt, 6)
    if ip_off & ~IP_DF:
        return None, IPPROTO_RAW
    if checksum(ippkt[:IP4_HDR_LEN], 0):
        return None, IPPROTO_RAW
    flags.vnethdr.hdr_len = flags.vnethdr.csum_start = IP4_HDR_LEN
    flags.isv6 = False
    fk.srcip = bytes(ippkt[12:16])
    fk.dstip = bytes(ippkt[16:20])
    fk.frag = ip_off
    fk.tos = ippkt[1]
    fk.ttl = ippkt[8]
    return bytes(ippkt[:IP4_HDR_LEN]), ippkt[9]


def fill_fk_ip6(fk: FlowKey, ippkt, flags: PacketFlags):
    """Fill ``fk`` from an IPv6 header; return ``(header, next header)`` or ``(None, IPPROTO_RAW)``."""
    if len(ippkt) < IP6_HDR_LEN:
        return None, IPPROTO_RAW
    plen, = struct.unpack_from("!H", ippkt, 4)
    if len(ippkt) - IP6_HDR_LEN != plen:
        return None, IPPROTO_RAW
    flow, = struct.unpack_from("!I", ippkt, 0)
    flags.isv6 = True
    flags.vnethdr.hdr_len = flags.vnethdr.csum_start = IP6_HDR_LEN
    fk.srcip = bytes(ippkt[8:24])
    fk.dstip = bytes(ippkt[24:40])
    fk.frag = 0
    fk.tos = (flow >> 20) & 0xFF
    fk.ttl = ippkt[7]
    return bytes(ippkt[:IP6_HDR_LEN]), ippkt[6]


def fill_fk_ecn(fk: FlowKey, ecn_outer: int) -> bool:
    """Combine inner and outer ECN per RFC 6040; False means the packet must be dropped.

    Only the ECN bits of ``ecn_outer`` are used.
    """
    ecn_inner = fk.tos & IPTOS_ECN_MASK
    newecn = _ECN_MAP >> ((((ecn_inner << 2) | (ecn_outer & IPTOS_ECN_MASK))) * 4)
    if (newecn >> 2) & 3 == 3:
        return False
    fk.tos = (fk.tos & IPTOS_DSCP_MASK) | (newecn & IPTOS_ECN_MASK)
    return True


def fill_fk_tcp(fk: FlowKey, ippkt, flags: PacketFlags):
    """Fill the TCP part of ``fk``; return the TCP header or None if it cannot be coalesced."""
    iphsize = flags.vnethdr.csum_start
    # empty segments are excluded as well
    if len(ippkt) - iphsize <= TCP_HDR_LEN:
        return None
    if calc_l4_checksum(ippkt, flags.isv6, True, iphsize):
        return None
    thlen = 4 * (ippkt[iphsize + 12] >> 4)
    if thlen < TCP_HDR_LEN or len(ippkt) - iphsize <= thlen:
        return None
    tcpflags = ippkt[iphsize + 13]
    if tcpflags & (_TCP_FIN | _TCP_SYN | _TCP_RST | _TCP_URG | _TCP_RES2):
        return None
    flags.istcp = True
    flags.ispsh = bool(tcpflags & _TCP_PSH)
    flags.vnethdr.gso_type = GSO_TCPV6 if flags.isv6 else GSO_TCPV4
    if fk.tos & IPTOS_ECN_MASK == IPTOS_ECN_CE:
        flags.vnethdr.gso_type |= GSO_ECN
    flags.vnethdr.hdr_len += thlen
    flags.vnethdr.csum_offset = _TCP_CSUM_OFFSET
    fk.srcport, fk.dstport, fk.seq, fk.tcpack = struct.unpack_from("!HHII", ippkt, iphsize)
    return bytes(ippkt[iphsize : iphsize + thlen])


def fill_fk_udp(fk: FlowKey, ippkt, flags: PacketFlags):
    """Fill the UDP part of ``fk``; return the UDP header or None if it cannot be coalesced."""
    iphsize = flags.vnethdr.csum_start
    if len(ippkt) - iphsize <= UDP_HDR_LEN:
        return None
    if calc_l4_checksum(ippkt, flags.isv6, False, iphsize):
        return None
    flags.istcp = False
    flags.ispsh = False
    flags.vnethdr.gso_type = GSO_UDP_L4
    flags.vnethdr.hdr_len += UDP_HDR_LEN
    flags.vnethdr.csum_offset = _UDP_CSUM_OFFSET
    fk.srcport, fk.dstport = struct.unpack_from("!HH", ippkt, iphsize)
    fk.tcpack = 0
    # each new UDP packet sorts last in its own flow
    fk.seq = 0xFFFFFFFF
    return bytes(ippkt[iphsize : iphsize + UDP_HDR_LEN])


_MIN_HEADER = {fill_fk_ip4: IP4_HDR_LEN, fill_fk_ip6: IP6_HDR_LEN}


def evaluate_packet(
    ippkt,
    fill_ip: Callable,
    fk: FlowKey,
    flags: PacketFlags,
    ecn_outer: int,
    has_uso: bool,
) -> DecapOutcome:
    """Decide whether a decapsulated packet can join a coalesced flow."""
    try:
        min_len = _MIN_HEADER[fill_ip]
    except KeyError:
        raise ValueError("unknown IP header parser") from None
    if len(ippkt) < min_len or len(ippkt) > 0xFFFF:
        return DecapOutcome.GRO_NOADD

    ip, proto = fill_ip(fk, ippkt, flags)
    if ip is None:
        return DecapOutcome.GRO_NOADD

    if not fill_fk_ecn(fk, ecn_outer):
        return DecapOutcome.GRO_DROP

    if proto == IPPROTO_TCP:
        if fill_fk_tcp(fk, ippkt, flags) is None:
            return DecapOutcome.GRO_NOADD
    elif proto == IPPROTO_UDP:
        if not has_uso or fill_fk_udp(fk, ippkt, flags) is None:
            return DecapOutcome.GRO_NOADD
    else:
        return DecapOutcome.GRO_NOADD

    flags.vnethdr.flags = F_NEEDS_CSUM
    flags.vnethdr.gso_size = fk.segment_size = len(ippkt) - flags.vnethdr.hdr_len
    return DecapOutcome.GRO_ADD


def _mergeable_keys(istcp: bool, first: FlowKey, second: FlowKey, size: int) -> bool:
    return first.matches_tcp(second, size) if istcp else first.matches_udp(second)


def merge_next_flow(flow: FlowMap, key: FlowKey) -> bool:
    """Fold the next greater flow into ``key``'s batch; True if it was merged and removed."""
    nxt = flow.higher(key)
    if nxt is None:
        return False
    batch = flow[key]
    if batch.flags.ispsh or batch.flags.issealed:
        return False
    other = flow[nxt]
    if not batch.is_mergeable(other):
        return False
    if not _mergeable_keys(batch.flags.istcp, key, nxt, batch.size_bytes()):
        return False
    batch.extend(other)
    flow.pop(nxt)
    return True


def merge_prev_flow(flow: FlowMap, key: FlowKey) -> bool:
    """Fold ``key``'s batch into the next smaller flow; True if ``key`` was merged and removed."""
    prev = flow.lower(key)
    if prev is None:
        return False
    prev_batch = flow[prev]
    if prev_batch.flags.ispsh or prev_batch.flags.issealed:
        return False
    batch = flow[key]
    if not prev_batch.is_mergeable(batch):
        return False
    if not _mergeable_keys(batch.flags.istcp, prev, key, prev_batch.size_bytes()):
        return False
    prev_batch.extend(batch)
    flow.pop(key)
    return True


def append_flow(
    flow: FlowMap,
    fk: FlowKey,
    pkthdr,
    pktdata,
    flags: PacketFlags,
    udpid: int,
    create_batch: Callable,
) -> int:
    """Add an evaluated packet to ``flow``, creating or merging batches; return the next UDP flow id.

    ``create_batch(pkthdr, segment_size, flags)`` builds a new batch object.
    """
    key, usable = find_flow(flow, fk, pktdata, flags)
    if not usable:
        if not flags.istcp:
            fk.seq = udpid
            udpid = (udpid + 1) & 0xFFFFFFFF
        if fk in flow:
            key = fk
        else:
            key = flow.insert(fk, create_batch(bytes(pkthdr), fk.segment_size, copy.deepcopy(flags)))
    batch = flow[key]
    batch.append(pktdata)
    if len(pktdata) != fk.segment_size:
        batch.flags.issealed = True

    if batch.flags.isv6:
        word, = struct.unpack_from("!I", batch.hdrbuf, 0)
        word = (word & ~0x0FF00000) | (fk.tos << 20)
        struct.pack_into("!I", batch.hdrbuf, 0, word & 0xFFFFFFFF)
    else:
        batch.hdrbuf[1] = fk.tos

    if flags.istcp and flags.ispsh:
        batch.hdrbuf[batch.flags.vnethdr.csum_start + 13] |= _TCP_PSH
        batch.flags.ispsh = True

    if not merge_next_flow(flow, key):
        merge_prev_flow(flow, key)
    return udpid