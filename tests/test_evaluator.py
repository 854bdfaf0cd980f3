import ipaddress
import struct

from wireglider.evaluator import (
    IPPROTO_RAW,
    IPTOS_ECN_CE,
    append_flow,
    evaluate_packet,
    fill_fk_ecn,
    fill_fk_ip4,
    fill_fk_ip6,
    merge_next_flow,
    merge_prev_flow,
)
from wireglider.flowkey import DecapOutcome, FlowKey, FlowMap, PacketFlags
from wireglider.offload import IPPROTO_TCP, IPPROTO_UDP, calc_l4_checksum, checksum
from wireglider.virtio import F_NEEDS_CSUM, GSO_TCPV4, GSO_TCPV6, GSO_UDP_L4

SRC4 = ipaddress.ip_address("192.0.2.1").packed
DST4 = ipaddress.ip_address("192.0.2.2").packed
SRC6 = ipaddress.ip_address("2001:db8::1").packed
DST6 = ipaddress.ip_address("2001:db8::2").packed

ACK = 0x10
PSH = 0x08
SYN = 0x02


def payload(n):
    return bytes(i & 0xFF for i in range(n))


def l4_tcp(seq, tcpflags, data):
    return bytearray(struct.pack("!HHIIBBHHH", 1000, 2000, seq, 7, 5 << 4, tcpflags, 65535, 0, 0)) + data


def l4_udp(data):
    return bytearray(struct.pack("!HHHH", 1000, 2000, 8 + len(data), 0)) + data


def ip4(l4, proto, tos=0, ip_off=0x4000):
    hdr = bytearray(
        struct.pack("!BBHHHBBH4s4s", 0x45, tos, 20 + len(l4), 1, ip_off, 64, proto, 0, SRC4, DST4)
    )
    struct.pack_into("!H", hdr, 10, checksum(hdr, 0))
    pkt = hdr + l4
    off = 16 if proto == IPPROTO_TCP else 6
    struct.pack_into("!H", pkt, 20 + off, calc_l4_checksum(pkt, False, proto == IPPROTO_TCP, 20))
    return bytes(pkt)


def ip6(l4, proto, tos=0):
    hdr = bytearray(struct.pack("!IHBB16s16s", (6 << 28) | (tos << 20), len(l4), proto, 64, SRC6, DST6))
    pkt = hdr + l4
    off = 16 if proto == IPPROTO_TCP else 6
    struct.pack_into("!H", pkt, 40 + off, calc_l4_checksum(pkt, True, proto == IPPROTO_TCP, 40))
    return bytes(pkt)


def tcp4(seq, n=100, tcpflags=ACK, tos=0):
    return ip4(l4_tcp(seq, tcpflags, payload(n)), IPPROTO_TCP, tos)


class FakeBatch:
    def __init__(self, hdr, segment_size, flags):
        self.hdrbuf = bytearray(hdr)
        self.flags = flags
        self.chunks = []

    def size_bytes(self):
        return sum(len(c) for c in self.chunks)

    def append(self, data):
        self.chunks.append(bytes(data))

    def extend(self, other):
        self.chunks += other.chunks
        other.chunks = []

    def is_appendable(self, size):
        return len(self.chunks) + 1 < 64 and self.size_bytes() + size < 65536

    def is_mergeable(self, other):
        return len(self.chunks) + len(other.chunks) < 64 and self.size_bytes() + other.size_bytes() < 65536


def push(flow, pkt, udpid=0):
    fk = FlowKey()
    flags = PacketFlags()
    assert evaluate_packet(pkt, fill_fk_ip4, fk, flags, 0, True) is DecapOutcome.GRO_ADD
    hlen = flags.vnethdr.hdr_len
    return append_flow(flow, fk, pkt[:hlen], pkt[hlen:], flags, udpid, FakeBatch)


def test_fill_fk_ip4_valid():
    fk, flags = FlowKey(), PacketFlags()
    pkt = tcp4(1)
    hdr, proto = fill_fk_ip4(fk, pkt, flags)
    assert proto == IPPROTO_TCP
    assert hdr == pkt[:20]
    assert fk.srcip == SRC4 and fk.dstip == DST4
    assert flags.vnethdr.csum_start == 20 and not flags.isv6


def test_fill_fk_ip4_bad_checksum():
    pkt = bytearray(tcp4(1))
    pkt[10] ^= 0xFF
    assert fill_fk_ip4(FlowKey(), pkt, PacketFlags()) == (None, IPPROTO_RAW)


def test_fill_fk_ip4_fragment_rejected():
    pkt = ip4(l4_tcp(1, ACK, payload(10)), IPPROTO_TCP, ip_off=0x2000)
    assert fill_fk_ip4(FlowKey(), pkt, PacketFlags()) == (None, IPPROTO_RAW)


def test_fill_fk_ip4_length_mismatch():
    pkt = tcp4(1) + b"\x00"
    assert fill_fk_ip4(FlowKey(), pkt, PacketFlags()) == (None, IPPROTO_RAW)


def test_fill_fk_ip6_valid_and_tos():
    fk, flags = FlowKey(), PacketFlags()
    pkt = ip6(l4_tcp(1, ACK, payload(10)), IPPROTO_TCP, tos=0xB8)
    hdr, proto = fill_fk_ip6(fk, pkt, flags)
    assert proto == IPPROTO_TCP
    assert fk.tos == 0xB8
    assert fk.srcip == SRC6
    assert flags.isv6 and flags.vnethdr.hdr_len == 40


def test_fill_fk_ip6_bad_payload_length():
    pkt = ip6(l4_tcp(1, ACK, payload(10)), IPPROTO_TCP) + b"\x00"
    assert fill_fk_ip6(FlowKey(), pkt, PacketFlags()) == (None, IPPROTO_RAW)


def test_fill_fk_ecn_not_ect_inner_ce_outer_drops():
    assert not fill_fk_ecn(FlowKey(tos=0), IPTOS_ECN_CE)


def test_fill_fk_ecn_ect0_inner_ce_outer_becomes_ce():
    fk = FlowKey(tos=0xB8 | 2)
    assert fill_fk_ecn(fk, IPTOS_ECN_CE)
    assert fk.tos == 0xB8 | IPTOS_ECN_CE


def test_fill_fk_ecn_not_ect_both_unchanged():
    fk = FlowKey(tos=0xB8)
    assert fill_fk_ecn(fk, 0)
    assert fk.tos == 0xB8


def test_evaluate_tcp4_add():
    fk, flags = FlowKey(), PacketFlags()
    pkt = tcp4(9999, 100)
    assert evaluate_packet(pkt, fill_fk_ip4, fk, flags, 0, True) is DecapOutcome.GRO_ADD
    assert flags.istcp
    assert flags.vnethdr.gso_type == GSO_TCPV4
    assert flags.vnethdr.flags == F_NEEDS_CSUM
    assert flags.vnethdr.gso_size == fk.segment_size == 100
    assert flags.vnethdr.hdr_len == len(pkt) - 100
    assert fk.seq == 9999 and fk.srcport == 1000 and fk.dstport == 2000


def test_evaluate_tcp6_add():
    fk, flags = FlowKey(), PacketFlags()
    pkt = ip6(l4_tcp(5, ACK | PSH, payload(50)), IPPROTO_TCP)
    assert evaluate_packet(pkt, fill_fk_ip6, fk, flags, 0, True) is DecapOutcome.GRO_ADD
    assert flags.vnethdr.gso_type == GSO_TCPV6
    assert flags.ispsh


def test_evaluate_syn_not_added():
    pkt = tcp4(1, 100, tcpflags=SYN)
    assert evaluate_packet(pkt, fill_fk_ip4, FlowKey(), PacketFlags(), 0, True) is DecapOutcome.GRO_NOADD


def test_evaluate_bad_tcp_checksum_not_added():
    pkt = bytearray(tcp4(1, 100))
    pkt[-1] ^= 0xFF
    assert evaluate_packet(pkt, fill_fk_ip4, FlowKey(), PacketFlags(), 0, True) is DecapOutcome.GRO_NOADD


def test_evaluate_ecn_drop():
    pkt = tcp4(1, 100)
    assert evaluate_packet(pkt, fill_fk_ip4, FlowKey(), PacketFlags(), IPTOS_ECN_CE, True) is DecapOutcome.GRO_DROP


def test_evaluate_udp_depends_on_uso():
    pkt = ip4(l4_udp(payload(100)), IPPROTO_UDP)
    assert evaluate_packet(pkt, fill_fk_ip4, FlowKey(), PacketFlags(), 0, False) is DecapOutcome.GRO_NOADD
    fk, flags = FlowKey(), PacketFlags()
    assert evaluate_packet(pkt, fill_fk_ip4, fk, flags, 0, True) is DecapOutcome.GRO_ADD
    assert flags.vnethdr.gso_type == GSO_UDP_L4
    assert fk.seq == 0xFFFFFFFF
    assert not flags.istcp


def test_evaluate_short_and_oversized():
    assert evaluate_packet(b"\x45" * 10, fill_fk_ip4, FlowKey(), PacketFlags(), 0, True) is DecapOutcome.GRO_NOADD
    big = b"\x45" + bytes(65535)
    assert evaluate_packet(big, fill_fk_ip4, FlowKey(), PacketFlags(), 0, True) is DecapOutcome.GRO_NOADD


def test_append_flow_coalesces_consecutive_tcp():
    flow = FlowMap()
    push(flow, tcp4(1000))
    push(flow, tcp4(1100))
    assert len(flow) == 1
    (batch,) = flow.values()
    assert batch.chunks == [payload(100), payload(100)]


def test_append_flow_merges_with_previous_flow():
    flow = FlowMap()
    push(flow, tcp4(1000))
    push(flow, tcp4(1100))
    push(flow, tcp4(1200))
    assert len(flow) == 1
    (batch,) = flow.values()
    assert batch.size_bytes() == 300


def test_append_flow_separate_flows_for_gap():
    flow = FlowMap()
    push(flow, tcp4(1000))
    push(flow, tcp4(5000))
    assert len(flow) == 2


def test_append_flow_psh_marks_header():
    flow = FlowMap()
    push(flow, tcp4(1000, tcpflags=ACK | PSH))
    (batch,) = flow.values()
    assert batch.flags.ispsh
    assert batch.hdrbuf[20 + 13] & PSH
    push(flow, tcp4(1100))
    assert len(flow) == 2


def test_append_flow_udp_ids():
    flow = FlowMap()
    pkt = ip4(l4_udp(payload(100)), IPPROTO_UDP)
    udpid = push(flow, pkt, 0)
    assert udpid == 1
    assert [k.seq for k in flow] == [0]
    udpid = push(flow, pkt, udpid)
    assert udpid == 1
    assert len(flow) == 1
    (batch,) = flow.values()
    assert len(batch.chunks) == 2


def test_append_flow_short_packet_seals():
    flow = FlowMap()
    fk = FlowKey(srcip=SRC4, dstip=DST4, segment_size=100, seq=1)
    flags = PacketFlags(istcp=True)
    flags.vnethdr.csum_start = 20
    hdr = tcp4(1)[:40]
    append_flow(flow, fk, hdr, payload(50), flags, 0, FakeBatch)
    (batch,) = flow.values()
    assert batch.flags.issealed


def test_append_flow_rewrites_tos():
    flow = FlowMap()
    pkt = tcp4(1000, tos=0xB8)
    push(flow, pkt)
    (batch,) = flow.values()
    assert batch.hdrbuf[1] == 0xB8


def test_merge_without_neighbours():
    flow = FlowMap()
    push(flow, tcp4(1000))
    (k,) = flow.keys()
    assert not merge_next_flow(flow, k)
    assert not merge_prev_flow(flow, k)
    assert len(flow) == 1