"""Queued datagram sends to peers over the UDP server socket."""

from __future__ import annotations

import abc
import socket
import struct

SOL_UDP = 17
UDP_SEGMENT = 103
SOL_IP = socket.IPPROTO_IP
IP_TOS = getattr(socket, "IP_TOS", 1)
MAX_DATAGRAM = 65535


class ServerSendBase(abc.ABC):
    """A unit of pending output that can be resumed after the socket would block."""

    @abc.abstractmethod
    def send(self, sock) -> bool:
        """Send as much as possible; return True once everything has gone out."""


class ServerSendBatch(ServerSendBase):
    """Equal-size datagrams to one endpoint, sent with UDP segmentation offload."""

    def __init__(self, segment_size: int, ep, ecn: int, data=b"") -> None:
        if segment_size <= 0:
            raise ValueError("segment_size must be positive")
        self.ep = ep
        self.buf = bytes(data)
        self.segment_size = segment_size
        self.max_send = MAX_DATAGRAM - MAX_DATAGRAM % segment_size
        self.pos = 0
        self.ecn = ecn

    @property
    def ancdata(self) -> list[tuple[int, int, bytes]]:
        # ecn carries only the ECN bits of the inner packet, never DSCP
        return [
            (SOL_UDP, UDP_SEGMENT, struct.pack("=H", self.segment_size)),
            (SOL_IP, IP_TOS, bytes([self.ecn & 0xFF])),
        ]

    def send(self, sock, data=None) -> bool:
        """Send ``data`` (the stored buffer by default) from the current position."""
        view = memoryview(self.buf if data is None else data)
        ancdata = self.ancdata
        while self.pos < len(view):
            chunk = view[self.pos : self.pos + self.max_send]
            try:
                sent = sock.sendmsg([chunk], ancdata, 0, self.ep)
            except BlockingIOError:
                return False
            self.pos += sent
        return True


class ServerSendList(ServerSendBase):
    """Separate datagrams to one endpoint."""

    def __init__(self, ep, packets=None) -> None:
        self.ep = ep
        self.packets: list[bytes] = []
        self.pos = 0
        self.finalized = False
        if packets is not None:
            self.packets.extend(bytes(pkt) for pkt in packets)
            self.finalize()

    def push_back(self, pkt) -> None:
        if self.finalized:
            raise RuntimeError("ServerSendList already finalized")
        self.packets.append(bytes(pkt))

    def finalize(self) -> None:
        self.finalized = True

    def send(self, sock) -> bool:
        if not self.finalized:
            raise RuntimeError("ServerSendList not finalized")
        while self.pos < len(self.packets):
            try:
                sock.sendto(self.packets[self.pos], self.ep)
            except BlockingIOError:
                return False
            self.pos += 1
        return True


class ServerSendMultilist(ServerSendBase):
    """Separate datagrams, each to its own endpoint."""

    def __init__(self) -> None:
        self.packets: list[bytes] = []
        self.eps: list = []
        self.pos = 0
        self.finalized = False

    def push_back(self, pkt, ep) -> None:
        if self.finalized:
            raise RuntimeError("ServerSendMultilist already finalized")
        self.packets.append(bytes(pkt))
        self.eps.append(ep)

    def finalize(self) -> None:
        self.finalized = True

    def send(self, sock) -> bool:
        if not self.finalized:
            raise RuntimeError("ServerSendMultilist not finalized")
        while self.pos < len(self.packets):
            try:
                sock.sendto(self.packets[self.pos], self.eps[self.pos])
            except BlockingIOError:
                return False
            self.pos += 1
        return True


def send_reflist(sock, pkts, ep) -> list | None:
    """Send each packet to ``ep``; return the unsent packets if the socket would block."""
    pkts = list(pkts)
    for i, pkt in enumerate(pkts):
        try:
            sock.sendto(pkt, ep)
        except BlockingIOError:
            return pkts[i:]
    return None