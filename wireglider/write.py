"""Writing coalesced flows and unaggregated packets to a vnet-enabled tun device."""

from __future__ import annotations

import errno
import os
from collections import deque

from .flowkey import FlowMap
from .flowkey_own import DecapBatch, OwnedPacketBatch
from .flowkey_ref import DecapRefBatch, PacketRefBatch
from .virtio import GSO_NONE, VirtioNetHdr

EBADFD = getattr(errno, "EBADFD", 77)


class TunClosedError(Exception):
    """The tun device went away while it was being written to."""


def _writev(fd: int, buffers) -> int | None:
    """Write ``buffers`` in one call; return None if the device would block."""
    try:
        return os.writev(fd, buffers)
    except BlockingIOError:
        return None
    except OSError as exc:
        if exc.errno == EBADFD:
            raise TunClosedError("tun device closed") from exc
        raise


def _payload(batch) -> list:
    if isinstance(batch, PacketRefBatch):
        return list(batch.segments)
    if isinstance(batch, OwnedPacketBatch):
        return [batch.buf]
    raise TypeError(f"cannot write {type(batch).__name__}")


def _consume(batch, count: int) -> None:
    """Drop the first ``count`` payload bytes of ``batch``."""
    if isinstance(batch, OwnedPacketBatch):
        del batch.buf[:count]
        return
    remaining = count
    segments = batch.segments
    while remaining and segments:
        first = segments[0]
        if len(first) <= remaining:
            remaining -= len(first)
            segments.pop(0)
        else:
            segments[0] = first[remaining:]
            remaining = 0
    batch.nbytes -= count


def _short_write() -> OSError:
    return OSError(errno.EAGAIN, "unexpectedly short tun write")


def write_one_batch(fd: int, batch) -> bool:
    """Write one coalesced flow; return False if the device would block before it was done.

    Payload already written is removed from ``batch`` so a later call resumes.
    """
    head = batch.finalize()[:2]
    head_size = sum(len(part) for part in head)
    while batch.size_bytes():
        written = _writev(fd, [*head, *_payload(batch)])
        if written is None:
            return False
        if written < head_size:
            raise _short_write()
        _consume(batch, written - head_size)
    return True


def do_tun_write_unrel(fd: int, pkts: deque) -> bool:
    """Write unaggregated packets one by one, removing each once it is written.

    Returns False if the device would block before the queue was empty.
    """
    # the peer checksummed these packets already, so no offload flags are set
    vnethdr = VirtioNetHdr(flags=0, gso_type=GSO_NONE).pack()
    while pkts:
        pkt = pkts[0]
        written = _writev(fd, [vnethdr, pkt])
        if written is None:
            return False
        if written < len(vnethdr) + len(pkt):
            raise _short_write()
        pkts.popleft()
    return True


def _write_flowmap(fd: int, flows: FlowMap) -> bool:
    for key in flows.keys():
        if not write_one_batch(fd, flows[key]):
            return False
        flows.pop(key)
    return True


def do_tun_write_batch(fd: int, batch: DecapBatch | DecapRefBatch) -> bool:
    """Write everything a decapsulation batch holds; return False if the device would block.

    Whatever was written is removed from ``batch``; the rest stays for a retry.
    """
    if not do_tun_write_unrel(fd, batch.unrel):
        return False
    return all(
        _write_flowmap(fd, flows)
        for flows in (batch.tcp4, batch.udp4, batch.tcp6, batch.udp6)
    )