"""The virtio-net header that prefixes every packet on a vnet-enabled tun device."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import ClassVar

F_NEEDS_CSUM = 1
F_DATA_VALID = 2
F_RSC_INFO = 4

GSO_NONE = 0
GSO_TCPV4 = 1
GSO_UDP = 3
GSO_TCPV6 = 4
GSO_UDP_L4 = 5
GSO_ECN = 0x80

_LAYOUT = struct.Struct("<BBHHHH")


@dataclass
class VirtioNetHdr:
    """A virtio_net_hdr, stored little-endian on the wire (10 bytes)."""

    flags: int = 0
    gso_type: int = GSO_NONE
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    SIZE: ClassVar[int] = _LAYOUT.size

    def pack(self) -> bytes:
        """Serialize the header to its wire form."""
        try:
            return _LAYOUT.pack(
                self.flags,
                self.gso_type,
                self.hdr_len,
                self.gso_size,
                self.csum_start,
                self.csum_offset,
            )
        except struct.error as exc:
            raise ValueError(f"virtio header field out of range: {exc}") from exc

    @classmethod
    def unpack(cls, data) -> VirtioNetHdr:
        """Parse a header from the start of ``data``."""
        if len(data) < cls.SIZE:
            raise ValueError(f"virtio header needs {cls.SIZE} bytes, got {len(data)}")
        return cls(*_LAYOUT.unpack_from(data))