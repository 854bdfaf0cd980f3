"""TAI64N timestamps and nanosecond time helpers."""

from __future__ import annotations

import struct
from dataclasses import dataclass

NSEC_PER_SEC = 1_000_000_000
_U64 = (1 << 64) - 1
_U32 = (1 << 32) - 1

TIMESPEC_MIN = (0, 0)
TIMESPEC_MAX = ((1 << 63) - 1, NSEC_PER_SEC - 1)

_LAYOUT = struct.Struct(">QI")


def to_time(sec: int, nsec: int) -> int:
    """Combine seconds and nanoseconds into a 64-bit nanosecond count."""
    return (sec * NSEC_PER_SEC + nsec) & _U64


def to_timespec(tm: int) -> tuple[int, int]:
    """Split a nanosecond count into ``(seconds, nanoseconds)``."""
    return divmod(tm, NSEC_PER_SEC)


@dataclass(frozen=True, order=True)
class TAI64N:
    """A 12-byte timestamp: big-endian 64-bit seconds then 32-bit nanoseconds."""

    sec: int = 0
    nsec: int = 0

    SIZE = _LAYOUT.size

    @classmethod
    def from_timespec(cls, sec: int, nsec: int) -> TAI64N:
        return cls(sec & _U64, nsec & _U32)

    def to_bytes(self) -> bytes:
        return _LAYOUT.pack(self.sec, self.nsec)

    @classmethod
    def from_bytes(cls, data) -> TAI64N:
        if len(data) != cls.SIZE:
            raise ValueError(f"TAI64N needs exactly {cls.SIZE} bytes, got {len(data)}")
        return cls(*_LAYOUT.unpack(bytes(data)))