"""Wire messages, protocol timing constants and per-session state."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import ClassVar

from .replay import REJECT_AFTER_MESSAGES, ReplayRing

REKEY_AFTER_MESSAGES = 1 << 60
ONE_SECOND = 1_000_000_000
ONE_MILLISECOND = 1_000_000
REKEY_AFTER_TIME = ONE_SECOND * 120
REKEY_ATTEMPT_TIME = ONE_SECOND * 90
REKEY_TIMEOUT = ONE_SECOND * 5
MAX_TIMER_HANDSHAKES = 90 // 5
REKEY_TIMEOUT_JITTER_MAX_MS = 333
REJECT_AFTER_TIME = ONE_SECOND * 180
KEEPALIVE_TIMEOUT = ONE_SECOND * 10
COOKIE_REFRESH_TIME = ONE_SECOND * 120
HANDSHAKE_INITIATION_RATE = ONE_SECOND // 50
PADDING_MULTIPLE = 16
AEAD_TAG_SIZE = 16
KEY_SIZE = 32


class ProtoSignal(enum.IntFlag):
    """Follow-up work the protocol asks of its caller."""

    Ok = 0
    OldSession = 1
    NeedsHandshake = 2
    NeedsKeepalive = 4
    # the encryption key was wiped; the protocol is uninitialised
    SessionWasReset = 8
    # handshake attempts failed; queued packets must be dropped
    NeedsQueueClear = 16


class DecryptError(enum.Enum):
    Rejected = enum.auto()
    NoSession = enum.auto()


class EncryptError(enum.Enum):
    NoSession = enum.auto()
    BufferError = enum.auto()


def _fixed(value, size: int, name: str) -> bytes:
    raw = bytes(value)
    if len(raw) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(raw)}")
    return raw


def _check_length(cls, data) -> None:
    if len(data) < cls.SIZE:
        raise ValueError(f"{cls.__name__} needs {cls.SIZE} bytes, got {len(data)}")


def _pack(layout: struct.Struct, *values) -> bytes:
    try:
        return layout.pack(*values)
    except struct.error as exc:
        raise ValueError(f"field out of range: {exc}") from exc


@dataclass
class Handshake1:
    """Handshake initiation message."""

    message_type_and_zeroes: int = 0
    sender_index: int = 0
    handshake: bytes = bytes(32 + 32 + 16 + 12 + 16)
    mac1: bytes = bytes(16)
    mac2: bytes = bytes(16)

    _LAYOUT: ClassVar[struct.Struct] = struct.Struct("<II108s16s16s")
    SIZE: ClassVar[int] = _LAYOUT.size

    def __post_init__(self) -> None:
        self.handshake = _fixed(self.handshake, 108, "handshake")
        self.mac1 = _fixed(self.mac1, 16, "mac1")
        self.mac2 = _fixed(self.mac2, 16, "mac2")

    def pack(self) -> bytes:
        return _pack(
            self._LAYOUT,
            self.message_type_and_zeroes,
            self.sender_index,
            self.handshake,
            self.mac1,
            self.mac2,
        )

    @classmethod
    def unpack(cls, data) -> Handshake1:
        _check_length(cls, data)
        return cls(*cls._LAYOUT.unpack_from(bytes(data)))


@dataclass
class Handshake2:
    """Handshake response message."""

    message_type_and_zeroes: int = 0
    sender_index: int = 0
    receiver_index: int = 0
    handshake: bytes = bytes(32 + 0 + 16)
    mac1: bytes = bytes(16)
    mac2: bytes = bytes(16)

    _LAYOUT: ClassVar[struct.Struct] = struct.Struct("<III48s16s16s")
    SIZE: ClassVar[int] = _LAYOUT.size

    def __post_init__(self) -> None:
        self.handshake = _fixed(self.handshake, 48, "handshake")
        self.mac1 = _fixed(self.mac1, 16, "mac1")
        self.mac2 = _fixed(self.mac2, 16, "mac2")

    def pack(self) -> bytes:
        return _pack(
            self._LAYOUT,
            self.message_type_and_zeroes,
            self.sender_index,
            self.receiver_index,
            self.handshake,
            self.mac1,
            self.mac2,
        )

    @classmethod
    def unpack(cls, data) -> Handshake2:
        _check_length(cls, data)
        return cls(*cls._LAYOUT.unpack_from(bytes(data)))


@dataclass
class CookiePacket:
    """Cookie reply message."""

    message_type_and_zeroes: int = 0
    receiver_index: int = 0
    nonce: bytes = bytes(24)
    encrypted_cookie: bytes = bytes(16 + 16)

    _LAYOUT: ClassVar[struct.Struct] = struct.Struct("<II24s32s")
    SIZE: ClassVar[int] = _LAYOUT.size

    def __post_init__(self) -> None:
        self.nonce = _fixed(self.nonce, 24, "nonce")
        self.encrypted_cookie = _fixed(self.encrypted_cookie, 32, "encrypted_cookie")

    def pack(self) -> bytes:
        return _pack(
            self._LAYOUT,
            self.message_type_and_zeroes,
            self.receiver_index,
            self.nonce,
            self.encrypted_cookie,
        )

    @classmethod
    def unpack(cls, data) -> CookiePacket:
        _check_length(cls, data)
        return cls(*cls._LAYOUT.unpack_from(bytes(data)))


@dataclass
class DataHeader:
    """Header preceding every transport data message."""

    message_type_and_zeroes: int = 0
    receiver_index: int = 0
    counter: int = 0

    _LAYOUT: ClassVar[struct.Struct] = struct.Struct("<IIQ")
    SIZE: ClassVar[int] = _LAYOUT.size

    def pack(self) -> bytes:
        return _pack(self._LAYOUT, self.message_type_and_zeroes, self.receiver_index, self.counter)

    @classmethod
    def unpack(cls, data) -> DataHeader:
        _check_length(cls, data)
        return cls(*cls._LAYOUT.unpack_from(bytes(data)))


def _round_up(value: int, multiple: int) -> int:
    return -(-value // multiple) * multiple


def expected_encrypt_size(ptext_size: int) -> int:
    """Size of a data message carrying ``ptext_size`` bytes of plaintext."""
    return DataHeader.SIZE + _round_up(ptext_size, PADDING_MULTIPLE) + AEAD_TAG_SIZE


def expected_encrypt_overhead(ptext_size: int) -> int:
    """Bytes a data message adds on top of ``ptext_size`` bytes of plaintext."""
    return expected_encrypt_size(ptext_size) - ptext_size


@dataclass
class HalfSessionState:
    role: int = 0
    remote_index: int = 0


def _key(value) -> bytearray:
    raw = bytes(value)
    if len(raw) > KEY_SIZE:
        raise ValueError(f"key longer than {KEY_SIZE} bytes")
    return bytearray(raw.ljust(KEY_SIZE, b"\x00"))


@dataclass
class SessionState:
    """An established session; times are monotonic nanoseconds."""

    role: int = 0
    remote_index: int = 0
    skey: bytearray = field(default_factory=lambda: bytearray(KEY_SIZE))
    rkey: bytearray = field(default_factory=lambda: bytearray(KEY_SIZE))
    birth: int = 0
    last_send: int | None = None
    last_recv: int | None = None
    encrypt_nonce: int = 0
    replay: ReplayRing = field(default_factory=lambda: ReplayRing(REJECT_AFTER_MESSAGES))

    def __post_init__(self) -> None:
        self.skey = _key(self.skey)
        self.rkey = _key(self.rkey)
        if self.last_send is None:
            self.last_send = self.birth
        if self.last_recv is None:
            self.last_recv = self.birth

    def exists(self) -> bool:
        return bool(self.role)

    def expired(self, now: int, life: int = REJECT_AFTER_TIME) -> bool:
        """True if there is no session or it is older than ``life`` nanoseconds."""
        return not self.exists() or (now - self.birth) > life

    def reset(self) -> None:
        """Wipe the keys and return to the no-session state."""
        self.role = 0
        self.remote_index = 0
        self.skey[:] = bytes(KEY_SIZE)
        self.rkey[:] = bytes(KEY_SIZE)
        self.birth = 0
        self.encrypt_nonce = 0
        self.replay.reset()