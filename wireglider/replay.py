"""Sliding-window anti-replay filter following RFC 6479."""

from __future__ import annotations

REJECT_AFTER_MESSAGES = (1 << 64) - 1 - (1 << 13)


class ReplayRing:
    """Accepts each counter below ``limit`` at most once, within a sliding window."""

    def __init__(self, limit: int = REJECT_AFTER_MESSAGES, size: int = 8192, block_bits: int = 64) -> None:
        if block_bits <= 0 or block_bits & (block_bits - 1):
            raise ValueError("block_bits must be a power of two")
        if size & (size - 1) or size <= block_bits:
            raise ValueError("size must be a power of two larger than block_bits")
        self._limit = limit
        self._block_bits = block_bits
        self._block_bit_log = block_bits.bit_length() - 1
        self._ring_blocks = size // block_bits
        self._block_mask = self._ring_blocks - 1
        self._bit_mask = block_bits - 1
        self._window = size - block_bits
        self._ring = [0] * self._ring_blocks
        self._last = 0

    @property
    def window_size(self) -> int:
        return self._window

    def try_advance(self, counter: int) -> bool:
        """Record ``counter``; return False if it is out of range, too old or already seen."""
        if counter >= self._limit:
            return False
        index_block = counter >> self._block_bit_log
        if counter > self._last:
            current = self._last >> self._block_bit_log
            diff = min(index_block - current, self._ring_blocks)
            for i in range(current + 1, current + diff + 1):
                self._ring[i & self._block_mask] = 0
            self._last = counter
        elif self._last - counter > self._window:
            return False
        index_block &= self._block_mask
        bit = 1 << (counter & self._bit_mask)
        if self._ring[index_block] & bit:
            return False
        self._ring[index_block] |= bit
        return True

    def reset(self) -> None:
        self._last = 0
        self._ring[0] = 0