import pytest

from wireglider.replay import ReplayRing


def test_first_use_accepted_duplicate_rejected():
    ring = ReplayRing()
    assert ring.try_advance(0) is True
    assert ring.try_advance(0) is False
    assert ring.try_advance(1) is True
    assert ring.try_advance(1) is False


def test_limit_is_exclusive():
    ring = ReplayRing(100)
    assert ring.try_advance(99) is True
    assert ring.try_advance(100) is False
    assert ring.try_advance(101) is False


def test_out_of_order_within_window_accepted_once():
    ring = ReplayRing()
    assert ring.try_advance(50) is True
    assert ring.try_advance(10) is True
    assert ring.try_advance(30) is True
    assert ring.try_advance(10) is False
    assert ring.try_advance(30) is False


def test_window_edge():
    ring = ReplayRing()
    top = 10_000
    assert ring.try_advance(top) is True
    assert ring.try_advance(top - ring.window_size - 1) is False
    assert ring.try_advance(top - ring.window_size) is True
    assert ring.try_advance(top - ring.window_size) is False


def test_old_counter_rejected_after_ring_wraps():
    ring = ReplayRing()
    assert ring.try_advance(10) is True
    assert ring.try_advance(10 + ring.window_size + 100) is True
    assert ring.try_advance(10) is False


def test_large_jump_clears_window():
    ring = ReplayRing()
    for counter in range(200):
        assert ring.try_advance(counter) is True
    far = 1_000_000
    assert ring.try_advance(far) is True
    assert ring.try_advance(far - 1) is True
    assert ring.try_advance(far - ring.window_size) is True


def test_reset_allows_reuse():
    ring = ReplayRing()
    for counter in range(5):
        assert ring.try_advance(counter) is True
    ring.reset()
    for counter in range(5):
        assert ring.try_advance(counter) is True


def test_small_ring():
    ring = ReplayRing(1000, size=128, block_bits=64)
    assert ring.try_advance(200) is True
    assert ring.try_advance(200 - ring.window_size) is True
    assert ring.try_advance(200 - ring.window_size - 1) is False


@pytest.mark.parametrize("size,block_bits", [(100, 64), (64, 64), (32, 64), (256, 48)])
def test_invalid_geometry_raises(size, block_bits):
    with pytest.raises(ValueError):
        ReplayRing(1000, size=size, block_bits=block_bits)