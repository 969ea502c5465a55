import pytest

from obs_todo.security.rate_limit import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_allows_up_to_limit_then_rejects() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(limit=100, window_seconds=900, clock=clock)

    decisions = [limiter.hit("10.0.0.1") for _ in range(101)]

    assert all(d.allowed for d in decisions[:100])
    assert decisions[99].remaining == 0
    assert not decisions[100].allowed
    assert decisions[100].remaining == 0
    assert decisions[100].reset_after == 900


def test_fresh_window_resets_count() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(limit=3, window_seconds=60, clock=clock)
    for _ in range(3):
        limiter.hit("client")
    assert not limiter.hit("client").allowed

    clock.advance(60)
    decision = limiter.hit("client")

    assert decision.allowed
    assert decision.remaining == 2


def test_window_slides_instead_of_resetting_in_blocks() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(limit=2, window_seconds=10, clock=clock)

    limiter.hit("c")
    clock.advance(6)
    limiter.hit("c")
    clock.advance(2)
    rejected = limiter.hit("c")
    assert not rejected.allowed
    assert rejected.reset_after == 2

    clock.advance(2)
    assert limiter.hit("c").allowed
    assert not limiter.hit("c").allowed


def test_clients_are_limited_independently() -> None:
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=FakeClock())

    assert limiter.hit("a").allowed
    assert limiter.hit("b").allowed
    assert not limiter.hit("a").allowed


def test_rejected_hits_are_not_recorded() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=10, clock=clock)
    limiter.hit("c")
    for _ in range(5):
        clock.advance(1)
        limiter.hit("c")

    clock.advance(5)
    assert limiter.hit("c").allowed


def test_reset_clears_state() -> None:
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=FakeClock())
    limiter.hit("c")
    limiter.reset("c")

    assert limiter.hit("c").allowed


def test_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(limit=0, window_seconds=60)
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(limit=1, window_seconds=0)
