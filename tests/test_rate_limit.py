from rate_limit import SWEEP_INTERVAL_SECONDS, RateLimiter, client_key


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    def test_allows_up_to_max_then_blocks(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_requests=3, window_seconds=60, clock=clock)

        results = [limiter.check("a") for _ in range(3)]
        blocked = limiter.check("a")

        assert [r.allowed for r in results] == [True, True, True]
        assert [r.remaining for r in results] == [2, 1, 0]
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.retry_after == 60

    def test_retry_after_rounds_up(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.check("a")

        clock.now += 20.5

        assert limiter.check("a").retry_after == 40

    def test_new_window_after_reset(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.check("a")
        assert limiter.check("a").allowed is False

        clock.now += 60

        result = limiter.check("a")
        assert result.allowed is True
        assert result.remaining == 0

    def test_keys_are_independent(self) -> None:
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
        limiter.check("a")

        assert limiter.check("b").allowed is True

    def test_expired_windows_are_swept(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_requests=5, window_seconds=10, clock=clock)
        limiter.check("a")
        limiter.check("b")
        assert len(limiter) == 2

        clock.now += SWEEP_INTERVAL_SECONDS
        limiter.check("c")

        assert len(limiter) == 1

    def test_explicit_sweep(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_requests=5, window_seconds=10, clock=clock)
        limiter.check("a")
        clock.now += 11

        limiter.sweep()

        assert len(limiter) == 0


class TestClientKey:
    def test_prefers_user_id(self) -> None:
        assert client_key("user_1", "1.2.3.4", "5.6.7.8") == "user_1"

    def test_first_forwarded_address(self) -> None:
        assert client_key(None, "1.2.3.4, 10.0.0.1", "5.6.7.8") == "1.2.3.4"

    def test_client_host_then_unknown(self) -> None:
        assert client_key(None, None, "5.6.7.8") == "5.6.7.8"
        assert client_key(None, None, None) == "unknown"
