import asyncio

import pytest
from starlette.requests import Request

from vidrelay.core.errors import RateLimited
from vidrelay.infra.rate_limit import InMemoryRateLimiter, get_client_ip


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(headers=None, client=("203.0.113.9", 51234)) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "POST", "path": "/resolve", "headers": raw, "client": client})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return InMemoryRateLimiter(max_requests=30, window_seconds=60, sweep_interval=300, clock=clock)


def test_thirty_first_request_denied(limiter):
    results = [limiter.check("1.2.3.4") for _ in range(31)]

    assert all(r.allowed for r in results[:30])
    assert results[0].remaining == 29
    assert results[29].remaining == 0
    assert not results[30].allowed
    assert results[30].remaining == 0
    assert results[30].reset_in_ms == 60_000


def test_reset_in_counts_down(limiter, clock):
    for _ in range(31):
        result = limiter.check("1.2.3.4")
        clock.advance(1)
    assert not result.allowed
    assert result.reset_in_ms == 30_000


def test_window_expiry_starts_fresh(limiter, clock):
    for _ in range(31):
        limiter.check("1.2.3.4")
    clock.advance(60)

    result = limiter.check("1.2.3.4")
    assert result.allowed
    assert result.remaining == 29
    assert limiter._entries["1.2.3.4"].count == 1


def test_keys_are_independent(limiter):
    for _ in range(31):
        limiter.check("1.2.3.4")
    assert limiter.check("5.6.7.8").allowed


def test_sweep_removes_only_expired(limiter, clock):
    limiter.check("old")
    clock.advance(30)
    limiter.check("new")
    clock.advance(30)

    assert limiter.sweep() == 1
    assert len(limiter) == 1
    assert "new" in limiter._entries


@pytest.mark.asyncio
async def test_sweeper_task_lifecycle(clock):
    limiter = InMemoryRateLimiter(max_requests=1, window_seconds=1, sweep_interval=0.01, clock=clock)
    limiter.check("a")
    clock.advance(5)

    limiter.start_sweeper()
    await asyncio.sleep(0.05)
    assert len(limiter) == 0

    await limiter.stop_sweeper()
    assert limiter._sweeper is None


@pytest.mark.asyncio
async def test_dependency_raises_rate_limited(clock):
    limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, sweep_interval=300, clock=clock)
    request = make_request({"X-Forwarded-For": "198.51.100.7"})

    assert await limiter(request) is True
    with pytest.raises(RateLimited) as exc_info:
        await limiter(request)
    assert exc_info.value.status_code == 429
    assert exc_info.value.headers["Retry-After"] == "60"


class TestClientIp:
    def test_first_forwarded_entry(self):
        request = make_request({"X-Forwarded-For": "198.51.100.7, 10.0.0.1", "X-Real-IP": "192.0.2.1"})
        assert get_client_ip(request) == "198.51.100.7"

    def test_real_ip(self):
        assert get_client_ip(make_request({"X-Real-IP": "192.0.2.1"})) == "192.0.2.1"

    def test_unknown_without_headers(self):
        assert get_client_ip(make_request()) == "unknown"

    def test_peer_address_when_enabled(self):
        assert get_client_ip(make_request(), use_peer_address=True) == "203.0.113.9"
