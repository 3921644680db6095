import asyncio
import functools
import logging
import math
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable, Dict, NamedTuple, Optional

from fastapi import Request

from vidrelay.config.settings import config
from vidrelay.core.errors import RateLimited
from vidrelay.i18n import i18n
from vidrelay.utils.locale import get_locale

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass
class RateLimitEntry:
    count: int
    window_reset_at: float


class RateLimitResult(NamedTuple):
    allowed: bool
    remaining: int
    reset_in_ms: int


def get_client_ip(request: Request, use_peer_address: bool = False) -> str:
    """Client address as reported by the reverse proxy in front of us"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if use_peer_address and request.client:
        return request.client.host

    return UNKNOWN_CLIENT


class InMemoryRateLimiter:
    """
    Fixed-window request counter per client, held in process memory.
    Only valid for a single server process; every instance keeps its own table.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        sweep_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def check(self, key: str) -> RateLimitResult:
        window_ms = int(self.window_seconds * 1000)
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None or now >= entry.window_reset_at:
                self._entries[key] = RateLimitEntry(count=1, window_reset_at=now + self.window_seconds)
                return RateLimitResult(True, self.max_requests - 1, window_ms)

            entry.count += 1
            reset_in_ms = max(0, int((entry.window_reset_at - now) * 1000))
            allowed = entry.count <= self.max_requests
            remaining = max(0, self.max_requests - entry.count)
            return RateLimitResult(allowed, remaining, reset_in_ms)

    def sweep(self) -> int:
        """Drop entries whose window already ended; returns how many were removed"""
        with self._lock:
            now = self._clock()
            stale = [key for key, entry in self._entries.items() if now >= entry.window_reset_at]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Rate limiter swept {removed} stale entries")

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

    async def __call__(self, request: Request):
        if not config.rate_limit.enabled:
            return True

        client_ip = get_client_ip(request, config.rate_limit.use_peer_address)
        result = self.check(client_ip)
        if not result.allowed:
            locale = get_locale(request.headers.get("accept-language"))
            _ = functools.partial(i18n.get, locale=locale)
            seconds = max(1, math.ceil(result.reset_in_ms / 1000))
            logger.warning(f"Rate limit exceeded for {client_ip}")
            raise RateLimited(_("error.rate_limit", seconds=seconds), reset_in_ms=result.reset_in_ms)

        return True


rate_limiter = InMemoryRateLimiter(
    max_requests=config.rate_limit.max_requests,
    window_seconds=config.rate_limit.window_seconds,
    sweep_interval=config.rate_limit.sweep_interval_seconds,
)
