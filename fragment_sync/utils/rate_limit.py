"""Request pacing for the RPC node."""

import asyncio
import time


class AsyncRateLimiter:
    """Hands out evenly spaced request slots with a small burst allowance.

    Callers reserve a slot under the lock and sleep outside it, so the
    concurrent block timestamp lookups of a pass queue up in arrival order
    without serialising on the lock.

    Example:
        limiter = AsyncRateLimiter(rate=10.0)
        async with limiter:
            await rpc_call()
    """

    def __init__(self, rate: float, burst: int | None = None) -> None:
        """
        Args:
            rate: Requests per second.
            burst: Requests allowed back to back after an idle period
                (defaults to one second's worth).
        """
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.burst = burst or max(1, int(rate))
        self._interval = 1.0 / rate
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

        self.throttled_seconds = 0.0

    async def acquire(self) -> None:
        """Wait for the next free request slot."""
        async with self._lock:
            now = time.monotonic()
            # Idle time banks at most `burst` slots
            slot = max(self._next_slot, now - (self.burst - 1) * self._interval)
            self._next_slot = slot + self._interval
            delay = slot - now

        if delay > 0:
            self.throttled_seconds += delay
            await asyncio.sleep(delay)

    async def __aenter__(self) -> "AsyncRateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *args: object) -> None:
        pass
