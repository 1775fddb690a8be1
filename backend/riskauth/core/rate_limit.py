# backend/riskauth/core/rate_limit.py
"""
Attempt throttling for login submissions and OTP issuance.

Counting is done by the `limits` package (the engine behind slowapi) with
a fixed window that opens on a key's first hit and rolls over lazily once it
is older than the window. On top of it sits a cool-down: the hit that goes
over the limit blocks the key, and every call fails fast until the block
ends. Blocks live in shards that each own a lock, so unrelated keys never
contend on one global lock.
"""

import asyncio
import hashlib
import logging
import math
import threading
import time
from collections.abc import Callable, Iterable

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from riskauth.core.config import settings
from riskauth.core.security_logger import security_log
from riskauth.exceptions import RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_SHARD_COUNT = 32


class _BlockShard:
    __slots__ = ("blocked_until", "lock")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.blocked_until: dict[str, float] = {}


class AttemptRateLimiter:
    """
    Allows `max_attempts` calls per key inside a window of `window_seconds`.

    The call that goes over the limit blocks the key for `block_seconds`;
    while blocked every call fails fast with the remaining delay. Once the
    block ends the key starts a fresh window.

    Args:
        name: Label used in logs and as the limits namespace
        clock: Wall-clock seconds source for the cool-down. It must agree
            with time.time(), which the limits memory storage reads.
    """

    def __init__(
        self,
        name: str,
        *,
        max_attempts: int,
        window_seconds: int,
        block_seconds: float,
        shard_count: int = DEFAULT_SHARD_COUNT,
        clock: Callable[[], float] = time.time,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.name = name
        self.max_attempts = max_attempts
        self.window_seconds = max(1, int(window_seconds))
        self.block_seconds = block_seconds
        self._clock = clock
        self._item = RateLimitItemPerSecond(max_attempts, self.window_seconds)
        self._limiter = FixedWindowRateLimiter(MemoryStorage())
        self._shards = [_BlockShard() for _ in range(max(1, shard_count))]

    def _shard_for(self, key: str) -> _BlockShard:
        # Stable across processes, unlike hash() with PYTHONHASHSEED randomization
        digest = hashlib.blake2b(key.encode("utf-8"), digest_size=4).digest()
        return self._shards[int.from_bytes(digest, "big") % len(self._shards)]

    def _remaining_block(self, shard: _BlockShard, key: str, now: float) -> float:
        """Seconds left on the key's block. An expired block is lifted here. Call with shard.lock held."""
        blocked_until = shard.blocked_until.get(key)
        if blocked_until is None:
            return 0.0
        if blocked_until > now:
            return blocked_until - now
        del shard.blocked_until[key]
        self._limiter.clear(self._item, self.name, key)
        return 0.0

    def _reject(self, key: str, action: str, retry_after: float) -> None:
        retry_after_seconds = max(1, math.ceil(retry_after))
        logger.warning(
            f"Rate limit '{self.name}' hit for action '{action}'; retry after {retry_after_seconds}s."
        )
        security_log.rate_limited(key, action)
        raise RateLimitedError(retry_after_seconds)

    def check_and_record(self, key: str, action: str) -> None:
        """
        Count one attempt for `key`.

        Raises:
            RateLimitedError: the key is blocked or this attempt went over the limit.
        """
        shard = self._shard_for(key)
        with shard.lock:
            remaining = self._remaining_block(shard, key, self._clock())
        if remaining:
            self._reject(key, action, remaining)

        if self._limiter.hit(self._item, self.name, key):
            return

        with shard.lock:
            now = self._clock()
            blocked_until = max(shard.blocked_until.get(key, 0.0), now + self.block_seconds)
            shard.blocked_until[key] = blocked_until
        self._reject(key, action, blocked_until - now)

    def retry_after(self, key: str) -> int:
        """Seconds until `key` is unblocked, 0 when it is not blocked."""
        shard = self._shard_for(key)
        with shard.lock:
            remaining = self._remaining_block(shard, key, self._clock())
        return math.ceil(remaining)

    def remaining_attempts(self, key: str) -> int:
        """Attempts left in the key's current window, 0 while it is blocked."""
        if self.retry_after(key):
            return 0
        return self._limiter.get_window_stats(self._item, self.name, key).remaining

    def reset(self, key: str) -> None:
        shard = self._shard_for(key)
        with shard.lock:
            shard.blocked_until.pop(key, None)
            self._limiter.clear(self._item, self.name, key)

    def sweep(self) -> int:
        """
        Lift expired blocks. Window counters expire inside the limits storage
        on their own. Returns the number of lifted blocks.
        """
        removed = 0
        for shard in self._shards:
            with shard.lock:
                now = self._clock()
                expired = [k for k, until in shard.blocked_until.items() if until <= now]
                for k in expired:
                    self._remaining_block(shard, k, now)
                removed += len(expired)
        if removed:
            logger.debug(f"Rate limit '{self.name}': lifted {removed} expired blocks.")
        return removed

    def blocked_count(self) -> int:
        return sum(len(shard.blocked_until) for shard in self._shards)


async def run_periodic_sweep(
    limiters: Iterable[AttemptRateLimiter],
    interval_seconds: float | None = None,
) -> None:
    """
    Sweep the given limiters forever. Start it with asyncio.create_task() from
    the application's startup hook and cancel it on shutdown.
    """
    limiters = list(limiters)
    interval = interval_seconds or settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS
    while True:
        await asyncio.sleep(interval)
        for limiter in limiters:
            try:
                limiter.sweep()
            except Exception as e:
                logger.error(f"Rate limit sweep failed for '{limiter.name}': {e}", exc_info=True)


def _from_settings(name: str) -> AttemptRateLimiter:
    return AttemptRateLimiter(
        name,
        max_attempts=settings.RATE_LIMIT_MAX_ATTEMPTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        block_seconds=settings.RATE_LIMIT_BLOCK_MINUTES * 60,
    )


# Login submissions, keyed by client IP and by account
login_rate_limiter = _from_settings("login")
# OTP issuance and secondary verification guesses, keyed by account
otp_rate_limiter = _from_settings("otp")
