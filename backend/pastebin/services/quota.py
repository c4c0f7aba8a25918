"""
Sliding-window quota counters.

Each (identifier, action) pair is counted in fixed windows of the configured
length. The count that decides a request is the current window plus the
previous window weighted by the part of it still inside the sliding window:

    weighted = floor(previous * (1 - elapsed / window)) + current

Only single-key operations are issued (MGET to read, INCR + EXPIRE to spend),
so any Redis-compatible store works without transactions.
"""
import math
from typing import Mapping, Optional, Union

import structlog
from redis import asyncio as redis_asyncio

from pastebin.core.limits import RATE_LIMIT_CONFIGS, ActionLimits, RateLimitAction, coerce_action
from pastebin.schemas.rate_limit import RateLimitResult
from pastebin.services.identity import sanitize_identifier
from pastebin.services.store import STORE_ERRORS
from pastebin.services.utils import Clock, now_ms

logger = structlog.get_logger()

FAIL_CLOSED_RETRY_AFTER = 60


class SlidingWindowLimiter:
    """Counter for one (action, identity class) quota."""

    def __init__(
        self,
        store: redis_asyncio.Redis,
        limit: int,
        window_ms: int,
        prefix: str,
    ):
        self.store = store
        self.limit = limit
        self.window_ms = window_ms
        self.prefix = prefix
        # Counters must outlive the window that follows them
        self.key_ttl_seconds = math.ceil(window_ms * 2 / 1000) + 1

    def _window_keys(self, key: str, now: int) -> tuple[str, str, int]:
        window_index = now // self.window_ms
        current_key = f"{self.prefix}:{key}:{window_index}"
        previous_key = f"{self.prefix}:{key}:{window_index - 1}"
        return current_key, previous_key, window_index

    async def _read(self, current_key: str, previous_key: str, now: int) -> tuple[int, int]:
        current_raw, previous_raw = await self.store.mget(current_key, previous_key)
        current = int(current_raw or 0)
        previous = int(previous_raw or 0)
        elapsed_fraction = (now % self.window_ms) / self.window_ms
        weighted_previous = math.floor(previous * (1 - elapsed_fraction))
        return current, weighted_previous

    async def hit(self, key: str, now: int) -> RateLimitResult:
        """Spend one unit if the weighted count is below the limit."""
        current_key, previous_key, window_index = self._window_keys(key, now)
        reset = (window_index + 1) * self.window_ms
        current, weighted_previous = await self._read(current_key, previous_key, now)

        if weighted_previous + current >= self.limit:
            return RateLimitResult(success=False, limit=self.limit, remaining=0, reset=reset)

        new_current = await self.store.incr(current_key)
        if new_current == 1:
            await self.store.expire(current_key, self.key_ttl_seconds)

        used = weighted_previous + new_current
        # A concurrent request may have taken the last unit between read and INCR
        if used > self.limit:
            return RateLimitResult(success=False, limit=self.limit, remaining=0, reset=reset)

        return RateLimitResult(
            success=True,
            limit=self.limit,
            remaining=max(0, self.limit - used),
            reset=reset,
        )

    async def peek(self, key: str, now: int) -> RateLimitResult:
        current_key, previous_key, window_index = self._window_keys(key, now)
        current, weighted_previous = await self._read(current_key, previous_key, now)
        remaining = max(0, self.limit - (weighted_previous + current))
        return RateLimitResult(
            success=remaining > 0,
            limit=self.limit,
            remaining=remaining,
            reset=(window_index + 1) * self.window_ms,
        )


class QuotaStore:
    """
    Per-action, per-identity-class quotas on top of sliding-window counters.

    One limiter is created lazily per (action, is_authenticated) pair and
    cached on the instance. Building the same limiter twice is harmless, so
    the cache needs no locking.
    """

    def __init__(
        self,
        store: Optional[redis_asyncio.Redis],
        configs: Mapping[RateLimitAction, ActionLimits] = RATE_LIMIT_CONFIGS,
        clock: Clock = now_ms,
    ):
        self.store = store
        self.configs = configs
        self.clock = clock
        self._limiters: dict[tuple[RateLimitAction, bool], SlidingWindowLimiter] = {}

    def limiter_for(self, action: RateLimitAction, is_authenticated: bool) -> SlidingWindowLimiter:
        cache_key = (action, is_authenticated)
        limiter = self._limiters.get(cache_key)
        if limiter is None:
            quota = self.configs[action].for_identity(is_authenticated)
            limiter = SlidingWindowLimiter(
                self.store,
                limit=quota.requests,
                window_ms=quota.window_ms,
                prefix=f"rl:{action.value}:{'auth' if is_authenticated else 'anon'}",
            )
            self._limiters[cache_key] = limiter
        return limiter

    def _resolve(self, action: Union[RateLimitAction, str]) -> RateLimitAction:
        resolved = coerce_action(action)
        if resolved is None or resolved not in self.configs:
            raise ValueError(f"No rate limit config for action: {action}")
        return resolved

    @staticmethod
    def _counter_key(identifier: str, action: RateLimitAction) -> str:
        return f"{sanitize_identifier(identifier)}:{action.value}"

    def _unavailable(self, skip_if_redis_unavailable: bool) -> RateLimitResult:
        if skip_if_redis_unavailable:
            return RateLimitResult(success=True, degraded=True)
        return RateLimitResult(success=False, retry_after=FAIL_CLOSED_RETRY_AFTER, degraded=True)

    async def consume(
        self,
        identifier: str,
        action: Union[RateLimitAction, str],
        is_authenticated: bool,
        skip_if_redis_unavailable: bool = True,
    ) -> RateLimitResult:
        """Spend one unit of the caller's quota for `action`."""
        action = self._resolve(action)
        quota = self.configs[action].for_identity(is_authenticated)
        now = self.clock()

        if quota.forbidden:
            return RateLimitResult(success=False, limit=0, remaining=0, reset=now + quota.window_ms)

        if self.store is None:
            return self._unavailable(skip_if_redis_unavailable)

        limiter = self.limiter_for(action, is_authenticated)
        try:
            return await limiter.hit(self._counter_key(identifier, action), now)
        except STORE_ERRORS as e:
            logger.error(
                "rate_limit.quota_store_failed",
                action=action.value,
                identifier=sanitize_identifier(identifier),
                error=str(e),
            )
            return self._unavailable(skip_if_redis_unavailable)

    async def peek(
        self,
        identifier: str,
        action: Union[RateLimitAction, str],
        is_authenticated: bool,
    ) -> RateLimitResult:
        """Report the caller's quota without spending it. Store errors propagate."""
        action = self._resolve(action)
        quota = self.configs[action].for_identity(is_authenticated)
        now = self.clock()
        if quota.forbidden:
            return RateLimitResult(success=False, limit=0, remaining=0, reset=now + quota.window_ms)
        if self.store is None:
            return RateLimitResult(success=True, degraded=True)
        limiter = self.limiter_for(action, is_authenticated)
        return await limiter.peek(self._counter_key(identifier, action), now)
