"""Fixed-window request counting backed by Redis."""
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from marketplace.services.ip_blocker import IPBlocker

logger = logging.getLogger(__name__)

KEY_BY_IP = "ip"
KEY_BY_USER = "user"
KEY_BY_ENDPOINT = "endpoint"


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Per call-site limit.

    ``key_by`` picks the identifier: client address, authenticated user, or
    user plus endpoint. ``skip`` receives the request and returns True to
    bypass counting.
    """

    window_seconds: int
    max_requests: int
    key_by: str = KEY_BY_IP
    prefix: str = "ratelimit"
    skip: Optional[Callable] = None
    whitelist: frozenset = frozenset()


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None


class RateLimiter:
    """
    Counts requests per identifier in fixed windows.

    The counter key is ``{prefix}:{identifier}:{window_start_ms}``. It is
    incremented and given a window-long TTL in one MULTI, so no counter is
    left without an expiry. Denials are reported to the blocker as violations.
    """

    def __init__(
        self,
        redis: Redis,
        blocker: Optional[IPBlocker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.blocker = blocker
        self.clock = clock

    async def check(
        self,
        identifier: str,
        endpoint: str,
        policy: RateLimitPolicy,
        offender: Optional[str] = None,
    ) -> RateLimitResult:
        """
        Count one request and decide whether it is allowed.

        Args:
            identifier: Counting key (IP, user id, or user+endpoint)
            endpoint: Request path, recorded on violations
            policy: Window and limit for this call site
            offender: Identifier to charge the violation to (defaults to identifier)

        Returns:
            RateLimitResult; on store errors the request is allowed
        """
        window_ms = policy.window_seconds * 1000
        now_ms = int(self.clock() * 1000)
        window_start = now_ms // window_ms * window_ms
        reset_ms = window_start + window_ms
        reset_at = reset_ms / 1000

        offender = offender or identifier
        if {identifier, offender} & policy.whitelist or (
            self.blocker and self.blocker.is_whitelisted(offender)
        ):
            return RateLimitResult(
                allowed=True,
                limit=policy.max_requests,
                remaining=policy.max_requests,
                reset_at=reset_at,
            )

        key = f"{policy.prefix}:{identifier}:{window_start}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                count, _ = await pipe.incr(key).pexpire(key, window_ms).execute()
        except RedisError as e:
            logger.warning(f"⚠️ Rate limit store unavailable, allowing {identifier}: {e}")
            return RateLimitResult(
                allowed=True,
                limit=policy.max_requests,
                remaining=policy.max_requests,
                reset_at=reset_at,
            )

        if count > policy.max_requests:
            retry_after = math.ceil((reset_ms - now_ms) / 1000)
            logger.warning(
                f"⛔ Rate limit exceeded for {identifier} on {endpoint} "
                f"({count}/{policy.max_requests}), retry in {retry_after}s"
            )
            if self.blocker:
                await self.blocker.record_violation(offender, endpoint)
            return RateLimitResult(
                allowed=False,
                limit=policy.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
            )

        return RateLimitResult(
            allowed=True,
            limit=policy.max_requests,
            remaining=policy.max_requests - count,
            reset_at=reset_at,
        )
