"""Violation tracking and escalating blocks backed by Redis."""
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Iterable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from marketplace.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockPolicy:
    violation_threshold: int = 3
    base_duration_seconds: int = 900
    multiplier: int = 2
    max_duration_seconds: int = 86400
    violation_window_seconds: int = 3600

    @classmethod
    def from_settings(cls, settings: Settings) -> "BlockPolicy":
        return cls(
            violation_threshold=settings.block_violation_threshold,
            base_duration_seconds=settings.block_base_duration_seconds,
            multiplier=settings.block_multiplier,
            max_duration_seconds=settings.block_max_duration_seconds,
            violation_window_seconds=settings.block_violation_window_seconds,
        )


def block_duration(violations: int, policy: BlockPolicy) -> Optional[int]:
    """
    Seconds to block for a given violation count, or None below threshold.

    The duration doubles (by ``multiplier``) every two violations past the
    threshold and is capped at ``max_duration_seconds``.
    """
    if violations < policy.violation_threshold:
        return None
    level = (violations - policy.violation_threshold) // 2 + 1
    duration = policy.base_duration_seconds * policy.multiplier ** (level - 1)
    return min(duration, policy.max_duration_seconds)


@dataclass
class BlockRecord:
    identifier: str
    blocked_at: float
    expires_at: float
    violations: int
    reason: str

    def remaining_seconds(self, now: float) -> int:
        return max(0, int(self.expires_at - now + 0.999))

    def to_json(self) -> str:
        data = asdict(self)
        data.pop("identifier")
        return json.dumps(data)

    @classmethod
    def from_json(cls, identifier: str, raw: str) -> "BlockRecord":
        data = json.loads(raw)
        return cls(
            identifier=identifier,
            blocked_at=float(data["blocked_at"]),
            expires_at=float(data["expires_at"]),
            violations=int(data.get("violations", 0)),
            reason=data.get("reason", ""),
        )


@dataclass
class ViolationRecord:
    identifier: str
    count: int
    last_violation: Optional[float] = None
    endpoints: list[str] = field(default_factory=list)


class IPBlocker:
    """
    Tracks rate-limit violations per identifier and blocks repeat offenders.

    Keys:
        {block_prefix}:{id}            JSON BlockRecord, EX = block duration
        {block_prefix}:index           set of currently blocked identifiers
        {violation_prefix}:{id}:count  INCR counter, EX = violation window
        {violation_prefix}:{id}:last   last violation timestamp
        {violation_prefix}:{id}:endpoints  set of endpoints hit

    Store failures on the request path fail open: nothing is blocked.
    """

    def __init__(
        self,
        redis: Redis,
        policy: Optional[BlockPolicy] = None,
        whitelist: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
        block_prefix: str = "ipblock",
        violation_prefix: str = "violations",
    ):
        self.redis = redis
        self.policy = policy or BlockPolicy()
        self.whitelist = frozenset(whitelist)
        self.clock = clock
        self.block_prefix = block_prefix
        self.violation_prefix = violation_prefix

    def _block_key(self, identifier: str) -> str:
        return f"{self.block_prefix}:{identifier}"

    @property
    def _index_key(self) -> str:
        return f"{self.block_prefix}:index"

    def _violation_keys(self, identifier: str) -> tuple[str, str, str]:
        base = f"{self.violation_prefix}:{identifier}"
        return f"{base}:count", f"{base}:last", f"{base}:endpoints"

    def is_whitelisted(self, identifier: str) -> bool:
        return identifier in self.whitelist

    async def is_blocked(self, identifier: str) -> Optional[BlockRecord]:
        """Return the active block for ``identifier``, if any."""
        if self.is_whitelisted(identifier):
            return None
        try:
            raw = await self.redis.get(self._block_key(identifier))
        except RedisError as e:
            logger.warning(f"⚠️ Block store unavailable, allowing {identifier}: {e}")
            return None
        if not raw:
            return None

        record = BlockRecord.from_json(identifier, raw)
        if record.expires_at <= self.clock():
            return None
        return record

    async def record_violation(self, identifier: str, endpoint: str) -> Optional[ViolationRecord]:
        """
        Count a rate-limit violation and block once the threshold is reached.

        A new block overwrites any existing one for the identifier.

        Args:
            identifier: Offending IP or account key
            endpoint: Path that was rate limited

        Returns:
            The updated ViolationRecord, or None if the store is unavailable
        """
        if self.is_whitelisted(identifier):
            return None

        window = self.policy.violation_window_seconds
        count_key, last_key, endpoints_key = self._violation_keys(identifier)
        now = self.clock()
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(count_key)
                pipe.expire(count_key, window)
                pipe.set(last_key, str(now), ex=window)
                pipe.sadd(endpoints_key, endpoint)
                pipe.expire(endpoints_key, window)
                count = (await pipe.execute())[0]

            duration = block_duration(count, self.policy)
            if duration:
                await self.block(
                    identifier,
                    duration,
                    violations=count,
                    reason=f"Rate limit exceeded {count} times",
                )
        except RedisError as e:
            logger.warning(f"⚠️ Could not record violation for {identifier}: {e}")
            return None

        logger.info(f"🚩 Violation {count} recorded for {identifier} on {endpoint}")
        return ViolationRecord(
            identifier=identifier, count=count, last_violation=now, endpoints=[endpoint]
        )

    async def block(
        self, identifier: str, duration_seconds: int, violations: int, reason: str
    ) -> BlockRecord:
        """Set (or overwrite) the block for ``identifier``. Store errors propagate."""
        now = self.clock()
        record = BlockRecord(
            identifier=identifier,
            blocked_at=now,
            expires_at=now + duration_seconds,
            violations=violations,
            reason=reason,
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._block_key(identifier), record.to_json(), ex=duration_seconds)
            pipe.sadd(self._index_key, identifier)
            await pipe.execute()
        logger.warning(
            f"🚫 Blocked {identifier} for {duration_seconds}s "
            f"(violations={violations}, reason={reason})"
        )
        return record

    async def manual_block(self, identifier: str, duration_seconds: int, reason: str) -> BlockRecord:
        """Administrative block; bypasses the violation count."""
        return await self.block(
            identifier, duration_seconds, violations=0, reason=f"Manual block: {reason}"
        )

    async def unblock(self, identifier: str) -> bool:
        """Remove the block and the violation history. True if a block existed."""
        deleted = await self.redis.delete(self._block_key(identifier))
        await self.redis.srem(self._index_key, identifier)
        await self.clear_violations(identifier)
        logger.info(f"🔓 Unblocked {identifier}")
        return bool(deleted)

    async def get_violations(self, identifier: str) -> Optional[ViolationRecord]:
        count_key, last_key, endpoints_key = self._violation_keys(identifier)
        count = await self.redis.get(count_key)
        if not count:
            return None
        last = await self.redis.get(last_key)
        endpoints = await self.redis.smembers(endpoints_key)
        return ViolationRecord(
            identifier=identifier,
            count=int(count),
            last_violation=float(last) if last else None,
            endpoints=sorted(endpoints),
        )

    async def clear_violations(self, identifier: str) -> None:
        await self.redis.delete(*self._violation_keys(identifier))

    async def list_blocked(self) -> list[BlockRecord]:
        """Active blocks, soonest expiry first. Expired index entries are pruned."""
        identifiers = await self.redis.smembers(self._index_key)
        now = self.clock()
        records = []
        for identifier in sorted(identifiers):
            raw = await self.redis.get(self._block_key(identifier))
            record = BlockRecord.from_json(identifier, raw) if raw else None
            if record is None or record.expires_at <= now:
                await self.redis.srem(self._index_key, identifier)
                continue
            records.append(record)
        return sorted(records, key=lambda record: (record.expires_at, record.identifier))
