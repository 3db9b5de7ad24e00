"""Tests for violation tracking and progressive blocking."""
import asyncio

import pytest
from redis.exceptions import RedisError

from marketplace.services.ip_blocker import BlockPolicy, BlockRecord, IPBlocker, block_duration


@pytest.fixture
def blocker(fake_redis, clock):
    return IPBlocker(fake_redis, BlockPolicy(), whitelist=["127.0.0.1"], clock=clock)


def violate(blocker, identifier, times, endpoint="/api/shops/1/products/bulk"):
    record = None
    for _ in range(times):
        record = asyncio.run(blocker.record_violation(identifier, endpoint))
    return record


@pytest.mark.parametrize(
    "violations,seconds",
    [
        (1, None),
        (2, None),
        (3, 900),
        (4, 900),
        (5, 1800),
        (6, 1800),
        (7, 3600),
        (9, 7200),
        (15, 57600),
        (17, 86400),
        (40, 86400),
    ],
)
def test_block_duration(violations, seconds):
    assert block_duration(violations, BlockPolicy()) == seconds


def test_below_threshold_is_not_blocked(blocker):
    record = violate(blocker, "1.2.3.4", 2)

    assert record.count == 2
    assert asyncio.run(blocker.is_blocked("1.2.3.4")) is None


def test_threshold_blocks(blocker, clock, fake_redis):
    violate(blocker, "1.2.3.4", 3)

    record = asyncio.run(blocker.is_blocked("1.2.3.4"))
    assert record.violations == 3
    assert record.blocked_at == clock.now
    assert record.expires_at == clock.now + 900
    assert record.reason == "Rate limit exceeded 3 times"
    assert record.remaining_seconds(clock.now) == 900
    assert fake_redis.ttls["ipblock:1.2.3.4"] == 900
    assert fake_redis.ttls["violations:1.2.3.4:count"] == 3600


def test_repeat_offender_escalates(blocker, clock):
    """Test each new block overwrites the previous one with a longer duration."""
    violate(blocker, "1.2.3.4", 3)
    clock.advance(60)
    violate(blocker, "1.2.3.4", 2)

    record = asyncio.run(blocker.is_blocked("1.2.3.4"))
    assert record.violations == 5
    assert record.blocked_at == clock.now
    assert record.expires_at == clock.now + 1800


def test_block_expires_with_clock(blocker, clock):
    violate(blocker, "1.2.3.4", 3)

    clock.advance(899)
    assert asyncio.run(blocker.is_blocked("1.2.3.4")) is not None
    clock.advance(1)
    assert asyncio.run(blocker.is_blocked("1.2.3.4")) is None


def test_violation_history(blocker, clock):
    violate(blocker, "1.2.3.4", 1, endpoint="/api/a")
    violate(blocker, "1.2.3.4", 1, endpoint="/api/b")

    history = asyncio.run(blocker.get_violations("1.2.3.4"))

    assert history.count == 2
    assert history.endpoints == ["/api/a", "/api/b"]
    assert history.last_violation == clock.now
    assert asyncio.run(blocker.get_violations("5.6.7.8")) is None


def test_manual_block_and_unblock(blocker, clock):
    record = asyncio.run(blocker.manual_block("9.9.9.9", 3600, "scraping"))

    assert record.reason == "Manual block: scraping"
    assert record.violations == 0
    assert asyncio.run(blocker.is_blocked("9.9.9.9")).expires_at == clock.now + 3600

    violate(blocker, "9.9.9.9", 1)
    assert asyncio.run(blocker.unblock("9.9.9.9")) is True
    assert asyncio.run(blocker.is_blocked("9.9.9.9")) is None
    assert asyncio.run(blocker.get_violations("9.9.9.9")) is None
    assert asyncio.run(blocker.unblock("9.9.9.9")) is False


def test_list_blocked_prunes_expired(blocker, clock, fake_redis):
    asyncio.run(blocker.manual_block("2.2.2.2", 7200, "long"))
    asyncio.run(blocker.manual_block("1.1.1.1", 600, "short"))
    asyncio.run(blocker.manual_block("3.3.3.3", 3600, "medium"))

    assert [r.identifier for r in asyncio.run(blocker.list_blocked())] == [
        "1.1.1.1",
        "3.3.3.3",
        "2.2.2.2",
    ]

    clock.advance(601)
    assert [r.identifier for r in asyncio.run(blocker.list_blocked())] == ["3.3.3.3", "2.2.2.2"]
    assert "1.1.1.1" not in fake_redis.sets["ipblock:index"]


def test_whitelisted_identifier_is_never_blocked(blocker, fake_redis):
    assert violate(blocker, "127.0.0.1", 5) is None
    assert asyncio.run(blocker.is_blocked("127.0.0.1")) is None
    assert fake_redis.values == {}


def test_store_failure_fails_open(blocker, fake_redis):
    violate(blocker, "1.2.3.4", 3)
    fake_redis.fail = True

    assert asyncio.run(blocker.is_blocked("1.2.3.4")) is None
    assert violate(blocker, "1.2.3.4", 1) is None


def test_admin_operations_surface_store_failure(blocker, fake_redis):
    fake_redis.fail = True

    with pytest.raises(RedisError):
        asyncio.run(blocker.manual_block("1.2.3.4", 60, "test"))
    with pytest.raises(RedisError):
        asyncio.run(blocker.unblock("1.2.3.4"))


def test_block_record_json():
    record = BlockRecord("1.2.3.4", 100.0, 1000.0, 3, "Rate limit exceeded 3 times")

    restored = BlockRecord.from_json("1.2.3.4", record.to_json())

    assert restored == record
    assert "identifier" not in record.to_json()
    assert record.remaining_seconds(999.5) == 1
    assert record.remaining_seconds(2000.0) == 0


def test_violation_writes_are_one_transaction(blocker, fake_redis):
    """Test the counter never exists without its expiry."""
    violate(blocker, "1.2.3.4", 3)

    assert fake_redis.transactions == [
        ["incr", "expire", "set", "sadd", "expire"],
        ["incr", "expire", "set", "sadd", "expire"],
        ["incr", "expire", "set", "sadd", "expire"],
        ["set", "sadd"],
    ]
