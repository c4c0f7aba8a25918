"""
Property-based tests for abuse escalation and bans.

**Feature: rate-limiting, Property 6: Abuse Escalation**

Property: An identifier reaching the abuse threshold within the counter
window receives exactly one ban expiring after the configured duration;
one attempt fewer leaves it unbanned.
"""

import asyncio
import json

from hypothesis import given, settings, strategies as st

from conftest import NOW_MS, FrozenClock, make_store
from pastebin.core.limits import ABUSE_DETECTION, AbuseType
from pastebin.services.abuse import (
    ABUSE_COUNTER_TTL_SECONDS,
    DEFAULT_BAN_MS,
    AbuseDetector,
    BanRegistry,
    abuse_counter_key,
    ban_key,
)


def build(store, clock):
    bans = BanRegistry(store, clock=clock)
    return bans, AbuseDetector(store, bans)


async def test_threshold_minus_one_does_not_ban(store, clock):
    """
    **Feature: rate-limiting, Property 6: Abuse Escalation**
    """
    bans, detector = build(store, clock)

    for _ in range(99):
        await detector.record_attempt("ip:198.51.100.2", AbuseType.EXCESSIVE_REQUESTS)

    assert await store.keys("abuse:ban:*") == []
    assert not (await bans.check_ban("ip:198.51.100.2")).is_banned


async def test_threshold_imposes_exactly_one_ban(store, clock):
    """
    **Feature: rate-limiting, Property 6: Abuse Escalation**
    """
    bans, detector = build(store, clock)

    for _ in range(100):
        await detector.record_attempt("ip:198.51.100.2", AbuseType.EXCESSIVE_REQUESTS, {"action": "PASTE_CREATE"})

    assert len(await store.keys("abuse:ban:*")) == 1
    record = json.loads(await store.get(ban_key("ip:198.51.100.2")))
    assert record["type"] == "EXCESSIVE_REQUESTS"
    assert record["count"] == 100
    assert record["expiry"] == clock.now + 10 * 60 * 1000
    assert record["metadata"] == {"action": "PASTE_CREATE"}

    check = await bans.check_ban("ip:198.51.100.2")
    assert check.is_banned
    assert check.ban_expiry == clock.now + 10 * 60 * 1000


@settings(max_examples=30, deadline=None)
@given(abuse_type=st.sampled_from(list(AbuseType)))
def test_each_type_bans_for_its_own_duration(abuse_type: AbuseType):
    """
    **Feature: rate-limiting, Property 6: Abuse Escalation**

    Property: For every abuse type, reaching its threshold bans for the
    type's configured duration and the ban record TTL matches it.
    """
    rule = ABUSE_DETECTION[abuse_type]

    async def scenario():
        store = make_store()
        clock = FrozenClock()
        bans, detector = build(store, clock)
        for _ in range(rule.threshold):
            await detector.record_attempt("user:7", abuse_type)

        check = await bans.check_ban("user:7")
        assert check.is_banned
        assert check.ban_expiry == NOW_MS + rule.ban_duration_ms
        ttl = await store.ttl(ban_key("user:7"))
        assert rule.ban_duration_ms // 1000 - 1 <= ttl <= rule.ban_duration_ms // 1000

    asyncio.run(scenario())


async def test_abuse_counter_expires_after_five_minutes(store, clock):
    _, detector = build(store, clock)

    await detector.record_attempt("ip:1.2.3.4", AbuseType.RAPID_FIRE)
    await detector.record_attempt("ip:1.2.3.4", AbuseType.RAPID_FIRE)

    key = abuse_counter_key("ip:1.2.3.4", AbuseType.RAPID_FIRE)
    assert key == "abuse:RAPID_FIRE:ip:1_2_3_4"
    assert await store.get(key) == "2"
    assert 0 < await store.ttl(key) <= ABUSE_COUNTER_TTL_SECONDS


async def test_expired_ban_is_deleted_on_read(store, clock):
    bans, _ = build(store, clock)
    await bans.impose_ban("ip:1.2.3.4", AbuseType.RAPID_FIRE, 5 * 60 * 1000)

    clock.advance(5 * 60 * 1000)

    assert not (await bans.check_ban("ip:1.2.3.4")).is_banned
    assert await store.get(ban_key("ip:1.2.3.4")) is None


async def test_malformed_ban_record_is_ignored(store, clock):
    bans, _ = build(store, clock)
    await store.set(ban_key("ip:1.2.3.4"), "{not json")

    assert not (await bans.check_ban("ip:1.2.3.4")).is_banned


async def test_ban_record_without_expiry_lasts_five_minutes(store, clock):
    bans, _ = build(store, clock)
    await store.set(ban_key("ip:1.2.3.4"), json.dumps({"type": "EXCESSIVE_REQUESTS"}))

    check = await bans.check_ban("ip:1.2.3.4")

    assert check.is_banned
    assert check.ban_expiry == clock.now + DEFAULT_BAN_MS


async def test_store_errors_count_as_not_banned(broken_store, clock):
    bans, detector = build(broken_store, clock)

    assert not (await bans.check_ban("ip:1.2.3.4")).is_banned
    # Recording never raises
    await detector.record_attempt("ip:1.2.3.4", AbuseType.EXCESSIVE_REQUESTS)


async def test_missing_store_is_a_no_op(clock):
    bans, detector = build(None, clock)

    await detector.record_attempt("ip:1.2.3.4", AbuseType.EXCESSIVE_REQUESTS)

    assert not (await bans.check_ban("ip:1.2.3.4")).is_banned
