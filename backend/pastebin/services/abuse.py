"""
Abuse detection and temporary bans.

Every denied request bumps a per-identifier counter for its abuse type. The
counter expires five minutes after its first increment; reaching the type's
threshold within that window writes a ban record which the gate consults
before spending any quota.

Keys:
- abuse:<TYPE>:<identifier>   integer counter, 300s TTL
- abuse:ban:<identifier>      JSON {type, count, expiry, metadata, timestamp}
"""
import json
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog
from redis import asyncio as redis_asyncio

from pastebin.core.limits import ABUSE_DETECTION, AbuseRule, AbuseType
from pastebin.services.identity import sanitize_identifier
from pastebin.services.store import STORE_ERRORS
from pastebin.services.utils import Clock, now_ms

logger = structlog.get_logger()

ABUSE_COUNTER_TTL_SECONDS = 300
# Applied to ban records that carry no expiry of their own
DEFAULT_BAN_MS = 5 * 60 * 1000


def ban_key(identifier: str) -> str:
    return f"abuse:ban:{sanitize_identifier(identifier)}"


def abuse_counter_key(identifier: str, abuse_type: AbuseType) -> str:
    return f"abuse:{abuse_type.value}:{sanitize_identifier(identifier)}"


@dataclass(frozen=True)
class BanCheck:
    is_banned: bool
    ban_expiry: Optional[int] = None


NOT_BANNED = BanCheck(is_banned=False)


class BanRegistry:
    def __init__(self, store: Optional[redis_asyncio.Redis], clock: Clock = now_ms):
        self.store = store
        self.clock = clock

    async def check_ban(self, identifier: str) -> BanCheck:
        """Return the active ban for `identifier`, deleting it if it already expired."""
        if self.store is None:
            return NOT_BANNED

        key = ban_key(identifier)
        try:
            raw = await self.store.get(key)
            if raw is None:
                return NOT_BANNED

            try:
                record = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning("rate_limit.ban_record_malformed", key=key)
                return NOT_BANNED

            now = self.clock()
            expiry = record.get("expiry") if isinstance(record, dict) else None
            if not isinstance(expiry, (int, float)):
                expiry = now + DEFAULT_BAN_MS

            if now < expiry:
                return BanCheck(is_banned=True, ban_expiry=int(expiry))

            # The store TTL has not evicted it yet
            await self.store.delete(key)
            return NOT_BANNED
        except STORE_ERRORS as e:
            logger.error("rate_limit.ban_check_failed", key=key, error=str(e))
            return NOT_BANNED

    async def impose_ban(
        self,
        identifier: str,
        abuse_type: AbuseType,
        duration_ms: int,
        metadata: Optional[Mapping[str, Any]] = None,
        count: int = 0,
    ) -> int:
        """Write the ban record and return its expiry (epoch ms). Store errors propagate."""
        now = self.clock()
        expiry = now + duration_ms
        record = {
            "type": abuse_type.value,
            "count": count,
            "expiry": expiry,
            "metadata": dict(metadata) if metadata else None,
            "timestamp": now,
        }
        await self.store.setex(
            ban_key(identifier),
            math.ceil(duration_ms / 1000),
            json.dumps(record, default=str),
        )
        return expiry


class AbuseDetector:
    """Counts abuse signals per identifier and escalates them into bans."""

    def __init__(
        self,
        store: Optional[redis_asyncio.Redis],
        bans: BanRegistry,
        rules: Mapping[AbuseType, AbuseRule] = ABUSE_DETECTION,
    ):
        self.store = store
        self.bans = bans
        self.rules = rules

    async def record_attempt(
        self,
        identifier: str,
        abuse_type: AbuseType,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self.store is None:
            return

        key = abuse_counter_key(identifier, abuse_type)
        try:
            count = await self.store.incr(key)
            if count == 1:
                await self.store.expire(key, ABUSE_COUNTER_TTL_SECONDS)

            rule = self.rules[abuse_type]
            if count < rule.threshold:
                return

            expiry = await self.bans.impose_ban(
                identifier,
                abuse_type,
                rule.ban_duration_ms,
                metadata=metadata,
                count=count,
            )
            logger.warning(
                "rate_limit.abuse_detected",
                abuse_type=abuse_type.value,
                identifier=sanitize_identifier(identifier),
                count=count,
                threshold=rule.threshold,
                ban_duration=rule.ban_duration,
                ban_expiry=expiry,
                metadata=dict(metadata) if metadata else None,
            )
        except STORE_ERRORS as e:
            logger.error(
                "rate_limit.abuse_record_failed",
                abuse_type=abuse_type.value,
                key=key,
                error=str(e),
            )
