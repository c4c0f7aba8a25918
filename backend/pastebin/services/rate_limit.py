"""
Rate limit gate.

Single entry point used by every rate limited endpoint. For each request:

1. Refuse to count anything when the store is not configured
2. Resolve the caller identity (user or IP)
3. Deny outright while the user or its IP is banned
4. Spend one unit of the action quota
5. Feed denials into abuse detection
6. Hand the decision to the event logger

The gate never raises; internal failures resolve to the fail-open or
fail-closed policy chosen by the caller.
"""
import math
from typing import Mapping, Optional, Union

import structlog
from redis import asyncio as redis_asyncio

from pastebin.core.limits import RATE_LIMIT_CONFIGS, AbuseType, RateLimitAction, coerce_action
from pastebin.schemas.rate_limit import RateLimitErrorBody, RateLimitEvent, RateLimitResult, RateLimitStatus
from pastebin.services.abuse import NOT_BANNED, AbuseDetector, BanCheck, BanRegistry
from pastebin.services.identity import LOOPBACK_IP, Identity, resolve_identity
from pastebin.services.monitoring import EventLogger
from pastebin.services.quota import FAIL_CLOSED_RETRY_AFTER, QuotaStore
from pastebin.services.utils import Clock, now_ms, seconds_until
from pastebin.telemetry import record_decision

logger = structlog.get_logger()

__all__ = [
    "LEGACY_ACTION_MAP",
    "RATE_LIMIT_CONFIGS",
    "RateLimitGate",
    "check_legacy_rate_limit",
    "format_rate_limit_error",
    "rate_limit_error_body",
    "rate_limit_headers",
    "resolve_legacy_action",
]

BANNED_MESSAGE = "Too many requests - temporarily banned due to suspicious activity"
LIMITED_MESSAGE = "Too many requests - please try again later"
STATUS_FALLBACK_MS = 60_000

# Action names used by older callers
LEGACY_ACTION_MAP: Mapping[str, RateLimitAction] = {
    "paste": RateLimitAction.PASTE_CREATE,
    "create-paste": RateLimitAction.PASTE_CREATE,
    "update-paste": RateLimitAction.PASTE_UPDATE,
    "delete-paste": RateLimitAction.PASTE_DELETE,
}


def resolve_legacy_action(action: str) -> RateLimitAction:
    return LEGACY_ACTION_MAP.get(action, RateLimitAction.GENERAL_API)


def _action_name(action: Union[RateLimitAction, str]) -> str:
    resolved = coerce_action(action)
    return resolved.value if resolved else str(action)


def _outcome(result: RateLimitResult) -> str:
    if result.is_abuse:
        return "banned"
    if result.degraded:
        return "degraded_allowed" if result.success else "degraded_denied"
    return "allowed" if result.success else "limited"


class RateLimitGate:
    def __init__(
        self,
        store: Optional[redis_asyncio.Redis],
        *,
        trust_proxy: bool = False,
        events: Optional[EventLogger] = None,
        clock: Clock = now_ms,
        track_authenticated_ip: bool = False,
        quotas: Optional[QuotaStore] = None,
        bans: Optional[BanRegistry] = None,
        detector: Optional[AbuseDetector] = None,
    ):
        self.store = store
        self.trust_proxy = trust_proxy
        self.events = events
        self.clock = clock
        self.track_authenticated_ip = track_authenticated_ip
        self.quotas = quotas or QuotaStore(store, clock=clock)
        self.bans = bans or BanRegistry(store, clock=clock)
        self.detector = detector or AbuseDetector(store, self.bans)

    @property
    def configs(self):
        return self.quotas.configs

    @staticmethod
    def _unavailable(skip_if_redis_unavailable: bool) -> RateLimitResult:
        if skip_if_redis_unavailable:
            return RateLimitResult(success=True, degraded=True)
        return RateLimitResult(success=False, retry_after=FAIL_CLOSED_RETRY_AFTER, degraded=True)

    async def _active_ban(self, identity: Identity) -> BanCheck:
        user_ban = NOT_BANNED
        if identity.is_authenticated:
            user_ban = await self.bans.check_ban(identity.identifier)
        ip_ban = await self.bans.check_ban(identity.ip_identifier)
        expiries = [b.ban_expiry for b in (user_ban, ip_ban) if b.is_banned and b.ban_expiry]
        if not expiries:
            return NOT_BANNED
        return BanCheck(is_banned=True, ban_expiry=max(expiries))

    def _log_decision(
        self,
        action: Union[RateLimitAction, str],
        identity: Optional[Identity],
        result: RateLimitResult,
        user_id: Optional[str],
        user_agent: Optional[str],
        now: int,
    ) -> None:
        resolved = coerce_action(action)
        record_decision(resolved.value if resolved else "UNKNOWN", _outcome(result))
        if self.events is None or identity is None:
            return
        self.events.log_event(RateLimitEvent(
            timestamp=now,
            identifier=identity.identifier,
            action=_action_name(action),
            success=result.success,
            remaining=result.remaining or 0,
            limit=result.limit or 0,
            is_abuse=result.is_abuse,
            user_agent=user_agent,
            ip=identity.ip,
            user_id=user_id,
        ))

    async def check(
        self,
        action: Union[RateLimitAction, str],
        *,
        headers: Mapping[str, str],
        user_id: Optional[str] = None,
        skip_if_redis_unavailable: bool = True,
        check_abuse: bool = True,
        user_agent: Optional[str] = None,
    ) -> RateLimitResult:
        """Decide whether the caller may perform `action` now."""
        if self.store is None:
            return self._unavailable(skip_if_redis_unavailable)

        now = self.clock()
        identity: Optional[Identity] = None
        try:
            identity = resolve_identity(headers, user_id=user_id, trust_proxy=self.trust_proxy)

            if check_abuse:
                ban = await self._active_ban(identity)
                if ban.is_banned:
                    result = RateLimitResult(
                        success=False,
                        is_abuse=True,
                        ban_expiry=ban.ban_expiry,
                        retry_after=seconds_until(ban.ban_expiry, now),
                    )
                    logger.info(
                        "rate_limit.banned_request",
                        action=_action_name(action),
                        identifier=identity.identifier,
                        ban_expiry=ban.ban_expiry,
                    )
                    self._log_decision(action, identity, result, user_id, user_agent, now)
                    return result

            resolved = coerce_action(action)
            if resolved is None or resolved not in self.configs:
                logger.warning("rate_limit.unknown_action", action=_action_name(action))
                record_decision("UNKNOWN", "allowed")
                return RateLimitResult(success=True)

            result = await self.quotas.consume(
                identity.identifier,
                resolved,
                identity.is_authenticated,
                skip_if_redis_unavailable=skip_if_redis_unavailable,
            )

            if result.degraded:
                # The counter store failed mid-request; not an overage
                if check_abuse:
                    await self.detector.record_attempt(
                        identity.identifier,
                        AbuseType.SUSPICIOUS_PATTERNS,
                        {"action": resolved.value, "error": "quota store unavailable"},
                    )
                self._log_decision(resolved, identity, result, user_id, user_agent, now)
                return result

            if not result.success:
                if check_abuse:
                    await self._record_excessive(identity, resolved, user_agent)
                result = result.model_copy(update={"retry_after": seconds_until(result.reset, now)})

            self._log_decision(resolved, identity, result, user_id, user_agent, now)
            return result
        except Exception as e:
            logger.error("rate_limit.check_failed", action=_action_name(action), error=str(e))
            if check_abuse:
                identifier = identity.identifier if identity else f"ip:{LOOPBACK_IP}"
                await self.detector.record_attempt(
                    identifier,
                    AbuseType.SUSPICIOUS_PATTERNS,
                    {"action": _action_name(action), "error": str(e)},
                )
            resolved = coerce_action(action)
            record_decision(resolved.value if resolved else "UNKNOWN", "error")
            return self._unavailable(skip_if_redis_unavailable)

    async def _record_excessive(
        self,
        identity: Identity,
        action: RateLimitAction,
        user_agent: Optional[str],
    ) -> None:
        metadata = {
            "action": action.value,
            "isAuthenticated": identity.is_authenticated,
            "ip": identity.ip,
            "userAgent": user_agent,
        }
        await self.detector.record_attempt(identity.identifier, AbuseType.EXCESSIVE_REQUESTS, metadata)
        # Anonymous identifiers are the IP identifier already, so their overage counts twice
        if not identity.is_authenticated or self.track_authenticated_ip:
            await self.detector.record_attempt(identity.ip_identifier, AbuseType.EXCESSIVE_REQUESTS, metadata)

    async def status(
        self,
        action: Union[RateLimitAction, str],
        *,
        headers: Mapping[str, str],
        user_id: Optional[str] = None,
    ) -> RateLimitStatus:
        """Report the caller's quota for `action` without spending it."""
        now = self.clock()
        try:
            identity = resolve_identity(headers, user_id=user_id, trust_proxy=self.trust_proxy)
            ban = await self._active_ban(identity)
            if ban.is_banned:
                return RateLimitStatus(
                    remaining=0,
                    limit=0,
                    reset_time=ban.ban_expiry,
                    can_make_request=False,
                    message=format_rate_limit_error(
                        RateLimitResult(success=False, is_abuse=True, ban_expiry=ban.ban_expiry), now
                    ),
                )

            result = await self.quotas.peek(identity.identifier, action, identity.is_authenticated)
            return RateLimitStatus(
                remaining=result.remaining or 0,
                limit=result.limit or 0,
                reset_time=result.reset or now + STATUS_FALLBACK_MS,
                can_make_request=result.success,
            )
        except Exception as e:
            logger.error("rate_limit.status_failed", action=_action_name(action), error=str(e))
            return RateLimitStatus(
                remaining=0,
                limit=0,
                reset_time=now + STATUS_FALLBACK_MS,
                can_make_request=False,
            )


async def check_legacy_rate_limit(
    gate: RateLimitGate,
    user_id: Optional[str] = None,
    action: str = "paste",
    headers: Optional[Mapping[str, str]] = None,
) -> dict:
    """Old-style check returning only {success, limit, remaining, reset}."""
    result = await gate.check(resolve_legacy_action(action), headers=headers or {}, user_id=user_id)
    return {
        "success": result.success,
        "limit": result.limit or 0,
        "remaining": result.remaining or 0,
        "reset": result.reset or 0,
    }


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers: dict[str, str] = {}
    if result.limit is not None:
        headers["X-RateLimit-Limit"] = str(result.limit)
    if result.remaining is not None:
        headers["X-RateLimit-Remaining"] = str(result.remaining)
    if result.reset is not None:
        headers["X-RateLimit-Reset"] = str(math.ceil(result.reset / 1000))
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def rate_limit_error_body(result: RateLimitResult) -> RateLimitErrorBody:
    if result.is_abuse:
        return RateLimitErrorBody(
            error=BANNED_MESSAGE,
            code="ABUSE_DETECTED",
            retry_after=result.retry_after,
            ban_expiry=result.ban_expiry,
        )
    return RateLimitErrorBody(error=LIMITED_MESSAGE, code="RATE_LIMITED", retry_after=result.retry_after)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''}"


def format_rate_limit_error(result: RateLimitResult, now: Optional[int] = None) -> str:
    """Human readable explanation of a denial."""
    if result.is_abuse and result.ban_expiry:
        now = now_ms() if now is None else now
        minutes = math.ceil(seconds_until(result.ban_expiry, now) / 60)
        if minutes > 60:
            wait = _plural(math.ceil(minutes / 60), "hour")
        else:
            wait = _plural(minutes, "minute")
        return f"You've been temporarily banned due to excessive requests. Try again in {wait}."

    if result.retry_after:
        seconds = result.retry_after
        if seconds > 60:
            return f"Rate limit exceeded. Try again in {_plural(math.ceil(seconds / 60), 'minute')}."
        return f"Rate limit exceeded. Try again in {_plural(seconds, 'second')}."

    return "Rate limit exceeded. Please try again later."
