"""
Rate limit monitoring.

Provides:
- Event logging for every gate decision (detached, best effort)
- Daily / hourly / per-action rollup counters
- Abuse pattern detection over the last ten minutes of events
- Metrics for the dashboard and housekeeping of old keys

Keys:
- rl:events:<epoch-ms>:<random>             JSON event, 7 day TTL
- rl:metrics:daily:<date>                   hash, 30 day TTL
- rl:metrics:hourly:<date>:<hour>           hash, 30 day TTL
- rl:metrics:actions:<action>:<date>        hash, 30 day TTL
"""
import asyncio
import re
import uuid
from collections import Counter, defaultdict
from datetime import timedelta
from typing import Optional

import structlog
from pydantic import ValidationError
from redis import asyncio as redis_asyncio

from pastebin.core.limits import RateLimitAction
from pastebin.schemas.rate_limit import (
    AbusePattern,
    AbuserSummary,
    ActionMetrics,
    CleanupResult,
    DailyMetrics,
    RateLimitEvent,
    RateLimitMetrics,
)
from pastebin.services.store import STORE_ERRORS
from pastebin.services.utils import Clock, now_ms, utc_date, utc_datetime

logger = structlog.get_logger()

EVENT_PREFIX = "rl:events"
METRICS_PREFIX = "rl:metrics"

EVENT_TTL_SECONDS = 7 * 24 * 60 * 60
METRIC_TTL_SECONDS = 30 * 24 * 60 * 60
EVENT_RETENTION_MS = EVENT_TTL_SECONDS * 1000
METRIC_RETENTION_MS = METRIC_TTL_SECONDS * 1000

PATTERN_WINDOW_MS = 10 * 60 * 1000
RAPID_REQUEST_THRESHOLD = 50
DISTRIBUTED_IP_THRESHOLD = 10
SCRAPING_THRESHOLD = 30
SCRAPING_ACTIONS = (RateLimitAction.PUBLIC_PASTES.value, RateLimitAction.RAW_ACCESS.value)
TOP_ABUSERS_LIMIT = 10

_DATE_SEGMENT = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def event_key_timestamp(key: str) -> Optional[int]:
    """Epoch ms embedded in an event key, or None if the key is not an event key."""
    parts = key.split(":")
    if len(parts) < 3:
        return None
    try:
        return int(parts[2])
    except ValueError:
        return None


def _metric_key_date(key: str) -> Optional[str]:
    for part in key.split(":")[2:]:
        if _DATE_SEGMENT.match(part):
            return part
    return None


class EventLogger:
    """
    Persists gate decisions.

    `log_event` never blocks or raises: it spawns a detached task for the
    write. At most `max_pending` writes are in flight; events beyond that are
    dropped.
    """

    def __init__(
        self,
        store: Optional[redis_asyncio.Redis],
        max_pending: int = 1000,
        clock: Clock = now_ms,
    ):
        self.store = store
        self.max_pending = max_pending
        self.clock = clock
        self._pending: set[asyncio.Task] = set()
        self.dropped = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def log_event(self, event: RateLimitEvent) -> None:
        if self.store is None:
            return
        if len(self._pending) >= self.max_pending:
            self.dropped += 1
            logger.debug("rate_limit.event_dropped", action=event.action, pending=len(self._pending))
            return
        try:
            task = asyncio.get_running_loop().create_task(self.record(event))
        except RuntimeError:
            logger.debug("rate_limit.event_no_loop", action=event.action)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def record(self, event: RateLimitEvent) -> None:
        """Write the event and bump the rollup counters. Errors are logged only."""
        if self.store is None:
            return

        now = self.clock()
        event = event.model_copy(update={"timestamp": now})
        date = utc_date(now)
        hour = utc_datetime(now).hour
        daily_key = f"{METRICS_PREFIX}:daily:{date}"
        hourly_key = f"{METRICS_PREFIX}:hourly:{date}:{hour}"
        action_key = f"{METRICS_PREFIX}:actions:{event.action}:{date}"

        try:
            event_key = f"{EVENT_PREFIX}:{now}:{uuid.uuid4().hex[:9]}"
            await self.store.setex(event_key, EVENT_TTL_SECONDS, event.model_dump_json(by_alias=True, exclude_none=True))

            await self.store.hincrby(daily_key, "total_requests", 1)
            await self.store.hincrby(hourly_key, "total_requests", 1)
            await self.store.hincrby(action_key, "requests", 1)
            if not event.success:
                await self.store.hincrby(daily_key, "blocked_requests", 1)
                await self.store.hincrby(hourly_key, "blocked_requests", 1)
                await self.store.hincrby(action_key, "blocked", 1)
            if event.is_abuse:
                await self.store.hincrby(daily_key, "abuse_attempts", 1)

            for key in (daily_key, hourly_key, action_key):
                await self.store.expire(key, METRIC_TTL_SECONDS)
        except STORE_ERRORS as e:
            logger.error("rate_limit.event_log_failed", action=event.action, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight writes (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def _severity(count: int, critical: int, high: Optional[int]) -> str:
    if count > critical:
        return "critical"
    if high is not None and count > high:
        return "high"
    return "medium"


def detect_patterns(events: list[RateLimitEvent], now: int) -> list[AbusePattern]:
    """Apply the rapid-request, distributed-attack and scraping heuristics."""
    patterns: list[AbusePattern] = []
    window_start = now - PATTERN_WINDOW_MS

    # Rapid fire requests from the same source
    per_identifier = Counter(event.identifier for event in events)
    for identifier, count in per_identifier.items():
        if count <= RAPID_REQUEST_THRESHOLD:
            continue
        actions = sorted({e.action for e in events if e.identifier == identifier})
        patterns.append(AbusePattern(
            id=f"rapid_{identifier}_{now}",
            type="rapid_requests",
            severity=_severity(count, critical=100, high=75),
            description=f"{count} requests in 10 minutes from {identifier}",
            identifiers=[identifier],
            start_time=window_start,
            request_count=count,
            actions=actions,
        ))

    # Many failing IPs on the same action
    failing_ips: dict[str, set[str]] = defaultdict(set)
    failing_counts: Counter = Counter()
    for event in events:
        if not event.success:
            failing_counts[event.action] += 1
            if event.ip:
                failing_ips[event.action].add(event.ip)
    for action, ips in failing_ips.items():
        if len(ips) <= DISTRIBUTED_IP_THRESHOLD:
            continue
        patterns.append(AbusePattern(
            id=f"distributed_{action}_{now}",
            type="distributed_attack",
            severity=_severity(len(ips), critical=50, high=25),
            description=f"{len(ips)} different IPs attacking {action} endpoint",
            identifiers=[f"ip:{ip}" for ip in sorted(ips)],
            start_time=window_start,
            request_count=failing_counts[action],
            actions=[action],
        ))

    # High volume of successful listing / raw reads
    for action in SCRAPING_ACTIONS:
        successes = Counter(e.identifier for e in events if e.success and e.action == action)
        for identifier, count in successes.items():
            if count <= SCRAPING_THRESHOLD:
                continue
            patterns.append(AbusePattern(
                id=f"scraping_{action}_{identifier}_{now}",
                type="scraping",
                severity="high" if count > 60 else "medium",
                description=f"Potential scraping: {count} successful {action} requests from {identifier}",
                identifiers=[identifier],
                start_time=window_start,
                request_count=count,
                actions=[action],
            ))

    return patterns


class RateLimitMonitor:
    """Pattern detection, metrics and cleanup over the stored events."""

    def __init__(self, store: Optional[redis_asyncio.Redis], clock: Clock = now_ms):
        self.store = store
        self.clock = clock

    async def recent_events(self, now: Optional[int] = None) -> list[RateLimitEvent]:
        """Events whose key timestamp falls inside the pattern window. Store errors propagate."""
        now = self.clock() if now is None else now
        cutoff = now - PATTERN_WINDOW_MS
        keys = await self.store.keys(f"{EVENT_PREFIX}:*")
        recent_keys = [k for k in keys if (event_key_timestamp(k) or 0) > cutoff]
        if not recent_keys:
            return []

        events: list[RateLimitEvent] = []
        for raw in await self.store.mget(recent_keys):
            if not raw:
                continue
            try:
                events.append(RateLimitEvent.model_validate_json(raw))
            except ValidationError:
                continue
        return events

    async def detect_abuse_patterns(self) -> list[AbusePattern]:
        if self.store is None:
            return []
        try:
            now = self.clock()
            return detect_patterns(await self.recent_events(now), now)
        except STORE_ERRORS as e:
            logger.error("rate_limit.pattern_detection_failed", error=str(e))
            return []

    async def get_metrics(self, days: int = 7) -> RateLimitMetrics:
        if self.store is None:
            return RateLimitMetrics()

        try:
            now = self.clock()
            today = utc_datetime(now)
            metrics = RateLimitMetrics()
            by_action: dict[str, ActionMetrics] = {a.value: ActionMetrics() for a in RateLimitAction}

            for offset in range(days):
                date = (today - timedelta(days=offset)).strftime("%Y-%m-%d")
                daily = await self.store.hgetall(f"{METRICS_PREFIX}:daily:{date}") or {}
                metrics.daily[date] = DailyMetrics(
                    total=int(daily.get("total_requests", 0)),
                    blocked=int(daily.get("blocked_requests", 0)),
                    abuse=int(daily.get("abuse_attempts", 0)),
                )
                for action, totals in by_action.items():
                    counts = await self.store.hgetall(f"{METRICS_PREFIX}:actions:{action}:{date}") or {}
                    totals.requests += int(counts.get("requests", 0))
                    totals.blocked += int(counts.get("blocked", 0))

            metrics.by_action = {action: totals for action, totals in by_action.items() if totals.requests}

            events = await self.recent_events(now)
            metrics.top_abusers = _top_abusers(events)
            metrics.recent_patterns = detect_patterns(events, now)
            return metrics
        except STORE_ERRORS as e:
            logger.error("rate_limit.metrics_failed", error=str(e))
            return RateLimitMetrics()

    async def cleanup(self) -> CleanupResult:
        """Delete events older than 7 days and metric keys older than 30 days."""
        result = CleanupResult()
        if self.store is None:
            return result

        try:
            now = self.clock()
            event_cutoff = now - EVENT_RETENTION_MS
            event_keys = await self.store.keys(f"{EVENT_PREFIX}:*")
            old_events = [
                k for k in event_keys
                if (ts := event_key_timestamp(k)) is not None and ts < event_cutoff
            ]
            if old_events:
                result.events = await self.store.delete(*old_events)
                logger.info("rate_limit.cleanup_events", count=result.events)

            metric_cutoff = utc_date(now - METRIC_RETENTION_MS)
            metric_keys = await self.store.keys(f"{METRICS_PREFIX}:*")
            old_metrics = [
                k for k in metric_keys
                if (date := _metric_key_date(k)) is not None and date < metric_cutoff
            ]
            if old_metrics:
                result.metrics = await self.store.delete(*old_metrics)
                logger.info("rate_limit.cleanup_metrics", count=result.metrics)
        except STORE_ERRORS as e:
            logger.error("rate_limit.cleanup_failed", error=str(e))
        return result


def _top_abusers(events: list[RateLimitEvent]) -> list[AbuserSummary]:
    requests: Counter = Counter()
    blocked: Counter = Counter()
    for event in events:
        requests[event.identifier] += 1
        if not event.success:
            blocked[event.identifier] += 1
    ranked = sorted(blocked, key=lambda ident: (blocked[ident], requests[ident]), reverse=True)
    return [
        AbuserSummary(identifier=ident, requests=requests[ident], blocked=blocked[ident])
        for ident in ranked[:TOP_ABUSERS_LIMIT]
    ]
