"""Static rate limit and abuse threshold tables, loaded once at import."""

import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union


class RateLimitAction(str, Enum):
    PASTE_CREATE = "PASTE_CREATE"
    PASTE_UPDATE = "PASTE_UPDATE"
    PASTE_DELETE = "PASTE_DELETE"
    URL_CHECK = "URL_CHECK"
    PUBLIC_PASTES = "PUBLIC_PASTES"
    RAW_ACCESS = "RAW_ACCESS"
    AUTH_ATTEMPT = "AUTH_ATTEMPT"
    GENERAL_API = "GENERAL_API"
    BURST = "BURST"


class AbuseType(str, Enum):
    EXCESSIVE_REQUESTS = "EXCESSIVE_REQUESTS"
    RAPID_FIRE = "RAPID_FIRE"
    # Internal errors while limiting count as a weak abuse signal
    SUSPICIOUS_PATTERNS = "SUSPICIOUS_PATTERNS"


_DURATION_PATTERN = re.compile(r"^(\d+)(s|m|h|d)$")
_UNIT_MS = {"s": 1000, "m": 60 * 1000, "h": 60 * 60 * 1000, "d": 24 * 60 * 60 * 1000}
DEFAULT_DURATION_MS = 60_000


def parse_duration(duration: str) -> int:
    """Convert "10s", "5m", "2h" or "1d" to milliseconds; anything else is one minute."""
    match = _DURATION_PATTERN.match(duration)
    if not match:
        return DEFAULT_DURATION_MS
    return int(match.group(1)) * _UNIT_MS[match.group(2)]


@dataclass(frozen=True)
class WindowQuota:
    requests: int
    window: str

    @property
    def window_ms(self) -> int:
        return parse_duration(self.window)

    @property
    def forbidden(self) -> bool:
        return self.requests == 0


@dataclass(frozen=True)
class ActionLimits:
    anonymous: WindowQuota
    authenticated: WindowQuota

    def for_identity(self, is_authenticated: bool) -> WindowQuota:
        return self.authenticated if is_authenticated else self.anonymous


@dataclass(frozen=True)
class AbuseRule:
    threshold: int
    ban_duration: str

    @property
    def ban_duration_ms(self) -> int:
        return parse_duration(self.ban_duration)


RATE_LIMIT_CONFIGS: Mapping[RateLimitAction, ActionLimits] = MappingProxyType({
    # Paste creation and modifications
    RateLimitAction.PASTE_CREATE: ActionLimits(WindowQuota(3, "1m"), WindowQuota(15, "1m")),
    RateLimitAction.PASTE_UPDATE: ActionLimits(WindowQuota(0, "1m"), WindowQuota(10, "1m")),
    RateLimitAction.PASTE_DELETE: ActionLimits(WindowQuota(0, "1m"), WindowQuota(20, "1m")),
    # API endpoints
    RateLimitAction.URL_CHECK: ActionLimits(WindowQuota(10, "1m"), WindowQuota(30, "1m")),
    RateLimitAction.PUBLIC_PASTES: ActionLimits(WindowQuota(30, "1m"), WindowQuota(60, "1m")),
    RateLimitAction.RAW_ACCESS: ActionLimits(WindowQuota(20, "1m"), WindowQuota(50, "1m")),
    # Authentication
    RateLimitAction.AUTH_ATTEMPT: ActionLimits(WindowQuota(5, "5m"), WindowQuota(10, "5m")),
    RateLimitAction.GENERAL_API: ActionLimits(WindowQuota(60, "1m"), WindowQuota(120, "1m")),
    # Short bursts of legitimate high-frequency usage
    RateLimitAction.BURST: ActionLimits(WindowQuota(10, "10s"), WindowQuota(30, "10s")),
})

ABUSE_DETECTION: Mapping[AbuseType, AbuseRule] = MappingProxyType({
    AbuseType.EXCESSIVE_REQUESTS: AbuseRule(threshold=100, ban_duration="10m"),
    AbuseType.RAPID_FIRE: AbuseRule(threshold=20, ban_duration="5m"),
    AbuseType.SUSPICIOUS_PATTERNS: AbuseRule(threshold=5, ban_duration="30m"),
})


def coerce_action(action: Union[RateLimitAction, str]) -> Optional[RateLimitAction]:
    """Return the canonical action, or None when the name is not configured."""
    if isinstance(action, RateLimitAction):
        return action
    try:
        return RateLimitAction(action)
    except ValueError:
        return None
