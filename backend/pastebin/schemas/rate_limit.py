"""Rate limit schemas shared by the gate, the HTTP adapters and monitoring."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys (wire and store format)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RateLimitResult(CamelModel):
    """Outcome of a gate or quota decision. `reset` and `ban_expiry` are epoch ms."""
    success: bool
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[int] = None
    retry_after: Optional[int] = None
    is_abuse: Optional[bool] = None
    ban_expiry: Optional[int] = None
    # Set when the decision came from the unavailable-store policy, not a counter
    degraded: bool = Field(default=False, exclude=True)


class RateLimitErrorBody(CamelModel):
    """JSON body of a 429 response."""
    error: str
    code: Literal["RATE_LIMITED", "ABUSE_DETECTED"]
    retry_after: Optional[int] = None
    ban_expiry: Optional[int] = None


class RateLimitStatus(CamelModel):
    """Quota state reported without consuming a request."""
    remaining: int
    limit: int
    reset_time: int
    can_make_request: bool
    message: Optional[str] = None


class RateLimitEvent(CamelModel):
    """One gate decision, persisted for seven days."""
    timestamp: int
    identifier: str
    action: str
    success: bool
    remaining: int = 0
    limit: int = 0
    is_abuse: Optional[bool] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


AbusePatternType = Literal["rapid_requests", "distributed_attack", "credential_stuffing", "scraping"]
AbuseSeverity = Literal["low", "medium", "high", "critical"]


class AbusePattern(CamelModel):
    id: str
    type: AbusePatternType
    severity: AbuseSeverity
    description: str
    identifiers: list[str]
    start_time: int
    end_time: Optional[int] = None
    request_count: int
    actions: list[str]


class DailyMetrics(CamelModel):
    total: int = 0
    blocked: int = 0
    abuse: int = 0


class ActionMetrics(CamelModel):
    requests: int = 0
    blocked: int = 0


class AbuserSummary(CamelModel):
    identifier: str
    requests: int
    blocked: int


class RateLimitMetrics(CamelModel):
    daily: dict[str, DailyMetrics] = Field(default_factory=dict)
    by_action: dict[str, ActionMetrics] = Field(default_factory=dict)
    top_abusers: list[AbuserSummary] = Field(default_factory=list)
    recent_patterns: list[AbusePattern] = Field(default_factory=list)


class CleanupResult(CamelModel):
    events: int = 0
    metrics: int = 0
