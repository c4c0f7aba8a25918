"""
Rate limit monitoring and status endpoints.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from pastebin.api.deps import get_current_user_id, get_gate, get_monitor, get_optional_user_id
from pastebin.core.limits import coerce_action
from pastebin.services.monitoring import RateLimitMonitor
from pastebin.services.rate_limit import RateLimitGate

router = APIRouter(prefix="/rate-limits", tags=["rate-limits"])


@router.get("/metrics")
async def get_metrics(
    days: int = Query(default=7, ge=1, le=30),
    user_id: str = Depends(get_current_user_id),
    monitor: RateLimitMonitor = Depends(get_monitor),
):
    """Daily totals, per-action totals, top abusers and current patterns."""
    metrics = await monitor.get_metrics(days=days)
    return metrics.to_wire()


@router.get("/patterns")
async def get_patterns(
    user_id: str = Depends(get_current_user_id),
    monitor: RateLimitMonitor = Depends(get_monitor),
):
    patterns = await monitor.detect_abuse_patterns()
    return {"patterns": [p.to_wire() for p in patterns]}


@router.post("/cleanup")
async def cleanup(
    user_id: str = Depends(get_current_user_id),
    monitor: RateLimitMonitor = Depends(get_monitor),
):
    result = await monitor.cleanup()
    return result.to_wire()


@router.get("/status/{action}")
async def get_status(
    action: str,
    request: Request,
    user_id: Optional[str] = Depends(get_optional_user_id),
    gate: RateLimitGate = Depends(get_gate),
):
    """Caller's remaining quota for an action; does not consume a request."""
    resolved = coerce_action(action.upper())
    if resolved is None:
        raise HTTPException(status_code=404, detail="Unknown rate limit action")
    status = await gate.status(resolved, headers=request.headers, user_id=user_id)
    return status.to_wire()
