from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pastebin.core.security import decode_access_token
from pastebin.services.monitoring import RateLimitMonitor
from pastebin.services.rate_limit import RateLimitGate

# Resolves the signed-in user id (or None) for a request
CurrentUserLookup = Callable[[Request], Optional[str]]

http_bearer = HTTPBearer(auto_error=False)


def bearer_user_lookup(request: Request) -> Optional[str]:
    """Default lookup: the `sub` claim of a valid Bearer token."""
    authorization = request.headers.get("authorization")
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return decode_access_token(token.strip(), settings=getattr(request.app.state, "settings", None))


def lookup_user_id(request: Request) -> Optional[str]:
    lookup: CurrentUserLookup = getattr(request.app.state, "current_user_lookup", bearer_user_lookup)
    return lookup(request)


def get_optional_user_id(request: Request) -> Optional[str]:
    return lookup_user_id(request)


def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> str:
    user_id = lookup_user_id(request)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user_id


def get_gate(request: Request) -> RateLimitGate:
    return request.app.state.rate_limit_gate


def get_monitor(request: Request) -> RateLimitMonitor:
    return request.app.state.rate_limit_monitor
