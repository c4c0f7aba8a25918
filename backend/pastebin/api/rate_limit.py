"""
HTTP adapters around the rate limit gate.

Three ways to protect an endpoint:
- `RateLimit(action)` as a FastAPI dependency (raises `RateLimitExceeded`)
- `@rate_limited(action)` on an endpoint that takes `request: Request`
- `with_rate_limit(action, handler, request=...)` for ad-hoc wrapping

All of them answer a denial with 429 and the JSON error body, and stamp the
X-RateLimit-* headers on successful responses.
"""
import functools
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from pastebin.api.deps import lookup_user_id
from pastebin.core.limits import RateLimitAction
from pastebin.schemas.rate_limit import RateLimitResult
from pastebin.services.rate_limit import RateLimitGate, rate_limit_error_body, rate_limit_headers

RateLimitedCallback = Callable[[RateLimitResult], Union[Response, Awaitable[Response]]]


class RateLimitExceeded(Exception):
    """Raised by the `RateLimit` dependency; rendered as a 429 response."""

    def __init__(self, result: RateLimitResult):
        super().__init__("rate limit exceeded")
        self.result = result


def rate_limited_response(result: RateLimitResult) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=rate_limit_error_body(result).to_wire(),
        headers=rate_limit_headers(result),
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return rate_limited_response(exc.result)


def _gate(request: Request) -> RateLimitGate:
    return request.app.state.rate_limit_gate


async def _check(
    action: Union[RateLimitAction, str],
    request: Request,
    user_id: Optional[str],
    **options: Any,
) -> RateLimitResult:
    if user_id is None:
        user_id = lookup_user_id(request)
    return await _gate(request).check(
        action,
        headers=request.headers,
        user_id=user_id,
        user_agent=request.headers.get("user-agent"),
        **options,
    )


async def with_rate_limit(
    action: Union[RateLimitAction, str],
    handler: Callable[[], Awaitable[Any]],
    *,
    request: Request,
    user_id: Optional[str] = None,
    on_rate_limited: Optional[RateLimitedCallback] = None,
    response: Optional[Response] = None,
    **options: Any,
) -> Any:
    """
    Run `handler` only if the caller is within quota.

    Headers are stamped on the handler's result when it is a Response,
    otherwise on `response` (the endpoint's injected Response) if given.
    """
    result = await _check(action, request, user_id, **options)
    if not result.success:
        if on_rate_limited is not None:
            custom = on_rate_limited(result)
            if inspect.isawaitable(custom):
                custom = await custom
            return custom
        return rate_limited_response(result)

    outcome = await handler()
    target = outcome if isinstance(outcome, Response) else response
    if target is not None:
        target.headers.update(rate_limit_headers(result))
    return outcome


def rate_limited(action: Union[RateLimitAction, str], **options: Any):
    """Decorator for endpoints declaring a `request: Request` parameter."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            if not isinstance(request, Request):
                raise TypeError(f"{func.__name__} must accept a `request: Request` parameter")

            async def handler():
                outcome = func(*args, **kwargs)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                return outcome

            response = kwargs.get("response")
            return await with_rate_limit(
                action,
                handler,
                request=request,
                response=response if isinstance(response, Response) else None,
                **options,
            )

        return wrapper

    return decorator


class RateLimit:
    """Dependency enforcing the quota for `action` before the endpoint runs."""

    def __init__(
        self,
        action: Union[RateLimitAction, str],
        *,
        skip_if_redis_unavailable: bool = True,
        check_abuse: bool = True,
    ):
        self.action = action
        self.skip_if_redis_unavailable = skip_if_redis_unavailable
        self.check_abuse = check_abuse

    async def __call__(self, request: Request, response: Response) -> RateLimitResult:
        result = await _check(
            self.action,
            request,
            None,
            skip_if_redis_unavailable=self.skip_if_redis_unavailable,
            check_abuse=self.check_abuse,
        )
        if not result.success:
            raise RateLimitExceeded(result)
        response.headers.update(rate_limit_headers(result))
        return result
