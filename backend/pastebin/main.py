import logging
import sys
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis import asyncio as redis_asyncio

from pastebin.api.deps import bearer_user_lookup
from pastebin.api.rate_limit import RateLimitExceeded, rate_limit_exceeded_handler
from pastebin.api.routes import health, rate_limits
from pastebin.core.config import Settings, get_settings
from pastebin.services.monitoring import EventLogger, RateLimitMonitor
from pastebin.services.rate_limit import RateLimitGate
from pastebin.services.store import build_store, close_store
from pastebin.services.utils import Clock, now_ms
from pastebin.telemetry import setup_prometheus

StoreFactory = Callable[[Settings], Optional[redis_asyncio.Redis]]


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flush pending event writes before the client goes away
    await app.state.rate_limit_events.drain()
    await close_store(app.state.store)


def create_app(
    settings: Optional[Settings] = None,
    store_factory: StoreFactory = build_store,
    clock: Clock = now_ms,
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.backend_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = store_factory(settings)
    events = EventLogger(store, max_pending=settings.rate_limit_event_max_pending, clock=clock)
    app.state.settings = settings
    app.state.store = store
    app.state.rate_limit_events = events
    app.state.rate_limit_gate = RateLimitGate(
        store,
        trust_proxy=settings.behind_trusted_proxy,
        events=events,
        clock=clock,
        track_authenticated_ip=settings.abuse_track_authenticated_ip,
    )
    app.state.rate_limit_monitor = RateLimitMonitor(store, clock=clock)
    app.state.current_user_lookup = bearer_user_lookup

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    app.include_router(health.router)
    app.include_router(rate_limits.router, prefix="/api")

    if settings.enable_prometheus_metrics:
        setup_prometheus(app, settings.prometheus_metrics_path)

    return app


# Basic structured logging to stdout for ops visibility
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

app = create_app()
