"""Pytest configuration and fixtures for backend tests."""

import os

# Must be set before any pastebin module reads settings
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("APP_ENV", "test")

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# 2026-01-01T00:00:15Z, 15 seconds into a one-minute window
NOW_MS = 1_767_225_615_000


class FrozenClock:
    """Clock returning a fixed epoch-ms instant that tests move by hand."""

    def __init__(self, now: int = NOW_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class BrokenStore:
    """Store whose every command fails as if the server were unreachable."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise RedisConnectionError("store unreachable")

        return fail


def make_store() -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    """Fresh in-memory Redis for each test."""
    return make_store()


@pytest.fixture
def broken_store():
    return BrokenStore()
