"""Shared fixtures: isolated settings and a controllable clock."""

from datetime import UTC, datetime, timedelta

import pytest

from lp_guardian.config.settings import Settings

BASE_TIME = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep LPG_* variables from the developer shell out of unit tests."""
    import os

    for key in list(os.environ):
        if key.startswith("LPG_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(BASE_TIME)


@pytest.fixture
def settings() -> Settings:
    """Default settings in the test environment (strict mode)."""
    return Settings(env="test")
