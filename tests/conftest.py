import os
import sys
from datetime import datetime, timezone

import pytest

# Ensure the repository root is on sys.path so tests can import the loma package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from loma.cache import QueryCache  # noqa: E402
from loma.config import Settings  # noqa: E402
from loma.desk import PracticeDesk  # noqa: E402
from loma.notifications import Notifier  # noqa: E402
from loma.resources import UserContext  # noqa: E402

BASE_URL = "http://loma.test"
NOW = datetime(2025, 2, 28, 9, 0, tzinfo=timezone.utc)


class ManualClock:
    """Monotonic clock that only moves when a test says so."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(api_url=BASE_URL, request_timeout=5, list_stale_seconds=30)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return QueryCache(30, clock=clock)


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def user():
    return UserContext(id=7, organization_id=3, email="dr.reyes@example.com")


@pytest.fixture
def desk(settings, cache, notifier, user):
    return PracticeDesk(settings, cache=cache, notifier=notifier, user=user, clock=lambda: NOW)
