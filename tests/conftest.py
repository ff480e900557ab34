import itertools
import os
import threading
import time
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.orm import sessionmaker

from timeboxer.config.settings import Settings
from timeboxer.models.entities import AvailabilityRule, BusyInterval, WorkItem
from timeboxer.models.errors import ExternalSyncFailure
from timeboxer.storage.database import Base, make_engine
from timeboxer.sync.calendar import CalendarProvider

# Monday 2 June 2025, 08:00 UTC
MONDAY_8AM = datetime(2025, 6, 2, 8, 0, tzinfo=timezone.utc)
WEEKDAYS = (1, 2, 3, 4, 5)
EVERY_DAY = (0, 1, 2, 3, 4, 5, 6)


def at(day: int, hour: int, minute: int = 0) -> datetime:
    """June 2025 instant in UTC; June 2 is a Monday."""
    return datetime(2025, 6, day, hour, minute, tzinfo=timezone.utc)


def busy_at(day: int, start_hour: int, end_hour: int) -> BusyInterval:
    return BusyInterval(start=at(day, start_hour), end=at(day, end_hour))


@pytest.fixture
def now():
    return MONDAY_8AM


@pytest.fixture
def morning_rule():
    """Mon-Fri 09:00-10:00."""
    return AvailabilityRule(
        id="rule-morning",
        name="Morning focus",
        weekdays=WEEKDAYS,
        start_time="09:00",
        end_time="10:00",
    )


@pytest.fixture
def daily_rule():
    """Every day 09:00-10:00."""
    return AvailabilityRule(
        id="rule-daily",
        name="Daily hour",
        weekdays=EVERY_DAY,
        start_time="09:00",
        end_time="10:00",
    )


@pytest.fixture
def three_hour_item():
    return WorkItem(id="item-1", name="Thesis", estimated_hours=3, priority=1)


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        timezone="UTC",
        auto_recalculate=False,
        recalc_debounce_seconds=0.01,
        sync_max_workers=2,
        calendar_access_token="",
    )


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class FakeRedis:
    """In-memory stand-in for the handful of redis commands the guard uses."""

    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def _purge(self):
        moment = time.monotonic()
        for key in [k for k, (_, exp) in self._data.items() if exp is not None and exp <= moment]:
            del self._data[key]

    def set(self, name, value, nx=False, px=None):
        with self._lock:
            self._purge()
            if nx and name in self._data:
                return None
            expires = time.monotonic() + px / 1000 if px else None
            self._data[name] = (value, expires)
            return True

    def get(self, name):
        with self._lock:
            self._purge()
            entry = self._data.get(name)
            return entry[0] if entry else None

    def delete(self, *names):
        with self._lock:
            return sum(1 for n in names if self._data.pop(n, None) is not None)

    def ping(self):
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()


class RecordingProvider(CalendarProvider):
    """Calendar provider that records calls and can be told to fail."""

    def __init__(self, busy=None, fail_names=(), fail_fetch=False, fail_delete_ids=()):
        self.busy = list(busy or [])
        self.fail_names = set(fail_names)
        self.fail_fetch = fail_fetch
        self.fail_delete_ids = set(fail_delete_ids)
        self.created = []
        self.deleted = []
        self._ids = itertools.count(1)

    def fetch_busy(self, start, end):
        if self.fail_fetch:
            raise ExternalSyncFailure("calendar unavailable")
        return list(self.busy)

    def create_event(self, assignment):
        if assignment.work_item_name in self.fail_names:
            raise ExternalSyncFailure(f"rejected {assignment.work_item_name}")
        self.created.append(assignment)
        return f"evt-{next(self._ids)}"

    def delete_event(self, external_id):
        if external_id in self.fail_delete_ids:
            raise ExternalSyncFailure(f"cannot delete {external_id}")
        self.deleted.append(external_id)


@pytest.fixture
def provider():
    return RecordingProvider()
