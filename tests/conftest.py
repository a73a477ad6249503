"""
Shared pytest fixtures and event/calendar builders.
"""

from datetime import UTC
from datetime import datetime
from datetime import timedelta

import pytest

from termcal.db import ReplicaStore
from termcal.models import Calendar
from termcal.models import Event
from termcal.models import SyncWindow
from termcal.sync.reconcile import EventDiff

CAL_1 = "cal-work"
CAL_2 = "cal-family"

# Fixed "now" for every test: window is 2026-01-29 .. 2026-06-01.
NOW = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)
PAST_DAYS = 31
FUTURE_DAYS = 92


def at(day: int, hour: int = 10, month: int = 3) -> datetime:
    return datetime(2026, month, day, hour, tzinfo=UTC)


def make_calendar(calendar_id: str, name: str | None = None, owner: bool = True) -> Calendar:
    return Calendar(calendar_id, name or f"Calendar {calendar_id}", owner_flag=owner)


def make_event(
    event_id: str,
    calendar_id: str = CAL_1,
    subject: str = "Test Event",
    start: datetime | None = None,
    hours: int = 1,
    version: int | None = 1,
    **kwargs,
) -> Event:
    """Build an event; `version` becomes a distinct last_modified (None leaves it unset)."""
    start = start or at(2)
    last_modified = None
    if version is not None:
        last_modified = datetime(2026, 2, 1, tzinfo=UTC) + timedelta(minutes=version)
    return Event(
        id=event_id,
        calendar_id=calendar_id,
        subject=subject,
        start=start,
        end=start + timedelta(hours=hours),
        last_modified=last_modified,
        **kwargs,
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "replica.db"


@pytest.fixture
def store(db_path):
    with ReplicaStore(db_path) as db:
        yield db


@pytest.fixture
def window():
    return SyncWindow.around(NOW, PAST_DAYS, FUTURE_DAYS)


@pytest.fixture
def seeded_store(store):
    """Replica holding CAL_1 (E1 v1) and CAL_2 (F1 v1)."""
    store.replace_calendars([make_calendar(CAL_1, "Work"), make_calendar(CAL_2, "Family", False)])
    store.apply_reconciliation(CAL_1, EventDiff(inserts=[make_event("E1", CAL_1, "Standup")]))
    store.apply_reconciliation(CAL_2, EventDiff(inserts=[make_event("F1", CAL_2, "Dinner")]))
    return store
