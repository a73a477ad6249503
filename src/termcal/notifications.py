"""
Upcoming-event reminders, each reported once per process.
"""

import logging
from collections.abc import Iterable
from datetime import UTC
from datetime import datetime
from datetime import timedelta

from termcal.models import Event

logger = logging.getLogger(__name__)


class UpcomingEventNotifier:
    def __init__(self, enabled: bool = True, minutes_before: int = 15):
        self.enabled = enabled
        self.minutes_before = minutes_before
        self._notified: set[tuple[str, str]] = set()

    def check(self, events: Iterable[Event], now: datetime | None = None) -> list[Event]:
        """Return events starting within the next `minutes_before` not reported before."""
        if not self.enabled:
            return []

        now = now or datetime.now(UTC)
        threshold = now + timedelta(minutes=self.minutes_before)
        due = []
        for event in events:
            key = (event.calendar_id, event.id)
            if key in self._notified or event.all_day_flag:
                continue
            if now < event.start <= threshold:
                self._notified.add(key)
                due.append(event)
                logger.info(f"Upcoming event: {event.subject} at {event.start:%H:%M}")
        return due
