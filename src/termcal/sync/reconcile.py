"""
Diffing a fetched calendar snapshot against the replica.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field

from termcal.db import ReplicaStore
from termcal.models import Event
from termcal.models import SyncStats
from termcal.models import SyncWindow

logger = logging.getLogger(__name__)


@dataclass
class EventDiff:
    """Changes needed to make one calendar's replica match the remote snapshot."""

    inserts: list[Event] = field(default_factory=list)
    updates: list[Event] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.inserts or self.updates or self.deletes)

    def stats(self) -> SyncStats:
        return SyncStats(
            inserted=len(self.inserts), updated=len(self.updates), deleted=len(self.deletes)
        )


def has_changed(local: Event, remote: Event) -> bool:
    """Compare by last_modified when both sides carry one, else by every field."""
    if local.last_modified is not None and remote.last_modified is not None:
        return local.last_modified != remote.last_modified
    return local.content_key() != remote.content_key()


def compute_diff(
    calendar_id: str, local_snapshot: Iterable[Event], remote_snapshot: Iterable[Event]
) -> EventDiff:
    """
    Match events by id within calendar_id.

    Both snapshots must cover the same window: anything in local_snapshot
    that is missing remotely is deleted.
    """
    local = {e.id: e for e in local_snapshot if e.calendar_id == calendar_id}

    remote: dict[str, Event] = {}
    for event in remote_snapshot:
        if event.calendar_id != calendar_id:
            raise ValueError(
                f"Remote event {event.id} belongs to {event.calendar_id}, not {calendar_id}"
            )
        if event.id in remote:
            logger.debug(f"Duplicate remote event id {event.id} in {calendar_id}, keeping last")
        remote[event.id] = event

    diff = EventDiff()
    for event_id, event in remote.items():
        existing = local.get(event_id)
        if existing is None:
            diff.inserts.append(event)
        elif has_changed(existing, event):
            diff.updates.append(event)
    diff.deletes = sorted(event_id for event_id in local if event_id not in remote)
    return diff


def reconcile_calendar(
    store: ReplicaStore, calendar_id: str, remote_events: Iterable[Event], window: SyncWindow
) -> SyncStats:
    """Diff one calendar's fetched window against the replica and commit the result.

    Local events outside the window are never deleted. They only take part in
    the diff when the remote snapshot still returns their id (an event that
    moved into the window), so such an event becomes an update, not a
    duplicate insert.
    """
    remote = []
    for event in remote_events:
        if event.overlaps(window):
            remote.append(event)
        else:
            logger.debug(f"Ignoring remote event {event.id} outside {window.start}..{window.end}")
    remote_ids = {e.id for e in remote}

    local = [
        e for e in store.read_events(calendar_id) if e.overlaps(window) or e.id in remote_ids
    ]

    diff = compute_diff(calendar_id, local, remote)
    if diff:
        store.apply_reconciliation(calendar_id, diff)
    stats = diff.stats()
    logger.debug(
        f"Calendar {calendar_id}: +{stats.inserted} ~{stats.updated} -{stats.deleted} "
        f"({len(remote)} remote event(s) in window)"
    )
    return stats
