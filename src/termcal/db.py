"""
SQLite replica of calendars and events — the only thing the UI ever reads.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import UTC
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from termcal.models import MY_CALENDARS
from termcal.models import Calendar
from termcal.models import Event
from termcal.models import StoreError
from termcal.models import SyncState
from termcal.models import SyncWindow

if TYPE_CHECKING:
    from termcal.sync.reconcile import EventDiff

SCHEMA_VERSION = 1

_EVENT_FIELDS = (
    "calendar_id",
    "id",
    "subject",
    "start_time",
    "end_time",
    "all_day",
    "location",
    "organizer",
    "attendees",
    "body",
    "body_type",
    "last_modified",
)
_EVENT_COLUMNS = ", ".join(_EVENT_FIELDS)


class ReplicaStore:
    """Durable calendar/event replica.

    One writable store (owned by the sync worker) and any number of read-only
    stores may be open on the same file. WAL journaling gives readers the last
    committed snapshot while a reconciliation is being written.
    """

    def __init__(self, db_path: Path, readonly: bool = False, busy_timeout: float = 10):
        self.db_path = db_path
        self.readonly = readonly
        self.busy_timeout = busy_timeout
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open (creating if needed) the replica database."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(
                str(self.db_path), timeout=self.busy_timeout, check_same_thread=False
            )
            self.conn.row_factory = sqlite3.Row  # Enable column access by name
            self.conn.execute("PRAGMA foreign_keys = ON")
            if not self.readonly:
                # WAL mode persists in the file, so read-only handles inherit it
                self.conn.execute("PRAGMA journal_mode = WAL")
            self.conn.execute("PRAGMA synchronous = NORMAL")
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            self.close()
            raise StoreError(f"Cannot open replica database {self.db_path}: {e}") from e

    def _init_schema(self):
        """Create tables if they don't exist.

        A replica already at SCHEMA_VERSION is left untouched, so opening it
        never writes and never waits for the sync worker's write lock.
        """
        version = self.conn.execute("PRAGMA user_version").fetchone()[0]
        if version > SCHEMA_VERSION:
            raise StoreError(
                f"Replica {self.db_path} was written by a newer version (schema {version})"
            )
        if version == SCHEMA_VERSION:
            return
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS calendars (
                id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                owner_flag INTEGER NOT NULL DEFAULT 0,
                position INTEGER NOT NULL DEFAULT 0
            );
            CREATE TABLE IF NOT EXISTS events (
                calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
                id TEXT NOT NULL,
                subject TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                all_day INTEGER NOT NULL DEFAULT 0,
                location TEXT NOT NULL DEFAULT '',
                organizer TEXT NOT NULL DEFAULT '',
                attendees TEXT NOT NULL DEFAULT '[]',
                body TEXT NOT NULL DEFAULT '',
                body_type TEXT NOT NULL DEFAULT 'text',
                last_modified TEXT,
                PRIMARY KEY (calendar_id, id)
            );
            CREATE INDEX IF NOT EXISTS events_by_start ON events (start_time);
            CREATE TABLE IF NOT EXISTS sync_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)
        self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------ #
    # Reads: last committed snapshot, never the network                    #
    # ------------------------------------------------------------------ #

    def read_calendars(self) -> list[Calendar]:
        rows = self._query(
            "SELECT id, display_name, owner_flag FROM calendars ORDER BY position, id"
        )
        return [
            Calendar(
                id=row["id"],
                display_name=row["display_name"],
                owner_flag=bool(row["owner_flag"]),
            )
            for row in rows
        ]

    def read_events(
        self, calendar_id: str | None = None, date_range: SyncWindow | None = None
    ) -> list[Event]:
        """Events of one calendar, of every owned calendar (MY_CALENDARS), or of all (None).

        With a date_range, only events overlapping it are returned. Events whose
        calendar is missing are never returned.
        """
        sql = (
            f"SELECT {', '.join('e.' + name for name in _EVENT_FIELDS)} "
            "FROM events e JOIN calendars c ON c.id = e.calendar_id"
        )
        clauses: list[str] = []
        params: list = []
        if calendar_id == MY_CALENDARS:
            clauses.append("c.owner_flag = 1")
        elif calendar_id is not None:
            clauses.append("e.calendar_id = ?")
            params.append(calendar_id)
        if date_range is not None:
            clauses.append("e.start_time < ? AND e.end_time > ?")
            params.extend([_encode_time(date_range.end), _encode_time(date_range.start)])
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY e.start_time, e.subject, e.id"
        return [_row_to_event(row) for row in self._query(sql, params)]

    def count_events(self) -> int:
        return self._query("SELECT COUNT(*) FROM events")[0][0]

    def load_sync_state(self) -> SyncState:
        """Rebuild SyncState from persisted metadata (in_progress is never persisted)."""
        rows = self._query("SELECT key, value FROM sync_meta")
        meta = {row["key"]: row["value"] for row in rows}
        last_sync = meta.get("last_successful_sync_at")
        return SyncState(
            last_successful_sync_at=_decode_time(last_sync) if last_sync else None,
            in_progress_flag=False,
            last_error=meta.get("last_error"),
        )

    def _query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        if self.conn is None:
            raise StoreError("Replica database is not open")
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Replica read failed: {e}") from e

    # ------------------------------------------------------------------ #
    # Writes: each method is one atomic transaction                        #
    # ------------------------------------------------------------------ #

    @contextmanager
    def _transaction(self):
        if self.readonly:
            raise StoreError("Replica was opened read-only")
        if self.conn is None:
            raise StoreError("Replica database is not open")
        with self._lock:
            try:
                # `with conn` commits on success and rolls back on any exception
                with self.conn:
                    self.conn.execute("BEGIN IMMEDIATE")
                    yield self.conn
            except sqlite3.Error as e:
                raise StoreError(f"Replica write failed: {e}") from e

    def replace_calendars(self, calendars: Iterable[Calendar]):
        """Make the calendar table equal to `calendars`; dropped calendars lose their events."""
        calendars = list(calendars)
        keep = [c.id for c in calendars]
        with self._transaction() as conn:
            placeholders = ", ".join("?" for _ in keep)
            if keep:
                cursor = conn.execute(
                    f"DELETE FROM calendars WHERE id NOT IN ({placeholders})", keep
                )
            else:
                cursor = conn.execute("DELETE FROM calendars")
            removed = cursor.rowcount
            for position, calendar in enumerate(calendars):
                # Upsert rather than INSERT OR REPLACE: REPLACE would delete the row
                # and cascade to its events.
                conn.execute(
                    "INSERT INTO calendars (id, display_name, owner_flag, position) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET display_name = excluded.display_name, "
                    "owner_flag = excluded.owner_flag, position = excluded.position",
                    (calendar.id, calendar.display_name, int(calendar.owner_flag), position),
                )
        if removed:
            self.logger.info(f"Removed {removed} calendar(s) no longer present remotely")

    def apply_reconciliation(self, calendar_id: str, diff: "EventDiff"):
        """Commit one calendar's inserts, updates and deletes all-or-nothing."""
        for event in (*diff.inserts, *diff.updates):
            if event.calendar_id != calendar_id:
                raise ValueError(
                    f"Event {event.id} belongs to {event.calendar_id}, not {calendar_id}"
                )

        with self._transaction() as conn:
            known = conn.execute(
                "SELECT 1 FROM calendars WHERE id = ?", (calendar_id,)
            ).fetchone()
            if known is None:
                raise StoreError(f"Cannot reconcile events for unknown calendar {calendar_id}")

            conn.executemany(
                f"INSERT INTO events ({_EVENT_COLUMNS}) "
                f"VALUES ({', '.join('?' for _ in _EVENT_FIELDS)})",
                [_event_to_row(e) for e in diff.inserts],
            )
            conn.executemany(
                "UPDATE events SET subject = ?, start_time = ?, end_time = ?, all_day = ?, "
                "location = ?, organizer = ?, attendees = ?, body = ?, body_type = ?, "
                "last_modified = ? WHERE calendar_id = ? AND id = ?",
                [(*_event_to_row(e)[2:], e.calendar_id, e.id) for e in diff.updates],
            )
            conn.executemany(
                "DELETE FROM events WHERE calendar_id = ? AND id = ?",
                [(calendar_id, event_id) for event_id in diff.deletes],
            )

    def save_sync_state(self, sync_state: SyncState):
        last_sync = sync_state.last_successful_sync_at
        with self._transaction() as conn:
            conn.executemany(
                "INSERT INTO sync_meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                [
                    ("last_successful_sync_at", _encode_time(last_sync) if last_sync else None),
                    ("last_error", sync_state.last_error),
                ],
            )


# ---------------------------------------------------------------------------
# Row encoding
# ---------------------------------------------------------------------------


def _encode_time(value: datetime) -> str:
    # Fixed-width UTC text so lexical order equals chronological order.
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _decode_time(value: str) -> datetime:
    return datetime.fromisoformat(value).astimezone(UTC)


def _event_to_row(event: Event) -> tuple:
    return (
        event.calendar_id,
        event.id,
        event.subject,
        _encode_time(event.start),
        _encode_time(event.end),
        int(event.all_day_flag),
        event.location,
        event.organizer,
        json.dumps(list(event.attendees)),
        event.body,
        event.body_type,
        _encode_time(event.last_modified) if event.last_modified else None,
    )


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        calendar_id=row["calendar_id"],
        subject=row["subject"],
        start=_decode_time(row["start_time"]),
        end=_decode_time(row["end_time"]),
        all_day_flag=bool(row["all_day"]),
        location=row["location"],
        organizer=row["organizer"],
        attendees=tuple(json.loads(row["attendees"] or "[]")),
        body=row["body"],
        body_type=row["body_type"],
        last_modified=_decode_time(row["last_modified"]) if row["last_modified"] else None,
    )


def query_status(db_path: Path) -> dict | None:
    """
    Summarise a replica without creating it: calendar/event counts and sync metadata.

    Returns None when the file does not exist or has no replica schema yet.
    """
    if not db_path.exists():
        return None
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if not {"calendars", "events", "sync_meta"} <= tables:
            return None
        rows = conn.execute("SELECT key, value FROM sync_meta").fetchall()
        meta = {row["key"]: row["value"] for row in rows}
        last_sync = meta.get("last_successful_sync_at")
        return {
            "calendars": conn.execute("SELECT COUNT(*) FROM calendars").fetchone()[0],
            "events": conn.execute("SELECT COUNT(*) FROM events").fetchone()[0],
            "last_successful_sync_at": _decode_time(last_sync) if last_sync else None,
            "last_error": meta.get("last_error"),
        }
    except sqlite3.Error as e:
        raise StoreError(f"Cannot read replica {db_path}: {e}") from e
    finally:
        conn.close()
