"""
Pure data models — no network, keyring or sqlite imports.
"""

import hashlib
from dataclasses import dataclass
from dataclasses import field
from datetime import UTC
from datetime import datetime
from datetime import timedelta
from enum import Enum
from pathlib import Path

DEFAULT_CONFIG = Path.home() / ".config/termcal.conf"
DEFAULT_DATA_DIR = Path.home() / ".local/share/termcal"
DEFAULT_REPLICA_DB = DEFAULT_DATA_DIR / "replica.db"
DEFAULT_LOG_FILE = DEFAULT_DATA_DIR / "termcal.log"

# Virtual calendar id selecting every calendar the user owns.
MY_CALENDARS = "MY_CALENDARS"

# Catppuccin Mocha accents, in the order the calendar list used to cycle through them.
CALENDAR_PALETTE = (
    "#cba6f7",
    "#f5c2e7",
    "#eba0ac",
    "#f38ba8",
    "#fab387",
    "#f9e2af",
    "#a6e3a1",
    "#94e2d5",
    "#89dceb",
    "#74c7ec",
    "#89b4fa",
    "#b4befe",
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class ConfigError(CalendarSyncError):
    """Configuration file is missing a required value or holds an invalid one."""


class AuthError(CalendarSyncError):
    """Login aborted, state mismatch, or token exchange rejected."""


class TokenRejectedError(AuthError):
    """The authorization server refused a refresh token (invalid or revoked)."""


class FetchError(CalendarSyncError):
    """A remote read failed. Subclasses tell the orchestrator how to react."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(FetchError):
    """The API rejected the bearer token (HTTP 401)."""


class TransientFetchError(FetchError):
    """Network failure, throttling or server error; worth retrying."""

    def __init__(
        self, message: str, status_code: int | None = None, retry_after: float | None = None
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class PermanentFetchError(FetchError):
    """Client error other than authentication, or a malformed response."""


class StoreError(CalendarSyncError):
    """The local replica could not be read or written."""


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credential:
    """A complete OAuth credential. Only refresh_token is ever persisted."""

    access_token: str
    access_token_expiry: datetime
    refresh_token: str

    def __post_init__(self):
        if not self.access_token or not self.refresh_token:
            raise AuthError("Credential requires both an access token and a refresh token")
        if self.access_token_expiry.tzinfo is None:
            raise ValueError("access_token_expiry must be timezone-aware")

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return self.access_token_expiry - margin <= now

    def __repr__(self) -> str:
        return f"Credential(access_token=***, access_token_expiry={self.access_token_expiry!r})"


def color_for_calendar(calendar_id: str) -> str:
    """Pick a palette colour from the calendar id so it is stable across runs."""
    digest = hashlib.sha256(calendar_id.encode("utf-8")).digest()
    return CALENDAR_PALETTE[int.from_bytes(digest[:4], "big") % len(CALENDAR_PALETTE)]


@dataclass(frozen=True)
class Calendar:
    id: str
    display_name: str
    owner_flag: bool = False

    @property
    def assigned_color(self) -> str:
        return color_for_calendar(self.id)


@dataclass(frozen=True)
class Event:
    """One event instance as returned by the calendar view."""

    id: str
    calendar_id: str
    subject: str
    start: datetime
    end: datetime
    all_day_flag: bool = False
    location: str = ""
    organizer: str = ""
    attendees: tuple[str, ...] = ()
    body: str = ""
    body_type: str = "text"
    last_modified: datetime | None = None

    def overlaps(self, window: "SyncWindow") -> bool:
        return self.start < window.end and self.end > window.start

    def content_key(self) -> tuple:
        """Every user-visible field, used when last_modified cannot be trusted."""
        return (
            self.subject,
            self.start,
            self.end,
            self.all_day_flag,
            self.location,
            self.organizer,
            self.attendees,
            self.body,
            self.body_type,
        )


@dataclass(frozen=True)
class SyncWindow:
    """Half-open [start, end) retrieval range shared by fetch and reconciliation."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Empty sync window: {self.start} .. {self.end}")

    @classmethod
    def around(cls, now: datetime, past_days: int, future_days: int) -> "SyncWindow":
        """Rolling window aligned to UTC midnight so cycles on the same day agree."""
        midnight = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(midnight - timedelta(days=past_days), midnight + timedelta(days=future_days))


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


class SyncTrigger(Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


@dataclass(frozen=True)
class SyncState:
    """Snapshot of sync freshness handed to readers; never mutated in place."""

    last_successful_sync_at: datetime | None = None
    in_progress_flag: bool = False
    last_error: str | None = None


@dataclass
class SyncStats:
    """Statistics for one calendar's reconciliation."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0


@dataclass
class SyncOutcome:
    """Result of one run_cycle() call, published to the interactive layer."""

    trigger: SyncTrigger
    started_at: datetime
    finished_at: datetime | None = None
    stats: dict[str, SyncStats] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    coalesced: bool = False

    @property
    def ok(self) -> bool:
        return not self.coalesced and self.error is None and not self.failures

    @property
    def totals(self) -> SyncStats:
        total = SyncStats()
        for s in self.stats.values():
            total.inserted += s.inserted
            total.updated += s.updated
            total.deleted += s.deleted
        return total
