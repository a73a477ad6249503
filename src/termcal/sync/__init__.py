"""
SyncOrchestrator — one sync cycle: credential, calendar list, per-calendar reconciliation.
"""

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC
from datetime import datetime
from typing import TypeVar

from termcal.auth import SessionManager
from termcal.db import ReplicaStore
from termcal.graph_client import GraphClient
from termcal.models import CalendarSyncError
from termcal.models import Credential
from termcal.models import FetchError
from termcal.models import SyncOutcome
from termcal.models import SyncState
from termcal.models import SyncTrigger
from termcal.models import SyncWindow
from termcal.models import TransientFetchError
from termcal.models import UnauthorizedError
from termcal.sync.reconcile import reconcile_calendar

T = TypeVar("T")

MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0


class SyncOrchestrator:
    """Main synchronization engine.

    Owns the writable replica and the SyncState. run_cycle() never runs twice
    at once: a call made while a cycle is active returns a coalesced outcome
    without touching the replica.
    """

    def __init__(
        self,
        session: SessionManager,
        client: GraphClient,
        store: ReplicaStore,
        past_days: int = 31,
        future_days: int = 92,
        notifications: queue.Queue | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.session = session
        self.client = client
        self.store = store
        self.past_days = past_days
        self.future_days = future_days
        self.notifications = notifications
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.sleep = sleep
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = store.load_sync_state()

    @property
    def state(self) -> SyncState:
        """Immutable snapshot; safe to hand to the UI thread."""
        with self._state_lock:
            return self._state

    def current_window(self) -> SyncWindow:
        return SyncWindow.around(self.clock(), self.past_days, self.future_days)

    def run_cycle(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncOutcome:
        """Execute one synchronization cycle."""
        if not self._cycle_lock.acquire(blocking=False):
            now = self.clock()
            self.logger.info(f"Sync already running, coalescing {trigger.value} request")
            return SyncOutcome(trigger=trigger, started_at=now, finished_at=now, coalesced=True)
        try:
            return self._run_locked(trigger)
        finally:
            self._cycle_lock.release()

    def _run_locked(self, trigger: SyncTrigger) -> SyncOutcome:
        outcome = SyncOutcome(trigger=trigger, started_at=self.clock())
        self._update_state(in_progress_flag=True)
        window = self.current_window()
        names: dict[str, str] = {}
        self.logger.info(
            f"Starting {trigger.value} sync for {window.start:%Y-%m-%d}..{window.end:%Y-%m-%d}"
        )

        try:
            calendars = self._fetch_with_retries("calendar list", self.client.fetch_all_calendars)
            # Calendars must be committed before any of their events are reconciled.
            self.store.replace_calendars(calendars)

            for calendar in calendars:
                names[calendar.id] = calendar.display_name
                try:
                    events = self._fetch_with_retries(
                        f"calendar '{calendar.display_name}'",
                        lambda cred, cal_id=calendar.id: self.client.fetch_all_events(
                            cred, cal_id, window
                        ),
                    )
                except FetchError as e:
                    self.logger.warning(
                        f"Skipping calendar '{calendar.display_name}', keeping previous data: {e}"
                    )
                    outcome.failures[calendar.id] = str(e)
                    continue
                outcome.stats[calendar.id] = reconcile_calendar(
                    self.store, calendar.id, events, window
                )
        except CalendarSyncError as e:
            self.logger.error(f"Sync aborted: {e}")
            outcome.error = str(e)
        except Exception as e:
            # Never let a crashed cycle be recorded as a successful one.
            self.logger.exception("Sync crashed unexpectedly")
            outcome.error = f"Unexpected error: {e}"
        finally:
            outcome.finished_at = self.clock()
            self._finish(outcome, names)

        totals = outcome.totals
        self.logger.info(
            f"Sync finished: {totals.inserted} added, {totals.updated} updated, "
            f"{totals.deleted} deleted, {len(outcome.failures)} calendar(s) failed"
        )
        return outcome

    def _fetch_with_retries(self, what: str, fetch: Callable[[Credential], T]) -> T:
        """
        Run fetch with a valid credential.

        Unauthorized: one retry after a forced refresh. Transient: up to
        max_attempts tries with exponential backoff. Anything else propagates.
        """
        attempt = 0
        reauthorized = False
        while True:
            try:
                credential = self.session.ensure_valid_credential()
                return fetch(credential)
            except UnauthorizedError:
                self.session.report_unauthorized()
                if reauthorized:
                    raise
                reauthorized = True
                self.logger.info(f"Token rejected while fetching {what}; refreshing and retrying")
            except TransientFetchError as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    raise
                delay = self.backoff_base * (2 ** (attempt - 1))
                if e.retry_after is not None:
                    delay = e.retry_after
                delay = min(delay, MAX_BACKOFF_SECONDS)
                self.logger.warning(
                    f"Fetching {what} failed ({e}); retry {attempt}/{self.max_attempts - 1} "
                    f"in {delay:.1f}s"
                )
                self.sleep(delay)

    def _finish(self, outcome: SyncOutcome, names: dict[str, str]):
        current = self.state
        if outcome.ok:
            last_success = outcome.finished_at
            last_error = None
        else:
            last_success = current.last_successful_sync_at
            last_error = outcome.error or "; ".join(
                f"{names.get(cal_id, cal_id)}: {message}"
                for cal_id, message in outcome.failures.items()
            )
        self._update_state(
            in_progress_flag=False, last_successful_sync_at=last_success, last_error=last_error
        )
        try:
            self.store.save_sync_state(self.state)
        except CalendarSyncError as e:
            self.logger.error(f"Could not persist sync state: {e}")
        if self.notifications is not None:
            self.notifications.put(outcome)

    def _update_state(self, **changes):
        with self._state_lock:
            self._state = replace(self._state, **changes)
