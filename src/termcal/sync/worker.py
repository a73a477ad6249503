"""
Background sync thread and the intent/notification channels the UI talks through.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum

from termcal.auth import SessionManager
from termcal.models import CalendarSyncError
from termcal.models import SyncTrigger
from termcal.sync import SyncOrchestrator

logger = logging.getLogger(__name__)


class Intent(Enum):
    MANUAL_SYNC = "manual_sync"
    LOGIN = "login"
    STOP = "stop"


@dataclass(frozen=True)
class LoginResult:
    ok: bool
    error: str | None = None


class SyncWorker(threading.Thread):
    """Runs scheduled and requested sync cycles off the interactive thread.

    Intents queued while a cycle runs are drained together afterwards, so any
    burst of manual requests produces a single follow-up cycle. Results are
    published on `notifications` (SyncOutcome or LoginResult).
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        session: SessionManager,
        refresh_interval: float,
        notifications: queue.Queue | None = None,
        sync_on_start: bool = True,
    ):
        super().__init__(name="termcal-sync", daemon=True)
        self.orchestrator = orchestrator
        self.session = session
        self.refresh_interval = refresh_interval
        self.notifications = notifications if notifications is not None else queue.Queue()
        if orchestrator.notifications is None:
            orchestrator.notifications = self.notifications
        self.sync_on_start = sync_on_start
        self._intents: queue.Queue[Intent] = queue.Queue()

    # ------------------------------------------------------------------ #
    # Called from the interactive thread                                   #
    # ------------------------------------------------------------------ #

    def request_manual_sync(self):
        self._intents.put(Intent.MANUAL_SYNC)

    def request_login(self):
        self._intents.put(Intent.LOGIN)

    def stop(self, timeout: float | None = None):
        self._intents.put(Intent.STOP)
        if self.is_alive():
            self.join(timeout)

    # ------------------------------------------------------------------ #
    # Worker thread                                                        #
    # ------------------------------------------------------------------ #

    def run(self):
        if self.sync_on_start:
            self._run_cycle(SyncTrigger.SCHEDULED)

        while True:
            try:
                intents = {self._intents.get(timeout=self.refresh_interval)}
            except queue.Empty:
                self._run_cycle(SyncTrigger.SCHEDULED)
                continue

            intents |= self._drain()
            if Intent.STOP in intents:
                logger.debug("Sync worker stopping")
                return

            if Intent.LOGIN in intents and not self._login():
                # a sync now would only start another browser login
                continue
            if intents & {Intent.LOGIN, Intent.MANUAL_SYNC}:
                self._run_cycle(SyncTrigger.MANUAL)

    def _drain(self) -> set[Intent]:
        pending = set()
        while True:
            try:
                pending.add(self._intents.get_nowait())
            except queue.Empty:
                return pending

    def _run_cycle(self, trigger: SyncTrigger):
        try:
            self.orchestrator.run_cycle(trigger)
        except Exception:
            # keep the thread alive; the next interval tries again
            logger.exception("Sync cycle crashed")

    def _login(self) -> bool:
        try:
            self.session.interactive_login()
        except CalendarSyncError as e:
            logger.error(f"Login failed: {e}")
            self.notifications.put(LoginResult(ok=False, error=str(e)))
            return False
        self.notifications.put(LoginResult(ok=True))
        return True
