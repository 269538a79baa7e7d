"""Scheduler: drives evaluation passes for one project.

Two stimuli wake the scheduler:

1. A fixed interval (``check_interval_seconds``)
2. A change notification from the work item store, debounced so a
   burst of edits collapses into one pass

Both funnel into ``run_pass``. Only one pass runs at a time; a wake-up
that arrives while a pass is running is dropped. Changes made by the
engine itself do not wake the scheduler.

After each pass the change-set goes to the persistence collaborator and
its events to the notification collaborator. A failed save is kept, and
later passes fold into it, so one write covers them all on the next
wake-up. Evaluation is not re-run for it.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional, Protocol

from phasetrack.lib.config import validate_settings
from phasetrack.store.files import PersistenceError, ProjectSnapshot
from phasetrack.store.memory import ENGINE_SOURCE, StoreChange
from phasetrack.workflow.changes import ChangeSet, EngineEvent
from phasetrack.workflow.engine import evaluate_once
from phasetrack.workflow.phases import MissingPhaseError

logger = logging.getLogger(__name__)

STOP_TIMEOUT_SECONDS = 30


class Writer(Protocol):
    def save(self, changes: ChangeSet) -> None: ...


class Notifier(Protocol):
    def notify(self, event: EngineEvent) -> None: ...


class Scheduler:
    """Serialises evaluation passes for a project snapshot."""

    def __init__(
        self,
        snapshot: ProjectSnapshot,
        writer: Optional[Writer] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.snapshot = snapshot
        self.writer = writer
        self.notifier = notifier
        self.clock = clock

        self.last_error: Optional[Exception] = None
        self.passes_run = 0
        self._pending: Optional[ChangeSet] = None

        self._pass_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._debounce_timer: Optional[threading.Timer] = None
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def unsaved(self) -> Optional[ChangeSet]:
        """Changes still waiting to be persisted, folded into one change-set."""
        return self._pending

    def start(self) -> None:
        """Validate settings, subscribe to the store and start the timer loop.

        Raises:
            ConfigurationError: interval or debounce window not positive
            RuntimeError: already running
        """
        validate_settings(self.snapshot.settings)
        if self.running:
            raise RuntimeError("Scheduler already running")

        self._stopping.clear()
        self._wake.clear()
        self._unsubscribe = self.snapshot.store.on_change(self._on_store_change)
        self._thread = threading.Thread(
            target=self._loop,
            name=f"phasetrack-{self.snapshot.project_id}",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            f"[SCHED] Started for '{self.snapshot.project_id}' "
            f"(interval={self.snapshot.settings.check_interval_seconds}s, "
            f"debounce={self.snapshot.settings.debounce_seconds}s)"
        )

    def stop(self, timeout: float = STOP_TIMEOUT_SECONDS) -> None:
        """Cancel timers and unsubscribe; a running pass finishes first."""
        self._stopping.set()
        with self._state_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"[SCHED] Worker did not stop within {timeout}s")
            self._thread = None

        # Last chance for anything that failed to save
        self.flush()
        logger.info(f"[SCHED] Stopped for '{self.snapshot.project_id}'")

    def request_evaluation(self) -> None:
        """Schedule a pass after the debounce window, restarting the window."""
        if self._stopping.is_set():
            return
        with self._state_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            timer = threading.Timer(self.snapshot.settings.debounce_seconds, self._wake.set)
            timer.daemon = True
            self._debounce_timer = timer
            timer.start()

    def _on_store_change(self, change: StoreChange) -> None:
        if change.source == ENGINE_SOURCE:
            return
        logger.debug(f"[SCHED] Store {change.action} ({change.item_id}) from {change.source}")
        self.request_evaluation()

    def _loop(self) -> None:
        interval = self.snapshot.settings.check_interval_seconds
        while not self._stopping.is_set():
            self._wake.wait(timeout=interval)
            if self._stopping.is_set():
                break
            try:
                self.run_pass()
            except Exception:
                logger.exception("[SCHED] Unexpected error in evaluation pass")
            # Wake-ups that arrived during the pass are dropped
            self._wake.clear()

    def run_pass(self) -> Optional[ChangeSet]:
        """Run one pass now unless one is already running.

        Returns the change-set, a skipped change-set if a pass was
        running, or None when the pass failed to resolve the phase.
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.debug("[SCHED] Pass already running, dropping request")
            return ChangeSet(project_id=self.snapshot.project_id, skipped=True)
        try:
            self.flush()
            snap = self.snapshot
            try:
                changes = evaluate_once(
                    snap.store, snap.graph, snap.tracker, snap.settings,
                    now=self.clock(), project_id=snap.project_id,
                )
            except MissingPhaseError as e:
                # Fatal for this pass only; the next wake-up retries
                self.last_error = e
                return None

            self.passes_run += 1
            self.last_error = None
            if not changes.skipped:
                self._publish(changes)
            return changes
        finally:
            self._pass_lock.release()

    def _publish(self, changes: ChangeSet) -> None:
        if changes.is_empty and not changes.diagnostics:
            return
        logger.info(f"[SCHED] Pass for '{self.snapshot.project_id}': {changes.summary()}")

        if self.writer is not None:
            if self._pending is None:
                self._pending = ChangeSet(project_id=changes.project_id)
            self._pending.absorb(changes)
            self.flush()

        if self.notifier is not None:
            for event in changes.events:
                try:
                    self.notifier.notify(event)
                except Exception as e:
                    logger.warning(f"[SCHED] Notifier failed: {e}")

    def flush(self) -> bool:
        """Try to persist pending changes. Returns True when nothing remains."""
        if self.writer is None or self._pending is None:
            return True
        try:
            self.writer.save(self._pending)
        except PersistenceError as e:
            self.last_error = e
            logger.warning(f"[SCHED] Save failed, will retry: {e}")
            return False
        self._pending = None
        return True
