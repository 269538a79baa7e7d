"""
pt run - Run the scheduler in the foreground until interrupted.

Evaluates on a fixed interval and shortly after any edit to the work
items, whether made through the store or directly in state.json.
"""

import logging
import signal
import time

from phasetrack.lib.config import validate_settings
from phasetrack.notifications import DesktopNotifier
from phasetrack.runner.scheduler import Scheduler
from phasetrack.store.files import ProjectFiles, SnapshotWriter
from phasetrack.store.watcher import StateFileWatcher

logger = logging.getLogger(__name__)


def cmd_run(args, files: ProjectFiles) -> int:
    """Run auto-completion for a project."""
    snapshot = files.load()
    validate_settings(snapshot.settings)
    if not snapshot.settings.enabled:
        print("Auto-completion is disabled (AUTO_COMPLETION_ENABLED=false); passes will be no-ops.")

    notifier = None if args.no_notify else DesktopNotifier(snapshot.project_id)
    scheduler = Scheduler(snapshot, writer=SnapshotWriter(files, snapshot), notifier=notifier)

    watcher = None
    if not args.no_watch:
        watcher = StateFileWatcher(files, snapshot.store)

    running = True

    def _shutdown(signum: int, frame: object) -> None:
        nonlocal running
        logger.info(f"Received signal {signum}, shutting down...")
        running = False

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    scheduler.start()
    if watcher is not None:
        watcher.start()

    # First pass right away rather than after a full interval
    scheduler.request_evaluation()
    print(f"Running '{snapshot.project_id}' (Ctrl-C to stop)")

    try:
        while running:
            time.sleep(1)
    finally:
        if watcher is not None:
            watcher.stop()
        scheduler.stop()

    if scheduler.unsaved is not None:
        print(f"ERROR: Unsaved changes ({scheduler.unsaved.summary()}): {scheduler.last_error}")
        return 1
    return 0
