"""Filesystem watcher for a project's state file.

An edit to state.json made by another process (a text editor, another
pt command) is merged into the in-memory store, which in turn fires the
store's change notification. Writes made by this process are recognised
by content digest and ignored. A stale copy never reopens a completed item.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from phasetrack.store.files import ProjectFiles
from phasetrack.store.memory import WorkItemStore

logger = logging.getLogger(__name__)


class _StateEventHandler(FileSystemEventHandler):
    """Watchdog handler that calls back when the state file changes."""

    def __init__(self, state_path: Path, callback: Callable[[], None]) -> None:
        super().__init__()
        self._state_path = state_path
        self._callback = callback

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic replace shows up as a move onto the state file
        if not event.is_directory:
            self._handle(event.dest_path)

    def _handle(self, path: str) -> None:
        if Path(path) == self._state_path:
            self._callback()


class StateFileWatcher:
    """Reload work items when state.json is edited externally.

    Parameters
    ----------
    files:
        Project files (state path plus last-written digest).
    store:
        Store to refresh.
    """

    def __init__(self, files: ProjectFiles, store: WorkItemStore) -> None:
        self._files = files
        self._store = store
        self._observer: Observer | None = None

    def start(self) -> None:
        """Start the filesystem observer."""
        handler = _StateEventHandler(self._files.state_path, self.reload)
        self._observer = Observer()
        self._observer.schedule(handler, str(self._files.project_dir), recursive=False)
        self._observer.daemon = True
        self._observer.start()
        logger.info(f"[STORE] Watching {self._files.state_path}")

    def stop(self) -> None:
        """Stop the filesystem observer."""
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def reload(self) -> bool:
        """Merge the file into the store if it holds someone else's write. Returns True on merge."""
        return self._files.merge_external(self._store)
