"""Project persistence on the filesystem.

Layout under <root>/projects/<project_id>/:

    state.json     work items, phase graph, tracker, settings
    phases.yaml    phase graph definition (used when state.json is absent)
    settings.env   auto-completion settings
    events.jsonl   engine event timeline
    .lock          flock target for writers
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar

from phasetrack.lib import timeline
from phasetrack.lib.config import (
    AutoCompletionSettings,
    get_project_dir,
    load_settings,
    save_settings,
)
from phasetrack.lib.constants import PHASES_FILE, STATE_FILE, STATE_VERSION
from phasetrack.lib.locking import LockTimeout, project_lock
from phasetrack.lib.types import WorkItem
from phasetrack.lib.validate import ValidationError, validate_before_write, validate_state
from phasetrack.store.memory import EXTERNAL_SOURCE, WorkItemStore
from phasetrack.workflow.changes import ChangeSet
from phasetrack.workflow.fsm import EvolutionTracker
from phasetrack.workflow.phases import (
    PhaseGraph,
    default_phase_graph,
    dump_phase_graph,
    load_phase_graph,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceError(Exception):
    """Project state could not be read or written."""

    def __init__(self, project_id: str, message: str):
        self.project_id = project_id
        super().__init__(f"[{project_id}] {message}")


@dataclass
class ProjectSnapshot:
    """Everything the engine needs for one project, in memory."""
    project_id: str
    store: WorkItemStore
    graph: PhaseGraph
    tracker: EvolutionTracker
    settings: AutoCompletionSettings

    def to_dict(self) -> dict:
        return {
            "version": STATE_VERSION,
            "projectId": self.project_id,
            "workItems": [i.to_dict() for i in self.store.list()],
            "phaseGraph": self.graph.to_list(),
            "tracker": self.tracker.to_dict(),
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectSnapshot":
        return cls(
            project_id=data["projectId"],
            store=WorkItemStore(WorkItem.from_dict(i) for i in data["workItems"]),
            graph=PhaseGraph.from_list(data["phaseGraph"]),
            tracker=EvolutionTracker.from_dict(data["tracker"]),
            settings=AutoCompletionSettings.from_dict(data.get("settings", {})),
        )


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


class ProjectFiles:
    """Filesystem home of one project."""

    def __init__(self, root: Path, project_id: str):
        self.root = root
        self.project_id = project_id
        self.project_dir = get_project_dir(root, project_id)
        self.state_path = self.project_dir / STATE_FILE
        self.last_written_digest: Optional[str] = None

    def exists(self) -> bool:
        return self.project_dir.exists()

    def init(
        self,
        graph: Optional[PhaseGraph] = None,
        settings: Optional[AutoCompletionSettings] = None,
    ) -> ProjectSnapshot:
        """Create the project directory with phases, settings and empty state.

        Raises:
            PersistenceError: project already initialised or write failed
        """
        if self.state_path.exists():
            raise PersistenceError(self.project_id, f"Already initialised at {self.project_dir}")

        graph = graph or default_phase_graph()
        settings = settings or AutoCompletionSettings()
        try:
            self.project_dir.mkdir(parents=True, exist_ok=True)
            (self.project_dir / PHASES_FILE).write_text(dump_phase_graph(graph))
            save_settings(self.project_dir, settings)
        except OSError as e:
            raise PersistenceError(self.project_id, f"Failed to initialise: {e}") from None

        snapshot = ProjectSnapshot(
            project_id=self.project_id,
            store=WorkItemStore(),
            graph=graph,
            tracker=EvolutionTracker.start(graph),
            settings=settings,
        )
        self.write(snapshot)
        logger.info(f"[STORE] Initialised project '{self.project_id}' at {self.project_dir}")
        return snapshot

    def load(self) -> ProjectSnapshot:
        """Read state.json; settings.env overrides the stored settings.

        Without state.json a fresh snapshot is built from phases.yaml.

        Raises:
            PersistenceError: unreadable or invalid state
        """
        try:
            settings = load_settings(self.project_dir)
            if not self.state_path.exists():
                graph = load_phase_graph(self.project_dir)
                return ProjectSnapshot(
                    project_id=self.project_id,
                    store=WorkItemStore(),
                    graph=graph,
                    tracker=EvolutionTracker.start(graph),
                    settings=settings,
                )

            text = self.state_path.read_text()
            data = json.loads(text)
            validate_state(data, self.project_id, self.state_path)
            snapshot = ProjectSnapshot.from_dict(data)
        except (OSError, json.JSONDecodeError, ValidationError, ValueError) as e:
            raise PersistenceError(self.project_id, f"Failed to load state: {e}") from None

        snapshot.settings = settings
        self.last_written_digest = _digest(text)
        return snapshot

    def write(self, snapshot: ProjectSnapshot, merge_external: bool = False) -> None:
        """Validate and atomically replace state.json under the project lock.

        With merge_external, a state.json edit made by another process
        since our last read or write is folded into the snapshot's store
        first, so it is not overwritten.

        Raises:
            PersistenceError: validation, lock or filesystem failure
        """
        try:
            with project_lock(self.project_dir):
                if merge_external:
                    self.merge_external(snapshot.store)
                self._replace_state(snapshot)
        except LockTimeout as e:
            raise PersistenceError(self.project_id, f"Failed to write state: {e}") from None

    def edit(self, mutate: Callable[[ProjectSnapshot], T]) -> T:
        """Load, mutate and write back state.json while holding the project lock.

        Exceptions raised by mutate propagate and nothing is written.

        Raises:
            PersistenceError: load, lock or write failure
        """
        try:
            with project_lock(self.project_dir):
                snapshot = self.load()
                result = mutate(snapshot)
                self._replace_state(snapshot)
        except LockTimeout as e:
            raise PersistenceError(self.project_id, f"Failed to write state: {e}") from None
        return result

    def _replace_state(self, snapshot: ProjectSnapshot) -> None:
        # Caller holds the project lock
        data = snapshot.to_dict()
        text = json.dumps(data, indent=2)
        tmp_path = self.state_path.with_suffix(".json.tmp")
        previous = self.last_written_digest
        # Set before the replace: the watcher can fire as soon as the file lands
        self.last_written_digest = _digest(text)
        try:
            validate_before_write(data, self.project_id, self.state_path)
            tmp_path.write_text(text)
            os.replace(tmp_path, self.state_path)
        except (ValidationError, OSError) as e:
            self.last_written_digest = previous
            raise PersistenceError(self.project_id, f"Failed to write state: {e}") from None

    def is_own_write(self) -> bool:
        """True if state.json still holds exactly what this process last read or wrote."""
        try:
            return _digest(self.state_path.read_text()) == self.last_written_digest
        except OSError:
            return False

    def merge_external(self, store: WorkItemStore) -> bool:
        """Fold another process's edit of state.json into store.

        Completed items held in store are not reopened by a stale copy
        (see WorkItemStore.merge). An unreadable or invalid file is
        ignored. Returns True when an edit was merged.
        """
        if self.is_own_write() or not self.state_path.exists():
            return False
        try:
            text = self.state_path.read_text()
            data = json.loads(text)
            validate_state(data, self.project_id, self.state_path)
            items = [WorkItem.from_dict(i) for i in data["workItems"]]
        except (OSError, json.JSONDecodeError, ValidationError, ValueError) as e:
            logger.warning(f"[STORE] Ignoring unreadable external edit of {self.state_path}: {e}")
            return False

        kept = store.merge(items, source=EXTERNAL_SOURCE)
        self.last_written_digest = _digest(text)
        logger.info(f"[STORE] Merged external edit of '{self.project_id}' ({len(items)} work items)")
        if kept:
            logger.warning(f"[STORE] Kept completed items the edit would have reopened: {', '.join(kept)}")
        return True


class SnapshotWriter:
    """Persistence collaborator: stores a project after each pass."""

    def __init__(self, files: ProjectFiles, snapshot: ProjectSnapshot):
        self.files = files
        self.snapshot = snapshot

    def save(self, changes: ChangeSet) -> None:
        """Write the snapshot and append the pass's events.

        Empty change-sets are not written. Edits other processes made to
        state.json are merged in before the write.

        Raises:
            PersistenceError: the write failed; in-memory state is untouched
        """
        if changes.is_empty and not changes.diagnostics:
            return
        if not changes.is_empty:
            self.files.write(self.snapshot, merge_external=True)
        try:
            timeline.append_events(self.files.project_dir, changes.events + changes.diagnostics)
        except OSError as e:
            raise PersistenceError(self.files.project_id, f"Failed to append events: {e}") from None
