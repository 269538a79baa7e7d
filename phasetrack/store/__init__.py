"""Work item storage for phasetrack.

The in-memory store is what the engine reads and mutates; the files
module persists a project snapshot; the watcher feeds external edits
back into the store.
"""

from phasetrack.store.memory import (
    ENGINE_SOURCE,
    EXTERNAL_SOURCE,
    MANUAL_SOURCE,
    StoreChange,
    WorkItemStore,
)
from phasetrack.store.files import (
    PersistenceError,
    ProjectFiles,
    ProjectSnapshot,
    SnapshotWriter,
)

__all__ = [
    "ENGINE_SOURCE",
    "EXTERNAL_SOURCE",
    "MANUAL_SOURCE",
    "StoreChange",
    "WorkItemStore",
    "PersistenceError",
    "ProjectFiles",
    "ProjectSnapshot",
    "SnapshotWriter",
]
