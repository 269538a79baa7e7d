"""In-memory work item store.

Holds the project's work items in insertion order and notifies
subscribers after every create, update, delete or reload. Readers get
copies, so a list taken at the start of an evaluation pass is a stable
snapshot even while other writers keep going.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, fields
from typing import Callable, Iterable, Optional

from phasetrack.lib.types import ItemStatus, WorkItem

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"
ENGINE_SOURCE = "engine"
EXTERNAL_SOURCE = "external"

EDITABLE_FIELDS = {f.name for f in fields(WorkItem)} - {"id"}


@dataclass(frozen=True)
class StoreChange:
    """A single mutation of the store."""
    action: str  # "create", "update", "delete", "reload"
    item_id: Optional[str]
    source: str = MANUAL_SOURCE


ChangeCallback = Callable[[StoreChange], None]


class WorkItemStore:
    """Ordered, mutable collection of work items."""

    def __init__(self, items: Iterable[WorkItem] = ()):
        self._lock = threading.RLock()
        self._items: dict[str, WorkItem] = {}
        self._listeners: list[ChangeCallback] = []
        for item in items:
            if item.id in self._items:
                raise ValueError(f"Duplicate work item id '{item.id}'")
            self._items[item.id] = copy.deepcopy(item)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._items

    def list(self) -> list[WorkItem]:
        """Copies of all items in insertion order."""
        with self._lock:
            return [copy.deepcopy(i) for i in self._items.values()]

    def get(self, item_id: str) -> WorkItem:
        """Copy of one item. Raises KeyError if unknown."""
        with self._lock:
            return copy.deepcopy(self._items[item_id])

    def create(self, item: WorkItem, source: str = MANUAL_SOURCE) -> WorkItem:
        """Add a new item.

        Raises:
            ValueError: empty title or duplicate id
        """
        if not item.title or not item.title.strip():
            raise ValueError("Title is required")
        with self._lock:
            if item.id in self._items:
                raise ValueError(f"Work item '{item.id}' already exists")
            self._items[item.id] = copy.deepcopy(item)
        self._emit(StoreChange("create", item.id, source))
        return copy.deepcopy(item)

    def update(self, item_id: str, patch: dict, source: str = MANUAL_SOURCE) -> WorkItem:
        """Apply attribute changes to one item and return the updated copy.

        Automated writers may not move an item to another phase or
        reopen a completed item.

        Raises:
            KeyError: unknown item
            ValueError: unknown field or forbidden automated change
        """
        with self._lock:
            updated = self._apply(item_id, patch, source)
        self._emit(StoreChange("update", item_id, source))
        return updated

    def modify(
        self,
        item_id: str,
        build_patch: Callable[[WorkItem], Optional[dict]],
        source: str = MANUAL_SOURCE,
    ) -> Optional[WorkItem]:
        """Build a patch from the item's current state and apply it atomically.

        build_patch gets a copy of the item as it is under the store lock
        and returns the patch, or None to leave the item alone. Returns the
        updated copy, or None when nothing was applied.

        Raises:
            KeyError: unknown item
            ValueError: unknown field or forbidden automated change
        """
        with self._lock:
            patch = build_patch(copy.deepcopy(self._items[item_id]))
            if patch is None:
                return None
            updated = self._apply(item_id, patch, source)
        self._emit(StoreChange("update", item_id, source))
        return updated

    def _apply(self, item_id: str, patch: dict, source: str) -> WorkItem:
        unknown = set(patch) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown work item fields: {sorted(unknown)}")
        item = self._items[item_id]
        if source != MANUAL_SOURCE:
            if "phase_id" in patch and item.phase_id is not None and patch["phase_id"] != item.phase_id:
                raise ValueError(f"Phase of '{item_id}' can only be changed by a manual edit")
            if item.is_completed and patch.get("status", ItemStatus.COMPLETED) is not ItemStatus.COMPLETED:
                raise ValueError(f"Completed item '{item_id}' cannot be reopened automatically")
        for key, value in patch.items():
            setattr(item, key, value)
        return copy.deepcopy(item)

    def delete(self, item_id: str, source: str = MANUAL_SOURCE) -> None:
        """Remove an item. Raises KeyError if unknown."""
        with self._lock:
            del self._items[item_id]
        self._emit(StoreChange("delete", item_id, source))

    def merge(self, items: Iterable[WorkItem], source: str = EXTERNAL_SOURCE) -> list[str]:
        """Fold an externally edited item list into the store.

        Incoming items win, except that a completed item is never reopened
        by a stale copy. A reopen is taken only when the incoming notes
        extend the held item's notes, i.e. the editor saw the completion.
        Returns the ids of completed items that were kept.
        """
        kept = []
        with self._lock:
            merged = {}
            for incoming in items:
                held = self._items.get(incoming.id)
                if held is not None and held.is_completed and not incoming.is_completed \
                        and not _extends(incoming.notes, held.notes):
                    merged[incoming.id] = held
                    kept.append(incoming.id)
                else:
                    merged[incoming.id] = copy.deepcopy(incoming)
            self._items = merged
        self._emit(StoreChange("reload", None, source))
        return kept

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Subscribe to changes. Returns a function that unsubscribes."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, change: StoreChange) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(change)
            except Exception:
                logger.exception(f"[STORE] Change listener failed for {change.action} {change.item_id}")


def _extends(notes: list[str], base: list[str]) -> bool:
    return len(notes) > len(base) and notes[:len(base)] == base
