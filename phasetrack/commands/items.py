"""
pt items / pt add / pt set-status - Work item commands.
"""

import uuid
from datetime import datetime

from phasetrack.lib.overview import filter_items
from phasetrack.lib.types import (
    Category,
    CompletionTrigger,
    ItemKind,
    ItemStatus,
    Priority,
    WorkItem,
    parse_status,
)
from phasetrack.store.files import ProjectFiles, ProjectSnapshot
from phasetrack.store.memory import MANUAL_SOURCE


def cmd_items(args, files: ProjectFiles) -> int:
    """List work items, optionally filtered."""
    snapshot = files.load()
    items = filter_items(
        snapshot.store.list(),
        category=Category(args.category) if args.category else None,
        status=parse_status(args.status) if args.status else None,
        phase_id=args.phase,
    )
    if not items:
        print("No work items.")
        return 0

    for item in items:
        auto = " (auto)" if item.auto_completed else ""
        phase = item.phase_id or "-"
        print(f"  {item.id:<16} {item.status.value:<12} {phase:<12} {item.kind.value:<12} {item.title}{auto}")
    return 0


def cmd_add(args, files: ProjectFiles) -> int:
    """Create a work item."""
    item_id = args.id or f"item-{uuid.uuid4().hex[:8]}"

    def add(snapshot: ProjectSnapshot) -> WorkItem:
        if args.phase and args.phase not in snapshot.graph:
            raise ValueError(f"Unknown phase '{args.phase}'. Phases: {', '.join(snapshot.graph.ids)}")
        return snapshot.store.create(WorkItem(
            id=item_id,
            title=args.title,
            kind=ItemKind(args.kind),
            priority=Priority(args.priority),
            category=Category(args.category),
            phase_id=args.phase,
            description=args.description,
            tags=set(args.tag),
            dependencies=set(args.depends),
            related_components=set(args.related),
            estimated_effort=args.estimate,
        ), source=MANUAL_SOURCE)

    try:
        item = files.edit(add)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 2

    print(f"Created {item.id}: {item.title}")
    return 0


def cmd_set_status(args, files: ProjectFiles) -> int:
    """Manually set an item's status.

    Reopening a completed item adds a note; a running pt picks up the
    reopen only from an edit that carries the item's current notes.
    """
    status = parse_status(args.status)

    def set_status(snapshot: ProjectSnapshot) -> None:
        if args.id not in snapshot.store:
            raise ValueError(f"Work item '{args.id}' not found")
        item = snapshot.store.get(args.id)
        patch = {"status": status}
        if status is ItemStatus.COMPLETED:
            patch["completion_trigger"] = CompletionTrigger.MANUAL
            patch["auto_completed"] = False
        elif item.is_completed:
            stamp = datetime.now().isoformat(timespec="seconds")
            patch["notes"] = item.notes + [f"[{stamp}] Reopened manually as {status.value}"]
            patch["auto_completed"] = False
            patch["completion_trigger"] = None
            patch["completed_by_trigger"] = None
        snapshot.store.update(args.id, patch, source=MANUAL_SOURCE)

    try:
        files.edit(set_status)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 2

    print(f"{args.id}: {status.value}")
    return 0
