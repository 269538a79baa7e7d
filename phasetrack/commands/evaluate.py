"""
pt evaluate / pt advance - One-shot engine passes from the command line.
"""

from phasetrack.notifications import DesktopNotifier
from phasetrack.store.files import ProjectFiles, ProjectSnapshot, SnapshotWriter
from phasetrack.workflow.changes import ChangeSet
from phasetrack.workflow.engine import EvaluationInProgress, approve_advance, evaluate_once
from phasetrack.workflow.fsm import InvalidTransition
from phasetrack.workflow.phases import MissingPhaseError


def _save_and_notify(args, files: ProjectFiles, snapshot: ProjectSnapshot, changes: ChangeSet) -> None:
    SnapshotWriter(files, snapshot).save(changes)
    if not args.no_notify:
        DesktopNotifier(snapshot.project_id).notify_changes(changes)


def cmd_evaluate(args, files: ProjectFiles) -> int:
    """Run a single evaluation pass and persist the result."""
    snapshot = files.load()
    try:
        changes = evaluate_once(
            snapshot.store, snapshot.graph, snapshot.tracker, snapshot.settings,
            project_id=snapshot.project_id,
        )
    except MissingPhaseError as e:
        print(f"ERROR: {e}")
        return 1

    for event in changes.events:
        print(f"  {event.summary}")
    for diag in changes.diagnostics:
        print(f"  WARNING: {diag.summary}")

    if args.dry_run:
        print(f"Dry run: {changes.summary()} (not saved)")
        return 0

    _save_and_notify(args, files, snapshot, changes)
    print(changes.summary())
    return 0


def cmd_advance(args, files: ProjectFiles) -> int:
    """Approve moving to the next phase."""
    snapshot = files.load()
    try:
        changes = approve_advance(
            snapshot.store, snapshot.graph, snapshot.tracker, snapshot.settings,
            project_id=snapshot.project_id,
        )
    except (InvalidTransition, MissingPhaseError, EvaluationInProgress) as e:
        print(f"ERROR: {e}")
        return 1

    _save_and_notify(args, files, snapshot, changes)
    print(f"Now in phase: {snapshot.tracker.current_phase_id}")
    return 0
