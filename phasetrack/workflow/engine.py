"""Evolution engine: one evaluation pass over a project.

A pass reads a snapshot of the work items taken at its start and then:

1. Resolves the current phase (MissingPhaseError aborts the pass)
2. Checks each unsatisfied criterion of the phase and stamps successes
3. Computes whether the phase gate (all required criteria) holds
4. Runs the phase triggers over open items of the phase, completing
   items whose first firing trigger asks for it
5. Advances the tracker when the gate holds and auto-advance is on
6. Recomputes overall progress for the (possibly new) current phase
7. Returns a ChangeSet describing everything that changed

Criteria are evaluated before triggers, so an item completed by a
trigger counts towards criteria on the next pass, not this one.
A rule that raises is logged and skipped; the rest of the pass continues.
"""

import logging
from datetime import datetime
from typing import Optional

from phasetrack.lib.config import AutoCompletionSettings, CompletionMode
from phasetrack.lib.types import (
    CompletionTrigger,
    Criterion,
    ItemStatus,
    Phase,
    Trigger,
    TriggerAction,
    WorkItem,
)
from phasetrack.store.memory import ENGINE_SOURCE, WorkItemStore
from phasetrack.workflow import criteria as criterion_checks
from phasetrack.workflow import triggers as trigger_checks
from phasetrack.workflow.changes import ChangeSet, EngineEvent, EventType
from phasetrack.workflow.fsm import EvolutionTracker, Gate, InvalidTransition
from phasetrack.workflow.phases import MissingPhaseError, PhaseGraph

logger = logging.getLogger(__name__)


class RuleEvaluationError(Exception):
    """A single criterion or trigger check raised."""

    def __init__(self, rule_id: str, cause: Exception, item_id: Optional[str] = None):
        self.rule_id = rule_id
        self.item_id = item_id
        self.cause = cause
        target = f" on item '{item_id}'" if item_id else ""
        super().__init__(f"Rule '{rule_id}'{target} failed: {cause}")


class EvaluationInProgress(Exception):
    """Another pass currently owns the tracker."""


ACTION_EVENTS = {
    TriggerAction.NOTIFY: EventType.TRIGGER_NOTIFY,
    TriggerAction.ESCALATE: EventType.TRIGGER_ESCALATE,
    TriggerAction.START_NEXT_PHASE: EventType.NEXT_PHASE_REQUESTED,
}


def compute_progress(items: list[WorkItem], phase: Phase) -> float:
    """Percent of the phase's items that are completed, 0 when it has none."""
    in_phase = [i for i in items if i.phase_id == phase.id]
    if not in_phase:
        return 0.0
    done = sum(1 for i in in_phase if i.is_completed)
    return round(min(100.0, max(0.0, done * 100.0 / len(in_phase))), 2)


def phase_gate(settings: AutoCompletionSettings, items: list[WorkItem]) -> Gate:
    """Gate for leaving a phase under the given settings.

    flexible/manual: all required criteria satisfied.
    strict: additionally every item assigned to the phase is completed.
    """
    def gate(phase: Phase) -> bool:
        if not phase.all_required_satisfied():
            return False
        if settings.mode is CompletionMode.STRICT:
            return all(i.is_completed for i in items if i.phase_id == phase.id)
        return True
    return gate


def _record_error(changes: ChangeSet, error: RuleEvaluationError, now: datetime) -> None:
    logger.warning(f"[ENGINE] {error}")
    changes.diagnostics.append(EngineEvent(
        type=EventType.RULE_ERROR,
        summary=str(error),
        timestamp=now,
        details={"rule": error.rule_id, "item": error.item_id, "error": repr(error.cause)},
    ))


def _evaluate_criteria(
    phase: Phase,
    items: list[WorkItem],
    changes: ChangeSet,
    now: datetime,
) -> None:
    for criterion in phase.criteria:
        if criterion.satisfied:
            continue
        try:
            record = criterion_checks.check(criterion, items, now)
        except Exception as e:
            _record_error(changes, RuleEvaluationError(criterion.id, e), now)
            continue
        if record is None:
            continue

        criterion.stamp(record)
        changes.criteria.append((phase.id, criterion.id))
        changes.events.append(_criterion_event(phase, criterion, now))
        logger.info(f"[ENGINE] Criterion '{criterion.id}' of phase '{phase.id}' satisfied")


def _criterion_event(phase: Phase, criterion: Criterion, now: datetime) -> EngineEvent:
    return EngineEvent(
        type=EventType.CRITERION_SATISFIED,
        summary=f"Criterion {criterion.id} satisfied",
        timestamp=now,
        details={"phase": phase.id, "criterion": criterion.id, "required": criterion.required},
    )


def _complete_item(
    store: WorkItemStore,
    item: WorkItem,
    trigger: Trigger,
    changes: ChangeSet,
    now: datetime,
) -> None:
    note = (
        f"[{now.isoformat(timespec='seconds')}] Auto-completed by trigger "
        f"'{trigger.id}' ({trigger.condition.value})"
    )

    def completion(current: WorkItem) -> Optional[dict]:
        # Built from the item as it is now, not as it was at pass start
        if current.is_completed:
            return None
        effort = current.actual_effort
        if effort is None:
            effort = current.estimated_effort if current.estimated_effort is not None else 0.0
        return {
            "status": ItemStatus.COMPLETED,
            "auto_completed": True,
            "completion_trigger": CompletionTrigger.EVOLUTION,
            "completed_by_trigger": trigger.id,
            "actual_effort": effort,
            "notes": current.notes + [note],
        }

    updated = store.modify(item.id, completion, source=ENGINE_SOURCE)
    if updated is None:
        logger.debug(f"[ENGINE] Item '{item.id}' was completed during the pass")
        return

    changes.record_item(item.id, {
        "status": updated.status.value,
        "autoCompleted": True,
        "completionTrigger": CompletionTrigger.EVOLUTION.value,
        "completedByTrigger": trigger.id,
        "actualEffort": updated.actual_effort,
        "notes": list(updated.notes),
    })
    changes.events.append(EngineEvent(
        type=EventType.ITEM_AUTO_COMPLETED,
        summary=f"{item.title or item.id} auto-completed",
        timestamp=now,
        details={"item": item.id, "trigger": trigger.id, "phase": item.phase_id},
    ))
    logger.info(f"[ENGINE] Item '{item.id}' completed by trigger '{trigger.id}'")


def _one_shot_action(
    tracker: EvolutionTracker,
    item: WorkItem,
    trigger: Trigger,
    changes: ChangeSet,
    now: datetime,
) -> None:
    key = f"{trigger.id}:{item.id}"
    if key in tracker.fired_triggers:
        return
    tracker.fired_triggers.add(key)

    event_type = ACTION_EVENTS[trigger.action]
    if trigger.action is TriggerAction.ESCALATE:
        logger.warning(f"[ENGINE] Escalation: trigger '{trigger.id}' fired for item '{item.id}'")
    else:
        logger.info(f"[ENGINE] Trigger '{trigger.id}' ({trigger.action.value}) fired for item '{item.id}'")
    changes.events.append(EngineEvent(
        type=event_type,
        summary=f"{trigger.action.value}: {item.title or item.id} ({trigger.id})",
        timestamp=now,
        details={"item": item.id, "trigger": trigger.id, "phase": item.phase_id},
    ))


def _run_triggers(
    store: WorkItemStore,
    phase: Phase,
    tracker: EvolutionTracker,
    items: list[WorkItem],
    changes: ChangeSet,
    now: datetime,
) -> None:
    for item in items:
        if not trigger_checks.is_candidate(item, phase):
            continue

        def on_error(trigger: Trigger, exc: Exception, item_id: str = item.id) -> None:
            _record_error(changes, RuleEvaluationError(trigger.id, exc, item_id), now)

        trigger = trigger_checks.first_firing(item, phase, items, now, on_error=on_error)
        if trigger is None:
            continue
        try:
            if trigger.action is TriggerAction.MARK_COMPLETED:
                _complete_item(store, item, trigger, changes, now)
            else:
                _one_shot_action(tracker, item, trigger, changes, now)
        except KeyError as e:
            # Item deleted from the store since the snapshot was taken
            _record_error(changes, RuleEvaluationError(trigger.id, e, item.id), now)


def _maybe_advance(
    graph: PhaseGraph,
    phase: Phase,
    tracker: EvolutionTracker,
    settings: AutoCompletionSettings,
    gate: Gate,
    changes: ChangeSet,
    now: datetime,
) -> None:
    if not (settings.auto_advance_phases and tracker.auto_advance_enabled):
        return
    if not gate(phase) or not tracker.can_advance(graph):
        return

    if settings.require_manual_approval:
        if tracker.advance_pending != phase.id:
            tracker.advance_pending = phase.id
            changes.events.append(EngineEvent(
                type=EventType.ADVANCE_PENDING,
                summary=f"Phase {phase.name} complete, awaiting approval to advance",
                timestamp=now,
                details={"from": phase.id, "to": graph.next_phase(phase).id},
            ))
            logger.info(f"[ENGINE] Phase '{phase.id}' ready to advance, awaiting approval")
        return

    new_phase_id = tracker.advance(graph, gate=gate, now=now)
    if new_phase_id:
        changes.events.append(_advance_event(phase, graph.require(new_phase_id), now))


def _advance_event(phase: Phase, new_phase: Phase, now: datetime) -> EngineEvent:
    return EngineEvent(
        type=EventType.PHASE_ADVANCED,
        summary=f"Advanced from {phase.name} to {new_phase.name}",
        timestamp=now,
        details={"from": phase.id, "to": new_phase.id},
    )


def _finish(
    store: WorkItemStore,
    graph: PhaseGraph,
    tracker: EvolutionTracker,
    before: dict,
    changes: ChangeSet,
) -> ChangeSet:
    current = graph.require(tracker.current_phase_id)
    tracker.overall_progress = compute_progress(store.list(), current)

    after = tracker.fields()
    changes.tracker = {k: v for k, v in after.items() if before.get(k) != v}
    return changes


def evaluate_once(
    store: WorkItemStore,
    graph: PhaseGraph,
    tracker: EvolutionTracker,
    settings: AutoCompletionSettings,
    now: Optional[datetime] = None,
    project_id: Optional[str] = None,
) -> ChangeSet:
    """Run one evaluation pass and return what changed.

    Mutates the store, the phase graph's criteria and the tracker in
    memory; never touches storage. A pass that finds another pass
    running returns a ChangeSet with skipped=True and changes nothing.

    Raises:
        MissingPhaseError: tracker.current_phase_id not in graph
    """
    now = now or datetime.now()
    changes = ChangeSet(project_id=project_id)

    if not settings.enabled:
        logger.debug("[ENGINE] Auto-completion disabled, skipping pass")
        return changes

    with tracker.exclusive_pass() as owned:
        if not owned:
            logger.debug("[ENGINE] Pass already in progress, dropping this one")
            changes.skipped = True
            return changes

        try:
            phase = graph.require(tracker.current_phase_id)
        except MissingPhaseError:
            logger.error(f"[ENGINE] Current phase '{tracker.current_phase_id}' missing from graph")
            raise

        before = tracker.fields()
        items = store.list()

        _evaluate_criteria(phase, items, changes, now)
        gate = phase_gate(settings, items)

        if settings.mode is not CompletionMode.MANUAL:
            _run_triggers(store, phase, tracker, items, changes, now)

        _maybe_advance(graph, phase, tracker, settings, gate, changes, now)
        return _finish(store, graph, tracker, before, changes)


def approve_advance(
    store: WorkItemStore,
    graph: PhaseGraph,
    tracker: EvolutionTracker,
    settings: AutoCompletionSettings,
    now: Optional[datetime] = None,
    project_id: Optional[str] = None,
) -> ChangeSet:
    """Explicitly advance the tracker (manual approval path).

    The required-criteria gate still applies; approval only replaces the
    auto-advance switch.

    Raises:
        EvaluationInProgress: a pass currently owns the tracker
        MissingPhaseError: tracker.current_phase_id not in graph
        InvalidTransition: terminal phase or gate not satisfied
    """
    now = now or datetime.now()
    changes = ChangeSet(project_id=project_id)

    with tracker.exclusive_pass() as owned:
        if not owned:
            raise EvaluationInProgress("An evaluation pass is running; retry shortly")

        phase = graph.require(tracker.current_phase_id)
        if not tracker.can_advance(graph):
            raise InvalidTransition(phase.id, "terminal phase")

        before = tracker.fields()
        gate = phase_gate(settings, store.list())
        if not gate(phase):
            unmet = [c.id for c in phase.required_criteria() if not c.satisfied]
            reason = f"required criteria not satisfied: {unmet}" if unmet else "phase items not completed"
            raise InvalidTransition(phase.id, reason)

        new_phase_id = tracker.advance(graph, gate=gate, now=now)
        changes.events.append(_advance_event(phase, graph.require(new_phase_id), now))
        return _finish(store, graph, tracker, before, changes)
