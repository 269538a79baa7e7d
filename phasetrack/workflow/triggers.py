"""Trigger evaluation.

Decides whether a phase trigger fires for a single work item.

Triggers are tried in declaration order and evaluation stops at the
first one that fires, so the order of a phase's triggers decides which
trigger is credited with an auto-completion:

    phase.triggers = [tests_passed, dependencies_met]
    -> an item satisfying both is credited to tests_passed

Only items that are not completed and whose phase_id is the phase being
evaluated are candidates.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from phasetrack.lib.types import (
    ItemKind,
    Phase,
    Trigger,
    TriggerAction,
    TriggerCondition,
    WorkItem,
)

# Signature: (trigger, item, all_items, now) -> bool
ConditionCheck = Callable[[Trigger, WorkItem, list[WorkItem], datetime], bool]

# Called with (trigger, exception) when a condition check raises
ErrorHandler = Callable[[Trigger, Exception], None]


def _param(trigger: Trigger, name: str):
    """Fetch a required trigger parameter."""
    value = trigger.parameters.get(name)
    if value is None or value == "":
        raise ValueError(f"Trigger '{trigger.id}' is missing parameter '{name}'")
    return value


def _dependencies_met(trigger: Trigger, item: WorkItem, items: list[WorkItem], now: datetime) -> bool:
    # Vacuously true when the item has no dependencies
    by_id = {i.id: i for i in items}
    return all(
        dep in by_id and by_id[dep].is_completed
        for dep in item.dependencies
    )


def _milestone_reached(trigger: Trigger, item: WorkItem, items: list[WorkItem], now: datetime) -> bool:
    milestone_id = _param(trigger, "milestoneId")
    return any(
        i.id != item.id and i.matches(milestone_id) and i.is_completed
        for i in items
    )


def _tests_passed(trigger: Trigger, item: WorkItem, items: list[WorkItem], now: datetime) -> bool:
    test_type = trigger.parameters.get("testType")
    tests = [
        i for i in items
        if i.kind is ItemKind.TEST
        and item.id in i.related_components
        and (not test_type or test_type in i.tags)
    ]
    # Zero matching tests never fires, unlike a plain all() over nothing
    return bool(tests) and all(t.is_completed for t in tests)


def _time_elapsed(trigger: Trigger, item: WorkItem, items: list[WorkItem], now: datetime) -> bool:
    hours = float(_param(trigger, "hours"))
    return now - item.created_at >= timedelta(hours=hours)


def _manual_approval(trigger: Trigger, item: WorkItem, items: list[WorkItem], now: datetime) -> bool:
    # Approval is an explicit external action, never automatic
    return False


CONDITIONS: dict[TriggerCondition, ConditionCheck] = {
    TriggerCondition.DEPENDENCIES_MET: _dependencies_met,
    TriggerCondition.MILESTONE_REACHED: _milestone_reached,
    TriggerCondition.TESTS_PASSED: _tests_passed,
    TriggerCondition.TIME_ELAPSED: _time_elapsed,
    TriggerCondition.MANUAL_APPROVAL: _manual_approval,
}

_missing = set(TriggerCondition) - set(CONDITIONS)
if _missing:
    raise RuntimeError(f"No trigger check for conditions: {sorted(c.value for c in _missing)}")


def fires(
    trigger: Trigger,
    item: WorkItem,
    items: Iterable[WorkItem],
    now: Optional[datetime] = None,
) -> bool:
    """Return True if this trigger's condition holds for the item."""
    return CONDITIONS[trigger.condition](trigger, item, list(items), now or datetime.now())


def is_candidate(item: WorkItem, phase: Phase) -> bool:
    """Only open items assigned to the phase are considered."""
    return not item.is_completed and item.phase_id == phase.id


def first_firing(
    item: WorkItem,
    phase: Phase,
    items: Iterable[WorkItem],
    now: Optional[datetime] = None,
    on_error: Optional[ErrorHandler] = None,
) -> Optional[Trigger]:
    """Return the first enabled trigger that fires for the item, or None.

    Remaining triggers are not evaluated once one fires. A trigger whose
    check raises is reported to on_error and skipped; without a handler
    the exception propagates.
    """
    if not is_candidate(item, phase):
        return None

    items = list(items)
    now = now or datetime.now()
    for trigger in phase.enabled_triggers():
        try:
            if fires(trigger, item, items, now):
                return trigger
        except Exception as e:
            if on_error is None:
                raise
            on_error(trigger, e)
    return None


def should_complete(
    item: WorkItem,
    phase: Phase,
    items: Iterable[WorkItem],
    now: Optional[datetime] = None,
) -> bool:
    """True if the first firing trigger asks for the item to be marked completed."""
    trigger = first_firing(item, phase, items, now)
    return trigger is not None and trigger.action is TriggerAction.MARK_COMPLETED
