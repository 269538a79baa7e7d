"""Criterion evaluation.

Decides whether a phase criterion currently holds against the work
items. Every function here is pure: same inputs, same answer, no writes.
"""

from datetime import datetime
from typing import Callable, Iterable, Optional

from phasetrack.lib.constants import AUTO_SYSTEM
from phasetrack.lib.types import (
    Category,
    Criterion,
    CriterionKind,
    ItemKind,
    ItemStatus,
    Satisfaction,
    WorkItem,
)

METRICS_TAG = "metrics"

CriterionCheck = Callable[[Criterion, list[WorkItem]], bool]


def _dependency(criterion: Criterion, items: list[WorkItem]) -> bool:
    # Absence of referencing items is not success
    referencing = [
        i for i in items
        if criterion.id in i.tags or criterion.id in i.related_components
    ]
    return bool(referencing) and all(i.is_completed for i in referencing)


def _milestone(criterion: Criterion, items: list[WorkItem]) -> bool:
    return any(
        i.kind is ItemKind.MILESTONE and i.matches(criterion.id) and i.is_completed
        for i in items
    )


def _test(criterion: Criterion, items: list[WorkItem]) -> bool:
    tests = [i for i in items if i.kind is ItemKind.TEST and i.matches(criterion.id)]
    return bool(tests) and all(i.is_completed for i in tests)


def _review(criterion: Criterion, items: list[WorkItem]) -> bool:
    return any(
        i.category is Category.DOCUMENTATION
        and criterion.id in i.tags
        and i.status is ItemStatus.APPROVED
        for i in items
    )


def _metric(criterion: Criterion, items: list[WorkItem]) -> bool:
    return any(
        i.is_completed and METRICS_TAG in i.tags and criterion.id in i.tags
        for i in items
    )


CHECKS: dict[CriterionKind, CriterionCheck] = {
    CriterionKind.DEPENDENCY: _dependency,
    CriterionKind.MILESTONE: _milestone,
    CriterionKind.TEST: _test,
    CriterionKind.REVIEW: _review,
    CriterionKind.METRIC: _metric,
}

_missing = set(CriterionKind) - set(CHECKS)
if _missing:
    raise RuntimeError(f"No criterion check for kinds: {sorted(k.value for k in _missing)}")


def evaluate(criterion: Criterion, items: Iterable[WorkItem]) -> bool:
    """Return True if the criterion currently holds."""
    return CHECKS[criterion.kind](criterion, list(items))


def check(
    criterion: Criterion,
    items: Iterable[WorkItem],
    now: Optional[datetime] = None,
) -> Optional[Satisfaction]:
    """Evaluate and return a satisfaction record on success, else None.

    Callers stamp the record onto the criterion and skip criteria that are
    already satisfied, so a satisfied criterion is never re-checked.
    """
    if not evaluate(criterion, items):
        return None
    return Satisfaction(
        criterion_id=criterion.id,
        satisfied_at=now or datetime.now(),
        satisfied_by=AUTO_SYSTEM,
    )
