"""
Project overview statistics and work item filtering.

Used by ``pt status`` and ``pt items``.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from phasetrack.lib.types import Category, ItemKind, ItemStatus, Priority, WorkItem


@dataclass
class PhaseCounts:
    """Completed vs total items assigned to one phase."""
    completed: int = 0
    total: int = 0


@dataclass
class ProjectOverview:
    total_items: int = 0
    completed_items: int = 0
    pending_integrations: int = 0
    critical_issues: int = 0
    by_phase: dict[str, PhaseCounts] = field(default_factory=dict)
    unassigned: int = 0  # Items with no phase

    @property
    def completion_percent(self) -> float:
        if not self.total_items:
            return 0.0
        return round(self.completed_items * 100.0 / self.total_items, 2)


def project_overview(items: Iterable[WorkItem], phase_ids: Iterable[str] = ()) -> ProjectOverview:
    """Summarise items. Phases listed in phase_ids appear even when empty."""
    overview = ProjectOverview(by_phase={pid: PhaseCounts() for pid in phase_ids})
    for item in items:
        overview.total_items += 1
        if item.is_completed:
            overview.completed_items += 1
        elif item.kind is ItemKind.INTEGRATION:
            overview.pending_integrations += 1
        elif item.kind is ItemKind.ISSUE and item.priority is Priority.CRITICAL:
            overview.critical_issues += 1

        if item.phase_id is None:
            overview.unassigned += 1
            continue
        counts = overview.by_phase.setdefault(item.phase_id, PhaseCounts())
        counts.total += 1
        if item.is_completed:
            counts.completed += 1
    return overview


def filter_items(
    items: Iterable[WorkItem],
    category: Optional[Category] = None,
    status: Optional[ItemStatus] = None,
    phase_id: Optional[str] = None,
) -> list[WorkItem]:
    """Items matching every filter that is set."""
    return [
        i for i in items
        if (category is None or i.category is category)
        and (status is None or i.status is status)
        and (phase_id is None or i.phase_id == phase_id)
    ]
