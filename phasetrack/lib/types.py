"""
Shared data types for phasetrack.

Work items, phase criteria and triggers live here so the workflow,
store and runner packages can import them without circular imports.
Persisted JSON uses camelCase keys; Python attributes use snake_case.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ItemKind(Enum):
    TASK = "task"
    MILESTONE = "milestone"
    INTEGRATION = "integration"
    ISSUE = "issue"
    DECISION = "decision"
    TEST = "test"


class ItemStatus(Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    TESTING = "testing"
    APPROVED = "approved"


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Category(Enum):
    UI = "ui"
    BACKEND = "backend"
    DATABASE = "database"
    API = "api"
    DEPLOYMENT = "deployment"
    DOCUMENTATION = "documentation"


class CompletionTrigger(Enum):
    """How a work item reached completed."""
    MANUAL = "manual"
    DEPENDENCY = "dependency"
    EVOLUTION = "evolution"
    MILESTONE = "milestone"


class CriterionKind(Enum):
    DEPENDENCY = "dependency"
    MILESTONE = "milestone"
    TEST = "test"
    REVIEW = "review"
    METRIC = "metric"


class TriggerCondition(Enum):
    DEPENDENCIES_MET = "dependencies_met"
    MILESTONE_REACHED = "milestone_reached"
    TESTS_PASSED = "tests_passed"
    TIME_ELAPSED = "time_elapsed"
    MANUAL_APPROVAL = "manual_approval"


class TriggerAction(Enum):
    MARK_COMPLETED = "mark_completed"
    START_NEXT_PHASE = "start_next_phase"
    NOTIFY = "notify"
    ESCALATE = "escalate"


def parse_status(value: str) -> ItemStatus:
    """Parse a status string, accepting the hyphenated spelling ("in-progress")."""
    return ItemStatus(value.replace("-", "_"))


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class WorkItem:
    """A trackable unit of project work."""
    id: str
    title: str
    kind: ItemKind = ItemKind.TASK
    status: ItemStatus = ItemStatus.PLANNED
    priority: Priority = Priority.MEDIUM
    category: Category = Category.BACKEND
    phase_id: Optional[str] = None
    description: str = ""
    assigned_to: Optional[str] = None
    dependencies: set[str] = field(default_factory=set)
    tags: set[str] = field(default_factory=set)
    related_components: set[str] = field(default_factory=set)
    integration_points: list[str] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    auto_completed: bool = False
    completion_trigger: Optional[CompletionTrigger] = None
    completed_by_trigger: Optional[str] = None  # Trigger id for engine completions
    created_at: datetime = field(default_factory=datetime.now)
    estimated_effort: Optional[float] = None  # Hours
    actual_effort: Optional[float] = None

    @property
    def is_completed(self) -> bool:
        return self.status is ItemStatus.COMPLETED

    def matches(self, ref: str) -> bool:
        """True if ref names this item by id or by tag."""
        return self.id == ref or ref in self.tags

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "kind": self.kind.value,
            "status": self.status.value,
            "priority": self.priority.value,
            "category": self.category.value,
            "phaseId": self.phase_id,
            "description": self.description,
            "assignedTo": self.assigned_to,
            "dependencies": sorted(self.dependencies),
            "tags": sorted(self.tags),
            "relatedComponents": sorted(self.related_components),
            "integrationPoints": list(self.integration_points),
            "attachments": list(self.attachments),
            "notes": list(self.notes),
            "autoCompleted": self.auto_completed,
            "completionTrigger": self.completion_trigger.value if self.completion_trigger else None,
            "completedByTrigger": self.completed_by_trigger,
            "createdAt": _iso(self.created_at),
            "estimatedEffort": self.estimated_effort,
            "actualEffort": self.actual_effort,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkItem":
        trigger = data.get("completionTrigger")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            kind=ItemKind(data.get("kind", "task")),
            status=parse_status(data.get("status", "planned")),
            priority=Priority(data.get("priority", "medium")),
            category=Category(data.get("category", "backend")),
            phase_id=data.get("phaseId"),
            description=data.get("description", ""),
            assigned_to=data.get("assignedTo"),
            dependencies=set(data.get("dependencies", [])),
            tags=set(data.get("tags", [])),
            related_components=set(data.get("relatedComponents", [])),
            integration_points=list(data.get("integrationPoints", [])),
            attachments=list(data.get("attachments", [])),
            notes=list(data.get("notes", [])),
            auto_completed=data.get("autoCompleted", False),
            completion_trigger=CompletionTrigger(trigger) if trigger else None,
            completed_by_trigger=data.get("completedByTrigger"),
            created_at=_dt(data.get("createdAt")) or datetime.now(),
            estimated_effort=data.get("estimatedEffort"),
            actual_effort=data.get("actualEffort"),
        )


@dataclass(frozen=True)
class Satisfaction:
    """Record returned when a criterion check succeeds."""
    criterion_id: str
    satisfied_at: datetime
    satisfied_by: str


@dataclass
class Criterion:
    """A named completion condition attached to a phase."""
    id: str
    kind: CriterionKind
    description: str = ""
    required: bool = True
    satisfied: bool = False
    satisfied_at: Optional[datetime] = None
    satisfied_by: Optional[str] = None

    def stamp(self, record: Satisfaction) -> None:
        """Mark satisfied. Never resets an already satisfied criterion."""
        if self.satisfied:
            return
        self.satisfied = True
        self.satisfied_at = record.satisfied_at
        self.satisfied_by = record.satisfied_by

    def reset(self) -> None:
        """Clear satisfaction. Only used by a full phase-graph reset."""
        self.satisfied = False
        self.satisfied_at = None
        self.satisfied_by = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "description": self.description,
            "required": self.required,
            "satisfied": self.satisfied,
            "satisfiedAt": _iso(self.satisfied_at),
            "satisfiedBy": self.satisfied_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Criterion":
        return cls(
            id=data["id"],
            kind=CriterionKind(data["kind"]),
            description=data.get("description", ""),
            required=data.get("required", True),
            satisfied=data.get("satisfied", False),
            satisfied_at=_dt(data.get("satisfiedAt")),
            satisfied_by=data.get("satisfiedBy"),
        )


@dataclass
class Trigger:
    """A rule that can auto-complete a work item."""
    id: str
    condition: TriggerCondition
    action: TriggerAction = TriggerAction.MARK_COMPLETED
    parameters: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "condition": self.condition.value,
            "action": self.action.value,
            "parameters": dict(self.parameters),
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Trigger":
        return cls(
            id=data["id"],
            condition=TriggerCondition(data["condition"]),
            action=TriggerAction(data.get("action", "mark_completed")),
            parameters=dict(data.get("parameters") or {}),
            enabled=data.get("enabled", True),
        )


@dataclass
class Phase:
    """One stage in the evolution path."""
    id: str
    name: str
    order: int
    description: str = ""
    prerequisites: set[str] = field(default_factory=set)
    criteria: list[Criterion] = field(default_factory=list)
    triggers: list[Trigger] = field(default_factory=list)

    def required_criteria(self) -> list[Criterion]:
        return [c for c in self.criteria if c.required]

    def enabled_triggers(self) -> list[Trigger]:
        """Enabled triggers in declaration order."""
        return [t for t in self.triggers if t.enabled]

    def get_criterion(self, criterion_id: str) -> Optional[Criterion]:
        for c in self.criteria:
            if c.id == criterion_id:
                return c
        return None

    def all_required_satisfied(self) -> bool:
        """True when every required criterion is satisfied (vacuously true if none)."""
        return all(c.satisfied for c in self.required_criteria())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "order": self.order,
            "description": self.description,
            "prerequisites": sorted(self.prerequisites),
            "criteria": [c.to_dict() for c in self.criteria],
            "triggers": [t.to_dict() for t in self.triggers],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Phase":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            order=int(data["order"]),
            description=data.get("description", ""),
            prerequisites=set(data.get("prerequisites", [])),
            criteria=[Criterion.from_dict(c) for c in data.get("criteria", [])],
            triggers=[Trigger.from_dict(t) for t in data.get("triggers", [])],
        )
