"""Change-sets produced by an evaluation pass.

A ChangeSet records what one pass changed so persistence and
notification collaborators can act on it as a single batch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class EventType(Enum):
    CRITERION_SATISFIED = "criterion_satisfied"
    ITEM_AUTO_COMPLETED = "item_auto_completed"
    PHASE_ADVANCED = "phase_advanced"
    ADVANCE_PENDING = "advance_pending"
    TRIGGER_NOTIFY = "trigger_notify"
    TRIGGER_ESCALATE = "trigger_escalate"
    NEXT_PHASE_REQUESTED = "next_phase_requested"
    RULE_ERROR = "rule_error"


@dataclass
class EngineEvent:
    """Something observable that happened during a pass."""
    type: EventType
    summary: str
    timestamp: datetime = field(default_factory=datetime.now)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "summary": self.summary,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EngineEvent":
        return cls(
            type=EventType(data["type"]),
            summary=data.get("summary", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            details=dict(data.get("details") or {}),
        )


@dataclass
class ChangeSet:
    """Result of one evaluation pass.

    items:       item id -> changed fields (persisted camelCase keys)
    criteria:    (phase_id, criterion_id) pairs stamped satisfied
    tracker:     tracker field -> new value
    events:      observable events for notification/timeline
    diagnostics: rule evaluation errors (operator channel, not a change)
    skipped:     True when another pass was already running
    """
    project_id: Optional[str] = None
    items: dict[str, dict[str, Any]] = field(default_factory=dict)
    criteria: list[tuple[str, str]] = field(default_factory=list)
    tracker: dict[str, Any] = field(default_factory=dict)
    events: list[EngineEvent] = field(default_factory=list)
    diagnostics: list[EngineEvent] = field(default_factory=list)
    skipped: bool = False

    @property
    def is_empty(self) -> bool:
        """True when the pass changed nothing that needs writing."""
        return not (self.items or self.criteria or self.tracker or self.events)

    def record_item(self, item_id: str, patch: dict[str, Any]) -> None:
        self.items.setdefault(item_id, {}).update(patch)

    def absorb(self, other: "ChangeSet") -> None:
        """Fold a later change-set into this one.

        A diagnostic whose summary is already held is not added again.
        """
        for item_id, patch in other.items.items():
            self.record_item(item_id, patch)
        self.criteria.extend(c for c in other.criteria if c not in self.criteria)
        self.tracker.update(other.tracker)
        self.events.extend(other.events)
        seen = {d.summary for d in self.diagnostics}
        for diag in other.diagnostics:
            if diag.summary not in seen:
                seen.add(diag.summary)
                self.diagnostics.append(diag)

    def events_of(self, event_type: EventType) -> list[EngineEvent]:
        return [e for e in self.events if e.type is event_type]

    def summary(self) -> str:
        """One-line human summary."""
        if self.skipped:
            return "skipped (pass already running)"
        if self.is_empty:
            return "no changes"
        parts = []
        if self.criteria:
            parts.append(f"{len(self.criteria)} criteria satisfied")
        completed = self.events_of(EventType.ITEM_AUTO_COMPLETED)
        if completed:
            parts.append(f"{len(completed)} items auto-completed")
        advanced = self.events_of(EventType.PHASE_ADVANCED)
        if advanced:
            parts.append(f"advanced to {advanced[-1].details.get('to')}")
        if self.events_of(EventType.ADVANCE_PENDING):
            parts.append("advance awaiting approval")
        if not parts:
            parts.append(f"{len(self.events)} events")
        return ", ".join(parts)
