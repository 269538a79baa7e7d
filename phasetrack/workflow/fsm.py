"""Phase cursor state machine using the transitions library.

The evolution tracker is the single mutable pointer into the phase
graph. Moving it is done through a transitions Machine built from the
graph's chain:

- one ``advance`` trigger per phase, guarded by the caller's gate
- a ``restart`` trigger from every phase back to the initial phase
- no transition out of the terminal phase

Usage:
    from phasetrack.workflow.fsm import EvolutionTracker

    tracker = EvolutionTracker.start(graph)
    tracker.advance(graph, gate=lambda phase: phase.all_required_satisfied())
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from transitions import Machine, MachineError

from phasetrack.lib.types import Phase
from phasetrack.workflow.phases import PhaseGraph

logger = logging.getLogger(__name__)

# Gate signature: (current_phase) -> bool
Gate = Callable[[Phase], bool]


class InvalidTransition(Exception):
    """Raised when the cursor cannot move where it was asked to."""

    def __init__(self, from_phase: str, reason: str):
        self.from_phase = from_phase
        self.reason = reason
        super().__init__(f"Cannot advance from '{from_phase}': {reason}")


def build_transitions(graph: PhaseGraph) -> list[dict]:
    """Chain transitions for a phase graph."""
    transitions = []
    for phase in graph:
        nxt = graph.next_phase(phase)
        if nxt is not None:
            transitions.append({
                "trigger": "advance",
                "source": phase.id,
                "dest": nxt.id,
                "conditions": "gate_open",
            })
    transitions.append({"trigger": "restart", "source": "*", "dest": graph.initial().id})
    return transitions


class PhaseMachine:
    """State machine over one phase graph.

    Wraps the transitions library:
    - States are phase ids
    - ``advance`` checks the gate against the current phase
    - Logs all transitions
    """

    def __init__(
        self,
        graph: PhaseGraph,
        initial: str,
        gate: Optional[Gate] = None,
        on_transition: Callable[[str, str, str], None] | None = None,
    ):
        """Initialize the machine at ``initial``.

        Args:
            graph: Phase graph providing states and chain order
            initial: Current phase id (must exist in graph)
            gate: Predicate on the current phase; advance is refused when False
            on_transition: Optional callback(from_phase, to_phase, trigger)
        """
        self.graph = graph
        self.gate = gate
        self.on_transition = on_transition

        self.machine = Machine(
            model=self,
            states=graph.ids,
            transitions=build_transitions(graph),
            initial=graph.require(initial).id,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def gate_open(self, event) -> bool:
        if self.gate is None:
            return True
        return bool(self.gate(self.graph.require(event.transition.source)))

    def on_state_change(self, event) -> None:
        from_phase = event.transition.source
        to_phase = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {from_phase} -> {to_phase} ({trigger})")

        if self.on_transition:
            self.on_transition(from_phase, to_phase, trigger)

    def can(self, trigger: str) -> bool:
        """Check if a trigger exists for the current state."""
        return trigger in self.machine.get_triggers(self.state)


class EvolutionTracker:
    """Cursor plus bookkeeping over the phase sequence.

    One tracker instance owns the project's phase state; every pass of
    the engine mutates it through ``evaluate_once`` while holding the
    tracker's pass lock.
    """

    def __init__(
        self,
        current_phase_id: str,
        completed_phase_ids: Optional[list[str]] = None,
        next_phase_ids: Optional[list[str]] = None,
        overall_progress: float = 0.0,
        auto_advance_enabled: bool = True,
        last_evaluated_at: Optional[datetime] = None,
        advance_pending: Optional[str] = None,
        fired_triggers: Optional[set[str]] = None,
    ):
        self.current_phase_id = current_phase_id
        self.completed_phase_ids = list(completed_phase_ids or [])
        self.next_phase_ids = list(next_phase_ids or [])
        self.overall_progress = overall_progress
        self.auto_advance_enabled = auto_advance_enabled
        self.last_evaluated_at = last_evaluated_at
        self.advance_pending = advance_pending  # Phase id waiting for manual approval
        self.fired_triggers = set(fired_triggers or ())  # "trigger_id:item_id" for one-shot actions
        self._pass_lock = threading.Lock()

    @classmethod
    def start(cls, graph: PhaseGraph, auto_advance_enabled: bool = True) -> "EvolutionTracker":
        """New tracker positioned on the graph's initial phase."""
        tracker = cls(graph.initial().id, auto_advance_enabled=auto_advance_enabled)
        tracker.refresh_next(graph)
        return tracker

    @property
    def pass_in_progress(self) -> bool:
        return self._pass_lock.locked()

    @contextmanager
    def exclusive_pass(self) -> Iterator[bool]:
        """Try to take the single pass slot without blocking.

        Yields True if this caller owns the pass, False if another pass
        is already running.
        """
        acquired = self._pass_lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._pass_lock.release()

    def refresh_next(self, graph: PhaseGraph) -> None:
        current = graph.get(self.current_phase_id)
        if current is None:
            self.next_phase_ids = []
            return
        self.next_phase_ids = [p.id for p in graph.with_order(current.order + 1)]

    def can_advance(self, graph: PhaseGraph) -> bool:
        """True if the current phase has a successor."""
        return graph.next_phase(graph.require(self.current_phase_id)) is not None

    def advance(
        self,
        graph: PhaseGraph,
        gate: Optional[Gate] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Move to the next phase if one exists and the gate allows it.

        Returns the new phase id, or None if the cursor stayed put.

        Raises:
            MissingPhaseError: current phase id not in graph
        """
        current = graph.require(self.current_phase_id)
        machine = PhaseMachine(graph, current.id, gate=gate)
        if not machine.can("advance"):
            logger.debug(f"[FSM] {current.id} is the terminal phase, not advancing")
            return None

        try:
            moved = machine.advance()
        except MachineError as e:
            raise InvalidTransition(current.id, str(e)) from e
        if not moved:
            return None

        self.completed_phase_ids.append(current.id)
        self.current_phase_id = machine.state
        self.advance_pending = None
        self.last_evaluated_at = now or datetime.now()
        self.refresh_next(graph)
        return self.current_phase_id

    def restart(self, graph: PhaseGraph) -> None:
        """Full reset: back to the initial phase with every criterion cleared."""
        # An explicit reset may start from a pointer the graph no longer knows
        start = self.current_phase_id if self.current_phase_id in graph else graph.initial().id
        machine = PhaseMachine(graph, start)
        machine.restart()
        graph.reset()
        self.current_phase_id = machine.state
        self.completed_phase_ids = []
        self.overall_progress = 0.0
        self.advance_pending = None
        self.fired_triggers = set()
        self.last_evaluated_at = None
        self.refresh_next(graph)
        logger.info(f"[FSM] Tracker reset to '{self.current_phase_id}'")

    def fields(self) -> dict:
        """Comparable view of the persisted tracker fields."""
        return self.to_dict()

    def to_dict(self) -> dict:
        return {
            "currentPhaseId": self.current_phase_id,
            "completedPhaseIds": list(self.completed_phase_ids),
            "nextPhaseIds": list(self.next_phase_ids),
            "overallProgress": self.overall_progress,
            "autoAdvanceEnabled": self.auto_advance_enabled,
            "lastEvaluatedAt": self.last_evaluated_at.isoformat() if self.last_evaluated_at else None,
            "advancePending": self.advance_pending,
            "firedTriggers": sorted(self.fired_triggers),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EvolutionTracker":
        last = data.get("lastEvaluatedAt")
        return cls(
            current_phase_id=data["currentPhaseId"],
            completed_phase_ids=data.get("completedPhaseIds", []),
            next_phase_ids=data.get("nextPhaseIds", []),
            overall_progress=data.get("overallProgress", 0.0),
            auto_advance_enabled=data.get("autoAdvanceEnabled", True),
            last_evaluated_at=datetime.fromisoformat(last) if last else None,
            advance_pending=data.get("advancePending"),
            fired_triggers=set(data.get("firedTriggers", [])),
        )
