"""Phase graph: the ordered chain of phases a project evolves through.

Phases are linked by their ``order`` value: the next phase after
``current`` is the one whose order is ``current.order + 1``. The graph
is validated on construction so the tracker can rely on a simple chain
starting at order 0.

Usage:
    from phasetrack.workflow.phases import load_phase_graph

    graph = load_phase_graph(project_dir)
    first = graph.initial()
    nxt = graph.next_phase(first)
"""

import logging
from pathlib import Path
from typing import Iterator, Optional

import yaml

from phasetrack.lib.constants import PHASES_FILE
from phasetrack.lib.types import Phase
from phasetrack.lib.validate import ValidationError, validate

logger = logging.getLogger(__name__)


class MissingPhaseError(Exception):
    """The tracker points at a phase id the graph does not contain."""

    def __init__(self, phase_id: str):
        self.phase_id = phase_id
        super().__init__(f"Phase '{phase_id}' not found in phase graph")


class PhaseGraphError(ValueError):
    """Phase definitions do not form a valid chain."""


# Built-in evolution path used when a project ships no phases.yaml.
DEFAULT_PHASES = [
    {
        "id": "planning",
        "name": "Planning",
        "order": 0,
        "description": "Requirements and architecture",
        "criteria": [
            {"id": "requirements_approved", "kind": "review", "required": True,
             "description": "Requirements document approved"},
            {"id": "architecture_defined", "kind": "milestone", "required": True,
             "description": "Architecture milestone reached"},
        ],
        "triggers": [
            {"id": "planning_milestone", "condition": "milestone_reached",
             "parameters": {"milestoneId": "architecture_defined"}},
        ],
    },
    {
        "id": "development",
        "name": "Development",
        "order": 1,
        "prerequisites": ["planning"],
        "description": "Feature implementation",
        "criteria": [
            {"id": "core_features", "kind": "dependency", "required": True,
             "description": "All core feature work completed"},
            {"id": "unit_tests_passed", "kind": "test", "required": True,
             "description": "Unit tests pass"},
            {"id": "code_quality", "kind": "metric", "required": False,
             "description": "Code quality metrics recorded"},
        ],
        "triggers": [
            {"id": "dev_tests_passed", "condition": "tests_passed",
             "parameters": {"testType": "unit"}},
            {"id": "dev_stale", "condition": "time_elapsed", "action": "escalate",
             "parameters": {"hours": 336}},
        ],
    },
    {
        "id": "testing",
        "name": "Testing",
        "order": 2,
        "prerequisites": ["development"],
        "description": "Integration testing and QA",
        "criteria": [
            {"id": "integration_tests_passed", "kind": "test", "required": True,
             "description": "Integration tests pass"},
            {"id": "qa_signoff", "kind": "review", "required": True,
             "description": "QA sign-off documented"},
        ],
        "triggers": [
            {"id": "testing_tests_passed", "condition": "tests_passed",
             "parameters": {"testType": "integration"}},
        ],
    },
    {
        "id": "deployment",
        "name": "Deployment",
        "order": 3,
        "prerequisites": ["testing"],
        "description": "Release",
        "criteria": [
            {"id": "release_published", "kind": "milestone", "required": True,
             "description": "Release milestone reached"},
        ],
        "triggers": [
            {"id": "deploy_release", "condition": "milestone_reached",
             "parameters": {"milestoneId": "release_published"}},
        ],
    },
]


class PhaseGraph:
    """Ordered, acyclic chain of phases."""

    def __init__(self, phases: list[Phase]):
        self._phases = sorted(phases, key=lambda p: p.order)
        self._by_id = {p.id: p for p in self._phases}
        self._check()

    def _check(self) -> None:
        if not self._phases:
            raise PhaseGraphError("Phase graph is empty")
        if len(self._by_id) != len(self._phases):
            raise PhaseGraphError("Duplicate phase ids")

        orders = [p.order for p in self._phases]
        if len(set(orders)) != len(orders):
            raise PhaseGraphError(f"Duplicate phase order values: {orders}")
        if orders != list(range(len(orders))):
            raise PhaseGraphError(f"Phase orders must run 0..{len(orders) - 1} without gaps: {orders}")

        for phase in self._phases:
            for prereq in phase.prerequisites:
                other = self._by_id.get(prereq)
                if other is None:
                    raise PhaseGraphError(f"Phase '{phase.id}' has unknown prerequisite '{prereq}'")
                if other.order >= phase.order:
                    raise PhaseGraphError(
                        f"Phase '{phase.id}' prerequisite '{prereq}' is not an earlier phase"
                    )
            criterion_ids = [c.id for c in phase.criteria]
            if len(set(criterion_ids)) != len(criterion_ids):
                raise PhaseGraphError(f"Phase '{phase.id}' has duplicate criterion ids")
            trigger_ids = [t.id for t in phase.triggers]
            if len(set(trigger_ids)) != len(trigger_ids):
                raise PhaseGraphError(f"Phase '{phase.id}' has duplicate trigger ids")

    def __iter__(self) -> Iterator[Phase]:
        return iter(self._phases)

    def __len__(self) -> int:
        return len(self._phases)

    def __contains__(self, phase_id: str) -> bool:
        return phase_id in self._by_id

    @property
    def ids(self) -> list[str]:
        return [p.id for p in self._phases]

    def get(self, phase_id: Optional[str]) -> Optional[Phase]:
        return self._by_id.get(phase_id) if phase_id else None

    def require(self, phase_id: Optional[str]) -> Phase:
        """Resolve a phase id or raise MissingPhaseError."""
        phase = self.get(phase_id)
        if phase is None:
            raise MissingPhaseError(str(phase_id))
        return phase

    def initial(self) -> Phase:
        return self._phases[0]

    def terminal(self) -> Phase:
        return self._phases[-1]

    def with_order(self, order: int) -> list[Phase]:
        return [p for p in self._phases if p.order == order]

    def next_phase(self, phase: Phase) -> Optional[Phase]:
        """The phase with order == phase.order + 1, or None at the end of the chain."""
        following = self.with_order(phase.order + 1)
        return following[0] if following else None

    def prefix_before(self, phase: Phase) -> list[str]:
        """Ids of all phases ordered before ``phase``."""
        return [p.id for p in self._phases if p.order < phase.order]

    def reset(self) -> None:
        """Clear every criterion's satisfaction (full graph reset)."""
        for phase in self._phases:
            for criterion in phase.criteria:
                criterion.reset()
        logger.info("[PHASES] Reset satisfaction on all criteria")

    def to_list(self) -> list[dict]:
        return [p.to_dict() for p in self._phases]

    @classmethod
    def from_list(cls, data: list[dict]) -> "PhaseGraph":
        return cls([Phase.from_dict(p) for p in data])


def default_phase_graph() -> PhaseGraph:
    """Fresh copy of the built-in graph."""
    return PhaseGraph.from_list(DEFAULT_PHASES)


def parse_phase_graph(text: str, source: str = PHASES_FILE) -> PhaseGraph:
    """Parse phases.yaml content.

    Raises:
        PhaseGraphError: malformed YAML, schema mismatch or invalid chain
    """
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise PhaseGraphError(f"{source}: invalid YAML: {e}") from None

    try:
        validate(data, "phases", source)
    except ValidationError as e:
        raise PhaseGraphError(str(e)) from None

    return PhaseGraph.from_list(data["phases"])


def load_phase_graph(project_dir: Path) -> PhaseGraph:
    """Load phases.yaml from the project directory, or the default graph."""
    path = project_dir / PHASES_FILE
    if not path.exists():
        logger.debug(f"No {PHASES_FILE} in {project_dir}, using default phases")
        return default_phase_graph()
    return parse_phase_graph(path.read_text(), str(path))


def dump_phase_graph(graph: PhaseGraph) -> str:
    """Render a phase graph definition as YAML (satisfaction state omitted)."""
    phases = []
    for phase in graph:
        entry = phase.to_dict()
        for criterion in entry["criteria"]:
            for key in ("satisfied", "satisfiedAt", "satisfiedBy"):
                criterion.pop(key, None)
        phases.append(entry)
    return yaml.safe_dump({"phases": phases}, sort_keys=False)
