"""
Engine event timeline for a project.

Every persisted pass appends its events (and rule errors) to
events.jsonl in the project directory. ``pt log`` reads them back.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from phasetrack.lib.constants import EVENTS_FILE
from phasetrack.workflow.changes import EngineEvent, EventType

logger = logging.getLogger(__name__)

# ANSI color codes
COLORS = {
    "reset": "\033[0m",
    "dim": "\033[2m",
    "bold": "\033[1m",
    "green": "\033[32m",
    "red": "\033[31m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "cyan": "\033[36m",
}

EVENT_COLORS = {
    EventType.CRITERION_SATISFIED: "cyan",
    EventType.ITEM_AUTO_COMPLETED: "green",
    EventType.PHASE_ADVANCED: "blue",
    EventType.ADVANCE_PENDING: "yellow",
    EventType.TRIGGER_NOTIFY: "dim",
    EventType.TRIGGER_ESCALATE: "red",
    EventType.NEXT_PHASE_REQUESTED: "yellow",
    EventType.RULE_ERROR: "red",
}

EVENT_SYMBOLS = {
    EventType.CRITERION_SATISFIED: "+",
    EventType.ITEM_AUTO_COMPLETED: "*",
    EventType.PHASE_ADVANCED: ">",
    EventType.ADVANCE_PENDING: "?",
    EventType.TRIGGER_NOTIFY: "i",
    EventType.TRIGGER_ESCALATE: "!",
    EventType.NEXT_PHASE_REQUESTED: "^",
    EventType.RULE_ERROR: "x",
}


def append_events(project_dir: Path, events: Iterable[EngineEvent]) -> int:
    """Append events to the timeline. Returns number written."""
    lines = [json.dumps(e.to_dict()) for e in events]
    if not lines:
        return 0
    project_dir.mkdir(parents=True, exist_ok=True)
    with open(project_dir / EVENTS_FILE, "a") as f:
        f.write("\n".join(lines) + "\n")
    return len(lines)


def read_events(project_dir: Path, limit: Optional[int] = None) -> list[EngineEvent]:
    """Read timeline events, oldest first. Skips malformed lines."""
    path = project_dir / EVENTS_FILE
    if not path.exists():
        return []

    events = []
    for lineno, line in enumerate(path.read_text().splitlines(), 1):
        if not line.strip():
            continue
        try:
            events.append(EngineEvent.from_dict(json.loads(line)))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Skipping malformed event on line {lineno}: {e}")

    events.sort(key=lambda e: e.timestamp)
    if limit is not None:
        events = events[-limit:]
    return events


def format_event(event: EngineEvent, use_color: bool = True) -> str:
    """Single-line rendering for terminal output."""
    ts_str = event.timestamp.strftime("%Y-%m-%d %H:%M")
    symbol = EVENT_SYMBOLS.get(event.type, "?")
    color = EVENT_COLORS.get(event.type, "")

    if use_color and color:
        return (
            f"{COLORS['dim']}{ts_str}{COLORS['reset']} "
            f"{COLORS[color]}[{symbol}]{COLORS['reset']} {event.summary}"
        )
    return f"{ts_str} [{symbol}] {event.summary}"
