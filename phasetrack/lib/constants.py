"""Shared constants for phasetrack."""

import re

# Project and phase ID validation
PROJECT_ID_PATTERN = re.compile(r'^[a-z][a-z0-9_-]*$')
MAX_PROJECT_ID_LEN = 32

# Actor stamped on criteria the engine satisfies
AUTO_SYSTEM = "auto-system"

# Scheduler defaults
DEFAULT_CHECK_INTERVAL_SECONDS = 300
DEFAULT_DEBOUNCE_SECONDS = 0.75

STATE_FILE = "state.json"
EVENTS_FILE = "events.jsonl"
SETTINGS_FILE = "settings.env"
PHASES_FILE = "phases.yaml"
LOCK_FILE = ".lock"

STATE_VERSION = 1
