"""
Configuration loaders for phasetrack.

Auto-completion settings come from settings.env in the project directory.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from . import envparse
from .constants import (
    DEFAULT_CHECK_INTERVAL_SECONDS,
    DEFAULT_DEBOUNCE_SECONDS,
    MAX_PROJECT_ID_LEN,
    PROJECT_ID_PATTERN,
    SETTINGS_FILE,
)

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Settings are missing, malformed or out of range."""


class CompletionMode(Enum):
    STRICT = "strict"
    FLEXIBLE = "flexible"
    MANUAL = "manual"


VALID_MODES = tuple(m.value for m in CompletionMode)


@dataclass
class AutoCompletionSettings:
    """Auto-completion configuration from settings.env"""
    enabled: bool = True
    mode: CompletionMode = CompletionMode.FLEXIBLE
    auto_advance_phases: bool = True
    require_manual_approval: bool = False
    check_interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "mode": self.mode.value,
            "autoAdvancePhases": self.auto_advance_phases,
            "requireManualApproval": self.require_manual_approval,
            "checkIntervalSeconds": self.check_interval_seconds,
            "debounceSeconds": self.debounce_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AutoCompletionSettings":
        return cls(
            enabled=data.get("enabled", True),
            mode=_parse_mode(data.get("mode", "flexible")),
            auto_advance_phases=data.get("autoAdvancePhases", True),
            require_manual_approval=data.get("requireManualApproval", False),
            check_interval_seconds=data.get("checkIntervalSeconds", DEFAULT_CHECK_INTERVAL_SECONDS),
            debounce_seconds=data.get("debounceSeconds", DEFAULT_DEBOUNCE_SECONDS),
        )


def _parse_mode(raw: str) -> CompletionMode:
    if raw not in VALID_MODES:
        logger.warning(f"Unknown AUTO_COMPLETION_MODE '{raw}', using 'flexible'")
        return CompletionMode.FLEXIBLE
    return CompletionMode(raw)


def load_settings(project_dir: Path) -> AutoCompletionSettings:
    """Load settings.env and return AutoCompletionSettings.

    A missing file yields defaults. Unparseable values raise ConfigurationError.
    """
    path = project_dir / SETTINGS_FILE
    if not path.exists():
        return AutoCompletionSettings()

    try:
        env = envparse.load_env(path)
        return AutoCompletionSettings(
            enabled=envparse.env_bool(env, "AUTO_COMPLETION_ENABLED", True),
            mode=_parse_mode(env.get("AUTO_COMPLETION_MODE", "flexible")),
            auto_advance_phases=envparse.env_bool(env, "AUTO_ADVANCE_PHASES", True),
            require_manual_approval=envparse.env_bool(env, "REQUIRE_MANUAL_APPROVAL", False),
            check_interval_seconds=envparse.env_float(
                env, "CHECK_INTERVAL_SECONDS", DEFAULT_CHECK_INTERVAL_SECONDS
            ),
            debounce_seconds=envparse.env_float(env, "DEBOUNCE_SECONDS", DEFAULT_DEBOUNCE_SECONDS),
        )
    except ValueError as e:
        raise ConfigurationError(f"{path}: {e}") from None


def save_settings(project_dir: Path, settings: AutoCompletionSettings) -> None:
    """Write settings back to settings.env."""
    project_dir.mkdir(parents=True, exist_ok=True)
    (project_dir / SETTINGS_FILE).write_text(envparse.format_env({
        "AUTO_COMPLETION_ENABLED": settings.enabled,
        "AUTO_COMPLETION_MODE": settings.mode.value,
        "AUTO_ADVANCE_PHASES": settings.auto_advance_phases,
        "REQUIRE_MANUAL_APPROVAL": settings.require_manual_approval,
        "CHECK_INTERVAL_SECONDS": settings.check_interval_seconds,
        "DEBOUNCE_SECONDS": settings.debounce_seconds,
    }))


def validate_settings(settings: AutoCompletionSettings) -> None:
    """Reject settings the scheduler cannot run with.

    Raises:
        ConfigurationError: interval or debounce window not positive
    """
    if settings.check_interval_seconds <= 0:
        raise ConfigurationError(
            f"checkIntervalSeconds must be > 0 (got {settings.check_interval_seconds})"
        )
    if settings.debounce_seconds <= 0:
        raise ConfigurationError(
            f"debounceSeconds must be > 0 (got {settings.debounce_seconds})"
        )


def validate_project_id(project_id: str) -> None:
    """Raise ConfigurationError for ids that cannot name a project directory."""
    if not PROJECT_ID_PATTERN.match(project_id) or len(project_id) > MAX_PROJECT_ID_LEN:
        raise ConfigurationError(
            f"Invalid project id '{project_id}': lowercase letters, digits, '_' or '-', "
            f"starting with a letter, at most {MAX_PROJECT_ID_LEN} chars"
        )


def get_project_dir(root: Path, project_id: str) -> Path:
    """Directory holding a project's state, settings and phase graph."""
    validate_project_id(project_id)
    return root / "projects" / project_id
