"""
Settings file parser.

Reads KEY=value files (no shell evaluation) and converts values to
the typed settings the scheduler and engine consume.
"""

import re
from pathlib import Path

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')

TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off")


def parse_env_text(text: str) -> dict[str, str]:
    """
    Parse KEY=value lines into a dict.

    Blank lines and # comments are skipped; matching surrounding
    quotes are stripped from values.

    Raises:
        ValueError: on a line without '=' or with an invalid key
    """
    result = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue

        if '=' not in line:
            raise ValueError(f"Line {lineno}: Invalid syntax (no '=')")

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if not KEY_PATTERN.match(key):
            raise ValueError(f"Line {lineno}: Invalid key '{key}'")

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]

        result[key] = value
    return result


def load_env(filepath: Path) -> dict[str, str]:
    """
    Parse env file, return dict.

    Raises:
        FileNotFoundError: if file doesn't exist
        ValueError: if syntax invalid
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Env file not found: {filepath}")
    return parse_env_text(path.read_text())


def env_bool(env: dict[str, str], key: str, default: bool) -> bool:
    """Read a boolean flag. Raises ValueError for unrecognised values."""
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    lowered = raw.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"{key}: expected a boolean, got '{raw}'")


def env_float(env: dict[str, str], key: str, default: float) -> float:
    """Read a number. Raises ValueError if it does not parse."""
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key}: expected a number, got '{raw}'") from None


def format_env(values: dict[str, object]) -> str:
    """Render a dict back to KEY="value" lines."""
    lines = []
    for key, value in values.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        lines.append(f'{key}="{value}"')
    return "\n".join(lines) + "\n"
