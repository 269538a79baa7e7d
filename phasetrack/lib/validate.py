"""
Validation of phasetrack's on-disk documents.

Two documents are checked: a project's state.json ("project" schema)
and a phase graph definition ("phases" schema). State files also get
the cross-field rules JSON Schema cannot express: the snapshot must
belong to the project whose directory holds it, and work item ids are
unique. Errors name the file they came from.
"""

import json
from pathlib import Path
from typing import Optional, Union

import jsonschema

Source = Union[str, Path, None]


class ValidationError(Exception):
    """A state or phases document is invalid."""

    def __init__(self, schema_name: str, message: str, path: str = None, source: Source = None):
        self.schema_name = schema_name
        self.message = message
        self.path = path
        self.source = str(source) if source else None
        where = f"{self.source}: " if self.source else ""
        super().__init__(f"[{schema_name}] {where}{message}" + (f" at {path}" if path else ""))


_schema_cache: dict[str, dict] = {}


def _get_schemas_dir() -> Path:
    return Path(__file__).parent.parent / "schemas"


def _load_schema(schema_name: str) -> dict:
    if schema_name not in _schema_cache:
        schema_path = _get_schemas_dir() / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def validate(data: dict, schema_name: str, source: Source = None) -> None:
    """
    Validate data against the "project" or "phases" schema.

    Raises:
        ValidationError: with the dotted path of the first failing field
    """
    schema = _load_schema(schema_name)
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise ValidationError(schema_name, e.message, path, source) from None


def validate_state(data: dict, project_id: str, source: Source = None) -> None:
    """
    Validate a project state document for the given project.

    Raises:
        ValidationError: schema mismatch, foreign projectId or duplicate item id
    """
    validate(data, "project", source)

    if data["projectId"] != project_id:
        raise ValidationError(
            "project",
            f"State belongs to project '{data['projectId']}', expected '{project_id}'",
            "projectId",
            source,
        )

    seen = set()
    for n, item in enumerate(data["workItems"]):
        if item["id"] in seen:
            raise ValidationError("project", f"Duplicate work item id '{item['id']}'", f"workItems.{n}.id", source)
        seen.add(item["id"])


def validate_before_write(data: dict, project_id: str, filepath: Path) -> None:
    """
    Validate state before it replaces filepath. Invalid state is never written.

    Raises:
        ValidationError: If the state is invalid
    """
    try:
        validate_state(data, project_id)
    except ValidationError as e:
        raise ValidationError("project", f"Refusing to write invalid state: {e.message}", e.path, filepath) from None
