"""
JSON Schema checks at storyloop's two data boundaries.

backlog.schema.json guards the document handed to start_run; run.schema.json
guards every checkpoint before it reaches disk. Schemas ship inside the
package (storyloop/schemas/) and are checked once when first loaded.
"""

import json
from functools import lru_cache
from pathlib import Path

import jsonschema
from jsonschema.validators import validator_for

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"

# Errors listed per failure; the rest are summarised as a count
MAX_REPORTED_ERRORS = 3


class ValidationError(Exception):
    """Data does not match its schema."""

    def __init__(self, schema_name: str, errors: list[str]):
        self.schema_name = schema_name
        self.errors = errors
        shown = "; ".join(errors[:MAX_REPORTED_ERRORS])
        more = len(errors) - MAX_REPORTED_ERRORS
        if more > 0:
            shown += f" (+{more} more)"
        super().__init__(f"[{schema_name}] {shown}")


@lru_cache(maxsize=None)
def _validator(schema_name: str):
    path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    try:
        schema = json.loads(path.read_text())
    except FileNotFoundError:
        raise ValidationError(schema_name, [f"schema file not found: {path}"]) from None
    cls = validator_for(schema)
    cls.check_schema(schema)
    return cls(schema)


def _describe(error: jsonschema.ValidationError) -> str:
    where = ".".join(str(p) for p in error.absolute_path) or "(root)"
    return f"{error.message} at {where}"


def validate(data: dict, schema_name: str) -> None:
    """
    Check data against storyloop/schemas/<schema_name>.schema.json.

    Raises:
        ValidationError: listing every violation, shallowest first
    """
    errors = sorted(_validator(schema_name).iter_errors(data), key=lambda e: len(e.absolute_path))
    if errors:
        raise ValidationError(schema_name, [_describe(e) for e in errors])


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """validate(), with the refused target named in the message."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(
            schema_name, [f"refusing to write {filepath}"] + e.errors
        ) from None
