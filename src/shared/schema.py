"""JSON Schema validation utilities."""

from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Provider schemas are opaque; a schema that is itself malformed is not the
    caller's fault, so it is treated as accepting anything.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    try:
        Draft7Validator.check_schema(schema)
    except SchemaError:
        return True, []

    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(data))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages
