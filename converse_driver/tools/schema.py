"""Shallow structural validation of tool arguments against a JSON-Schema object."""

from collections.abc import Callable, Mapping
from typing import Any

from converse_driver.errors import ToolArgumentError

JSON_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda value: isinstance(value, str),
    "number": lambda value: isinstance(value, int | float) and not isinstance(value, bool),
    "integer": lambda value: (isinstance(value, int) and not isinstance(value, bool))
    or (isinstance(value, float) and value.is_integer()),
    "boolean": lambda value: isinstance(value, bool),
    "object": lambda value: isinstance(value, Mapping),
    "array": lambda value: isinstance(value, list | tuple),
    "null": lambda value: value is None,
}


def json_type_name(value: Any) -> str:
    """Name the JSON type of a Python value, for error messages."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, list | tuple):
        return "array"
    return type(value).__name__


def declared_types(property_schema: Mapping[str, Any]) -> list[str]:
    """Collect the JSON types a property accepts. Empty means unconstrained."""
    declared = property_schema.get("type")
    if isinstance(declared, str):
        return [declared]
    if isinstance(declared, list):
        return [name for name in declared if isinstance(name, str)]

    for key in ("anyOf", "oneOf"):
        options = property_schema.get(key)
        if not options:
            continue
        types: list[str] = []
        for option in options:
            option_types = declared_types(option) if isinstance(option, Mapping) else []
            if not option_types:
                # e.g. a $ref; the union is unconstrained at this depth
                return []
            types.extend(option_types)
        return types

    return []


def required_properties(schema: Mapping[str, Any]) -> list[str]:
    """Required property names, from the ``required`` list and per-property ``required: true`` flags."""
    names = [name for name in schema.get("required") or [] if isinstance(name, str)]
    for name, property_schema in (schema.get("properties") or {}).items():
        if isinstance(property_schema, Mapping) and property_schema.get("required") is True and name not in names:
            names.append(name)
    return names


def validate_arguments(tool_name: str, arguments: Any, schema: Mapping[str, Any]) -> None:
    """Validate tool arguments at a shallow structural level.

    Checks that required properties are present and that each supplied
    property matches its declared type. Nested values are not inspected.

    Raises:
        ToolArgumentError: Listing every problem found
    """
    if not isinstance(arguments, Mapping):
        raise ToolArgumentError(tool_name, [f"arguments must be an object, got {json_type_name(arguments)}"])

    properties = schema.get("properties") or {}
    problems: list[str] = []

    for name in required_properties(schema):
        if name not in arguments:
            problems.append(f"missing required property '{name}'")

    for name, value in arguments.items():
        property_schema = properties.get(name)
        if not isinstance(property_schema, Mapping):
            if schema.get("additionalProperties") is False:
                problems.append(f"unexpected property '{name}'")
            continue

        known_types = [type_name for type_name in declared_types(property_schema) if type_name in JSON_TYPE_CHECKS]
        if known_types and not any(JSON_TYPE_CHECKS[type_name](value) for type_name in known_types):
            problems.append(
                f"property '{name}' should be of type {' or '.join(known_types)}, got {json_type_name(value)}"
            )

    if problems:
        raise ToolArgumentError(tool_name, problems)
