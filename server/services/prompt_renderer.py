"""Typed parameter resolution and rendering for prompt templates.

Every placeholder in a template is a parameter. A placeholder with no stored
definition is a required string. Stored definitions add a type, a default for
optional parameters and validation rules; provided values are cast to the
type before they are substituted.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping

from server.services import parameter_parser

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRUE = {"true", "t", "yes", "y", "on", "1"}
_FALSE = {"false", "f", "no", "n", "off", "0"}


class RenderError(Exception):
    """Provided parameters do not satisfy the prompt's definitions."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(", ".join(self.errors))


def is_valid_parameter_name(name: str) -> bool:
    return bool(_IDENTIFIER.match(name or ""))


def default_definition(name: str) -> dict:
    return {
        "name": name,
        "description": None,
        "parameter_type": "string",
        "required": True,
        "default_value": None,
        "validation_rules": {},
    }


def describe_parameters(template: str | None, definitions: list[dict]) -> list[dict]:
    """Placeholders of ``template`` in first-seen order, merged with their stored definitions."""
    by_name = {d["name"]: d for d in definitions}
    described = []
    for parameter in parameter_parser.extract(template):
        stored = by_name.get(parameter.name)
        described.append({
            **default_definition(parameter.name),
            **(stored or {}),
            "placeholder": parameter.placeholder,
            "defined": stored is not None,
        })
    return described


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def cast_value(parameter_type: str, value: Any) -> Any:
    """Convert ``value`` to ``parameter_type``. Raises ValueError when it cannot."""
    if parameter_type in ("integer", "decimal") and isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    if parameter_type == "integer":
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"{value} is not a whole number")
            return int(value)
        return int(str(value).strip()) if not isinstance(value, int) else value
    if parameter_type == "decimal":
        return float(value) if isinstance(value, (int, float)) else float(str(value).strip())
    if parameter_type == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"{value!r} is not a boolean")
    if parameter_type == "datetime":
        return value if isinstance(value, datetime) else datetime.fromisoformat(str(value).strip())
    if parameter_type == "date":
        return value if isinstance(value, date) else date.fromisoformat(str(value).strip())
    if parameter_type == "array":
        if isinstance(value, list):
            return value
        return [part.strip() for part in str(value).split(",") if part.strip()]
    if parameter_type == "json":
        return json.loads(value) if isinstance(value, str) else value
    return value if isinstance(value, str) else str(value)


def to_text(parameter_type: str, value: Any) -> str:
    """Text substituted for a cast value."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if parameter_type == "array":
        return ", ".join(str(v) for v in value)
    if parameter_type == "json":
        return json.dumps(value)
    return str(value)


def _jsonable(value: Any) -> Any:
    return value.isoformat() if isinstance(value, (date, datetime)) else value


def validate_value(definition: dict, value: Any) -> tuple[list[str], Any]:
    """Return ``(errors, cast_value)``; a blank value casts to ``None``."""
    name = definition["name"]
    parameter_type = definition.get("parameter_type") or "string"
    if _is_blank(value):
        return ([f"{name} is required"] if definition.get("required", True) else []), None

    try:
        cast = cast_value(parameter_type, value)
    except (ValueError, TypeError):
        return [f"{name} must be a valid {parameter_type}"], None

    errors = []
    rules = definition.get("validation_rules") or {}
    text = value if isinstance(value, str) else to_text(parameter_type, cast)
    if rules.get("min_length") is not None and len(text) < rules["min_length"]:
        errors.append(f"{name} must be at least {rules['min_length']} characters")
    if rules.get("max_length") is not None and len(text) > rules["max_length"]:
        errors.append(f"{name} must be at most {rules['max_length']} characters")
    if rules.get("pattern") and not re.search(rules["pattern"], text):
        errors.append(f"{name} must match pattern: {rules['pattern']}")
    if isinstance(cast, (int, float)) and not isinstance(cast, bool):
        if rules.get("min") is not None and cast < rules["min"]:
            errors.append(f"{name} must be at least {rules['min']}")
        if rules.get("max") is not None and cast > rules["max"]:
            errors.append(f"{name} must be at most {rules['max']}")
    return errors, cast


def validate_rules(parameter_type: str, rules: dict, default_value: str | None) -> list[str]:
    """Check a definition before it is stored. Returns error messages (empty = valid)."""
    errors = []
    unknown = set(rules) - {"min_length", "max_length", "pattern", "min", "max"}
    if unknown:
        errors.append(f"unknown validation rules: {', '.join(sorted(unknown))}")
    for key in ("min_length", "max_length"):
        if key in rules and (not isinstance(rules[key], int) or isinstance(rules[key], bool) or rules[key] < 0):
            errors.append(f"{key} must be a non-negative integer")
    for key in ("min", "max"):
        if key in rules and (not isinstance(rules[key], (int, float)) or isinstance(rules[key], bool)):
            errors.append(f"{key} must be a number")
    if rules.get("pattern"):
        try:
            re.compile(rules["pattern"])
        except re.error as e:
            errors.append(f"invalid pattern: {e}")
    if default_value is not None:
        try:
            cast_value(parameter_type, default_value)
        except (ValueError, TypeError):
            errors.append(f"default_value is not a valid {parameter_type}")
    return errors


@dataclass
class ResolvedParameters:
    values: dict[str, Any] = field(default_factory=dict)
    bindings: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)


def resolve_parameters(
    template: str | None, definitions: list[dict], provided: Mapping[str, Any] | None
) -> ResolvedParameters:
    """Apply defaults, validate and cast every placeholder of ``template``.

    Raises:
        RenderError: listing every failed check.
    """
    provided = provided or {}
    by_name = {d["name"]: d for d in definitions}
    resolved = ResolvedParameters()
    errors: list[str] = []

    for name in parameter_parser.parameter_names(template):
        definition = by_name.get(name) or default_definition(name)
        value = provided.get(name)
        if _is_blank(value) and not definition.get("required", True) and definition.get("default_value") is not None:
            value = definition["default_value"]

        problems, cast = validate_value(definition, value)
        if problems:
            errors.extend(problems)
        elif cast is None:
            resolved.missing.append(name)
        else:
            resolved.values[name] = cast
            resolved.bindings[name] = to_text(definition.get("parameter_type") or "string", cast)

    if errors:
        raise RenderError(errors)
    return resolved


def render(
    source: dict,
    definitions: list[dict],
    provided: Mapping[str, Any] | None,
    overrides: Mapping[str, Any] | None = None,
) -> dict:
    """Render a prompt or prompt version with typed parameters and model overrides."""
    resolved = resolve_parameters(source["content"], definitions, provided)
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    system_bindings = {**(provided or {}), **resolved.bindings}
    return {
        "content": parameter_parser.substitute(source["content"], resolved.bindings),
        "system_message": parameter_parser.substitute(source.get("system_message"), system_bindings),
        "model": overrides.get("model", source.get("model")),
        "temperature": overrides.get("temperature", source.get("temperature")),
        "max_tokens": overrides.get("max_tokens", source.get("max_tokens")),
        "version_number": source.get("version_number"),
        "parameters_used": {k: _jsonable(v) for k, v in resolved.values.items()},
        "missing_parameters": resolved.missing,
    }
