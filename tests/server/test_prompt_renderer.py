"""Tests for typed parameter resolution and prompt rendering."""

from __future__ import annotations

from datetime import date

import pytest

from server.services.prompt_renderer import (
    RenderError,
    cast_value,
    describe_parameters,
    render,
    resolve_parameters,
    validate_rules,
)

TEMPLATE = "Write {{count}} lines about {{topic}} in {{tone}}."


def _definition(name, **kwargs) -> dict:
    return {"name": name, "parameter_type": "string", "required": True,
            "default_value": None, "validation_rules": {}, **kwargs}


class TestCastValue:
    @pytest.mark.parametrize("parameter_type,value,expected", [
        ("integer", "42", 42),
        ("integer", 3.0, 3),
        ("decimal", "0.5", 0.5),
        ("boolean", "yes", True),
        ("boolean", "off", False),
        ("date", "2024-05-01", date(2024, 5, 1)),
        ("array", "a, b,,c", ["a", "b", "c"]),
        ("json", '{"k": 1}', {"k": 1}),
        ("string", 7, "7"),
    ])
    def test_casts(self, parameter_type, value, expected):
        assert cast_value(parameter_type, value) == expected

    @pytest.mark.parametrize("parameter_type,value", [
        ("integer", "many"),
        ("integer", 2.5),
        ("integer", True),
        ("boolean", "maybe"),
        ("date", "May 1st"),
        ("json", "{broken"),
    ])
    def test_rejects(self, parameter_type, value):
        with pytest.raises(ValueError):
            cast_value(parameter_type, value)


class TestResolve:
    def test_undefined_placeholders_are_required_strings(self):
        with pytest.raises(RenderError) as exc:
            resolve_parameters(TEMPLATE, [], {"count": "3"})
        assert exc.value.errors == ["topic is required", "tone is required"]
        assert str(exc.value) == "topic is required, tone is required"

    def test_optional_default_and_missing(self):
        definitions = [
            _definition("count", parameter_type="integer"),
            _definition("tone", required=False, default_value="plain English"),
            _definition("topic", required=False),
        ]
        resolved = resolve_parameters(TEMPLATE, definitions, {"count": "3", "tone": "  "})
        assert resolved.values == {"count": 3, "tone": "plain English"}
        assert resolved.bindings == {"count": "3", "tone": "plain English"}
        assert resolved.missing == ["topic"]

    def test_validation_rules(self):
        definitions = [
            _definition("count", parameter_type="integer", validation_rules={"min": 1, "max": 10}),
            _definition("topic", validation_rules={"min_length": 3, "pattern": "^[a-z]+$"}),
            _definition("tone", validation_rules={"max_length": 4}),
        ]
        with pytest.raises(RenderError) as exc:
            resolve_parameters(TEMPLATE, definitions, {"count": 11, "topic": "AI", "tone": "casual"})
        assert exc.value.errors == [
            "count must be at most 10",
            "topic must be at least 3 characters",
            "topic must match pattern: ^[a-z]+$",
            "tone must be at most 4 characters",
        ]

    def test_uncastable_value(self):
        with pytest.raises(RenderError, match="count must be a valid integer"):
            resolve_parameters(TEMPLATE, [_definition("count", parameter_type="integer")],
                               {"count": "lots", "topic": "x", "tone": "y"})


def test_render_applies_overrides_and_text_forms():
    source = {
        "content": "Tags: {{tags}}. Strict: {{strict}}. Due {{due}}.",
        "system_message": "Audience: {{audience}}",
        "model": "gpt-4o", "temperature": 0.7, "max_tokens": 100, "version_number": 4,
    }
    definitions = [
        _definition("tags", parameter_type="array"),
        _definition("strict", parameter_type="boolean"),
        _definition("due", parameter_type="date"),
    ]
    result = render(
        source, definitions,
        {"tags": ["a", "b"], "strict": "true", "due": "2024-05-01", "audience": "ops"},
        {"model": "gpt-4o-mini", "temperature": None},
    )

    assert result["content"] == "Tags: a, b. Strict: true. Due 2024-05-01."
    assert result["system_message"] == "Audience: ops"
    assert result["model"] == "gpt-4o-mini"
    assert result["temperature"] == 0.7
    assert result["version_number"] == 4
    assert result["parameters_used"] == {"tags": ["a", "b"], "strict": True, "due": "2024-05-01"}
    assert result["missing_parameters"] == []


def test_substituted_values_are_not_rescanned():
    result = render({"content": "{{a}} and {{b}}"}, [], {"a": "{{b}}", "b": "B"})
    assert result["content"] == "{{b}} and B"


def test_describe_parameters_merges_definitions():
    described = describe_parameters(TEMPLATE, [_definition("tone", required=False, description="Voice")])
    assert [(p["name"], p["defined"], p["required"]) for p in described] == [
        ("count", False, True), ("topic", False, True), ("tone", True, False),
    ]
    assert described[2]["placeholder"] == "{{tone}}"
    assert described[2]["description"] == "Voice"


def test_validate_rules():
    assert validate_rules("string", {"max_length": 10, "pattern": "^a"}, None) == []
    errors = validate_rules("integer", {"min_length": -1, "max": "ten", "pattern": "(", "size": 1}, "x")
    assert errors == [
        "unknown validation rules: size",
        "min_length must be a non-negative integer",
        "max must be a number",
        errors[3],
        "default_value is not a valid integer",
    ]
    assert errors[3].startswith("invalid pattern:")
