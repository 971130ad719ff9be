"""Placeholder extraction and substitution for ``{{name}}`` prompt templates.

Substitution is literal and single pass: each ``{{key}}`` token is replaced by
its bound value exactly once, and the replacement text is never scanned again.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")


@dataclass(frozen=True)
class Parameter:
    name: str
    placeholder: str
    required: bool = True


def placeholder_for(name: str) -> str:
    return "{{" + name + "}}"


def extract(template: str | None) -> list[Parameter]:
    """Return the unique parameters referenced by ``template`` in first-seen order."""
    if not template or not template.strip():
        return []

    seen: dict[str, Parameter] = {}
    for match in _PLACEHOLDER.finditer(template):
        name = match.group(1).strip()
        if name and name not in seen:
            seen[name] = Parameter(name=name, placeholder=placeholder_for(name))
    return list(seen.values())


def parameter_names(template: str | None) -> list[str]:
    return [p.name for p in extract(template)]


def has_parameters(template: str | None) -> bool:
    return bool(extract(template))


def to_template(parameters: list[Parameter]) -> str:
    """Concatenate the placeholders of ``parameters`` back into a template."""
    return "".join(p.placeholder for p in parameters)


def substitute(template: str, bindings: Mapping[Any, Any] | None) -> str:
    """Replace ``{{key}}`` tokens with ``str(value)``; unknown tokens stay verbatim."""
    if template is None or not bindings:
        return template

    values = {
        placeholder_for(str(key)): "" if value is None else str(value)
        for key, value in bindings.items()
    }
    # Longest first so that a token never shadows a longer one sharing its prefix.
    pattern = re.compile(
        "|".join(re.escape(token) for token in sorted(values, key=len, reverse=True))
    )
    return pattern.sub(lambda m: values[m.group(0)], template)


def to_item_template(template: str) -> str:
    """Rewrite ``{{var}}`` into the Evals API item reference ``{{ item.var }}``."""
    return re.sub(r"\{\{(\w+)\}\}", lambda m: "{{ item." + m.group(1) + " }}", template or "")
