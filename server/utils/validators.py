"""Validation helpers for prompts, eval sets and stored secrets."""

from __future__ import annotations

import re

VALID_PROMPT_STATUSES = {"draft", "active", "archived"}
VALID_GRADER_TYPES = {"exact_match", "regex", "contains", "json_schema"}


def slugify(value: str) -> str:
    """Lowercase, collapse every run of non-alphanumerics to ``-``, trim dashes."""
    return re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")


def validate_grader_config(grader_type: str, grader_config: dict | None) -> list[str]:
    """Validate grader settings. Returns list of error messages (empty = valid)."""
    errors = []
    config = grader_config or {}

    if grader_type not in VALID_GRADER_TYPES:
        errors.append(f"grader_type must be one of: {', '.join(sorted(VALID_GRADER_TYPES))}")
        return errors

    if grader_type == "regex":
        pattern = config.get("pattern")
        if not pattern:
            errors.append("regex pattern is required")
        else:
            try:
                re.compile(pattern)
            except re.error as e:
                errors.append(f"invalid regex pattern: {e}")

    elif grader_type == "json_schema":
        schema = config.get("schema")
        if not schema:
            errors.append("JSON schema is required")
        elif not isinstance(schema, dict) or not schema.get("type"):
            errors.append("JSON schema must include a 'type' field")

    return errors


def mask_api_key(key: str | None) -> str | None:
    """Show the first and last three characters, e.g. ``sk-...789``."""
    if not key:
        return None
    if len(key) <= 6:
        return "*****"
    return f"{key[:3]}...{key[-3:]}"
