from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from server.utils.validators import validate_grader_config


class GraderType(str, Enum):
    EXACT_MATCH = "exact_match"
    REGEX = "regex"
    CONTAINS = "contains"
    JSON_SCHEMA = "json_schema"


GRADER_TYPE_LABELS = {
    GraderType.EXACT_MATCH: "Exact Match",
    GraderType.REGEX: "Regular Expression",
    GraderType.CONTAINS: "Contains Text",
    GraderType.JSON_SCHEMA: "JSON Match (Exact)",
}


class EvalSetCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    grader_type: GraderType = GraderType.EXACT_MATCH
    grader_config: dict = {}

    @model_validator(mode="after")
    def _check_grader_config(self):
        errors = validate_grader_config(self.grader_type.value, self.grader_config)
        if errors:
            raise ValueError("; ".join(errors))
        return self


class EvalSetUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    grader_type: GraderType | None = None
    grader_config: dict | None = None


class TestCaseCreate(BaseModel):
    """A single input/expected-output pair. Both halves are mandatory."""

    __test__ = False
    input_variables: dict[str, str]
    expected_output: str
    description: str | None = None

    @field_validator("input_variables", mode="before")
    @classmethod
    def _stringify_inputs(cls, value):
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("input_variables")
    @classmethod
    def _inputs_present(cls, value: dict[str, str]) -> dict[str, str]:
        if not value:
            raise ValueError("input_variables can't be blank")
        return value

    @field_validator("expected_output")
    @classmethod
    def _expected_present(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("expected_output can't be blank")
        return value


class EvalRunCreate(BaseModel):
    prompt_version_id: str | None = None
    wait: bool = False


def success_rate(run: dict) -> float:
    """Percentage of passed test cases, rounded to one decimal (0 without results)."""
    total = run.get("total_count") or 0
    if total == 0:
        return 0
    return round((run.get("passed_count") or 0) / total * 100, 1)
