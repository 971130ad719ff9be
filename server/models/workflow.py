"""Declarative workflow steps and run payloads."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class InputBinding(BaseModel):
    """Where a step variable gets its value.

    - ``input``: the workflow's initial variables (``key`` defaults to the
      variable name; ``input`` itself is the initial input text)
    - ``step``: the output of the step named by ``key``
    - ``previous``: the output of the most recently executed step
    - ``literal``: the fixed ``value``
    """

    source: Literal["input", "step", "previous", "literal"]
    key: str | None = None
    value: str | None = None

    @model_validator(mode="after")
    def _check_fields(self):
        if self.source == "step" and not self.key:
            raise ValueError("step bindings require 'key'")
        if self.source == "literal" and self.value is None:
            raise ValueError("literal bindings require 'value'")
        return self


class StepCondition(BaseModel):
    """Gate evaluated against the accumulated workflow state."""

    ref: str
    operator: Literal[
        "equals", "not_equals", "contains", "not_contains", "exists", "not_exists", "matches"
    ] = "equals"
    value: str | None = None

    @model_validator(mode="after")
    def _check_value(self):
        if self.operator not in ("exists", "not_exists") and self.value is None:
            raise ValueError(f"operator '{self.operator}' requires 'value'")
        return self


class WorkflowStep(BaseModel):
    key: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    prompt: str = Field(min_length=1)
    inputs: dict[str, InputBinding] = {}
    condition: StepCondition | None = None


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    steps: list[WorkflowStep] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_keys(self):
        keys = [s.key for s in self.steps]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"duplicate step keys: {', '.join(duplicates)}")
        return self


class WorkflowUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    steps: list[WorkflowStep] | None = Field(default=None, min_length=1)


class WorkflowRunRequest(BaseModel):
    initial_input: str = ""
    variables: dict = {}
    provider: str = "openai"
    api_key: str | None = None
    title: str | None = None
