from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class PromptStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


# Attributes snapshotted into prompt_versions; changing any of them creates a version.
VERSIONED_ATTRIBUTES = ("content", "system_message", "model", "temperature", "max_tokens", "metadata")


class PromptCreate(BaseModel):
    """Request body for creating a new prompt."""
    name: str = Field(min_length=1)
    slug: str | None = Field(default=None, pattern=r"^[a-z0-9-]+$")
    description: str | None = None
    content: str = Field(min_length=1)
    system_message: str | None = None
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1)
    metadata: dict = {}
    status: PromptStatus = PromptStatus.DRAFT


class PromptUpdate(BaseModel):
    """Request body for updating a prompt. Only fields that are set are applied."""
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    content: str | None = Field(default=None, min_length=1)
    system_message: str | None = None
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1)
    metadata: dict | None = None
    status: PromptStatus | None = None


class ParameterType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    DATE = "date"
    ARRAY = "array"
    JSON = "json"


class ParameterDefinitionUpdate(BaseModel):
    """Request body for typing a template placeholder.

    ``validation_rules`` accepts ``min_length``, ``max_length`` and ``pattern``
    for the text form of a value, and ``min``/``max`` for numeric types.
    """
    description: str | None = None
    parameter_type: ParameterType = ParameterType.STRING
    required: bool = True
    default_value: str | None = None
    validation_rules: dict = {}
    position: int | None = None


class RenderOverrides(BaseModel):
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1)


class RenderRequest(RenderOverrides):
    """Request body for rendering a prompt with parameters."""
    parameters: dict = {}
    version_number: int | None = None


class PlaygroundRequest(RenderOverrides):
    provider: str
    api_key: str | None = None
    parameters: dict = {}
