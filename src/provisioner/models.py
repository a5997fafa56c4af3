"""Pydantic models for resource declarations.

These models provide:
1. Type-safe YAML/JSON parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Reference-aware attribute values (see references.py)
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .references import VALID_NAME_PATTERN, parse_value

VALID_KIND_PATTERN = r"^[A-Za-z][A-Za-z0-9_.:/@*-]*$"
VALID_PARAMETER_TYPES = {"String", "Number"}


class ParameterSpec(BaseModel):
    """Declaration parameter with optional default and pattern."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str = "String"
    default: str | None = None
    allowed_pattern: str | None = Field(None, alias="allowedPattern")
    description: str | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in VALID_PARAMETER_TYPES:
            raise ValueError(f"type must be one of {sorted(VALID_PARAMETER_TYPES)}")
        return v

    @field_validator("default", mode="before")
    @classmethod
    def coerce_default(cls, v: Any) -> Any:
        # YAML turns `default: 80` into an int
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("allowed_pattern")
    @classmethod
    def validate_pattern(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"allowedPattern is not a valid regular expression: {e}") from e
        return v


class ResourceSpec(BaseModel):
    """One typed resource in a declaration."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(alias="logicalName", pattern=VALID_NAME_PATTERN)]
    kind: Annotated[str, Field(min_length=1, max_length=256, pattern=VALID_KIND_PATTERN)]
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    description: str | None = None

    @field_validator("attributes")
    @classmethod
    def parse_attributes(cls, v: dict[str, Any]) -> dict[str, Any]:
        # Reference syntax errors surface as validation errors
        return {str(key): parse_value(value) for key, value in v.items()}

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        result: list[str] = []
        for name in v:
            if not re.match(VALID_NAME_PATTERN, name):
                raise ValueError(f"dependsOn entry is not a valid resource name: '{name}'")
            if name not in result:
                result.append(name)
        return result


class OutputSpec(BaseModel):
    """Value surfaced to the caller once apply completes."""

    model_config = {"extra": "ignore"}

    value: Any
    description: str | None = None

    @field_validator("value")
    @classmethod
    def parse_output_value(cls, v: Any) -> Any:
        return parse_value(v)


class Declaration(BaseModel):
    """Complete desired state: parameters, resources and outputs."""

    model_config = {"extra": "ignore"}

    description: str | None = None
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)
    resources: list[ResourceSpec] = Field(default_factory=list)
    outputs: dict[str, OutputSpec] = Field(default_factory=dict)

    @field_validator("parameters", "outputs")
    @classmethod
    def validate_names(cls, v: dict[str, Any]) -> dict[str, Any]:
        for name in v:
            if not re.match(VALID_NAME_PATTERN, name):
                raise ValueError(f"Invalid name: '{name}'")
        return v

    @field_validator("outputs", mode="before")
    @classmethod
    def wrap_bare_outputs(cls, v: Any) -> Any:
        # Allow `outputs: {Url: "${Alb.dnsName}"}` as shorthand for {value: ...}
        if not isinstance(v, dict):
            return v
        return {
            name: spec if isinstance(spec, dict) and "value" in spec else {"value": spec}
            for name, spec in v.items()
        }

    @model_validator(mode="after")
    def check_unique_names(self) -> Declaration:
        seen: set[str] = set()
        for resource in self.resources:
            if resource.name in seen:
                raise ValueError(f"Duplicate resource name: '{resource.name}'")
            seen.add(resource.name)
        return self
