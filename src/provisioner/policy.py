"""Replacement policy: which attribute changes force resource recreation.

Provider frameworks hide this knowledge, so it is supplied as external
configuration per resource kind instead of being hard-coded:

```yaml
defaults:
  createBeforeDelete: true
rules:
  - kinds: ["aws:ec2:Vpc"]
    replaceOn: [cidr, maxAzs, subnetConfiguration]
    createBeforeDelete: false     # CIDR ranges cannot overlap
    reason: VPC address space is immutable
  - kinds: ["Microsoft.Network/*"]
    replaceOn: [location]
```

Kind patterns are case-insensitive globs; attribute patterns are
case-sensitive globs matched against top-level attribute names. Rules are
evaluated in order and the first rule that sets `createBeforeDelete` for a
kind wins.
"""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import MAX_POLICY_FILE_SIZE_BYTES
from .loader import DeclarationLoadError, format_validation_error, read_document

logger = logging.getLogger(__name__)


class PolicyLoadError(Exception):
    """Raised when the replacement policy cannot be loaded."""

    pass


class ReplacementRule(BaseModel):
    """Replacement behaviour for a set of resource kinds."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kinds: list[str] = Field(min_length=1)
    replace_on: list[str] = Field(default_factory=list, alias="replaceOn")
    create_before_delete: bool | None = Field(None, alias="createBeforeDelete")
    reason: str = ""

    @field_validator("kinds", "replace_on")
    @classmethod
    def strip_patterns(cls, v: list[str]) -> list[str]:
        return [pattern.strip() for pattern in v if pattern and pattern.strip()]

    def matches_kind(self, kind: str) -> bool:
        """Check if this rule applies to a resource kind."""
        kind_lower = kind.lower()
        return any(fnmatch.fnmatchcase(kind_lower, p.lower()) for p in self.kinds)

    def forces_replacement(self, attribute: str) -> bool:
        """Check if changing `attribute` forces replacement under this rule."""
        return any(fnmatch.fnmatchcase(attribute, p) for p in self.replace_on)


class PolicyDefaults(BaseModel):
    """Fallbacks for kinds no rule covers."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    create_before_delete: bool = Field(True, alias="createBeforeDelete")


class ReplacementPolicy(BaseModel):
    """Per-kind table of replacement-class attributes."""

    model_config = {"extra": "ignore"}

    defaults: PolicyDefaults = Field(default_factory=PolicyDefaults)
    rules: list[ReplacementRule] = Field(default_factory=list)

    def rules_for(self, kind: str) -> list[ReplacementRule]:
        """All rules matching a kind, in declaration order."""
        return [rule for rule in self.rules if rule.matches_kind(kind)]

    def requires_replacement(self, kind: str, attribute: str) -> bool:
        """Check if a change to `attribute` of `kind` must recreate the resource."""
        return any(rule.forces_replacement(attribute) for rule in self.rules_for(kind))

    def create_before_delete(self, kind: str) -> bool:
        """Whether a replacement of `kind` may create the new instance first."""
        for rule in self.rules_for(kind):
            if rule.create_before_delete is not None:
                return rule.create_before_delete
        return self.defaults.create_before_delete


def load_policy(path: Path | None) -> ReplacementPolicy:
    """Load the replacement policy from YAML; None yields an empty policy.

    Raises:
        PolicyLoadError: If the file cannot be read or fails validation.
    """
    if path is None:
        return ReplacementPolicy()

    try:
        raw_data = read_document(path, MAX_POLICY_FILE_SIZE_BYTES)
    except DeclarationLoadError as e:
        raise PolicyLoadError(str(e)) from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise PolicyLoadError(f"Policy file must contain a mapping: {path}")

    try:
        policy = ReplacementPolicy.model_validate(raw_data)
    except ValidationError as e:
        raise PolicyLoadError(
            f"Validation failed for {path}:\n{format_validation_error(e)}"
        ) from e

    logger.info("Loaded replacement policy", extra={"path": str(path), "rules": len(policy.rules)})
    return policy
