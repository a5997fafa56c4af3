"""Provider interface: the control plane the Executor drives.

Providers are synchronous and may be slow or rate limited; the Executor
runs each call in a worker thread. Failures must be reported as one of the
two ProviderError subclasses so the Executor can decide between retrying
and aborting:

- TransientProviderError: throttling, timeouts, 5xx. Safe to retry.
- PermanentProviderError: validation failures, quota, not found. Retrying
  cannot help.

Any other exception escaping a provider call is treated as an unknown
outcome: the resource is left flagged for reconciliation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class ProviderError(Exception):
    """Base class for structured provider failures."""

    transient: bool = False

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientProviderError(ProviderError):
    """Failure that may succeed if the same call is retried."""

    transient = True


class PermanentProviderError(ProviderError):
    """Failure that will not go away by retrying."""

    pass


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a confirmed create."""

    physical_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """Control-plane operations for typed resources."""

    name: str = "provider"

    @abstractmethod
    def create(self, kind: str, attributes: dict[str, Any]) -> ProviderResult:
        """Create a resource and return its physical id and reported attributes."""

    @abstractmethod
    def update(self, kind: str, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Update a resource in place and return its reported attributes."""

    @abstractmethod
    def delete(self, kind: str, physical_id: str) -> None:
        """Delete a resource. Deleting an already-absent resource succeeds."""
